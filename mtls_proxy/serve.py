"""
Listener startup for the mTLS proxy pair.

Each proxy runs behind its own uvicorn TLS listener with client certificates
required (``ssl.CERT_REQUIRED``): peers that fail chain validation are
dropped during the handshake. The h11 and wsproto protocol classes are
wrapped so every connection records its peer certificate for the
post-handshake check.

Running the proxies:
    mtls-proxy http            # HTTP relay on HTTP_PROXY_PORT (default 3000)
    mtls-proxy websocket       # WebSocket relay on WS_PROXY_PORT (default 3001)

uvicorn handles SIGTERM/SIGINT: it stops accepting connections, closes the
listening socket, runs the application shutdown and exits with status 0.
Missing certificate material is fatal before the listener is bound.
"""

import argparse
import logging
import signal
import ssl
import sys
from typing import List, Optional

import uvicorn
from uvicorn.protocols.http.h11_impl import H11Protocol
from uvicorn.protocols.websockets.wsproto_impl import WSProtocol

from .auth.certificates import PeerCertificateRegistry, certificate_aware
from .config import Settings, ensure_tls_material, get_settings
from .errors import ConfigurationError
from .main import create_http_app, create_websocket_app, setup_logging

logger = logging.getLogger(__name__)


def build_server_config(app, settings: Settings, port: int, registry: PeerCertificateRegistry) -> uvicorn.Config:
    """
    uvicorn configuration for one mTLS listener.

    Args:
        app: ASGI application to serve
        settings: Certificate paths, host and limits
        port: Listening port
        registry: Shared with ``app`` so handlers can find peer certificates
    """
    return uvicorn.Config(
        app,
        host=settings.PROXY_HOST,
        port=port,
        ssl_certfile=settings.SERVER_CERT,
        ssl_keyfile=settings.SERVER_KEY,
        ssl_ca_certs=settings.CA_CERT,
        ssl_cert_reqs=ssl.CERT_REQUIRED,
        http=certificate_aware(H11Protocol, registry),
        ws=certificate_aware(WSProtocol, registry),
        ws_max_size=settings.WS_MAX_MESSAGE_SIZE,
        # Client IP must come from the socket, not from forwarded headers
        proxy_headers=False,
        server_header=False,
        log_level=settings.LOG_LEVEL.lower(),
    )


def _exit_after_shutdown(signum, frame) -> None:
    # uvicorn re-raises the captured signal once it has shut down
    logger.info(f"Received signal {signal.Signals(signum).name}. Server closed")
    sys.exit(0)


def _serve(server: uvicorn.Server) -> None:
    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _exit_after_shutdown)
    server.run()


def run_http_proxy(settings: Optional[Settings] = None) -> None:
    """Serve the HTTP relay until a termination signal arrives."""
    settings = settings or get_settings()
    ensure_tls_material(settings)

    registry = PeerCertificateRegistry()
    app = create_http_app(settings, peer_certificates=registry)
    server = uvicorn.Server(build_server_config(app, settings, settings.HTTP_PROXY_PORT, registry))

    logger.info(f"HTTPS proxy server starting on port {settings.HTTP_PROXY_PORT}")
    _serve(server)


def run_websocket_proxy(settings: Optional[Settings] = None) -> None:
    """Serve the WebSocket relay until a termination signal arrives."""
    settings = settings or get_settings()
    ensure_tls_material(settings)

    registry = PeerCertificateRegistry()
    app = create_websocket_app(settings, peer_certificates=registry)
    server = uvicorn.Server(build_server_config(app, settings, settings.WS_PROXY_PORT, registry))

    logger.info(f"Secure WebSocket proxy server starting on port {settings.WS_PROXY_PORT}")
    _serve(server)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="mtls-proxy", description="mTLS reverse proxy")
    parser.add_argument("proxy", choices=["http", "websocket"], help="which listener to run")
    parser.add_argument("--port", type=int, help="override the configured listener port")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    if args.port is not None:
        field = "HTTP_PROXY_PORT" if args.proxy == "http" else "WS_PROXY_PORT"
        settings = settings.model_copy(update={field: args.port})

    try:
        if args.proxy == "http":
            run_http_proxy(settings)
        else:
            run_websocket_proxy(settings)
    except ConfigurationError as e:
        logger.critical(f"Refusing to start: {e}")
        return 1

    return 0


def http_main() -> int:
    return main(["http"] + sys.argv[1:])


def websocket_main() -> int:
    return main(["websocket"] + sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
