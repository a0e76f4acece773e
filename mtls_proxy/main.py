"""
FastAPI Application Factories
=============================

Builds the two applications of the mTLS proxy pair. Each one is served by
its own TLS listener (see ``mtls_proxy.serve``).

Architecture:
    mTLS Client → HTTP proxy (port 3000)      → Backend HTTP service
    mTLS Client → WebSocket proxy (port 3001) → Backend WebSocket endpoint

Applications:
    - create_http_app()      : catch-all HTTP relay
    - create_websocket_app() : catch-all WebSocket relay with revocation check

Shared state (``app.state``):
    - settings           : Settings instance
    - peer_certificates  : PeerCertificateRegistry filled by the server protocol
    - backend_client     : httpx.AsyncClient (HTTP app)
    - revocation         : RevocationChecker (WebSocket app)
    - target_connector   : coroutine opening the outbound WebSocket (WebSocket app)
    - sessions           : live ProxySession objects (WebSocket app)

Environment Variables:
    See mtls_proxy/config.py. LOG_LEVEL controls verbosity (default: INFO).
"""

import logging
import sys
from contextlib import asynccontextmanager
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Optional

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .auth.certificates import PeerCertificateRegistry
from .auth.revocation import RevocationChecker, RevocationRegistry
from .config import Settings, get_settings
from .errors import ClientCertificateError, UpstreamError, UpstreamTimeout
from .models import ErrorResponse
from .proxy.routes import proxy_router
from .realtime.ws import TargetConnector, default_target_connector, realtime_router
from .upstream import build_upstream_ssl_context

INVALID_CERTIFICATE_ERROR = "Invalid client certificate"
PROXY_FAILED_ERROR = "Proxy request failed"
PROXY_TIMEOUT_ERROR = "Proxy request timed out"


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the proxy.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


# ============================================================================
# HTTP proxy application
# ============================================================================

def build_backend_client(settings: Settings, **kwargs) -> httpx.AsyncClient:
    """
    Create the shared backend client.

    Set-Cookie from the backend is relayed to the client, never stored: the
    cookie jar refuses every cookie.

    Args:
        settings: Upstream TLS configuration
        **kwargs: Extra httpx.AsyncClient options (tests pass a transport)
    """
    return httpx.AsyncClient(
        verify=build_upstream_ssl_context(settings),
        follow_redirects=False,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        **kwargs
    )


@asynccontextmanager
async def http_lifespan(app: FastAPI):
    """
    Owns the backend HTTP client unless one was injected.

    Startup:
        - Create the shared httpx.AsyncClient (connection pool only; each
          request carries its own headers and timeout)
    Shutdown:
        - Close the client if this lifespan created it
    """
    logger = logging.getLogger("mtls_proxy.main")
    settings: Settings = app.state.settings

    owned_client: Optional[httpx.AsyncClient] = None
    if app.state.backend_client is None:
        owned_client = build_backend_client(settings)
        app.state.backend_client = owned_client

    logger.info(
        "HTTP proxy started",
        extra={
            "target_base_url": settings.target_base_url_str,
            "upstream_timeout": settings.UPSTREAM_TIMEOUT_SECONDS,
        }
    )

    yield

    logger.info("Shutting down HTTP proxy")
    if owned_client is not None:
        await owned_client.aclose()
        app.state.backend_client = None
    logger.info("HTTP proxy shutdown complete")


def create_http_app(
    settings: Optional[Settings] = None,
    peer_certificates: Optional[PeerCertificateRegistry] = None,
    backend_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Application factory for the HTTP relay.

    Args:
        settings: Configuration (defaults to get_settings())
        peer_certificates: Registry shared with the server protocol
        backend_client: Pre-built client (tests inject one with a mock transport)

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="mTLS HTTP Proxy",
        description="Mutually-authenticated reverse proxy for HTTP traffic",
        version="1.0.0",
        lifespan=http_lifespan,
        # Every path belongs to the backend
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.peer_certificates = peer_certificates if peer_certificates is not None else PeerCertificateRegistry()
    app.state.backend_client = backend_client

    app.include_router(proxy_router)

    @app.exception_handler(ClientCertificateError)
    async def client_certificate_handler(request: Request, exc: ClientCertificateError) -> JSONResponse:
        logging.getLogger("mtls_proxy.main").warning(
            f"Rejected request: {exc}",
            extra={"path": request.url.path, "method": request.method}
        )
        return _error_response(status.HTTP_401_UNAUTHORIZED, INVALID_CERTIFICATE_ERROR)

    @app.exception_handler(UpstreamTimeout)
    async def upstream_timeout_handler(request: Request, exc: UpstreamTimeout) -> JSONResponse:
        logging.getLogger("mtls_proxy.main").error(
            f"Proxy timeout: {exc}",
            extra={"path": request.url.path, "method": request.method}
        )
        return _error_response(status.HTTP_504_GATEWAY_TIMEOUT, PROXY_TIMEOUT_ERROR)

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
        logging.getLogger("mtls_proxy.main").error(
            f"Proxy error: {exc}",
            extra={"path": request.url.path, "method": request.method}
        )
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, PROXY_FAILED_ERROR)

    return app


# ============================================================================
# WebSocket proxy application
# ============================================================================

@asynccontextmanager
async def websocket_lifespan(app: FastAPI):
    """
    Logs startup and closes sessions still open at shutdown.
    """
    logger = logging.getLogger("mtls_proxy.main")
    settings: Settings = app.state.settings

    logger.info(
        "WebSocket proxy started",
        extra={
            "target_ws_url": settings.target_ws_url_str,
            "path_forwarding": settings.WS_PATH_FORWARDING,
        }
    )

    yield

    logger.info("Shutting down WebSocket proxy")
    for session in list(app.state.sessions):
        try:
            await session.close()
        except Exception as e:
            logger.error(f"Error closing WebSocket session: {e}")
    logger.info("WebSocket proxy shutdown complete")


def create_websocket_app(
    settings: Optional[Settings] = None,
    peer_certificates: Optional[PeerCertificateRegistry] = None,
    revocation: Optional[RevocationChecker] = None,
    target_connector: Optional[TargetConnector] = None,
) -> FastAPI:
    """
    Application factory for the WebSocket relay.

    Args:
        settings: Configuration (defaults to get_settings())
        peer_certificates: Registry shared with the server protocol
        revocation: Revocation capability (defaults to a registry built from settings)
        target_connector: Coroutine function opening the outbound connection

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="mTLS WebSocket Proxy",
        description="Mutually-authenticated reverse proxy for WebSocket traffic",
        version="1.0.0",
        lifespan=websocket_lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.settings = settings
    app.state.peer_certificates = peer_certificates if peer_certificates is not None else PeerCertificateRegistry()
    app.state.revocation = revocation if revocation is not None else RevocationRegistry.from_settings(settings)
    app.state.target_connector = target_connector or default_target_connector(settings)
    app.state.sessions = set()

    app.include_router(realtime_router)

    return app
