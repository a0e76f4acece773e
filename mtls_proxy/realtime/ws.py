"""
WebSocket Relay
===============

Accepts authenticated WebSocket upgrades and relays each one to the backend
WebSocket endpoint.

Connection sequence:
    1. Client certificate check (refused upgrade with HTTP 401 on failure)
    2. Accept the upgrade
    3. Revocation check (close 1008 "Certificate revoked" on a revoked serial)
    4. Open the outbound connection (close 1011 on failure)
    5. Run a ProxySession until either side terminates

Target address:
    The inbound path reaches the backend according to WS_PATH_FORWARDING
    (see ``resolve_target_url``). The default, ``query_only``, appends the
    inbound path and query only when a query string is present.
"""

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, WebSocket, status
from fastapi.responses import PlainTextResponse
from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from ..auth.certificates import authenticate_peer
from ..config import Settings
from ..errors import ClientCertificateError
from ..upstream import build_upstream_ssl_context, ssl_for_url
from .session import TARGET_ERROR_REASON, ClientLeg, ProxySession, TargetLeg

logger = logging.getLogger(__name__)

# Router instance
realtime_router = APIRouter()

AUTH_FAILED_TEXT = "Client certificate authentication failed"
REVOKED_REASON = "Certificate revoked"
TARGET_TIMEOUT_REASON = "Target connection timeout"

TargetConnector = Callable[[str], Awaitable[Any]]


# ============================================================================
# Target Resolution
# ============================================================================

def resolve_target_url(base_url: str, raw_path: bytes, query_string: bytes, mode: str = "query_only") -> str:
    """
    Compute the outbound WebSocket URL for an inbound upgrade.

    Args:
        base_url: Configured target URL (no trailing slash)
        raw_path: Inbound path as received
        query_string: Inbound query string without the leading '?'
        mode: 'query_only', 'always' or 'never'

    Returns:
        Target URL to connect to
    """
    if mode == "never":
        return base_url
    if mode == "query_only" and not query_string:
        return base_url

    target = base_url + raw_path.decode("latin-1")
    if query_string:
        target += "?" + query_string.decode("latin-1")
    return target


async def connect_target(url: str, settings: Settings, ssl_context=None):
    """
    Open the outbound WebSocket connection.

    Timeouts and keepalive pings are off unless configured.
    """
    options = {}
    if ssl_context is not None and ssl_for_url(url, ssl_context) is not None:
        # websockets refuses an ssl argument on ws:// URLs
        options["ssl"] = ssl_context

    return await connect(
        url,
        open_timeout=settings.WS_CONNECT_TIMEOUT_SECONDS,
        ping_interval=settings.WS_PING_INTERVAL_SECONDS,
        max_size=settings.WS_MAX_MESSAGE_SIZE,
        **options,
    )


def default_target_connector(settings: Settings) -> TargetConnector:
    return partial(connect_target, settings=settings, ssl_context=build_upstream_ssl_context(settings))


# ============================================================================
# Upgrade Handling
# ============================================================================

async def refuse_upgrade(websocket: WebSocket) -> None:
    """
    Reject the upgrade with HTTP 401 and a textual reason.

    Servers without the denial-response extension only allow closing the
    un-accepted socket, which they answer with 403.
    """
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(
            PlainTextResponse(AUTH_FAILED_TEXT, status_code=status.HTTP_401_UNAUTHORIZED)
        )
    else:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=AUTH_FAILED_TEXT)


@realtime_router.websocket("/{path:path}")
async def websocket_proxy(websocket: WebSocket):
    """
    Relay one WebSocket session to the backend.

    Args:
        websocket: Inbound WebSocket connection (not yet accepted)
    """
    state = websocket.app.state
    settings: Settings = state.settings

    peer = (websocket.client.host, websocket.client.port) if websocket.client else None
    try:
        identity = authenticate_peer(state.peer_certificates, peer)
    except ClientCertificateError as e:
        logger.warning(f"Client certificate validation failed: {e}", extra={"peer": peer})
        await refuse_upgrade(websocket)
        return

    client = ClientLeg(websocket)
    await client.accept()

    if state.revocation.is_revoked(identity.serial_number):
        logger.warning(
            "Certificate has been revoked",
            extra=identity.audit_fields()
        )
        await client.close(status.WS_1008_POLICY_VIOLATION, REVOKED_REASON)
        return

    target_url = resolve_target_url(
        settings.target_ws_url_str,
        websocket.scope.get("raw_path") or websocket.url.path.encode("latin-1"),
        websocket.scope.get("query_string", b""),
        settings.WS_PATH_FORWARDING,
    )

    try:
        connection = await state.target_connector(target_url)
    except asyncio.TimeoutError:
        logger.error(f"Timed out connecting to {target_url} for client {identity.common_name}")
        await client.close(status.WS_1011_INTERNAL_ERROR, TARGET_TIMEOUT_REASON)
        return
    except (OSError, WebSocketException) as e:
        logger.error(f"Target connection error for client {identity.common_name}: {e}")
        await client.close(status.WS_1011_INTERNAL_ERROR, TARGET_ERROR_REASON)
        return

    logger.info(
        f"Proxy established for client {identity.common_name}",
        extra={"target_url": target_url}
    )

    session = ProxySession(client, TargetLeg(connection), label=identity.common_name)
    state.sessions.add(session)
    try:
        await session.run()
    finally:
        state.sessions.discard(session)
