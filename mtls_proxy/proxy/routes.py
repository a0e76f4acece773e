"""
Proxy Routes - Backend Request Forwarding
==========================================

This module implements the HTTP relay: every authenticated request, whatever
its method or path, is re-issued against the backend and the backend's
answer is relayed back.

Security Model:
---------------
1. The TLS listener rejects peers without a CA-validated certificate
2. ``require_client_identity`` re-checks the peer before any forwarding
   (unauthenticated -> 401, backend never contacted)
3. Hop-by-hop and framing headers are stripped in both directions
4. The client identity is logged, never forwarded to the backend

Forwarding Rules:
-----------------
- Target URL = backend base URL + raw path + raw query, byte for byte
- Request body forwarded unmodified; Host set to the backend host
- Redirects are returned to the client, never followed
- Response bytes are not decompressed; JSON bodies are parsed and
  re-rendered, everything else is passed through unchanged
"""

import json
import logging
from typing import Iterable, List, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.routing import APIRoute
from starlette.routing import Match
from starlette.types import Receive, Scope, Send

from ..auth.certificates import authenticate_peer
from ..errors import UpstreamError, UpstreamTimeout
from ..models import CertificateIdentity

logger = logging.getLogger(__name__)

RawHeaders = List[Tuple[bytes, bytes]]

# Headers we don't forward from the original request
EXCLUDED_REQUEST_HEADERS = frozenset({
    "host",
    "connection",
    "content-length",
    "transfer-encoding",
})

# Headers we don't forward from the backend response
EXCLUDED_RESPONSE_HEADERS = frozenset({
    "transfer-encoding",
    "connection",
    "content-encoding",
})

# Declared for routing; AnyMethodRoute also accepts every other method token
PROXIED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


class AnyMethodRoute(APIRoute):
    """
    Route that matches whatever method the client sent.

    Starlette answers 405 for methods outside ``methods``; the relay forwards
    WebDAV and extension methods to the backend like any other request.
    """

    def matches(self, scope: Scope):
        match, child_scope = super().matches(scope)
        if match is Match.PARTIAL:
            return Match.FULL, child_scope
        return match, child_scope

    async def handle(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.app(scope, receive, send)


# Create router
proxy_router = APIRouter(route_class=AnyMethodRoute)


# ============================================================================
# Dependencies
# ============================================================================

async def require_client_identity(request: Request) -> CertificateIdentity:
    """
    Dependency running the post-handshake certificate check.

    Raises:
        ClientCertificateError: If the peer is not authenticated
    """
    peer = (request.client.host, request.client.port) if request.client else None
    return authenticate_peer(request.app.state.peer_certificates, peer)


def get_backend_client(request: Request) -> httpx.AsyncClient:
    """
    Dependency to get backend HTTP client from app state.

    Returns:
        Shared httpx.AsyncClient for backend communication
    """
    client = getattr(request.app.state, "backend_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Backend client not available"
        )

    return client


# ============================================================================
# Request Construction
# ============================================================================

def build_target_url(base_url: str, raw_path: bytes, query_string: bytes) -> str:
    """
    Append the original path and query to the backend base URL.

    Both are taken from the raw request line so percent-encoding reaches the
    backend exactly as the client sent it.
    """
    target = base_url.rstrip("/") + raw_path.decode("latin-1")
    if query_string:
        target += "?" + query_string.decode("latin-1")
    return target


def build_backend_headers(raw_headers: Iterable[Tuple[bytes, bytes]], target_url: str) -> RawHeaders:
    """
    Filter inbound headers and point Host at the backend.

    Repeated headers keep their order and multiplicity.
    """
    headers: RawHeaders = [(b"host", httpx.URL(target_url).netloc)]
    headers.extend(
        (name, value) for name, value in raw_headers
        if name.decode("latin-1").lower() not in EXCLUDED_REQUEST_HEADERS
    )
    return headers


def filter_response_headers(headers: httpx.Headers, drop_content_length: bool = False) -> RawHeaders:
    excluded = EXCLUDED_RESPONSE_HEADERS | ({"content-length"} if drop_content_length else set())
    return [
        (name, value) for name, value in headers.raw
        if name.decode("latin-1").lower() not in excluded
    ]


# ============================================================================
# Response Shaping
# ============================================================================

def is_json_content_type(content_type: Optional[str]) -> bool:
    """JSON responses are re-encoded; every other content type passes through."""
    return bool(content_type) and "application/json" in content_type.lower()


def reencode_json(raw: bytes) -> bytes:
    """
    Parse a JSON body and render it through the normal JSON response path.

    The value is preserved; whitespace and escaping may differ from the
    backend's bytes.

    Raises:
        UpstreamError: If the body does not parse as JSON
    """
    try:
        return JSONResponse(content=json.loads(raw)).body
    except ValueError as e:
        raise UpstreamError(f"Backend sent invalid JSON: {e}") from e


def shape_response_body(content_type: Optional[str], raw: bytes) -> Tuple[bytes, bool]:
    """
    Decide what the client receives for a backend body.

    Returns:
        (body, reencoded) where ``reencoded`` tells whether the bytes differ
        from the backend's and framing headers must be recomputed
    """
    if is_json_content_type(content_type):
        return reencode_json(raw), True
    return raw, False


def _needs_content_length(status_code: int) -> bool:
    return status_code >= 200 and status_code not in (204, 304)


# ============================================================================
# Backend Exchange
# ============================================================================

async def forward_request(
    backend_client: httpx.AsyncClient,
    method: str,
    target_url: str,
    headers: RawHeaders,
    body: bytes,
    timeout: Optional[float] = None,
) -> Tuple[int, httpx.Headers, bytes]:
    """
    Issue one request to the backend and read the raw response.

    The request is built directly rather than through the client so none of
    the client's default headers are added. Single attempt, no retries.

    Raises:
        UpstreamTimeout: If the configured timeout expired
        UpstreamError: On any other network or protocol failure
    """
    try:
        backend_request = httpx.Request(
            method,
            target_url,
            headers=headers,
            content=body,
            extensions={"timeout": httpx.Timeout(timeout).as_dict()},
        )
        response = await backend_client.send(
            backend_request,
            stream=True,
            follow_redirects=False
        )
        try:
            # Raw bytes: compression is left as the backend sent it
            raw = b"".join([chunk async for chunk in response.aiter_raw()])
        finally:
            await response.aclose()

    except httpx.TimeoutException as e:
        raise UpstreamTimeout(f"Backend request timed out: {target_url}") from e

    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise UpstreamError(f"Backend request failed: {e}") from e

    return response.status_code, response.headers, raw


# ============================================================================
# Proxy Endpoint
# ============================================================================

@proxy_router.api_route("/{path:path}", methods=PROXIED_METHODS, include_in_schema=False)
async def proxy_request(
    request: Request,
    identity: CertificateIdentity = Depends(require_client_identity),
    backend_client: httpx.AsyncClient = Depends(get_backend_client)
) -> Response:
    """
    Relay an authenticated request to the backend.

    Flow:
    1. Verify client certificate (done by dependency)
    2. Build target URL from the raw path and query
    3. Filter headers and forward the unmodified body
    4. Filter response headers and shape the body (JSON re-encode or raw)

    Raises:
        UpstreamError: Converted into a 500 by the application's handler
        UpstreamTimeout: Converted into a 504 by the application's handler
    """
    settings = request.app.state.settings

    target_url = build_target_url(
        settings.target_base_url_str,
        request.scope.get("raw_path") or request.url.path.encode("latin-1"),
        request.scope.get("query_string", b""),
    )
    headers = build_backend_headers(request.headers.raw, target_url)
    body = await request.body()

    logger.info(
        "Proxying request to backend",
        extra={
            "method": request.method,
            "target_url": target_url,
            "body_length": len(body),
            "client_cn": identity.common_name,
        }
    )

    status_code, upstream_headers, raw = await forward_request(
        backend_client,
        request.method,
        target_url,
        headers,
        body,
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
    )

    content, reencoded = shape_response_body(upstream_headers.get("content-type"), raw)

    response_headers = filter_response_headers(upstream_headers, drop_content_length=reencoded)
    has_length = any(name.lower() == b"content-length" for name, _ in response_headers)
    if not has_length and _needs_content_length(status_code):
        response_headers.append((b"content-length", str(len(content)).encode("latin-1")))

    response = Response(content=content, status_code=status_code)
    response.raw_headers = response_headers

    logger.info(
        "Backend responded",
        extra={
            "method": request.method,
            "target_url": target_url,
            "status_code": status_code,
            "json_reencoded": reencoded,
        }
    )

    return response
