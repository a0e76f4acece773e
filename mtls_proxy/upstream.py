"""
TLS settings for the outbound (backend) leg of both relays.
"""

import ssl
from typing import Optional

from .config import Settings


def build_upstream_ssl_context(settings: Settings) -> ssl.SSLContext:
    """
    Create the SSLContext used towards https:// and wss:// backends.

    Honours UPSTREAM_CA_BUNDLE, UPSTREAM_CLIENT_CERT / UPSTREAM_CLIENT_KEY
    and UPSTREAM_TLS_VERIFY. Certificate loading errors propagate so that
    startup fails.
    """
    context = ssl.create_default_context(
        ssl.Purpose.SERVER_AUTH,
        cafile=settings.UPSTREAM_CA_BUNDLE,
    )

    if settings.UPSTREAM_CLIENT_CERT and settings.UPSTREAM_CLIENT_KEY:
        context.load_cert_chain(
            certfile=settings.UPSTREAM_CLIENT_CERT,
            keyfile=settings.UPSTREAM_CLIENT_KEY,
        )

    if not settings.UPSTREAM_TLS_VERIFY:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


def ssl_for_url(url: str, context: ssl.SSLContext) -> Optional[ssl.SSLContext]:
    """Only secure schemes take an SSLContext; plain ws:// must get None."""
    if url.lower().startswith(("wss://", "https://")):
        return context
    return None
