"""
Client Certificate Gate
=======================

The TLS listener verifies the peer certificate against the CA bundle during
the handshake (``ssl.CERT_REQUIRED``), so unverifiable peers never reach
application code. This module performs the explicit post-handshake check
that runs before any proxying logic:

1. Look up the DER certificate the connection presented (recorded by the
   server protocol in a ``PeerCertificateRegistry``)
2. Parse it into a ``CertificateIdentity``
3. Fail closed on anything unusable: no certificate, unparseable DER,
   missing subject common name, or outside the validity window
4. Log the identity for audit correlation (it is never sent to the backend)

Both the HTTP and the WebSocket relay call ``authenticate_peer``.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..errors import ClientCertificateError
from ..models import CertificateIdentity

logger = logging.getLogger(__name__)

PeerAddress = Tuple[str, int]


# =============================================================================
# Peer Certificate Registry
# =============================================================================

class PeerCertificateRegistry:
    """
    Maps the address of each live TLS connection to its peer certificate.

    The ASGI scope does not carry the TLS session, so the server protocol
    records the certificate when the transport is established and releases
    it when the transport is lost. Handlers find it again through the
    ``client`` address in their scope.
    """

    def __init__(self):
        self._certificates: Dict[PeerAddress, Optional[bytes]] = {}

    def bind(self, peer: Optional[PeerAddress], transport) -> None:
        """Record the certificate presented on ``transport`` (if it is TLS)."""
        if peer is None:
            return

        ssl_object = transport.get_extra_info("ssl_object")
        if ssl_object is None:
            logger.warning("Connection without TLS session", extra={"peer": peer})
            return

        self.record(peer, ssl_object.getpeercert(binary_form=True))

    def record(self, peer: PeerAddress, der: Optional[bytes]) -> None:
        self._certificates[tuple(peer)] = der

    def release(self, peer: Optional[PeerAddress]) -> None:
        if peer is not None:
            self._certificates.pop(tuple(peer), None)

    def lookup(self, peer: Optional[PeerAddress]) -> Optional[bytes]:
        if peer is None:
            return None
        return self._certificates.get(tuple(peer))

    def __contains__(self, peer) -> bool:
        return tuple(peer) in self._certificates

    def __len__(self) -> int:
        return len(self._certificates)


def certificate_aware(protocol_class, registry: PeerCertificateRegistry):
    """
    Wrap a uvicorn protocol class so each connection binds its certificate.

    Works for both HTTP (h11) and WebSocket (wsproto) protocols: both set
    ``self.client`` from the transport in ``connection_made``, which is the
    same address uvicorn puts into the ASGI scope.
    """

    class CertificateAwareProtocol(protocol_class):
        def connection_made(self, transport):
            super().connection_made(transport)
            registry.bind(self.client, transport)

        def connection_lost(self, exc):
            registry.release(self.client)
            super().connection_lost(exc)

    CertificateAwareProtocol.__name__ = f"CertificateAware{protocol_class.__name__}"
    CertificateAwareProtocol.__qualname__ = CertificateAwareProtocol.__name__
    return CertificateAwareProtocol


# =============================================================================
# Identity
# =============================================================================

def _common_name(name: x509.Name) -> Optional[str]:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return None
    value = attributes[0].value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return value.strip() or None


def identity_from_der(der: bytes) -> CertificateIdentity:
    """
    Parse a DER certificate into a CertificateIdentity.

    Raises:
        ClientCertificateError: If the certificate cannot be parsed or has
            no subject common name.
    """
    try:
        cert = x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise ClientCertificateError(f"Unparseable client certificate: {e}") from e

    common_name = _common_name(cert.subject)
    if not common_name:
        raise ClientCertificateError("Client certificate has no subject common name")

    return CertificateIdentity(
        common_name=common_name,
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_valid_before=cert.not_valid_before_utc,
        not_valid_after=cert.not_valid_after_utc,
        serial_number=cert.serial_number,
    )


def authenticate_peer(
    registry: PeerCertificateRegistry,
    peer: Optional[PeerAddress],
    now: Optional[datetime] = None,
) -> CertificateIdentity:
    """
    Post-handshake authorization check for one connection.

    Args:
        registry: Registry populated by the server protocol
        peer: Client address from the ASGI scope
        now: Reference time for the validity window (defaults to UTC now)

    Returns:
        Identity of the authenticated peer

    Raises:
        ClientCertificateError: If the peer is not authenticated (fail closed)
    """
    der = registry.lookup(peer)
    if not der:
        raise ClientCertificateError("No client certificate presented")

    identity = identity_from_der(der)

    now = now or datetime.now(timezone.utc)
    if not identity.not_valid_before <= now <= identity.not_valid_after:
        raise ClientCertificateError(
            f"Client certificate for {identity.common_name} is outside its validity window"
        )

    logger.info(
        f"Client certificate CN: {identity.common_name}",
        extra=identity.audit_fields()
    )

    return identity
