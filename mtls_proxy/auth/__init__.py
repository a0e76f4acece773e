"""
Authentication Package

This package decides whether a TLS peer may use either proxy.

Key responsibilities:
- Record the certificate each TLS connection presented
- Post-handshake authorization of the peer certificate (fail closed)
- Certificate identity extraction for audit logging
- Revocation checks for WebSocket sessions

Modules:
- certificates: peer certificate registry and the client-certificate gate
- revocation: revocation checker protocol and the in-memory registry
"""

from .certificates import (
    PeerCertificateRegistry,
    authenticate_peer,
    certificate_aware,
    identity_from_der,
)
from .revocation import RevocationChecker, RevocationRegistry

__all__ = [
    "PeerCertificateRegistry",
    "RevocationChecker",
    "RevocationRegistry",
    "authenticate_peer",
    "certificate_aware",
    "identity_from_der",
]
