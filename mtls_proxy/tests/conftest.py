"""
Shared fixtures: a throwaway CA and client certificates signed by it.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from mtls_proxy.auth.certificates import PeerCertificateRegistry
from mtls_proxy.config import Settings

# Address starlette's TestClient puts into the ASGI scope
TESTCLIENT_PEER = ("testclient", 50000)


@pytest.fixture(scope="session")
def ca_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ca_name():
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Proxy Test"),
        x509.NameAttribute(NameOID.COMMON_NAME, "Proxy Test CA"),
    ])


@pytest.fixture(scope="session")
def make_certificate(ca_key, ca_name):
    """Factory returning DER client certificates signed by the test CA."""

    def _make(
        common_name: Optional[str] = "device-01.example.com",
        serial_number: int = 0x1A2B3C,
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
    ) -> bytes:
        now = datetime.now(timezone.utc)
        attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Proxy Test Clients")]
        if common_name is not None:
            attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))

        key = ec.generate_private_key(ec.SECP256R1())
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name(attributes))
            .issuer_name(ca_name)
            .public_key(key.public_key())
            .serial_number(serial_number)
            .not_valid_before(not_before or now - timedelta(days=1))
            .not_valid_after(not_after or now + timedelta(days=30))
            .sign(ca_key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.DER)

    return _make


@pytest.fixture
def client_der(make_certificate):
    return make_certificate()


@pytest.fixture
def peer_registry(client_der):
    """Registry in which the TestClient peer presented a valid certificate."""
    registry = PeerCertificateRegistry()
    registry.record(TESTCLIENT_PEER, client_der)
    return registry


@pytest.fixture
def mock_settings():
    """Create mock settings for testing"""
    return Settings(
        TARGET_BASE_URL="http://backend:8188",
        TARGET_WS_URL="ws://backend:8188",
        SERVER_CERT="keys/server-cert.pem",
        SERVER_KEY="keys/server-key.pem",
        CA_CERT="keys/ca-cert.pem",
    )
