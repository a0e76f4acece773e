"""
Unit Tests for Certificate Revocation
=====================================

Tests for mtls_proxy/auth/revocation.py

Run tests:
----------
    pytest mtls_proxy/tests/test_revocation.py -v
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from mtls_proxy.auth.revocation import RevocationRegistry, load_crl_serials, normalize_serial
from mtls_proxy.config import Settings
from mtls_proxy.errors import ConfigurationError


def _write_crl(path, ca_key, ca_name, serials, encoding=serialization.Encoding.PEM):
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(ca_name)
        .last_update(now)
        .next_update(now + timedelta(days=7))
    )
    for serial in serials:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(now)
            .build()
        )
    crl = builder.sign(ca_key, hashes.SHA256())
    path.write_bytes(crl.public_bytes(encoding))
    return path


# ============================================================================
# Serial Normalization
# ============================================================================

@pytest.mark.parametrize("value", ["0A1B", "0a1b", "0x0A1B", "0A:1B", " a1b ", 0x0A1B])
def test_normalize_serial_equivalent_spellings(value):
    assert normalize_serial(value) == 0x0A1B


def test_normalize_serial_rejects_non_hex():
    with pytest.raises(ValueError):
        normalize_serial("serial-42")


def test_normalize_serial_rejects_empty():
    with pytest.raises(ValueError):
        normalize_serial("0x")


# ============================================================================
# Registry
# ============================================================================

def test_registry_reports_revoked_serials():
    registry = RevocationRegistry(["1A2B3C", "FF"])

    assert registry.is_revoked(0x1A2B3C) is True
    assert registry.is_revoked("ff") is True
    assert registry.is_revoked(0x1A2B3D) is False
    assert len(registry) == 2


def test_empty_registry_revokes_nothing():
    assert RevocationRegistry().is_revoked(1) is False


def test_registry_from_settings():
    settings = Settings(REVOKED_SERIALS="1A2B3C, 0x42")

    registry = RevocationRegistry.from_settings(settings)

    assert registry.is_revoked(0x1A2B3C)
    assert registry.is_revoked(0x42)


def test_registry_from_settings_rejects_invalid_serial():
    with pytest.raises(ConfigurationError):
        RevocationRegistry.from_settings(Settings(REVOKED_SERIALS="not-a-serial"))


def test_registry_loads_pem_crl(tmp_path, ca_key, ca_name):
    crl_path = _write_crl(tmp_path / "ca.crl.pem", ca_key, ca_name, [0x10, 0x20])

    registry = RevocationRegistry(["30"], crl_file=str(crl_path))

    assert registry.is_revoked(0x10)
    assert registry.is_revoked(0x20)
    assert registry.is_revoked(0x30)
    assert not registry.is_revoked(0x40)


def test_load_der_crl(tmp_path, ca_key, ca_name):
    crl_path = _write_crl(tmp_path / "ca.crl", ca_key, ca_name, [0x99], serialization.Encoding.DER)

    assert load_crl_serials(str(crl_path)) == {0x99}


def test_refresh_picks_up_new_crl(tmp_path, ca_key, ca_name):
    crl_path = _write_crl(tmp_path / "ca.crl.pem", ca_key, ca_name, [0x10])
    registry = RevocationRegistry(crl_file=str(crl_path))
    assert not registry.is_revoked(0x11)

    _write_crl(crl_path, ca_key, ca_name, [0x10, 0x11])
    registry.refresh()

    assert registry.is_revoked(0x11)


def test_missing_crl_is_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        RevocationRegistry(crl_file=str(tmp_path / "missing.crl"))


def test_invalid_crl_is_configuration_error(tmp_path):
    crl_path = tmp_path / "broken.crl"
    crl_path.write_bytes(b"garbage")

    with pytest.raises(ConfigurationError):
        load_crl_serials(str(crl_path))
