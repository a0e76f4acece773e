"""
Certificate Revocation
======================

The WebSocket relay consults a ``RevocationChecker`` once per session, at
connect time. Any object with ``is_revoked(serial_number) -> bool`` will do;
``RevocationRegistry`` is the in-memory snapshot built from configuration
(a list of serial numbers and/or an X.509 CRL file).

The snapshot is immutable. ``refresh()`` rebuilds it from its sources and
swaps it in one assignment, so sessions already past their check are never
affected.
"""

import logging
from typing import FrozenSet, Iterable, Optional, Protocol, Set, Union

from cryptography import x509

from ..config import Settings
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


class RevocationChecker(Protocol):
    def is_revoked(self, serial_number: int) -> bool:
        ...


def normalize_serial(serial: Union[int, str]) -> int:
    """
    Convert a serial number to int.

    Strings are read as hex, case-insensitive, with optional ``0x`` prefix
    and ``:`` separators (``"0A:1B"``, ``"0x0a1b"`` and ``"A1B"`` are equal).

    Raises:
        ValueError: If the string is not a hex serial number
    """
    if isinstance(serial, int):
        return serial

    cleaned = serial.strip().replace(":", "").replace(" ", "")
    if cleaned.lower().startswith("0x"):
        cleaned = cleaned[2:]
    if not cleaned:
        raise ValueError(f"Empty certificate serial number: {serial!r}")

    return int(cleaned, 16)


def load_crl_serials(path: str) -> Set[int]:
    """
    Read the revoked serial numbers from a PEM or DER encoded CRL.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    try:
        with open(path, "rb") as crl_file:
            data = crl_file.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read CRL_FILE {path}: {e}") from e

    try:
        if b"-----BEGIN X509 CRL-----" in data:
            crl = x509.load_pem_x509_crl(data)
        else:
            crl = x509.load_der_x509_crl(data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid CRL in {path}: {e}") from e

    return {revoked.serial_number for revoked in crl}


class RevocationRegistry:
    """In-memory snapshot of revoked serial numbers."""

    def __init__(
        self,
        serials: Iterable[Union[int, str]] = (),
        crl_file: Optional[str] = None,
    ):
        self._configured: FrozenSet[int] = frozenset(normalize_serial(s) for s in serials)
        self._crl_file = crl_file
        self._revoked: FrozenSet[int] = frozenset()
        self.refresh()

    @classmethod
    def from_settings(cls, settings: Settings) -> "RevocationRegistry":
        try:
            return cls(settings.revoked_serials_list, crl_file=settings.CRL_FILE)
        except ValueError as e:
            raise ConfigurationError(f"Invalid REVOKED_SERIALS entry: {e}") from e

    def refresh(self) -> None:
        """Rebuild the snapshot from the configured serials and the CRL file."""
        revoked = set(self._configured)
        if self._crl_file:
            revoked |= load_crl_serials(self._crl_file)

        self._revoked = frozenset(revoked)
        logger.info(
            "Loaded certificate revocation snapshot",
            extra={"revoked_count": len(self._revoked), "crl_file": self._crl_file}
        )

    def is_revoked(self, serial_number: Union[int, str]) -> bool:
        return normalize_serial(serial_number) in self._revoked

    def __len__(self) -> int:
        return len(self._revoked)
