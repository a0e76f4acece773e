"""
Data Models Module

This module defines the models passed between the gate and the relays:

- Certificate identity derived from the TLS peer certificate
- WebSocket frames and per-leg connection states
- Error response bodies
"""

from datetime import datetime
from enum import Enum
from typing import Union

from pydantic import BaseModel, Field


# ============================================================================
# Certificate Models
# ============================================================================

class CertificateIdentity(BaseModel):
    """Identity of an authenticated peer, used for authorization and audit only."""
    common_name: str = Field(..., description="Subject common name (CN)")
    subject: str = Field(..., description="Full subject distinguished name")
    issuer: str = Field(..., description="Issuer distinguished name")
    not_valid_before: datetime = Field(..., description="Start of the validity window (UTC)")
    not_valid_after: datetime = Field(..., description="End of the validity window (UTC)")
    serial_number: int = Field(..., description="Certificate serial number")

    @property
    def serial_hex(self) -> str:
        """Serial number as uppercase hex, the way CRL tooling prints it."""
        return format(self.serial_number, "X")

    def audit_fields(self) -> dict:
        return {
            "client_cn": self.common_name,
            "client_issuer": self.issuer,
            "client_serial": self.serial_hex,
            "client_valid_until": self.not_valid_after.isoformat(),
        }


# ============================================================================
# WebSocket Models
# ============================================================================

class SocketState(str, Enum):
    """Lifecycle of one leg of a proxy session."""
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Frame(BaseModel):
    """A single WebSocket message; text frames carry str, binary frames bytes."""
    payload: Union[str, bytes]

    @property
    def is_text(self) -> bool:
        return isinstance(self.payload, str)

    def __len__(self) -> int:
        return len(self.payload)


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Error body returned by the HTTP proxy."""
    error: str = Field(..., description="Human-readable error message")
