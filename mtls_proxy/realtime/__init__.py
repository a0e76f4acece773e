"""
Realtime Package

This package contains the WebSocket relay of the proxy pair.

Modules:
- ws: upgrade handling (certificate gate, revocation, target connection)
- session: per-session legs, message pumps and closure protocol

The realtime package enables:
- Authenticated WebSocket upgrades over mTLS
- Bidirectional, order-preserving message relay to the backend
- Paired closure of client and target connections
"""

from .session import ProxySession
from .ws import realtime_router

__all__ = [
    "ProxySession",
    "realtime_router",
]
