"""
mTLS Reverse Proxy
==================

A mutually-authenticated reverse proxy pair in front of a backend service:

- HTTP relay: any method and path, forwarded with header sanitation
- WebSocket relay: bidirectional message pump with paired closure

Both listeners require a client certificate signed by the configured CA and
re-check it before any traffic reaches the backend.
"""

__version__ = "1.0.0"
