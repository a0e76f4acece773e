"""
Proxy Package
=============

This package implements the HTTP relay that forwards authenticated requests
from mTLS clients to the backend service.

Main Components:
----------------
- routes.py: catch-all FastAPI router forwarding every method and path

Security Features:
------------------
- Client certificate enforcement (401 before any backend contact)
- Hop-by-hop header stripping in both directions
- No identity headers injected into backend traffic

Usage:
------
    from mtls_proxy.proxy.routes import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
