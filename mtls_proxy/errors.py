"""
Exception hierarchy shared by the gate and both relays.

Relays catch these at the request or session boundary and turn them into
a client-visible response or close code.
"""


class ProxyError(Exception):
    """Base exception for proxy errors"""
    pass


class ClientCertificateError(ProxyError):
    """The peer did not present a usable, CA-validated client certificate."""
    pass


class UpstreamError(ProxyError):
    """The backend could not be reached or answered with an unusable payload."""
    pass


class UpstreamTimeout(UpstreamError):
    """A configured upstream timeout expired."""
    pass


class ConfigurationError(ProxyError):
    """Local resources required to start serving are missing or unusable."""
    pass
