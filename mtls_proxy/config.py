"""
Configuration module for the mTLS reverse proxy pair.

This module uses Pydantic Settings to load and validate environment variables
for the TLS listeners, the backend targets, revocation sources and upstream
timeouts.

Environment variables are loaded from .env file or system environment.
"""

import logging
import os
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Both listeners (HTTP and WebSocket) share the same certificate
    configuration shape; each has its own port and backend target.
    """

    # =========================================================================
    # Listener Configuration
    # =========================================================================

    PROXY_HOST: str = Field(
        default="0.0.0.0",
        description="Host to bind both TLS listeners",
    )

    HTTP_PROXY_PORT: int = Field(
        default=3000,
        description="Port of the HTTP proxy listener",
        ge=1,
        le=65535,
    )

    WS_PROXY_PORT: int = Field(
        default=3001,
        description="Port of the WebSocket proxy listener",
        ge=1,
        le=65535,
    )

    # =========================================================================
    # TLS Material (server side, mTLS)
    # =========================================================================

    SERVER_CERT: str = Field(
        default="keys/server-cert.pem",
        description="Path to the server certificate (PEM)",
    )

    SERVER_KEY: str = Field(
        default="keys/server-key.pem",
        description="Path to the server private key (PEM)",
    )

    CA_CERT: str = Field(
        default="keys/ca-cert.pem",
        description="CA bundle that signed the accepted client certificates",
    )

    # =========================================================================
    # Backend Targets
    # =========================================================================

    TARGET_BASE_URL: str = Field(
        default="http://127.0.0.1:8188",
        description="Backend base URL for the HTTP relay",
    )

    TARGET_WS_URL: str = Field(
        default="ws://localhost:8188",
        description="Backend WebSocket URL for the WebSocket relay",
    )

    WS_PATH_FORWARDING: Literal["query_only", "always", "never"] = Field(
        default="query_only",
        description=(
            "How the inbound path reaches the WebSocket target: 'query_only' appends "
            "path+query only when a query string is present, 'always' appends it "
            "unconditionally, 'never' always uses the bare target URL"
        ),
    )

    # =========================================================================
    # Revocation
    # =========================================================================

    REVOKED_SERIALS: str = Field(
        default="",
        description="Comma-separated revoked certificate serial numbers (hex)",
    )

    CRL_FILE: Optional[str] = Field(
        default=None,
        description="Optional X.509 CRL (PEM or DER) with revoked serial numbers",
    )

    # =========================================================================
    # Upstream Behaviour
    # =========================================================================

    UPSTREAM_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None,
        description="Per-request timeout for backend HTTP calls (unset: wait indefinitely)",
        gt=0,
    )

    WS_CONNECT_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None,
        description="Timeout for opening the outbound WebSocket (unset: wait indefinitely)",
        gt=0,
    )

    WS_PING_INTERVAL_SECONDS: Optional[float] = Field(
        default=None,
        description="Keepalive ping interval on the outbound WebSocket (unset: no pings)",
        gt=0,
    )

    WS_MAX_MESSAGE_SIZE: int = Field(
        default=16 * 1024 * 1024,
        description="Largest WebSocket message accepted on either leg, in bytes",
        ge=1,
    )

    UPSTREAM_TLS_VERIFY: bool = Field(
        default=True,
        description="Verify the backend certificate for https:// and wss:// targets",
    )

    UPSTREAM_CA_BUNDLE: Optional[str] = Field(
        default=None,
        description="CA bundle used to verify https:// and wss:// backends",
    )

    UPSTREAM_CLIENT_CERT: Optional[str] = Field(
        default=None,
        description="Client certificate presented to the backend (PEM)",
    )

    UPSTREAM_CLIENT_KEY: Optional[str] = Field(
        default=None,
        description="Private key for UPSTREAM_CLIENT_CERT (PEM)",
    )

    # =========================================================================
    # Logging
    # =========================================================================

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def target_base_url_str(self) -> str:
        """Backend base URL without trailing slash."""
        return self.TARGET_BASE_URL.rstrip("/")

    @property
    def target_ws_url_str(self) -> str:
        """WebSocket target URL without trailing slash."""
        return self.TARGET_WS_URL.rstrip("/")

    @property
    def revoked_serials_list(self) -> List[str]:
        """
        Parse and return REVOKED_SERIALS as a clean list.

        Returns:
            List of serial number strings without whitespace.
        """
        if not self.REVOKED_SERIALS:
            return []

        return [
            serial.strip()
            for serial in self.REVOKED_SERIALS.split(",")
            if serial.strip()
        ]

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("TARGET_BASE_URL")
    @classmethod
    def validate_target_base_url(cls, v: str) -> str:
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"TARGET_BASE_URL must start with http:// or https://, got: {v}"
            )
        return v

    @field_validator("TARGET_WS_URL")
    @classmethod
    def validate_target_ws_url(cls, v: str) -> str:
        if not v.lower().startswith(("ws://", "wss://")):
            raise ValueError(
                f"TARGET_WS_URL must start with ws:// or wss://, got: {v}"
            )
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

        if v.upper() not in allowed_levels:
            raise ValueError(
                f"LOG_LEVEL must be one of {allowed_levels}, got: {v}"
            )

        return v.upper()


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    This function is cached so that the settings are loaded only once
    during the process lifecycle.

    Returns:
        Settings instance with all configuration loaded and validated.

    Raises:
        ValidationError: If environment variables are invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate critical configuration settings and return a status report.

    Returns:
        Dictionary with validation status and any warnings.

    Example:
        >>> status = validate_configuration(get_settings())
        >>> if not status["valid"]:
        ...     print(status["errors"])
    """
    errors = []
    warnings = []

    for name in ("SERVER_CERT", "SERVER_KEY", "CA_CERT"):
        path = getattr(settings, name)
        if not os.path.isfile(path):
            errors.append(f"{name} file not found: {path}")

    if settings.CRL_FILE and not os.path.isfile(settings.CRL_FILE):
        errors.append(f"CRL_FILE not found: {settings.CRL_FILE}")

    if bool(settings.UPSTREAM_CLIENT_CERT) != bool(settings.UPSTREAM_CLIENT_KEY):
        errors.append("UPSTREAM_CLIENT_CERT and UPSTREAM_CLIENT_KEY must be set together")

    if not settings.UPSTREAM_TLS_VERIFY:
        warnings.append("UPSTREAM_TLS_VERIFY is disabled (backend certificates are not checked)")

    if settings.UPSTREAM_TIMEOUT_SECONDS is None:
        warnings.append("UPSTREAM_TIMEOUT_SECONDS is not set (a stalled backend blocks requests indefinitely)")

    if settings.WS_PATH_FORWARDING == "query_only":
        warnings.append("WS_PATH_FORWARDING=query_only drops the inbound path when no query string is sent")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }


def ensure_tls_material(settings: Settings) -> None:
    """
    Refuse to start when certificate material or the CRL is unusable.

    Warnings from validate_configuration are logged; they never block startup.

    Raises:
        ConfigurationError: Listing every problem found.
    """
    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")

    if not status["valid"]:
        raise ConfigurationError("; ".join(status["errors"]))
