"""
Session service configuration.

Durations, caps and storage keys are module constants; deployment-specific
settings (database endpoints, timeouts, fallback allow-lists) are read from
environment variables prefixed with SESSION_SERVICE_.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Optional, Tuple

from .errors import ConfigurationError
from .models import DeviceType

logger = logging.getLogger(__name__)

ENV_PREFIX = "SESSION_SERVICE_"

# Premium granted "for this device" without explicit expiry
DEVICE_PREMIUM_DEFAULT_DURATION = timedelta(days=30)

# Local persistence keys (versioned so format changes are detectable)
SESSION_KEY = "user_session_v2"
DEVICE_ID_KEY = "device_id_v2"
PREMIUM_CACHE_KEY = "premium_session_cache"
TRIAL_HISTORY_KEY = "trial_history_v1"
DEVICE_PREMIUM_REASON_KEY = "device_premium_reason"
DEVICE_PREMIUM_GRANTED_KEY = "device_premium_granted"

DEFAULT_REMOTE_TIMEOUT_SECONDS = 10.0
DEFAULT_LIGHT_READ_TIMEOUT_SECONDS = 5.0
DEFAULT_ROLE_CACHE_TTL_SECONDS = 60
DEFAULT_ADMIN_CONFIG_CACHE_TTL_SECONDS = 300

# Role demotions must surface promptly; longer TTLs delay admin revocation
MAX_ROLE_CACHE_TTL_SECONDS = 300

DEFAULT_SESSION_CAPS: Dict[DeviceType, int] = {
    DeviceType.PHONE: 1,
    DeviceType.TABLET: 1,
    DeviceType.WEB: 1,
}


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc


def _env_emails(name: str) -> Tuple[str, ...]:
    raw = _env(name, "") or ""
    return tuple(
        email.strip().lower() for email in raw.split(",") if email.strip()
    )


@dataclass(frozen=True)
class ServiceConfig:
    """Runtime configuration for the session service."""

    database_url: str = ""
    database_auth: Optional[str] = None
    storage_url: str = "memory://"
    remote_timeout_seconds: float = DEFAULT_REMOTE_TIMEOUT_SECONDS
    light_read_timeout_seconds: float = DEFAULT_LIGHT_READ_TIMEOUT_SECONDS
    role_cache_ttl_seconds: int = DEFAULT_ROLE_CACHE_TTL_SECONDS
    admin_config_cache_ttl_seconds: int = DEFAULT_ADMIN_CONFIG_CACHE_TTL_SECONDS
    fallback_super_admins: Tuple[str, ...] = ()
    fallback_admins: Tuple[str, ...] = ()
    session_caps: Dict[DeviceType, int] = field(
        default_factory=lambda: dict(DEFAULT_SESSION_CAPS)
    )

    def __post_init__(self) -> None:
        if self.remote_timeout_seconds <= 0 or self.light_read_timeout_seconds <= 0:
            raise ConfigurationError("remote timeouts must be positive")
        if not 0 < self.role_cache_ttl_seconds <= MAX_ROLE_CACHE_TTL_SECONDS:
            raise ConfigurationError(
                f"role_cache_ttl_seconds must be within 1..{MAX_ROLE_CACHE_TTL_SECONDS}"
            )
        for device_type, cap in self.session_caps.items():
            if cap < 1:
                raise ConfigurationError(f"session cap for {device_type.value} must be >= 1")
        object.__setattr__(
            self,
            "fallback_super_admins",
            tuple(e.strip().lower() for e in self.fallback_super_admins if e.strip()),
        )
        object.__setattr__(
            self,
            "fallback_admins",
            tuple(e.strip().lower() for e in self.fallback_admins if e.strip()),
        )

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Load configuration from environment variables."""
        database_url = (_env("DATABASE_URL", "") or "").rstrip("/")
        if not database_url:
            logger.warning(
                "Remote database not configured, using in-memory record store",
                extra={"env_var": f"{ENV_PREFIX}DATABASE_URL"},
            )

        caps = {
            DeviceType.PHONE: _env_int("MAX_PHONE_SESSIONS", DEFAULT_SESSION_CAPS[DeviceType.PHONE]),
            DeviceType.TABLET: _env_int("MAX_TABLET_SESSIONS", DEFAULT_SESSION_CAPS[DeviceType.TABLET]),
            DeviceType.WEB: _env_int("MAX_WEB_SESSIONS", DEFAULT_SESSION_CAPS[DeviceType.WEB]),
        }

        return cls(
            database_url=database_url,
            database_auth=_env("DATABASE_AUTH") or None,
            storage_url=_env("STORAGE_URL", "memory://") or "memory://",
            remote_timeout_seconds=_env_float("REMOTE_TIMEOUT_SECONDS", DEFAULT_REMOTE_TIMEOUT_SECONDS),
            light_read_timeout_seconds=_env_float(
                "LIGHT_READ_TIMEOUT_SECONDS", DEFAULT_LIGHT_READ_TIMEOUT_SECONDS
            ),
            role_cache_ttl_seconds=_env_int("ROLE_CACHE_TTL_SECONDS", DEFAULT_ROLE_CACHE_TTL_SECONDS),
            admin_config_cache_ttl_seconds=_env_int(
                "ADMIN_CONFIG_CACHE_TTL_SECONDS", DEFAULT_ADMIN_CONFIG_CACHE_TTL_SECONDS
            ),
            fallback_super_admins=_env_emails("SUPER_ADMIN_EMAILS"),
            fallback_admins=_env_emails("ADMIN_EMAILS"),
            session_caps=caps,
        )
