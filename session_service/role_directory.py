"""
Role directory: resolves a principal to a role and permission list.

Resolution order:
1. TTL cache keyed by principal id
2. users/{id} in the remote record store
3. static/managed allow-lists (AdminConfigService) when the record is
   absent or the store is unreachable
4. Role.USER

Never raises to callers. Role demotions become visible after at most one
cache TTL, or immediately after invalidate().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from .admin_config import AdminConfigService, normalize_email
from .cache import TTLCache
from .errors import ErrorKind, MalformedSessionError, RemoteStoreError, Result
from .models import Role, parse_timestamp
from .remote import RecordStore, bounded

logger = logging.getLogger(__name__)

SOURCE_REMOTE = "remote"
SOURCE_FALLBACK = "fallback"
SOURCE_DEFAULT = "default"


@dataclass(frozen=True)
class RoleResolution:
    """Role directory entry for one principal."""

    principal_id: str
    role: Role
    permissions: Tuple[str, ...] = ()
    is_premium: bool = False
    premium_expiry: Optional[datetime] = None
    source: str = SOURCE_DEFAULT
    error: Optional[ErrorKind] = field(default=None, compare=False)

    def has_permission(self, name: str) -> bool:
        if self.role is Role.SUPER_ADMIN:
            return True
        return name in self.permissions


def user_path(principal_id: str) -> str:
    return f"users/{principal_id}"


def _role_from_record(raw: Any) -> Role:
    normalized = str(raw or "").strip().lower()
    if normalized in ("super_admin", "superadmin"):
        return Role.SUPER_ADMIN
    if normalized == "admin":
        return Role.ADMIN
    return Role.USER


def _permissions_from_record(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, dict):
        raw = list(raw.values())
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(str(p) for p in raw if isinstance(p, str) and p.strip())


class RoleDirectory:
    """Resolves principal -> RoleResolution with caching and fallback."""

    def __init__(
        self,
        store: RecordStore,
        admin_config: AdminConfigService,
        *,
        cache_ttl_seconds: float = 60,
        timeout_seconds: float = 10.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._admin_config = admin_config
        self._timeout_seconds = timeout_seconds
        self._cache: TTLCache[str, RoleResolution] = TTLCache(cache_ttl_seconds, clock=clock)

    @property
    def admin_config(self) -> AdminConfigService:
        return self._admin_config

    async def fetch_user_record(self, principal_id: str) -> Result[Dict[str, Any]]:
        """
        Read users/{id}.

        Returns:
            Result with the record dict, an empty dict when absent, a
            TRANSIENT_REMOTE error when the store could not be reached, or
            MALFORMED_DATA when the id is not a valid path segment
        """
        path = user_path(principal_id)
        try:
            raw = await bounded(self._store.get(path), self._timeout_seconds, path)
        except RemoteStoreError as exc:
            return Result.from_exception(exc)
        if not isinstance(raw, dict):
            return Result.success({})
        return Result.success(raw)

    async def _fallback(
        self,
        principal_id: str,
        email: Optional[str],
        error: Optional[ErrorKind],
    ) -> RoleResolution:
        email_lower = normalize_email(email)
        if email_lower:
            if await self._admin_config.is_super_admin(email_lower):
                return RoleResolution(principal_id, Role.SUPER_ADMIN, source=SOURCE_FALLBACK, error=error)
            if await self._admin_config.is_admin(email_lower):
                return RoleResolution(principal_id, Role.ADMIN, source=SOURCE_FALLBACK, error=error)
        return RoleResolution(principal_id, Role.USER, source=SOURCE_DEFAULT, error=error)

    def _from_record(self, principal_id: str, record: Dict[str, Any]) -> RoleResolution:
        is_premium = record.get("isPremium") is True
        premium_expiry: Optional[datetime] = None
        raw_expiry = record.get("premiumExpiryDate")
        if is_premium and raw_expiry is not None:
            try:
                premium_expiry = parse_timestamp(raw_expiry, "premiumExpiryDate")
            except MalformedSessionError:
                logger.warning(
                    "Ignoring premium flag with unparseable expiry",
                    extra={"principal_id": principal_id, "premium_expiry": raw_expiry},
                )
                is_premium = False

        return RoleResolution(
            principal_id=principal_id,
            role=_role_from_record(record.get("role")),
            permissions=_permissions_from_record(record.get("permissions")),
            is_premium=is_premium,
            premium_expiry=premium_expiry,
            source=SOURCE_REMOTE,
        )

    async def resolve(self, principal_id: str, email: Optional[str] = None) -> RoleResolution:
        """Resolve a principal's role entry. Never raises."""
        cached = self._cache.get(principal_id)
        if cached is not None:
            return cached

        result = await self.fetch_user_record(principal_id)
        if not result.ok:
            logger.warning(
                "Role lookup failed, using allow-list fallback",
                extra={"principal_id": principal_id, "error": result.detail},
            )
            return await self._fallback(principal_id, email, result.error)

        record = result.value or {}
        if not record:
            resolution = await self._fallback(principal_id, email, None)
        else:
            resolution = self._from_record(principal_id, record)

        self._cache.set(principal_id, resolution)
        logger.debug(
            "Role resolved",
            extra={"principal_id": principal_id, "role": resolution.role.value, "source": resolution.source},
        )
        return resolution

    async def resolve_role(self, principal_id: str, email: Optional[str] = None) -> Role:
        return (await self.resolve(principal_id, email)).role

    async def is_admin(self, email: Optional[str]) -> bool:
        return await self._admin_config.is_admin(email)

    async def is_super_admin(self, email: Optional[str]) -> bool:
        return await self._admin_config.is_super_admin(email)

    def invalidate(self, principal_id: Optional[str] = None) -> None:
        """Drop cached entries for one principal, or everything when None."""
        if principal_id is None:
            self._cache.clear()
        else:
            self._cache.invalidate(principal_id)
        self._admin_config.clear_cache()
        logger.info("Role cache invalidated", extra={"principal_id": principal_id or "*"})

    def cache_status(self, principal_id: str) -> Dict[str, Any]:
        return {
            "has_cached_role": principal_id in self._cache,
            "cache_age_seconds": self._cache.age_of(principal_id),
            "cache_ttl_seconds": self._cache.ttl_seconds,
        }
