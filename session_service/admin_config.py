"""
AdminConfigService: managed admin / super-admin allow-lists.

Membership is read from the remote record store (admin_config/super_admins,
admin_config/admins) and merged with a statically configured fallback list.
Emails are compared case-insensitively. Remote failures never raise: the
static list answers instead.

Usage:
    service = AdminConfigService(store, fallback_super_admins=("root@example.com",))
    await service.is_admin("Root@Example.com")   # True
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .cache import TTLCache
from .errors import RemoteStoreError
from .remote import RecordStore, bounded

logger = logging.getLogger(__name__)

SUPER_ADMINS_PATH = "admin_config/super_admins"
ADMINS_PATH = "admin_config/admins"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _as_email_list(raw: Any) -> List[str]:
    """Realtime Database returns arrays as lists, or as dicts when sparse."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        values: Iterable[Any] = raw.values()
    elif isinstance(raw, (list, tuple)):
        values = raw
    else:
        return []
    return [normalize_email(v) for v in values if isinstance(v, str) and v.strip()]


class AdminConfigService:
    """Allow-list lookups with a TTL cache and static fallback."""

    def __init__(
        self,
        store: RecordStore,
        *,
        fallback_super_admins: Iterable[str] = (),
        fallback_admins: Iterable[str] = (),
        cache_ttl_seconds: float = 300,
        timeout_seconds: float = 5.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._fallback_super_admins = tuple(
            normalize_email(e) for e in fallback_super_admins if normalize_email(e)
        )
        self._fallback_admins = tuple(
            normalize_email(e) for e in fallback_admins if normalize_email(e)
        )
        self._timeout_seconds = timeout_seconds
        self._super_admin_cache: TTLCache[str, bool] = TTLCache(cache_ttl_seconds, clock=clock)
        self._admin_cache: TTLCache[str, bool] = TTLCache(cache_ttl_seconds, clock=clock)

    @property
    def fallback_super_admins(self) -> tuple:
        return self._fallback_super_admins

    @property
    def fallback_admins(self) -> tuple:
        return self._fallback_admins

    async def _read_list(self, path: str) -> List[str]:
        raw = await bounded(self._store.get(path), self._timeout_seconds, path)
        return _as_email_list(raw)

    # =========================================================================
    # Membership checks
    # =========================================================================

    async def is_super_admin(self, email: Optional[str]) -> bool:
        email_lower = normalize_email(email)
        if not email_lower:
            return False

        cached = self._super_admin_cache.get(email_lower)
        if cached is not None:
            return cached

        try:
            remote = await self._read_list(SUPER_ADMINS_PATH)
        except RemoteStoreError as exc:
            is_fallback = email_lower in self._fallback_super_admins
            logger.warning(
                "Super admin list unavailable, using static fallback",
                extra={"email": email_lower, "result": is_fallback, "error": exc.detail},
            )
            return is_fallback

        result = email_lower in remote or email_lower in self._fallback_super_admins
        self._super_admin_cache.set(email_lower, result)
        return result

    async def is_admin(self, email: Optional[str]) -> bool:
        """Admins include super admins."""
        email_lower = normalize_email(email)
        if not email_lower:
            return False

        if await self.is_super_admin(email_lower):
            return True

        cached = self._admin_cache.get(email_lower)
        if cached is not None:
            return cached

        try:
            remote = await self._read_list(ADMINS_PATH)
        except RemoteStoreError as exc:
            is_fallback = email_lower in self._fallback_admins
            logger.warning(
                "Admin list unavailable, using static fallback",
                extra={"email": email_lower, "result": is_fallback, "error": exc.detail},
            )
            return is_fallback

        result = email_lower in remote or email_lower in self._fallback_admins
        self._admin_cache.set(email_lower, result)
        return result

    # =========================================================================
    # Listing and management
    # =========================================================================

    async def _combined(self, path: str, fallback: tuple) -> List[str]:
        try:
            remote = await self._read_list(path)
        except RemoteStoreError as exc:
            logger.warning(
                "Allow-list unavailable, returning static entries only",
                extra={"path": path, "error": exc.detail},
            )
            return list(fallback)
        combined = list(dict.fromkeys(remote))
        combined.extend(e for e in fallback if e not in combined)
        return combined

    async def get_super_admin_emails(self) -> List[str]:
        return await self._combined(SUPER_ADMINS_PATH, self._fallback_super_admins)

    async def get_admin_emails(self) -> List[str]:
        return await self._combined(ADMINS_PATH, self._fallback_admins)

    async def _add(self, path: str, email: Optional[str]) -> bool:
        email_lower = normalize_email(email)
        if not email_lower:
            return False
        try:
            remote = await self._read_list(path)
            if email_lower in remote:
                logger.info("Email already listed", extra={"path": path, "email": email_lower})
                return False
            remote.append(email_lower)
            await bounded(self._store.set(path, remote), self._timeout_seconds, path)
        except RemoteStoreError as exc:
            logger.warning(
                "Failed to update allow-list",
                extra={"path": path, "email": email_lower, "error": exc.detail},
            )
            return False
        self.clear_cache()
        logger.info("Allow-list entry added", extra={"path": path, "email": email_lower})
        return True

    async def _remove(self, path: str, email: Optional[str], fallback: tuple) -> bool:
        email_lower = normalize_email(email)
        if not email_lower:
            return False
        if email_lower in fallback:
            logger.warning(
                "Cannot remove statically configured entry",
                extra={"path": path, "email": email_lower},
            )
            return False
        try:
            remote = await self._read_list(path)
            if email_lower not in remote:
                return False
            remaining = [e for e in remote if e != email_lower]
            await bounded(self._store.set(path, remaining), self._timeout_seconds, path)
        except RemoteStoreError as exc:
            logger.warning(
                "Failed to update allow-list",
                extra={"path": path, "email": email_lower, "error": exc.detail},
            )
            return False
        self.clear_cache()
        logger.info("Allow-list entry removed", extra={"path": path, "email": email_lower})
        return True

    async def add_super_admin(self, email: str) -> bool:
        return await self._add(SUPER_ADMINS_PATH, email)

    async def add_admin(self, email: str) -> bool:
        return await self._add(ADMINS_PATH, email)

    async def remove_super_admin(self, email: str) -> bool:
        return await self._remove(SUPER_ADMINS_PATH, email, self._fallback_super_admins)

    async def remove_admin(self, email: str) -> bool:
        return await self._remove(ADMINS_PATH, email, self._fallback_admins)

    async def initialize_remote_config(self) -> None:
        """Seed the remote lists from the static lists when they do not exist yet."""
        for path, entries in (
            (SUPER_ADMINS_PATH, self._fallback_super_admins),
            (ADMINS_PATH, self._fallback_admins),
        ):
            try:
                existing = await bounded(self._store.get(path), self._timeout_seconds, path)
                if existing is None:
                    await bounded(self._store.set(path, list(entries)), self._timeout_seconds, path)
                    logger.info("Seeded remote allow-list", extra={"path": path, "count": len(entries)})
            except RemoteStoreError as exc:
                logger.warning(
                    "Could not seed remote allow-list",
                    extra={"path": path, "error": exc.detail},
                )

    def clear_cache(self) -> None:
        self._super_admin_cache.clear()
        self._admin_cache.clear()

    def config_summary(self) -> Dict[str, Any]:
        return {
            "fallback_super_admins": list(self._fallback_super_admins),
            "fallback_admins": list(self._fallback_admins),
            "cache_size": {
                "super_admins": len(self._super_admin_cache),
                "admins": len(self._admin_cache),
            },
        }
