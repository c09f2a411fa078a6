"""
Device-session limiter for premium users.

Each premium user may hold a fixed number of concurrent sessions per device
class (phone, tablet, web). A new login that would exceed the cap evicts the
oldest session of that class ("take-over"): the new login always wins.

Records live under users/{userId}/sessions/{deviceId}. If the store cannot
be reached, enforcement fails open so sign-in is never blocked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import MalformedSessionError, RemoteStoreError, Result
from .models import DeviceType, Principal, Session, parse_timestamp, utcnow
from .remote import RecordStore, bounded
from .role_directory import RoleDirectory

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def sessions_path(user_id: str) -> str:
    return f"users/{user_id}/sessions"


def _lenient_timestamp(raw: Any) -> Optional[datetime]:
    if raw is None:
        return None
    try:
        return parse_timestamp(raw, "timestamp")
    except MalformedSessionError:
        return None


@dataclass(frozen=True)
class DeviceSessionRecord:
    """Remote record of one device's premium session."""

    device_id: str
    device_type: DeviceType
    created_at: Optional[datetime]
    expires_at: Optional[datetime]
    device_info: str = ""
    user_role: str = ""
    is_premium: bool = False
    premium_expiry: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        """Records with a missing or unreadable expiry count as active."""
        return self.expires_at is None or now < self.expires_at

    @property
    def sort_key(self) -> datetime:
        return self.created_at or _EPOCH

    @classmethod
    def from_remote(cls, device_id: str, raw: Mapping[str, Any]) -> "DeviceSessionRecord":
        return cls(
            device_id=str(device_id),
            device_type=DeviceType.parse(raw.get("deviceType")),
            created_at=_lenient_timestamp(raw.get("sessionCreatedAt")),
            expires_at=_lenient_timestamp(raw.get("sessionExpiresAt")),
            device_info=str(raw.get("deviceInfo") or ""),
            user_role=str(raw.get("userRole") or ""),
            is_premium=bool(raw.get("isPremium", False)),
            premium_expiry=_lenient_timestamp(raw.get("premiumExpiryDate")),
            last_activity=_lenient_timestamp(raw.get("lastActivity")),
        )

    @classmethod
    def from_session(cls, session: Session, now: datetime) -> "DeviceSessionRecord":
        return cls(
            device_id=session.device_id,
            device_type=session.device_type,
            created_at=session.created_at,
            expires_at=session.expires_at,
            device_info=session.device_info,
            user_role=session.role.value,
            is_premium=session.is_premium,
            premium_expiry=session.premium_expiry,
            last_activity=now,
        )

    def to_remote(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat(timespec="milliseconds") if value else None

        return {
            "deviceId": self.device_id,
            "deviceType": self.device_type.value,
            "deviceInfo": self.device_info,
            "userRole": self.user_role,
            "isPremium": self.is_premium,
            "sessionCreatedAt": iso(self.created_at),
            "sessionExpiresAt": iso(self.expires_at),
            "lastActivity": iso(self.last_activity),
            "premiumExpiryDate": iso(self.premium_expiry),
        }


class DeviceSessionLimiter:
    """Caps concurrent premium sessions per device class."""

    def __init__(
        self,
        store: RecordStore,
        role_directory: RoleDirectory,
        *,
        caps: Optional[Mapping[DeviceType, int]] = None,
        timeout_seconds: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._role_directory = role_directory
        self._caps: Dict[DeviceType, int] = dict(
            caps or {DeviceType.PHONE: 1, DeviceType.TABLET: 1, DeviceType.WEB: 1}
        )
        self._timeout_seconds = timeout_seconds
        self._clock = clock or utcnow

    @property
    def caps(self) -> Dict[DeviceType, int]:
        return dict(self._caps)

    # =========================================================================
    # Store access
    # =========================================================================

    async def _read_all(self, user_id: str) -> List[DeviceSessionRecord]:
        path = sessions_path(user_id)
        raw = await bounded(self._store.get(path), self._timeout_seconds, path)
        if not isinstance(raw, dict):
            return []
        return [
            DeviceSessionRecord.from_remote(device_id, data)
            for device_id, data in raw.items()
            if isinstance(data, dict)
        ]

    async def fetch_sessions(self, user_id: str) -> Result[List[DeviceSessionRecord]]:
        """Active (non-expired) sessions for a user, without authorization."""
        try:
            records = await self._read_all(user_id)
        except RemoteStoreError as exc:
            return Result.from_exception(exc)
        now = self._clock()
        return Result.success([r for r in records if r.is_active(now)])

    async def _delete(self, user_id: str, device_id: str) -> None:
        path = f"{sessions_path(user_id)}/{device_id}"
        await bounded(self._store.remove(path), self._timeout_seconds, path)

    # =========================================================================
    # Enforcement
    # =========================================================================

    async def check_and_enforce(
        self,
        user_id: str,
        device_type: DeviceType,
        current_device_id: Optional[str] = None,
    ) -> bool:
        """
        Make room for a new session of ``device_type``.

        Evicts the oldest sessions of that class until the new one fits under
        the cap. The current device's own record is not counted since it is
        overwritten on admission. Always returns True.
        """
        cap = self._caps.get(device_type)
        if cap is None:
            return True

        try:
            records = await self._read_all(user_id)
            now = self._clock()
            same_class = sorted(
                (
                    r for r in records
                    if r.device_type is device_type
                    and r.is_active(now)
                    and r.device_id != current_device_id
                ),
                key=lambda r: r.sort_key,
            )
            while len(same_class) >= cap:
                oldest = same_class.pop(0)
                await self._delete(user_id, oldest.device_id)
                logger.info(
                    "Evicted oldest device session",
                    extra={
                        "user_id": user_id,
                        "device_type": device_type.value,
                        "evicted_device_id": oldest.device_id,
                        "cap": cap,
                    },
                )
        except RemoteStoreError as exc:
            logger.warning(
                "Device session check failed, allowing session",
                extra={"user_id": user_id, "device_type": device_type.value, "error": exc.detail},
            )
        return True

    async def record_session(self, session: Session) -> bool:
        """Store the session under users/{userId}/sessions/{deviceId}."""
        if not session.user_id:
            return False
        record = DeviceSessionRecord.from_session(session, self._clock())
        path = f"{sessions_path(session.user_id)}/{session.device_id}"
        try:
            await bounded(self._store.set(path, record.to_remote()), self._timeout_seconds, path)
        except RemoteStoreError as exc:
            logger.warning(
                "Device session not recorded",
                extra={"user_id": session.user_id, "device_id": session.device_id, "error": exc.detail},
            )
            return False
        return True

    # =========================================================================
    # Authorized reads and administration
    # =========================================================================

    async def _actor_can_access(self, actor: Optional[Principal], user_id: str) -> bool:
        if actor is None:
            return False
        if actor.id == user_id:
            return True
        role = await self._role_directory.resolve_role(actor.id, actor.email)
        return role.is_admin

    async def list_sessions(self, actor: Optional[Principal], user_id: str) -> List[DeviceSessionRecord]:
        """
        Sessions of ``user_id`` visible to ``actor``.

        Unauthorized or failed reads return an empty list.
        """
        if not await self._actor_can_access(actor, user_id):
            logger.warning(
                "Session listing denied",
                extra={"actor_id": actor.id if actor else None, "user_id": user_id},
            )
            return []
        result = await self.fetch_sessions(user_id)
        if not result.ok:
            logger.warning(
                "Session listing unavailable",
                extra={"user_id": user_id, "error": result.detail},
            )
        return result.unwrap_or([])

    async def device_session_summary(self, actor: Optional[Principal], user_id: str) -> Dict[str, Any]:
        sessions = await self.list_sessions(actor, user_id)
        counts = {dt: 0 for dt in DeviceType}
        for record in sessions:
            counts[record.device_type] += 1
        return {
            "total_sessions": len(sessions),
            "phone_count": counts[DeviceType.PHONE],
            "tablet_count": counts[DeviceType.TABLET],
            "web_count": counts[DeviceType.WEB],
            "sessions": [r.to_remote() for r in sessions],
            "limits": {dt.value: cap for dt, cap in self._caps.items()},
        }

    async def remove_session(self, actor: Optional[Principal], user_id: str, device_id: str) -> bool:
        if not await self._actor_can_access(actor, user_id):
            return False
        try:
            await self._delete(user_id, device_id)
        except RemoteStoreError as exc:
            logger.warning(
                "Failed to remove device session",
                extra={"user_id": user_id, "device_id": device_id, "error": exc.detail},
            )
            return False
        logger.info("Device session removed", extra={"user_id": user_id, "device_id": device_id})
        return True

    async def remove_all_sessions(self, actor: Optional[Principal], user_id: str) -> bool:
        if not await self._actor_can_access(actor, user_id):
            return False
        path = sessions_path(user_id)
        try:
            await bounded(self._store.remove(path), self._timeout_seconds, path)
        except RemoteStoreError as exc:
            logger.warning(
                "Failed to remove device sessions",
                extra={"user_id": user_id, "error": exc.detail},
            )
            return False
        logger.info("All device sessions removed", extra={"user_id": user_id})
        return True

    async def purge_expired(self, user_id: str) -> int:
        """
        Delete expired records for a user.

        Raises:
            RemoteStoreError: If the store cannot be reached
        """
        records = await self._read_all(user_id)
        now = self._clock()
        purged = 0
        for record in records:
            if not record.is_active(now):
                await self._delete(user_id, record.device_id)
                purged += 1
        return purged
