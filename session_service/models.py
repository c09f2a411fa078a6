from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from .errors import MalformedSessionError

SESSION_SCHEMA_VERSION = 2

GUEST_SESSION_TTL = timedelta(days=30)
REGISTERED_SESSION_TTL = timedelta(days=90)


class Role(str, Enum):
    """Privilege levels, ordered Guest < User < Admin < SuperAdmin."""

    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    @property
    def is_admin(self) -> bool:
        return self in (Role.ADMIN, Role.SUPER_ADMIN)

    def satisfies(self, required: "Role") -> bool:
        """
        Check whether this role passes a check for ``required``.

        Guest/User requirements follow the total order, Admin accepts
        Admin or SuperAdmin, SuperAdmin requires an exact match.
        """
        if required is Role.SUPER_ADMIN:
            return self is Role.SUPER_ADMIN
        if required is Role.ADMIN:
            return self.is_admin
        return self.rank >= required.rank

    @classmethod
    def parse(cls, raw: Any) -> "Role":
        normalized = str(raw or "").strip().lower()
        if normalized in _LEGACY_ROLES:
            return _LEGACY_ROLES[normalized]
        try:
            return cls(normalized)
        except ValueError as exc:
            raise MalformedSessionError(f"unknown role: {raw!r}", field="userRole") from exc


_ROLE_RANK = {
    Role.GUEST: 0,
    Role.USER: 1,
    Role.ADMIN: 2,
    Role.SUPER_ADMIN: 3,
}

# Older builds stored premium and trial grants as roles.
_LEGACY_ROLES = {
    "premium": Role.USER,
    "trial": Role.USER,
    "superadmin": Role.SUPER_ADMIN,
}


class DeviceType(str, Enum):
    PHONE = "phone"
    TABLET = "tablet"
    WEB = "web"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "DeviceType":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class TrialKind(str, Enum):
    DAY_TRIAL = "day_trial"
    WEEK_TRIAL = "week_trial"

    @property
    def duration(self) -> timedelta:
        return _TRIAL_DURATIONS[self]


_TRIAL_DURATIONS = {
    TrialKind.DAY_TRIAL: timedelta(hours=24),
    TrialKind.WEEK_TRIAL: timedelta(days=7),
}


class Capability(str, Enum):
    """Derived boolean capabilities of a session."""

    ACCESS_PUBLIC_COLLECTIONS = "canAccessPublicCollections"
    SAVE_FAVORITES = "canSaveFavorites"
    ACCESS_AUDIO = "canAccessAudio"
    ACCESS_PREMIUM_CONTENT = "canAccessPremiumContent"
    ACCESS_REGISTERED_CONTENT = "canAccessRegisteredContent"
    ACCESS_ADMIN_FEATURES = "canAccessAdminFeatures"
    MANAGE_USERS = "canManageUsers"


@dataclass(frozen=True)
class Principal:
    """Authenticated identity reported by the identity provider."""

    id: str
    email: Optional[str] = None
    is_anonymous: bool = False

    def __post_init__(self) -> None:
        principal_id = str(self.id).strip()
        if not principal_id:
            raise ValueError("principal id is required")
        object.__setattr__(self, "id", principal_id)
        if self.email is not None:
            object.__setattr__(self, "email", self.email.strip().lower() or None)


@dataclass(frozen=True)
class TrialGrant:
    started_at: datetime
    kind: TrialKind

    def __post_init__(self) -> None:
        object.__setattr__(self, "started_at", normalize_timestamp(self.started_at))

    @property
    def ends_at(self) -> datetime:
        return self.started_at + self.kind.duration


def utcnow() -> datetime:
    return normalize_timestamp(datetime.now(timezone.utc))


def normalize_timestamp(value: datetime) -> datetime:
    """Convert to UTC and truncate to millisecond precision."""
    if value.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def derive_permissions(
    role: Role,
    is_premium: bool,
    trial: Optional[TrialGrant],
) -> Dict[Capability, bool]:
    """Compute the capability map from (role, is_premium, trial)."""
    if role is Role.GUEST:
        return {
            Capability.ACCESS_PUBLIC_COLLECTIONS: True,
            Capability.SAVE_FAVORITES: False,
            Capability.ACCESS_AUDIO: False,
            Capability.ACCESS_PREMIUM_CONTENT: False,
            Capability.ACCESS_REGISTERED_CONTENT: False,
            Capability.ACCESS_ADMIN_FEATURES: False,
            Capability.MANAGE_USERS: False,
        }

    premium = is_premium or trial is not None
    return {
        Capability.ACCESS_PUBLIC_COLLECTIONS: True,
        Capability.SAVE_FAVORITES: True,
        Capability.ACCESS_AUDIO: premium or role.is_admin,
        Capability.ACCESS_PREMIUM_CONTENT: premium,
        Capability.ACCESS_REGISTERED_CONTENT: True,
        Capability.ACCESS_ADMIN_FEATURES: role.is_admin,
        Capability.MANAGE_USERS: role is Role.SUPER_ADMIN,
    }


@dataclass(frozen=True)
class Session:
    """
    Who is using this device, until when, with what entitlements.

    Immutable: every mutation produces a new Session. ``permissions`` is
    recomputed from role, premium flag and trial on construction and cannot
    be passed in.
    """

    device_id: str
    created_at: datetime
    expires_at: datetime
    role: Role = Role.GUEST
    user_id: Optional[str] = None
    email: Optional[str] = None
    is_premium: bool = False
    premium_expiry: Optional[datetime] = None
    device_type: DeviceType = DeviceType.UNKNOWN
    device_info: str = ""
    trial: Optional[TrialGrant] = None
    permissions: Mapping[Capability, bool] = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not str(self.device_id).strip():
            raise ValueError("device_id is required")
        object.__setattr__(self, "created_at", normalize_timestamp(self.created_at))
        object.__setattr__(self, "expires_at", normalize_timestamp(self.expires_at))
        if self.premium_expiry is not None:
            object.__setattr__(self, "premium_expiry", normalize_timestamp(self.premium_expiry))
        object.__setattr__(
            self,
            "permissions",
            MappingProxyType(derive_permissions(self.role, self.is_premium, self.trial)),
        )

    @property
    def is_guest(self) -> bool:
        return self.role is Role.GUEST

    @property
    def is_registered(self) -> bool:
        return self.user_id is not None and not self.is_guest

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin

    @property
    def has_audio_access(self) -> bool:
        """Audio access as fixed by the session's creation-time fields."""
        if self.is_guest:
            return False
        return self.is_premium or self.role.is_admin

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        compare_at = now or utcnow()
        return compare_at >= self.expires_at

    def has_permission(self, capability: Capability) -> bool:
        return bool(self.permissions.get(capability, False))

    @classmethod
    def guest(
        cls,
        device_id: str,
        *,
        device_type: DeviceType = DeviceType.UNKNOWN,
        device_info: str = "",
        now: Optional[datetime] = None,
    ) -> "Session":
        created_at = now or utcnow()
        return cls(
            device_id=device_id,
            created_at=created_at,
            expires_at=created_at + GUEST_SESSION_TTL,
            role=Role.GUEST,
            device_type=device_type,
            device_info=device_info,
        )

    @classmethod
    def registered(
        cls,
        *,
        user_id: str,
        email: Optional[str],
        device_id: str,
        role: Role = Role.USER,
        is_premium: bool = False,
        premium_expiry: Optional[datetime] = None,
        trial: Optional[TrialGrant] = None,
        device_type: DeviceType = DeviceType.UNKNOWN,
        device_info: str = "",
        now: Optional[datetime] = None,
    ) -> "Session":
        if not str(user_id).strip():
            raise ValueError("user_id is required for a registered session")
        if role is Role.GUEST:
            role = Role.USER
        created_at = now or utcnow()
        return cls(
            device_id=device_id,
            created_at=created_at,
            expires_at=created_at + REGISTERED_SESSION_TTL,
            role=role,
            user_id=user_id,
            email=email,
            is_premium=is_premium,
            premium_expiry=premium_expiry,
            device_type=device_type,
            device_info=device_info,
            trial=trial,
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds")


def parse_timestamp(raw: Any, field_name: str) -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedSessionError(f"{field_name} must be an ISO-8601 string", field=field_name)
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedSessionError(f"{field_name} is not ISO-8601: {raw!r}", field=field_name) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return normalize_timestamp(parsed)


def _optional_timestamp(raw: Any, field_name: str) -> Optional[datetime]:
    if raw is None:
        return None
    return parse_timestamp(raw, field_name)


def encode_session(session: Session) -> dict:
    """Serialize a session to its versioned JSON-compatible form."""
    return {
        "schemaVersion": SESSION_SCHEMA_VERSION,
        "userId": session.user_id,
        "email": session.email,
        "userRole": session.role.value,
        "isPremium": session.is_premium,
        "hasAudioAccess": session.has_audio_access,
        "premiumExpiryDate": _iso(session.premium_expiry),
        "sessionCreatedAt": _iso(session.created_at),
        "sessionExpiresAt": _iso(session.expires_at),
        "deviceId": session.device_id,
        "deviceType": session.device_type.value,
        "deviceInfo": session.device_info,
        "permissions": {cap.value: granted for cap, granted in session.permissions.items()},
        "isTrialUser": session.trial is not None,
        "trialStartedAt": _iso(session.trial.started_at) if session.trial else None,
        "trialType": session.trial.kind.value if session.trial else None,
    }


def decode_session(raw: Any) -> Session:
    """
    Rebuild a session from its serialized form.

    Derived fields (hasAudioAccess, permissions) are ignored and recomputed.

    Raises:
        MalformedSessionError: If the payload is not a valid session record
    """
    if not isinstance(raw, dict):
        raise MalformedSessionError("session record must be an object")

    version = raw.get("schemaVersion", SESSION_SCHEMA_VERSION)
    try:
        version = int(version)
    except (TypeError, ValueError) as exc:
        raise MalformedSessionError("schemaVersion must be an integer", field="schemaVersion") from exc
    if version != SESSION_SCHEMA_VERSION:
        raise MalformedSessionError(
            f"unsupported session schema version: {version}", field="schemaVersion"
        )

    device_id = raw.get("deviceId")
    if not isinstance(device_id, str) or not device_id.strip():
        raise MalformedSessionError("deviceId is required", field="deviceId")

    trial: Optional[TrialGrant] = None
    trial_type = raw.get("trialType")
    if raw.get("isTrialUser") and trial_type:
        try:
            kind = TrialKind(trial_type)
        except ValueError as exc:
            raise MalformedSessionError(f"unknown trial type: {trial_type!r}", field="trialType") from exc
        trial = TrialGrant(
            started_at=parse_timestamp(raw.get("trialStartedAt"), "trialStartedAt"),
            kind=kind,
        )

    return Session(
        device_id=device_id,
        created_at=parse_timestamp(raw.get("sessionCreatedAt"), "sessionCreatedAt"),
        expires_at=parse_timestamp(raw.get("sessionExpiresAt"), "sessionExpiresAt"),
        role=Role.parse(raw.get("userRole", Role.GUEST.value)),
        user_id=raw.get("userId"),
        email=raw.get("email"),
        is_premium=bool(raw.get("isPremium", False)),
        premium_expiry=_optional_timestamp(raw.get("premiumExpiryDate"), "premiumExpiryDate"),
        device_type=DeviceType.parse(raw.get("deviceType")),
        device_info=str(raw.get("deviceInfo") or ""),
        trial=trial,
    )
