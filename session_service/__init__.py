"""
Session, entitlement and authorization service.

Resolves principals to roles, keeps one current device session, derives
capabilities from role + premium + trial state, caps concurrent premium
sessions per device class and answers role/page checks.
"""

from session_service.authorization import (
    PAGE_REQUIREMENTS,
    AuthorizationResult,
    AuthorizationService,
)
from session_service.config import ServiceConfig
from session_service.device_sessions import DeviceSessionLimiter, DeviceSessionRecord
from session_service.errors import (
    ConfigurationError,
    ErrorKind,
    MalformedSessionError,
    RemoteStoreError,
    Result,
    SessionServiceError,
    StorageError,
)
from session_service.models import (
    Capability,
    DeviceType,
    Principal,
    Role,
    Session,
    TrialGrant,
    TrialKind,
    decode_session,
    encode_session,
)
from session_service.role_directory import RoleDirectory, RoleResolution
from session_service.service import AccessService
from session_service.session_store import SessionStore

__all__ = [
    "AccessService",
    "AuthorizationResult",
    "AuthorizationService",
    "Capability",
    "ConfigurationError",
    "DeviceSessionLimiter",
    "DeviceSessionRecord",
    "DeviceType",
    "ErrorKind",
    "MalformedSessionError",
    "PAGE_REQUIREMENTS",
    "Principal",
    "RemoteStoreError",
    "Result",
    "Role",
    "RoleDirectory",
    "RoleResolution",
    "ServiceConfig",
    "Session",
    "SessionServiceError",
    "SessionStore",
    "StorageError",
    "TrialGrant",
    "TrialKind",
    "decode_session",
    "encode_session",
]
