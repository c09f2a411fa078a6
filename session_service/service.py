"""
AccessService: the caller-facing API.

Wires the role directory, session store, device-session limiter and
authorization facade into one explicitly constructed object, and reacts to
identity-provider sign-in/sign-out transitions.

Usage:
    config = ServiceConfig.from_env()
    service = AccessService.from_config(config, identity=provider)
    session = await service.initialize()
    if service.can_access_audio():
        ...
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from .admin_config import AdminConfigService
from .authorization import AuthorizationResult, AuthorizationService
from .config import DEVICE_PREMIUM_DEFAULT_DURATION, ServiceConfig
from .device_sessions import DeviceSessionLimiter
from .entitlements import (
    capability_snapshot,
    has_capability,
    is_expired,
    is_premium_active,
    trial_info,
)
from .errors import ErrorKind, Result
from .identity import DeviceClassifier, IdentityProvider
from .models import Capability, Principal, Role, Session, TrialKind, encode_session, utcnow
from .remote import RecordStore, build_record_store
from .role_directory import RoleDirectory
from .session_store import SessionStore
from .storage import KeyValueStore, build_key_value_store
from .trials import TrialHistory, TrialRequestLog

logger = logging.getLogger(__name__)


class AccessService:
    """Session, entitlement and authorization operations for one device."""

    def __init__(
        self,
        *,
        identity: IdentityProvider,
        session_store: SessionStore,
        role_directory: RoleDirectory,
        limiter: DeviceSessionLimiter,
        authorization: AuthorizationService,
        record_store: Optional[RecordStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.identity = identity
        self.session_store = session_store
        self.role_directory = role_directory
        self.limiter = limiter
        self.authorization = authorization
        self._record_store = record_store
        self.clock = clock or utcnow

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        identity: IdentityProvider,
        classifier: Optional[DeviceClassifier] = None,
        *,
        storage: Optional[KeyValueStore] = None,
        record_store: Optional[RecordStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cache_clock: Optional[Callable[[], float]] = None,
    ) -> "AccessService":
        store = record_store or build_record_store(
            config.database_url,
            auth_token=config.database_auth,
            timeout_seconds=config.remote_timeout_seconds,
        )
        kv = storage or build_key_value_store(config.storage_url)

        admin_config = AdminConfigService(
            store,
            fallback_super_admins=config.fallback_super_admins,
            fallback_admins=config.fallback_admins,
            cache_ttl_seconds=config.admin_config_cache_ttl_seconds,
            timeout_seconds=config.light_read_timeout_seconds,
            clock=cache_clock,
        )
        role_directory = RoleDirectory(
            store,
            admin_config,
            cache_ttl_seconds=config.role_cache_ttl_seconds,
            timeout_seconds=config.remote_timeout_seconds,
            clock=cache_clock,
        )
        limiter = DeviceSessionLimiter(
            store,
            role_directory,
            caps=config.session_caps,
            timeout_seconds=config.remote_timeout_seconds,
            clock=clock,
        )
        session_store = SessionStore(
            kv,
            limiter,
            TrialHistory(kv, clock=clock),
            trial_log=TrialRequestLog(store, timeout_seconds=config.remote_timeout_seconds, clock=clock),
            classifier=classifier,
            clock=clock,
        )
        return cls(
            identity=identity,
            session_store=session_store,
            role_directory=role_directory,
            limiter=limiter,
            authorization=AuthorizationService(identity, role_directory),
            record_store=store,
            clock=clock,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> Session:
        """
        Load or create the device session, then align it with the identity
        provider's current principal. Never raises.
        """
        session = await self.session_store.initialize()
        principal = self.identity.current_principal()
        if principal is not None and not principal.is_anonymous and session.user_id != principal.id:
            session = await self.handle_auth_state_change(principal)
        elif principal is None and session.is_registered:
            session = await self.handle_auth_state_change(None)
        return session

    async def handle_auth_state_change(self, principal: Optional[Principal]) -> Session:
        """
        React to sign-in or sign-out.

        Sign-in creates a registered session with the role and premium state
        from the role directory. Sign-out and anonymous principals revert to
        Guest.
        """
        if principal is None or principal.is_anonymous:
            if self.session_store.current.is_registered:
                return await self.session_store.logout()
            return self.session_store.current

        resolution = await self.role_directory.resolve(principal.id, principal.email)
        is_premium = resolution.is_premium and not is_expired(resolution.premium_expiry, self.clock())
        return await self.session_store.create_registered_session(
            principal.id,
            principal.email,
            role=resolution.role,
            is_premium=is_premium,
            premium_expiry=resolution.premium_expiry if is_premium else None,
        )

    async def aclose(self) -> None:
        close = getattr(self._record_store, "aclose", None)
        if close is not None:
            await close()

    # =========================================================================
    # Entitlements
    # =========================================================================

    @property
    def current_session(self) -> Session:
        return self.session_store.current

    def is_premium(self) -> bool:
        return is_premium_active(self.current_session, self.clock())

    def can_access_audio(self) -> bool:
        return has_capability(self.current_session, Capability.ACCESS_AUDIO, self.clock())

    def has_capability(self, capability: Capability) -> bool:
        return has_capability(self.current_session, capability, self.clock())

    def capabilities(self) -> Dict[str, bool]:
        return capability_snapshot(self.current_session, self.clock())

    async def has_permission(self, name: Union[Capability, str]) -> bool:
        """
        Capability names are answered from the session; any other name is
        looked up in the principal's remote permission list.
        """
        if isinstance(name, Capability):
            return self.has_capability(name)
        try:
            capability = Capability(name)
        except ValueError:
            return await self.authorization.has_permission(name)
        return self.has_capability(capability)

    async def check_role(self, required: Union[Role, str]) -> AuthorizationResult:
        return await self.authorization.check_role(required)

    # =========================================================================
    # Grants
    # =========================================================================

    async def grant_premium(self, expiry: Optional[datetime] = None) -> Session:
        return await self.session_store.grant_premium(expiry)

    async def grant_device_premium(
        self,
        duration: timedelta = DEVICE_PREMIUM_DEFAULT_DURATION,
        reason: str = "device_premium",
    ) -> Session:
        return await self.session_store.grant_device_premium(duration, reason)

    async def start_trial(self, kind: Union[TrialKind, str]) -> Result[Session]:
        if not isinstance(kind, TrialKind):
            try:
                kind = TrialKind(kind)
            except ValueError:
                logger.warning("Unknown trial kind requested", extra={"trial_kind": kind})
                return Result.failure(ErrorKind.PROGRAMMER_ERROR, f"Unknown trial kind: {kind}")
        return await self.session_store.start_trial(kind)

    async def logout(self) -> Session:
        return await self.session_store.logout()

    # =========================================================================
    # Summaries
    # =========================================================================

    def trial_info(self) -> Dict[str, Any]:
        return trial_info(self.current_session, self.clock())

    def session_info(self) -> Dict[str, Any]:
        session = self.current_session
        now = self.clock()
        info = encode_session(session)
        info.update(
            {
                "isExpired": session.is_expired(now),
                "isPremiumActive": is_premium_active(session, now),
                "capabilities": capability_snapshot(session, now),
            }
        )
        return info
