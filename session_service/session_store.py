"""
Session store: owns the single current Session for this process.

Persists the session as versioned JSON under user_session_v2 together with
a stable device id (device_id_v2). Every mutation replaces the current
Session with a new immutable value and writes it through to local storage.

Failure handling:
- Corrupt or expired persisted records are discarded and replaced by a
  fresh Guest session.
- Local storage failures are logged; the in-memory session stays current.
- initialize() and ``current`` never raise.
"""

from __future__ import annotations

import asyncio
import dataclasses
import hashlib
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import (
    DEVICE_ID_KEY,
    DEVICE_PREMIUM_DEFAULT_DURATION,
    DEVICE_PREMIUM_GRANTED_KEY,
    DEVICE_PREMIUM_REASON_KEY,
    PREMIUM_CACHE_KEY,
    SESSION_KEY,
)
from .device_sessions import DeviceSessionLimiter
from .entitlements import is_premium_active, is_trial_expired
from .errors import ErrorKind, MalformedSessionError, Result, StorageError
from .identity import DeviceClassifier, StaticDeviceClassifier
from .models import (
    DeviceType,
    Principal,
    Role,
    Session,
    TrialGrant,
    TrialKind,
    decode_session,
    encode_session,
    utcnow,
)
from .storage import KeyValueStore
from .trials import STATUS_ACTIVATED, TrialHistory, TrialRequestLog

logger = logging.getLogger(__name__)

UNINITIALIZED_DEVICE_ID = "device_uninitialized"


def generate_device_id(now: Optional[datetime] = None) -> str:
    """'device_' + first 16 hex chars of sha256('<epoch ms>-<nonce>')."""
    moment = now or utcnow()
    seed = f"{int(moment.timestamp() * 1000)}-{secrets.token_hex(8)}"
    return "device_" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


class SessionStore:
    """Local session lifecycle for one device."""

    def __init__(
        self,
        storage: KeyValueStore,
        limiter: DeviceSessionLimiter,
        trial_history: TrialHistory,
        *,
        trial_log: Optional[TrialRequestLog] = None,
        classifier: Optional[DeviceClassifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._storage = storage
        self._limiter = limiter
        self._trial_history = trial_history
        self._trial_log = trial_log
        self._classifier = classifier or StaticDeviceClassifier(DeviceType.UNKNOWN)
        self._clock = clock or utcnow

        self._current: Optional[Session] = None
        self._device_id: Optional[str] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._trial_lock = asyncio.Lock()

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def current(self) -> Session:
        """
        The current session.

        A Guest fallback before initialize() completes. An expired session is
        replaced in memory by a fresh Guest for the same device.
        """
        session = self._current
        if session is None:
            return self._guest(self._device_id or UNINITIALIZED_DEVICE_ID)
        if session.is_expired(self._clock()):
            logger.info(
                "Current session expired, reverting to guest",
                extra={"device_id": session.device_id, "user_id": session.user_id},
            )
            session = self._guest(session.device_id)
            self._current = session
        return session

    @property
    def device_id(self) -> Optional[str]:
        return self._device_id

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Initialization
    # =========================================================================

    async def initialize(self) -> Session:
        """
        Load the persisted session or start a fresh Guest session.

        Idempotent: concurrent callers wait for the first initialization and
        receive the same session.
        """
        async with self._init_lock:
            if self._initialized:
                return self.current

            self._device_id = await self._load_device_id()
            session = await self._restore(SESSION_KEY)
            if session is None:
                session = await self._restore_premium_cache()
                if session is not None:
                    await self._persist(session)
            if session is None:
                session = await self._fresh_guest()

            self._current = session
            self._initialized = True

        if self._trial_log is not None and is_trial_expired(session, self._clock()):
            await self._trial_log.report_expired_once(session.device_id)

        logger.info(
            "Session initialized",
            extra={
                "device_id": session.device_id,
                "role": session.role.value,
                "user_id": session.user_id,
            },
        )
        return session

    async def _load_device_id(self) -> str:
        try:
            stored = await self._storage.get(DEVICE_ID_KEY)
        except StorageError as exc:
            logger.warning("Device id unavailable, generating one", extra={"error": exc.detail})
            stored = None
        if stored and stored.strip():
            return stored.strip()

        device_id = generate_device_id(self._clock())
        try:
            await self._storage.set(DEVICE_ID_KEY, device_id)
        except StorageError as exc:
            logger.warning(
                "Device id not persisted",
                extra={"device_id": device_id, "error": exc.detail},
            )
        logger.info("Generated device id", extra={"device_id": device_id})
        return device_id

    async def _read_session(self, key: str) -> Optional[Session]:
        """Decode the session stored under ``key``; discards it if corrupt."""
        try:
            raw = await self._storage.get(key)
        except StorageError as exc:
            logger.warning("Persisted session unavailable", extra={"key": key, "error": exc.detail})
            return None
        if not raw:
            return None

        try:
            return decode_session(json.loads(raw))
        except (ValueError, MalformedSessionError) as exc:
            logger.warning(
                "Discarding malformed persisted session",
                extra={"key": key, "error": str(exc)},
            )
            await self._discard(key)
            return None

    async def _restore(self, key: str) -> Optional[Session]:
        session = await self._read_session(key)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            logger.info(
                "Persisted session expired",
                extra={"device_id": session.device_id, "expired_at": session.expires_at.isoformat()},
            )
            await self._discard(key)
            return None
        return session

    async def _restore_premium_cache(self) -> Optional[Session]:
        session = await self._restore(PREMIUM_CACHE_KEY)
        if session is None:
            return None
        if session.device_id != self._device_id or not is_premium_active(session, self._clock()):
            return None
        logger.info("Restored session from premium cache", extra={"device_id": session.device_id})
        return session

    def _guest(self, device_id: str) -> Session:
        return Session.guest(
            device_id,
            device_type=self._classifier.classify(),
            device_info=self._classifier.describe(),
            now=self._clock(),
        )

    async def _fresh_guest(self) -> Session:
        session = self._guest(self._device_id or generate_device_id(self._clock()))
        await self._persist(session)
        return session

    # =========================================================================
    # Persistence
    # =========================================================================

    async def _write(self, key: str, session: Session) -> bool:
        try:
            await self._storage.set(key, json.dumps(encode_session(session)))
        except StorageError as exc:
            logger.warning(
                "Session not persisted",
                extra={"key": key, "device_id": session.device_id, "error": exc.detail},
            )
            return False
        return True

    async def _persist(self, session: Session) -> bool:
        self._current = session
        return await self._write(SESSION_KEY, session)

    async def _discard(self, key: str) -> None:
        try:
            await self._storage.remove(key)
        except StorageError as exc:
            logger.warning("Failed to discard persisted record", extra={"key": key, "error": exc.detail})

    # =========================================================================
    # Transitions
    # =========================================================================

    async def create_registered_session(
        self,
        user_id: str,
        email: Optional[str],
        role: Role = Role.USER,
        is_premium: bool = False,
        premium_expiry: Optional[datetime] = None,
    ) -> Session:
        """
        Start a registered session after sign-in.

        Premium users pass through the device-session limiter first, and the
        new session is recorded remotely for multi-device enforcement.
        """
        await self.initialize()
        device_id = self._device_id or self.current.device_id
        device_type = self._classifier.classify()

        if is_premium:
            await self._limiter.check_and_enforce(user_id, device_type, device_id)

        session = Session.registered(
            user_id=user_id,
            email=email,
            device_id=device_id,
            role=role,
            is_premium=is_premium,
            premium_expiry=premium_expiry,
            device_type=device_type,
            device_info=self._classifier.describe(),
            now=self._clock(),
        )
        await self._persist(session)

        if is_premium:
            await self._limiter.record_session(session)

        logger.info(
            "Registered session created",
            extra={
                "user_id": user_id,
                "device_id": device_id,
                "role": session.role.value,
                "is_premium": is_premium,
            },
        )
        return session

    async def grant_premium(self, expiry: Optional[datetime] = None) -> Session:
        """
        Upgrade the current session to premium until ``expiry`` (None = indefinite).

        A Guest session is promoted to User. The result is also written to
        the premium cache record.
        """
        await self.initialize()
        current = self.current
        session = dataclasses.replace(
            current,
            role=Role.USER if current.is_guest else current.role,
            is_premium=True,
            premium_expiry=expiry,
        )
        await self._persist(session)
        await self._write(PREMIUM_CACHE_KEY, session)

        if session.user_id:
            await self._limiter.record_session(session)

        logger.info(
            "Premium granted",
            extra={
                "device_id": session.device_id,
                "user_id": session.user_id,
                "premium_expiry": expiry.isoformat() if expiry else None,
            },
        )
        return session

    async def grant_device_premium(
        self,
        duration: timedelta = DEVICE_PREMIUM_DEFAULT_DURATION,
        reason: str = "device_premium",
    ) -> Session:
        now = self._clock()
        session = await self.grant_premium(now + duration)
        try:
            await self._storage.set(DEVICE_PREMIUM_REASON_KEY, reason)
            await self._storage.set(DEVICE_PREMIUM_GRANTED_KEY, now.isoformat(timespec="milliseconds"))
        except StorageError as exc:
            logger.warning(
                "Device premium note not persisted",
                extra={"device_id": session.device_id, "error": exc.detail},
            )
        return session

    async def restore_cached_premium(self) -> Optional[Session]:
        """
        Re-adopt the premium cache record when it is still active.

        Only applies to this device, and only when the cached session belongs
        to the current user (or the current session is a Guest).
        """
        await self.initialize()
        cached = await self._restore_premium_cache()
        if cached is None:
            return None
        current = self.current
        if not current.is_guest and cached.user_id != current.user_id:
            return None
        await self._persist(cached)
        return cached

    async def start_trial(self, kind: TrialKind) -> Result[Session]:
        """
        Activate a trial of ``kind`` on this device.

        The device-scoped history is written before the session is upgraded,
        so a crash between the two can never allow a second activation.

        Returns:
            Result with the upgraded session, NOT_ELIGIBLE when the kind was
            already consumed on this device, or STORAGE_UNAVAILABLE when the
            history could not be read or written
        """
        await self.initialize()
        async with self._trial_lock:
            current = self.current
            device_id = self._device_id or current.device_id

            used = await self._trial_history.has_used(device_id, kind)
            if not used.ok:
                return Result.failure(used.error or ErrorKind.STORAGE_UNAVAILABLE, used.detail)
            if used.value:
                logger.info(
                    "Trial already used on this device",
                    extra={"device_id": device_id, "trial_kind": kind.value},
                )
                return Result.failure(
                    ErrorKind.NOT_ELIGIBLE, f"{kind.value} has already been used on this device"
                )

            if self._trial_log is not None:
                await self._trial_log.log_request(current, kind)

            recorded = await self._trial_history.record(device_id, kind)
            if not recorded.ok:
                return Result.failure(recorded.error or ErrorKind.STORAGE_UNAVAILABLE, recorded.detail)
            if not recorded.value:
                return Result.failure(
                    ErrorKind.NOT_ELIGIBLE, f"{kind.value} has already been used on this device"
                )

            trial = TrialGrant(started_at=self._clock(), kind=kind)
            session = dataclasses.replace(
                current,
                role=Role.USER if current.is_guest else current.role,
                is_premium=True,
                premium_expiry=trial.ends_at,
                trial=trial,
            )
            await self._persist(session)

        if self._trial_log is not None:
            await self._trial_log.update_status(device_id, STATUS_ACTIVATED)

        logger.info(
            "Trial started",
            extra={
                "device_id": device_id,
                "trial_kind": kind.value,
                "trial_ends_at": trial.ends_at.isoformat(),
            },
        )
        return Result.success(session)

    async def reset(self) -> Session:
        """Discard persisted session state and start a fresh Guest session."""
        await self.initialize()
        await self._discard(SESSION_KEY)
        await self._discard(PREMIUM_CACHE_KEY)
        return await self._fresh_guest()

    async def logout(self) -> Session:
        """
        Return to a Guest session for the same device.

        Releases this device's remote session record. The device id and
        trial history are kept.
        """
        await self.initialize()
        previous = self.current
        if previous.user_id:
            principal = Principal(previous.user_id, previous.email)
            await self._limiter.remove_session(principal, previous.user_id, previous.device_id)

        session = await self.reset()
        logger.info(
            "Session logged out",
            extra={"device_id": session.device_id, "previous_user_id": previous.user_id},
        )
        return session
