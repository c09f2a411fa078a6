"""
Trial bookkeeping.

- TrialHistory: device-scoped record of consumed trial kinds, persisted
  locally under trial_history_v1. Independent of the session so logout or
  session reset cannot re-enable a trial.
- TrialRequestLog: best-effort remote log of trial activations under
  admin/trial_requests for administrators. Failures are logged and ignored.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from .config import TRIAL_HISTORY_KEY
from .errors import RemoteStoreError, Result, StorageError
from .models import Session, TrialKind, utcnow
from .remote import RecordStore, bounded
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

TRIAL_REQUESTS_PATH = "admin/trial_requests"

STATUS_REQUESTED = "requested"
STATUS_ACTIVATED = "activated"
STATUS_EXPIRED = "expired"


def _entry_key(device_id: str, kind: TrialKind) -> str:
    return f"{device_id}_{kind.value}"


class TrialHistory:
    """Maps '<deviceId>_<trialKind>' -> ISO timestamp of first use."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._storage = storage
        self._clock = clock or utcnow

    async def _load(self) -> Dict[str, str]:
        raw = await self._storage.get(TRIAL_HISTORY_KEY)
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise StorageError(TRIAL_HISTORY_KEY, "trial history is not valid JSON") from exc
        if isinstance(data, list):
            # list-of-entries format without timestamps
            return {str(entry): "" for entry in data}
        if not isinstance(data, dict):
            raise StorageError(TRIAL_HISTORY_KEY, f"unexpected trial history type: {type(data).__name__}")
        return {str(k): str(v) for k, v in data.items()}

    async def has_used(self, device_id: str, kind: TrialKind) -> Result[bool]:
        try:
            history = await self._load()
        except StorageError as exc:
            logger.warning(
                "Trial history unavailable",
                extra={"device_id": device_id, "trial_kind": kind.value, "error": exc.detail},
            )
            return Result.from_exception(exc)
        return Result.success(_entry_key(device_id, kind) in history)

    async def record(self, device_id: str, kind: TrialKind) -> Result[bool]:
        """
        Mark ``kind`` as consumed on ``device_id``.

        Returns:
            Result(True) when newly recorded, Result(False) when it was
            already present, or a STORAGE_UNAVAILABLE error
        """
        key = _entry_key(device_id, kind)
        try:
            history = await self._load()
            if key in history:
                return Result.success(False)
            history[key] = self._clock().isoformat(timespec="milliseconds")
            await self._storage.set(TRIAL_HISTORY_KEY, json.dumps(history, sort_keys=True))
        except StorageError as exc:
            logger.error(
                "Failed to record trial usage",
                extra={"device_id": device_id, "trial_kind": kind.value, "error": exc.detail},
            )
            return Result.from_exception(exc)
        logger.info("Trial usage recorded", extra={"device_id": device_id, "trial_kind": kind.value})
        return Result.success(True)

    async def used_at(self, device_id: str, kind: TrialKind) -> Optional[str]:
        try:
            history = await self._load()
        except StorageError:
            return None
        return history.get(_entry_key(device_id, kind)) or None


class TrialRequestLog:
    """Remote activation log for administrators."""

    def __init__(
        self,
        store: RecordStore,
        *,
        timeout_seconds: float = 10.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._timeout_seconds = timeout_seconds
        self._clock = clock or utcnow
        self._expiry_reported = False

    async def log_request(self, session: Session, kind: TrialKind, source: str = "user_initiated") -> Optional[str]:
        now = self._clock()
        request_id = f"{session.device_id}_{int(now.timestamp() * 1000)}"
        path = f"{TRIAL_REQUESTS_PATH}/{request_id}"
        payload = {
            "requestId": request_id,
            "userId": session.user_id,
            "email": session.email,
            "deviceId": session.device_id,
            "userRole": session.role.value,
            "trialType": kind.value,
            "source": source,
            "status": STATUS_REQUESTED,
            "requestedAt": now.isoformat(timespec="milliseconds"),
            "requestedAtTimestamp": int(now.timestamp() * 1000),
        }
        try:
            await bounded(self._store.set(path, payload), self._timeout_seconds, path)
        except RemoteStoreError as exc:
            logger.warning(
                "Trial request not logged",
                extra={"device_id": session.device_id, "error": exc.detail},
            )
            return None
        return request_id

    async def update_status(self, device_id: str, status: str) -> bool:
        """Set the status of the device's most recent trial request."""
        try:
            raw = await bounded(
                self._store.get(TRIAL_REQUESTS_PATH), self._timeout_seconds, TRIAL_REQUESTS_PATH
            )
            if not isinstance(raw, dict):
                return False

            latest_id: Optional[str] = None
            latest_ts = -1
            for request_id, data in raw.items():
                if not isinstance(data, dict) or data.get("deviceId") != device_id:
                    continue
                ts = int(data.get("requestedAtTimestamp") or 0)
                if ts > latest_ts:
                    latest_ts = ts
                    latest_id = request_id

            if latest_id is None:
                return False

            path = f"{TRIAL_REQUESTS_PATH}/{latest_id}"
            await bounded(
                self._store.update(
                    path,
                    {"status": status, "statusUpdatedAt": self._clock().isoformat(timespec="milliseconds")},
                ),
                self._timeout_seconds,
                path,
            )
        except RemoteStoreError as exc:
            logger.warning(
                "Trial request status not updated",
                extra={"device_id": device_id, "status": status, "error": exc.detail},
            )
            return False
        return True

    async def report_expired_once(self, device_id: str) -> bool:
        """Mark the latest request expired, at most once per process."""
        if self._expiry_reported:
            return False
        self._expiry_reported = True
        return await self.update_status(device_id, STATUS_EXPIRED)
