from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from session_service.admin_config import AdminConfigService
from session_service.device_sessions import DeviceSessionLimiter
from session_service.errors import RemoteStoreError, StorageError
from session_service.identity import StaticDeviceClassifier, StaticIdentityProvider
from session_service.models import DeviceType
from session_service.remote import InMemoryRecordStore
from session_service.role_directory import RoleDirectory
from session_service.session_store import SessionStore
from session_service.storage import InMemoryKeyValueStore
from session_service.trials import TrialHistory, TrialRequestLog

FALLBACK_SUPER_ADMIN = "root@example.com"
FALLBACK_ADMIN = "admin@example.com"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class UnreachableRecordStore:
    """Record store whose every call fails as a network error would."""

    def __init__(self):
        self.calls = 0

    async def _fail(self, path: str):
        self.calls += 1
        raise RemoteStoreError(path, "connection refused")

    async def get(self, path: str) -> Any:
        return await self._fail(path)

    async def set(self, path: str, value: Any) -> None:
        await self._fail(path)

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        await self._fail(path)

    async def remove(self, path: str) -> None:
        await self._fail(path)


class BrokenKeyValueStore:
    async def get(self, key: str):
        raise StorageError(key, "disk unavailable")

    async def set(self, key: str, value: str) -> None:
        raise StorageError(key, "disk unavailable")

    async def remove(self, key: str) -> None:
        raise StorageError(key, "disk unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def record_store():
    return InMemoryRecordStore()


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def admin_config(record_store, monotonic):
    return AdminConfigService(
        record_store,
        fallback_super_admins=(FALLBACK_SUPER_ADMIN,),
        fallback_admins=(FALLBACK_ADMIN,),
        clock=monotonic,
    )


@pytest.fixture
def role_directory(record_store, admin_config, monotonic):
    return RoleDirectory(record_store, admin_config, clock=monotonic)


@pytest.fixture
def limiter(record_store, role_directory, clock):
    return DeviceSessionLimiter(record_store, role_directory, clock=clock)


@pytest.fixture
def classifier():
    return StaticDeviceClassifier(DeviceType.PHONE)


@pytest.fixture
def identity():
    return StaticIdentityProvider()


@pytest.fixture
def session_store(kv, limiter, record_store, classifier, clock):
    return SessionStore(
        kv,
        limiter,
        TrialHistory(kv, clock=clock),
        trial_log=TrialRequestLog(record_store, clock=clock),
        classifier=classifier,
        clock=clock,
    )


@pytest.fixture
def unreachable_store():
    return UnreachableRecordStore()


@pytest.fixture
def broken_kv():
    return BrokenKeyValueStore()
