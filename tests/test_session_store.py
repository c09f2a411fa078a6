from __future__ import annotations

import asyncio
import json
import re
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_service.config import DEVICE_ID_KEY, PREMIUM_CACHE_KEY, SESSION_KEY, TRIAL_HISTORY_KEY
from session_service.device_sessions import DeviceSessionLimiter, sessions_path
from session_service.entitlements import can_access_audio, is_premium_active
from session_service.errors import ErrorKind
from session_service.models import Capability, DeviceType, Role, Session, TrialKind, encode_session
from session_service.session_store import SessionStore, UNINITIALIZED_DEVICE_ID, generate_device_id
from session_service.storage import InMemoryKeyValueStore
from session_service.trials import TRIAL_REQUESTS_PATH, TrialHistory


def _store(kv, limiter, clock, classifier=None):
    return SessionStore(kv, limiter, TrialHistory(kv, clock=clock), classifier=classifier, clock=clock)


def test_generated_device_id_shape():
    device_id = generate_device_id()
    assert re.fullmatch(r"device_[0-9a-f]{16}", device_id)
    assert generate_device_id() != device_id


class TestInitialize:
    @pytest.mark.asyncio
    async def test_fresh_install_starts_guest(self, session_store, kv, clock):
        session = await session_store.initialize()

        assert session.role is Role.GUEST
        assert session.expires_at == session.created_at + timedelta(days=30)
        assert session.permissions[Capability.ACCESS_AUDIO] is False
        assert session.device_type is DeviceType.PHONE
        assert kv.snapshot()[DEVICE_ID_KEY] == session.device_id
        assert json.loads(kv.snapshot()[SESSION_KEY])["deviceId"] == session.device_id

    @pytest.mark.asyncio
    async def test_current_before_initialize_is_guest(self, session_store):
        session = session_store.current
        assert session.role is Role.GUEST
        assert session.device_id == UNINITIALIZED_DEVICE_ID

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent_under_concurrency(self, session_store, kv):
        first, second = await asyncio.gather(session_store.initialize(), session_store.initialize())
        assert first == second
        assert await session_store.initialize() == first
        assert kv.snapshot()[DEVICE_ID_KEY] == first.device_id

    @pytest.mark.asyncio
    async def test_device_id_stable_across_restarts(self, kv, limiter, clock):
        first = await _store(kv, limiter, clock).initialize()
        second = await _store(kv, limiter, clock).initialize()
        assert second.device_id == first.device_id

    @pytest.mark.asyncio
    async def test_persisted_session_restored(self, kv, limiter, clock):
        store = _store(kv, limiter, clock)
        await store.initialize()
        premium = await store.grant_premium(clock() + timedelta(days=30))

        restored = await _store(kv, limiter, clock).initialize()
        assert restored == premium

    @pytest.mark.asyncio
    async def test_expired_session_never_returned(self, kv, limiter, clock):
        stale = Session.registered(
            user_id="u1", email=None, device_id="device_abc", now=clock() - timedelta(days=91)
        )
        kv_data = {DEVICE_ID_KEY: "device_abc", SESSION_KEY: json.dumps(encode_session(stale))}
        kv = InMemoryKeyValueStore(kv_data)

        session = await _store(kv, limiter, clock).initialize()

        assert session.is_expired(clock()) is False
        assert session.role is Role.GUEST
        assert session.device_id == "device_abc"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ["{not json", json.dumps({"schemaVersion": 2}), json.dumps([1, 2])])
    async def test_malformed_session_discarded(self, limiter, clock, payload):
        kv = InMemoryKeyValueStore({DEVICE_ID_KEY: "device_abc", SESSION_KEY: payload})

        session = await _store(kv, limiter, clock).initialize()

        assert session.role is Role.GUEST
        assert json.loads(kv.snapshot()[SESSION_KEY])["userRole"] == "guest"

    @pytest.mark.asyncio
    async def test_broken_storage_still_yields_session(self, broken_kv, limiter, clock):
        session = await _store(broken_kv, limiter, clock).initialize()
        assert session.role is Role.GUEST
        assert session.device_id.startswith("device_")

    @pytest.mark.asyncio
    async def test_premium_cache_restores_lost_session(self, kv, limiter, clock):
        store = _store(kv, limiter, clock)
        await store.initialize()
        premium = await store.grant_premium(clock() + timedelta(days=30))
        await kv.remove(SESSION_KEY)

        restored = await _store(kv, limiter, clock).initialize()
        assert restored == premium


class TestRegisteredSession:
    @pytest.mark.asyncio
    async def test_admin_sign_in_gets_audio_without_premium(self, session_store, clock):
        session = await session_store.create_registered_session("u1", "a@example.com", role=Role.ADMIN)

        assert session.is_premium is False
        assert session.has_audio_access is True
        assert session.expires_at == session.created_at + timedelta(days=90)
        assert session_store.current == session

    @pytest.mark.asyncio
    async def test_premium_sign_in_takes_over_device_class(self, session_store, record_store, clock):
        await record_store.set(
            f"{sessions_path('u1')}/device_other",
            {
                "deviceId": "device_other",
                "deviceType": "phone",
                "sessionCreatedAt": (clock() - timedelta(days=1)).isoformat(),
                "sessionExpiresAt": (clock() + timedelta(days=89)).isoformat(),
            },
        )

        session = await session_store.create_registered_session(
            "u1", "u@example.com", is_premium=True, premium_expiry=clock() + timedelta(days=30)
        )

        remote = await record_store.get(sessions_path("u1"))
        assert list(remote) == [session.device_id]
        assert remote[session.device_id]["isPremium"] is True

    @pytest.mark.asyncio
    async def test_free_sign_in_not_recorded_remotely(self, session_store, record_store):
        await session_store.create_registered_session("u1", "u@example.com")
        assert await record_store.get(sessions_path("u1")) is None

    @pytest.mark.asyncio
    async def test_limiter_consulted_before_premium_session_recorded(self, kv, clock, classifier):
        limiter = MagicMock(spec=DeviceSessionLimiter)
        limiter.check_and_enforce = AsyncMock(return_value=True)
        limiter.record_session = AsyncMock(return_value=True)
        store = _store(kv, limiter, clock, classifier=classifier)

        session = await store.create_registered_session("u1", "u@example.com", is_premium=True)

        limiter.check_and_enforce.assert_awaited_once_with("u1", DeviceType.PHONE, session.device_id)
        limiter.record_session.assert_awaited_once_with(session)

    @pytest.mark.asyncio
    async def test_limiter_skipped_for_free_sign_in(self, kv, clock):
        limiter = MagicMock(spec=DeviceSessionLimiter)
        limiter.check_and_enforce = AsyncMock(return_value=True)
        limiter.record_session = AsyncMock(return_value=True)

        await _store(kv, limiter, clock).create_registered_session("u1", "u@example.com")

        limiter.check_and_enforce.assert_not_awaited()
        limiter.record_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sign_in_with_unreachable_store_still_succeeds(self, kv, role_directory, unreachable_store, clock):
        limiter = DeviceSessionLimiter(unreachable_store, role_directory, clock=clock)
        session = await _store(kv, limiter, clock).create_registered_session("u1", None, is_premium=True)
        assert session.is_premium is True


class TestGrantPremium:
    @pytest.mark.asyncio
    async def test_guest_promoted_with_expiring_audio(self, session_store, kv, clock):
        await session_store.initialize()
        expiry = clock() + timedelta(days=30)

        session = await session_store.grant_premium(expiry)

        assert session.role is Role.USER
        assert session.is_premium is True
        assert can_access_audio(session, clock()) is True
        assert can_access_audio(session, expiry - timedelta(seconds=1)) is True
        assert can_access_audio(session, expiry) is False
        assert PREMIUM_CACHE_KEY in kv.snapshot()

    @pytest.mark.asyncio
    async def test_admin_role_preserved(self, session_store, clock):
        await session_store.create_registered_session("u1", None, role=Role.SUPER_ADMIN)
        session = await session_store.grant_premium()
        assert session.role is Role.SUPER_ADMIN
        assert is_premium_active(session, clock() + timedelta(days=3650)) is True

    @pytest.mark.asyncio
    async def test_device_premium_defaults_to_thirty_days(self, session_store, kv, clock):
        await session_store.initialize()
        session = await session_store.grant_device_premium(reason="promo")

        assert session.premium_expiry == clock() + timedelta(days=30)
        assert kv.snapshot()["device_premium_reason"] == "promo"

    @pytest.mark.asyncio
    async def test_restore_cached_premium(self, session_store, kv, clock):
        await session_store.initialize()
        premium = await session_store.grant_premium(clock() + timedelta(days=30))
        await kv.set(SESSION_KEY, json.dumps(encode_session(Session.guest(premium.device_id, now=clock()))))

        assert await session_store.restore_cached_premium() == premium
        assert session_store.current == premium

    @pytest.mark.asyncio
    async def test_expired_premium_cache_ignored(self, session_store, clock):
        await session_store.initialize()
        await session_store.grant_premium(clock() + timedelta(days=1))
        clock.advance(days=2)
        assert await session_store.restore_cached_premium() is None


class TestTrials:
    @pytest.mark.asyncio
    async def test_week_trial_granted_once(self, session_store, clock):
        await session_store.initialize()

        first = await session_store.start_trial(TrialKind.WEEK_TRIAL)
        second = await session_store.start_trial(TrialKind.WEEK_TRIAL)

        assert first.ok is True
        assert first.value.trial.kind is TrialKind.WEEK_TRIAL
        assert first.value.premium_expiry == clock() + timedelta(days=7)
        assert first.value.role is Role.USER
        assert second.ok is False
        assert second.error is ErrorKind.NOT_ELIGIBLE
        assert session_store.current == first.value

    @pytest.mark.asyncio
    async def test_trial_not_reenabled_by_logout(self, session_store):
        await session_store.initialize()
        assert (await session_store.start_trial(TrialKind.DAY_TRIAL)).ok is True

        await session_store.logout()

        result = await session_store.start_trial(TrialKind.DAY_TRIAL)
        assert result.error is ErrorKind.NOT_ELIGIBLE
        assert (await session_store.start_trial(TrialKind.WEEK_TRIAL)).ok is True

    @pytest.mark.asyncio
    async def test_concurrent_trial_requests_grant_once(self, session_store):
        await session_store.initialize()
        results = await asyncio.gather(
            session_store.start_trial(TrialKind.WEEK_TRIAL),
            session_store.start_trial(TrialKind.WEEK_TRIAL),
        )
        assert sorted(r.ok for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_history_written_before_session(self, session_store, kv):
        await session_store.initialize()
        result = await session_store.start_trial(TrialKind.DAY_TRIAL)

        history = json.loads(kv.snapshot()[TRIAL_HISTORY_KEY])
        assert f"{result.value.device_id}_day_trial" in history

    @pytest.mark.asyncio
    async def test_trial_logged_as_activated(self, session_store, record_store):
        await session_store.initialize()
        await session_store.start_trial(TrialKind.WEEK_TRIAL)

        requests = await record_store.get(TRIAL_REQUESTS_PATH)
        assert [r["status"] for r in requests.values()] == ["activated"]

    @pytest.mark.asyncio
    async def test_unreadable_history_refuses_trial(self, broken_kv, limiter, clock):
        store = _store(broken_kv, limiter, clock)
        await store.initialize()

        result = await store.start_trial(TrialKind.WEEK_TRIAL)

        assert result.ok is False
        assert result.error is ErrorKind.STORAGE_UNAVAILABLE
        assert store.current.trial is None

    @pytest.mark.asyncio
    async def test_trial_expires_lazily(self, session_store, clock):
        await session_store.initialize()
        session = (await session_store.start_trial(TrialKind.DAY_TRIAL)).value

        clock.advance(hours=25)
        assert can_access_audio(session, clock()) is False
        assert is_premium_active(session, clock()) is False


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_returns_guest_on_same_device(self, session_store, kv):
        registered = await session_store.create_registered_session("u1", None, is_premium=True)

        guest = await session_store.logout()

        assert guest.role is Role.GUEST
        assert guest.device_id == registered.device_id
        assert PREMIUM_CACHE_KEY not in kv.snapshot()
        assert kv.snapshot()[DEVICE_ID_KEY] == registered.device_id

    @pytest.mark.asyncio
    async def test_logout_releases_remote_session(self, session_store, record_store):
        registered = await session_store.create_registered_session("u1", None, is_premium=True)
        assert list(await record_store.get(sessions_path("u1"))) == [registered.device_id]

        await session_store.logout()

        assert await record_store.get(sessions_path("u1")) in (None, {})


class TestCallsBeforeInitialize:
    @pytest.mark.asyncio
    async def test_trial_uses_persisted_device_id(self, session_store, kv):
        result = await session_store.start_trial(TrialKind.WEEK_TRIAL)

        device_id = kv.snapshot()[DEVICE_ID_KEY]
        history = json.loads(kv.snapshot()[TRIAL_HISTORY_KEY])
        assert result.value.device_id == device_id
        assert list(history) == [f"{device_id}_week_trial"]
        assert (await session_store.initialize()).device_id == device_id

    @pytest.mark.asyncio
    async def test_logout_keeps_single_device_id(self, session_store, kv):
        guest = await session_store.logout()

        assert guest.device_id == kv.snapshot()[DEVICE_ID_KEY]
        assert (await session_store.initialize()).device_id == guest.device_id

    @pytest.mark.asyncio
    async def test_grant_premium_uses_persisted_device_id(self, session_store, kv, clock):
        session = await session_store.grant_premium(clock() + timedelta(days=30))
        assert session.device_id == kv.snapshot()[DEVICE_ID_KEY]
        assert session.device_id != UNINITIALIZED_DEVICE_ID


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_registered_session_reverts_to_guest(self, session_store, clock):
        registered = await session_store.create_registered_session("u1", None, role=Role.ADMIN)

        clock.advance(days=91)
        current = session_store.current

        assert current.role is Role.GUEST
        assert current.device_id == registered.device_id
        assert current.is_expired(clock()) is False
        assert can_access_audio(current, clock()) is False
        assert session_store.current == current

    @pytest.mark.asyncio
    async def test_corrupt_history_blocks_repeat_trial(self, session_store, kv):
        assert (await session_store.start_trial(TrialKind.WEEK_TRIAL)).ok is True
        await kv.set(TRIAL_HISTORY_KEY, "{not json")

        result = await session_store.start_trial(TrialKind.WEEK_TRIAL)

        assert result.error is ErrorKind.STORAGE_UNAVAILABLE
        assert kv.snapshot()[TRIAL_HISTORY_KEY] == "{not json"
