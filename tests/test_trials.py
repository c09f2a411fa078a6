from __future__ import annotations

import json

import pytest

from session_service.config import TRIAL_HISTORY_KEY
from session_service.errors import ErrorKind
from session_service.models import Session, TrialKind
from session_service.storage import InMemoryKeyValueStore
from session_service.trials import (
    STATUS_ACTIVATED,
    STATUS_EXPIRED,
    STATUS_REQUESTED,
    TRIAL_REQUESTS_PATH,
    TrialHistory,
    TrialRequestLog,
)


@pytest.mark.asyncio
async def test_history_records_once_per_device_and_kind(kv, clock):
    history = TrialHistory(kv, clock=clock)

    assert (await history.has_used("device_a", TrialKind.WEEK_TRIAL)).value is False
    assert (await history.record("device_a", TrialKind.WEEK_TRIAL)).value is True
    assert (await history.record("device_a", TrialKind.WEEK_TRIAL)).value is False

    assert (await history.has_used("device_a", TrialKind.WEEK_TRIAL)).value is True
    assert (await history.has_used("device_a", TrialKind.DAY_TRIAL)).value is False
    assert (await history.has_used("device_b", TrialKind.WEEK_TRIAL)).value is False


@pytest.mark.asyncio
async def test_history_persists_timestamp(kv, clock):
    history = TrialHistory(kv, clock=clock)
    await history.record("device_a", TrialKind.DAY_TRIAL)

    stored = json.loads(kv.snapshot()[TRIAL_HISTORY_KEY])
    assert stored == {"device_a_day_trial": "2026-03-01T12:00:00.000+00:00"}
    assert await history.used_at("device_a", TrialKind.DAY_TRIAL) == "2026-03-01T12:00:00.000+00:00"


@pytest.mark.asyncio
async def test_history_accepts_list_format(clock):
    kv = InMemoryKeyValueStore({TRIAL_HISTORY_KEY: json.dumps(["device_a_week_trial"])})
    history = TrialHistory(kv, clock=clock)
    assert (await history.has_used("device_a", TrialKind.WEEK_TRIAL)).value is True


@pytest.mark.asyncio
async def test_history_unreadable_storage_is_reported(broken_kv, clock):
    history = TrialHistory(broken_kv, clock=clock)

    used = await history.has_used("device_a", TrialKind.WEEK_TRIAL)
    assert used.ok is False
    assert used.error is ErrorKind.STORAGE_UNAVAILABLE

    recorded = await history.record("device_a", TrialKind.WEEK_TRIAL)
    assert recorded.error is ErrorKind.STORAGE_UNAVAILABLE


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", ["{not json", json.dumps("device_a_week_trial")])
async def test_corrupt_history_refuses_instead_of_resetting(clock, payload):
    kv = InMemoryKeyValueStore({TRIAL_HISTORY_KEY: payload})
    history = TrialHistory(kv, clock=clock)

    used = await history.has_used("device_a", TrialKind.WEEK_TRIAL)
    recorded = await history.record("device_a", TrialKind.WEEK_TRIAL)

    assert used.error is ErrorKind.STORAGE_UNAVAILABLE
    assert recorded.error is ErrorKind.STORAGE_UNAVAILABLE
    assert kv.snapshot()[TRIAL_HISTORY_KEY] == payload


@pytest.mark.asyncio
async def test_request_log_lifecycle(record_store, clock):
    log = TrialRequestLog(record_store, clock=clock)
    session = Session.guest("device_a", now=clock())

    request_id = await log.log_request(session, TrialKind.WEEK_TRIAL)
    entry = await record_store.get(f"{TRIAL_REQUESTS_PATH}/{request_id}")
    assert entry["status"] == STATUS_REQUESTED
    assert entry["trialType"] == "week_trial"
    assert entry["deviceId"] == "device_a"

    clock.advance(seconds=1)
    assert await log.update_status("device_a", STATUS_ACTIVATED) is True
    entry = await record_store.get(f"{TRIAL_REQUESTS_PATH}/{request_id}")
    assert entry["status"] == STATUS_ACTIVATED


@pytest.mark.asyncio
async def test_request_log_updates_latest_request_only(record_store, clock):
    log = TrialRequestLog(record_store, clock=clock)
    session = Session.guest("device_a", now=clock())

    first = await log.log_request(session, TrialKind.DAY_TRIAL)
    clock.advance(minutes=5)
    second = await log.log_request(session, TrialKind.WEEK_TRIAL)

    await log.update_status("device_a", STATUS_ACTIVATED)

    assert (await record_store.get(f"{TRIAL_REQUESTS_PATH}/{first}"))["status"] == STATUS_REQUESTED
    assert (await record_store.get(f"{TRIAL_REQUESTS_PATH}/{second}"))["status"] == STATUS_ACTIVATED


@pytest.mark.asyncio
async def test_expiry_reported_once(record_store, clock):
    log = TrialRequestLog(record_store, clock=clock)
    request_id = await log.log_request(Session.guest("device_a", now=clock()), TrialKind.DAY_TRIAL)

    assert await log.report_expired_once("device_a") is True
    assert await log.report_expired_once("device_a") is False
    entry = await record_store.get(f"{TRIAL_REQUESTS_PATH}/{request_id}")
    assert entry["status"] == STATUS_EXPIRED


@pytest.mark.asyncio
async def test_request_log_failures_are_soft(unreachable_store, clock):
    log = TrialRequestLog(unreachable_store, clock=clock)
    session = Session.guest("device_a", now=clock())

    assert await log.log_request(session, TrialKind.WEEK_TRIAL) is None
    assert await log.update_status("device_a", STATUS_ACTIVATED) is False
