from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from session_service.device_sessions import DeviceSessionLimiter
from session_service.errors import RemoteStoreError

logger = logging.getLogger(__name__)


@dataclass
class SweepStats:
    started_at: str
    completed_at: Optional[str] = None
    users_scanned: int = 0
    sessions_purged: int = 0
    errors: int = 0


async def run_device_session_sweep(
    limiter: DeviceSessionLimiter,
    user_ids: Iterable[str],
) -> SweepStats:
    """Background cleanup of expired device-session records.

    Responsibilities:
    - delete users/{id}/sessions/{deviceId} records past their expiry
    - keep going when one user's records cannot be read
    """

    stats = SweepStats(started_at=datetime.now(timezone.utc).isoformat())

    for user_id in user_ids:
        stats.users_scanned += 1
        try:
            stats.sessions_purged += await limiter.purge_expired(user_id)
        except RemoteStoreError as exc:
            stats.errors += 1
            logger.warning(
                "Device session sweep failed for user",
                extra={"user_id": user_id, "error": exc.detail},
            )

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info(
        "Device session sweep completed",
        extra={
            "users_scanned": stats.users_scanned,
            "sessions_purged": stats.sessions_purged,
            "errors": stats.errors,
        },
    )
    return stats


async def run_forever(
    limiter: DeviceSessionLimiter,
    list_user_ids: Callable[[], Iterable[str]],
    interval_seconds: int = 3600,
) -> None:
    while True:
        await run_device_session_sweep(limiter, list_user_ids())
        await asyncio.sleep(interval_seconds)
