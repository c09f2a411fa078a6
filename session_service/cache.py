"""
In-memory cache with per-entry expiry.

Shared by the role directory (principal id -> role record) and the admin
configuration service (email -> membership flag).
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Maps key -> (value, expires_at) on a monotonic clock."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[K, Tuple[V, float, float]] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, key: K) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, _, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: K, value: V, *, ttl_seconds: Optional[float] = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl_seconds
        now = self._clock()
        self._entries[key] = (value, now, now + ttl)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def age_of(self, key: K) -> Optional[float]:
        """Seconds since the entry was stored, or None if absent/expired."""
        if self.get(key) is None:
            return None
        _, stored_at, _ = self._entries[key]
        return self._clock() - stored_at

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for _, _, expires_at in self._entries.values() if now < expires_at)
