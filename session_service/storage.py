"""
Local key-value persistence for the session record, device id and trial history.

Backends:
- InMemoryKeyValueStore: process-local, for tests and ephemeral deployments
- SqlKeyValueStore: SQLAlchemy table (SQLite file by default)
- RedisKeyValueStore: redis.asyncio client

All backends raise StorageError on failure; callers decide the safe default.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import StorageError

logger = logging.getLogger(__name__)

Base = declarative_base()


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class KeyValueEntry(Base):
    __tablename__ = "session_kv_entries"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<KeyValueEntry(key={self.key})>"


class SqlKeyValueStore:
    """
    SQLAlchemy-backed store.

    Uses a synchronous engine; each call runs in a worker thread so the
    event loop is never blocked on disk I/O.
    """

    def __init__(self, url: str = "sqlite:///session_service.db") -> None:
        self._engine = create_engine(url, future=True)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)

    def _get(self, key: str) -> Optional[str]:
        with self._session_factory() as db:
            entry = db.get(KeyValueEntry, key)
            return entry.value if entry is not None else None

    def _set(self, key: str, value: str) -> None:
        with self._session_factory() as db:
            entry = db.get(KeyValueEntry, key)
            if entry is None:
                db.add(KeyValueEntry(key=key, value=value))
            else:
                entry.value = value
                entry.updated_at = datetime.now(timezone.utc)
            db.commit()

    def _remove(self, key: str) -> None:
        with self._session_factory() as db:
            entry = db.get(KeyValueEntry, key)
            if entry is not None:
                db.delete(entry)
                db.commit()

    async def get(self, key: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(self._get, key)
        except SQLAlchemyError as exc:
            raise StorageError(key, str(exc)) from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await asyncio.to_thread(self._set, key, value)
        except SQLAlchemyError as exc:
            raise StorageError(key, str(exc)) from exc

    async def remove(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove, key)
        except SQLAlchemyError as exc:
            raise StorageError(key, str(exc)) from exc

    def dispose(self) -> None:
        self._engine.dispose()


class RedisKeyValueStore:
    """redis.asyncio-backed store with a key namespace."""

    KEY_PREFIX = "session_service:"

    def __init__(self, url: Optional[str] = None, *, client=None) -> None:
        if client is None:
            import redis.asyncio as redis

            client = redis.from_url(url or "redis://localhost:6379/0", decode_responses=True)
        self._redis = client

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(self._key(key))
        except Exception as exc:
            raise StorageError(key, str(exc)) from exc

    async def set(self, key: str, value: str) -> None:
        try:
            await self._redis.set(self._key(key), value)
        except Exception as exc:
            raise StorageError(key, str(exc)) from exc

    async def remove(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except Exception as exc:
            raise StorageError(key, str(exc)) from exc


def build_key_value_store(url: str) -> KeyValueStore:
    """Pick a backend from a storage URL (memory://, redis://, or a SQLAlchemy URL)."""
    normalized = (url or "memory://").strip()
    if normalized.startswith("memory://"):
        return InMemoryKeyValueStore()
    if normalized.startswith(("redis://", "rediss://", "unix://")):
        return RedisKeyValueStore(normalized)
    logger.info("Using SQL key-value store", extra={"dialect": normalized.split(":", 1)[0]})
    return SqlKeyValueStore(normalized)
