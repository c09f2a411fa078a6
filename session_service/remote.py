"""
Remote record store client.

The record store is a keyed hierarchical database (Firebase Realtime Database).
Paths consumed by this service:
- users/{id}                       role, permissions, premium fields
- users/{id}/sessions/{deviceId}   device-session records
- admin_config/super_admins        managed super-admin allow-list
- admin_config/admins              managed admin allow-list
- admin/trial_requests/{id}        trial activation log

Every call is bounded by a timeout; failures surface as RemoteStoreError.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Awaitable, Dict, Optional, Protocol, TypeVar

import httpx

from .errors import InvalidPathError, RemoteStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecordStore(Protocol):
    async def get(self, path: str) -> Any:
        ...

    async def set(self, path: str, value: Any) -> None:
        ...

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        ...

    async def remove(self, path: str) -> None:
        ...


def _split(path: str) -> list[str]:
    parts = [p for p in str(path).strip().split("/") if p]
    if not parts:
        raise InvalidPathError(str(path), "path is required")
    for part in parts:
        if part in (".", "..") or any(ch in part for ch in ".#$[]"):
            raise InvalidPathError(str(path), f"invalid path segment: {part!r}")
    return parts


async def bounded(awaitable: Awaitable[T], timeout: float, path: str) -> T:
    """Await a remote call, converting a timeout into RemoteStoreError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise RemoteStoreError(path, f"timed out after {timeout:.1f}s", exc) from exc


class RealtimeDatabaseClient:
    """
    Firebase Realtime Database REST client.

    Maps get/set/update/remove onto GET/PUT/PATCH/DELETE of ``{base}/{path}.json``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._auth_token = auth_token
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{'/'.join(_split(path))}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth_token} if self._auth_token else {}

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        kwargs: Dict[str, Any] = {"params": self._params()}
        if payload is not None:
            kwargs["json"] = payload
        try:
            response = await bounded(
                self._http_client.request(method, self._url(path), **kwargs),
                self._timeout_seconds,
                path,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Realtime database request rejected",
                extra={"path": path, "method": method, "status_code": exc.response.status_code},
            )
            raise RemoteStoreError(path, f"HTTP {exc.response.status_code}", exc) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Realtime database request failed",
                extra={"path": path, "method": method, "error": str(exc)},
            )
            raise RemoteStoreError(path, str(exc), exc) from exc

        if method == "GET":
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteStoreError(path, "invalid JSON response", exc) from exc
        return None

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def set(self, path: str, value: Any) -> None:
        await self._request("PUT", path, value)

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        await self._request("PATCH", path, values)

    async def remove(self, path: str) -> None:
        await self._request("DELETE", path)

    async def aclose(self) -> None:
        await self._http_client.aclose()


class InMemoryRecordStore:
    """Nested-dict record store with the same path semantics."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._root: Dict[str, Any] = copy.deepcopy(data or {})

    async def get(self, path: str) -> Any:
        node: Any = self._root
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    async def set(self, path: str, value: Any) -> None:
        parts = _split(path)
        if value is None:
            await self.remove(path)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    async def update(self, path: str, values: Dict[str, Any]) -> None:
        base = "/".join(_split(path))
        for key, value in values.items():
            await self.set(f"{base}/{key}", value)

    async def remove(self, path: str) -> None:
        parts = _split(path)
        node: Any = self._root
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)

    def dump(self) -> Dict[str, Any]:
        return copy.deepcopy(self._root)


def build_record_store(
    database_url: str,
    *,
    auth_token: Optional[str] = None,
    timeout_seconds: float = 10.0,
) -> RecordStore:
    if not database_url:
        return InMemoryRecordStore()
    return RealtimeDatabaseClient(
        database_url,
        auth_token=auth_token,
        timeout_seconds=timeout_seconds,
    )
