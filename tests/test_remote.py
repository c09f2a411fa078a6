from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from session_service.errors import ErrorKind, InvalidPathError, RemoteStoreError
from session_service.remote import (
    InMemoryRecordStore,
    RealtimeDatabaseClient,
    bounded,
    build_record_store,
)

BASE_URL = "https://hymnal-test.firebaseio.com"


def _client(handler, **kwargs) -> RealtimeDatabaseClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RealtimeDatabaseClient(BASE_URL, http_client=http_client, **kwargs)


class TestRealtimeDatabaseClient:
    @pytest.mark.asyncio
    async def test_get_maps_to_json_path(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"role": "admin"})

        client = _client(handler, auth_token="secret")
        assert await client.get("users/uid-1") == {"role": "admin"}

        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/users/uid-1.json"
        assert request.url.params["auth"] == "secret"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_write_verbs(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content) if request.content else None
            seen.append((request.method, request.url.path, body))
            return httpx.Response(200, json=body)

        client = _client(handler)
        await client.set("admin_config/admins", ["a@example.com"])
        await client.update("users/uid-1", {"role": "user"})
        await client.remove("users/uid-1/sessions/device_a")

        assert seen == [
            ("PUT", "/admin_config/admins.json", ["a@example.com"]),
            ("PATCH", "/users/uid-1.json", {"role": "user"}),
            ("DELETE", "/users/uid-1/sessions/device_a.json", None),
        ]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_becomes_remote_store_error(self):
        client = _client(lambda request: httpx.Response(401, json={"error": "Permission denied"}))

        with pytest.raises(RemoteStoreError) as exc_info:
            await client.get("users/uid-1")

        assert exc_info.value.detail == "HTTP 401"
        assert exc_info.value.kind is ErrorKind.TRANSIENT_REMOTE
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_error_becomes_remote_store_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(RemoteStoreError) as exc_info:
            await client.get("admin_config/admins")
        assert exc_info.value.path == "admin_config/admins"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_invalid_paths_rejected(self):
        client = _client(lambda request: httpx.Response(200, json=None))
        with pytest.raises(InvalidPathError) as exc_info:
            await client.get("users/a.b")
        assert exc_info.value.kind is ErrorKind.MALFORMED_DATA
        assert isinstance(exc_info.value, RemoteStoreError)
        with pytest.raises(InvalidPathError):
            await client.get("")
        await client.aclose()

    def test_base_url_required(self):
        with pytest.raises(ValueError):
            RealtimeDatabaseClient("")


@pytest.mark.asyncio
async def test_bounded_wait_times_out():
    with pytest.raises(RemoteStoreError) as exc_info:
        await bounded(asyncio.sleep(1), 0.01, "users/uid-1")
    assert "timed out" in exc_info.value.detail


class TestInMemoryRecordStore:
    @pytest.mark.asyncio
    async def test_nested_paths(self):
        store = InMemoryRecordStore()
        await store.set("users/u1/sessions/device_a", {"deviceType": "phone"})

        assert await store.get("users/u1") == {"sessions": {"device_a": {"deviceType": "phone"}}}
        assert await store.get("users/u2") is None

    @pytest.mark.asyncio
    async def test_update_merges_children(self):
        store = InMemoryRecordStore({"users": {"u1": {"role": "user", "email": "u@example.com"}}})
        await store.update("users/u1", {"role": "admin"})
        assert await store.get("users/u1") == {"role": "admin", "email": "u@example.com"}

    @pytest.mark.asyncio
    async def test_set_none_removes(self):
        store = InMemoryRecordStore({"users": {"u1": {"role": "user"}}})
        await store.set("users/u1/role", None)
        assert await store.get("users/u1/role") is None

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        store = InMemoryRecordStore({"admin_config": {"admins": ["a@example.com"]}})
        admins = await store.get("admin_config/admins")
        admins.append("b@example.com")
        assert await store.get("admin_config/admins") == ["a@example.com"]


def test_build_record_store_without_url_is_in_memory():
    assert isinstance(build_record_store(""), InMemoryRecordStore)
    assert isinstance(build_record_store(BASE_URL), RealtimeDatabaseClient)
