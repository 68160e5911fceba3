"""Quota store backends: HTTP gateway, redis hash and the in-memory store."""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from quota_manager.core.config import Settings
from quota_manager.core.errors import SyncError
from quota_manager.features.quota.store import (
    HttpQuotaStore,
    InMemoryQuotaStore,
    RedisQuotaStore,
    build_quota_store,
    get_quota_store,
    set_quota_store,
)


def make_http_store(handler):
    client = httpx.Client(base_url="http://gateway.test", transport=httpx.MockTransport(handler))
    return HttpQuotaStore("http://gateway.test", client=client)


def test_http_store_reads_and_writes():
    state = {"total": 0.0, "used": 0.0}
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "GET":
            return httpx.Response(200, json=state)
        field = request.url.path.rsplit("/", 1)[-1]
        state[field] = json.loads(request.content)["amount"]
        return httpx.Response(204)

    store = make_http_store(handler)
    store.set_total("u1", 125)
    store.set_used("u1", 30)

    assert store.get_total("u1") == 125
    assert store.get_used("u1") == 30
    assert seen[:2] == [("PUT", "/quota/u1/total"), ("PUT", "/quota/u1/used")]


def test_http_store_sends_bearer_token():
    captured = {}

    def handler(request):
        captured["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"total": 1})

    store = HttpQuotaStore("http://gateway.test", token="secret")
    store._client = httpx.Client(
        base_url="http://gateway.test",
        headers=store._client.headers,
        transport=httpx.MockTransport(handler),
    )

    assert store.get_total("u1") == 1
    assert captured["auth"] == "Bearer secret"


def test_http_store_maps_rejection_to_sync_error():
    store = make_http_store(lambda request: httpx.Response(503, text="maintenance"))
    with pytest.raises(SyncError, match="503"):
        store.set_total("u1", 10)


def test_http_store_maps_transport_error_to_sync_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    store = make_http_store(handler)
    with pytest.raises(SyncError):
        store.get_used("u1")


def test_http_store_rejects_malformed_payload():
    store = make_http_store(lambda request: httpx.Response(200, json={"total": "lots"}))
    with pytest.raises(SyncError, match="malformed"):
        store.get_total("u1")


def test_redis_store_uses_hash_per_user():
    client = MagicMock()
    client.hget.side_effect = lambda key, field: {"total": b"150.0", "used": None}[field]
    store = RedisQuotaStore(client, prefix="q")

    store.set_total("u1", 150)

    client.hset.assert_called_once_with("q:u1", "total", "150.0")
    assert store.get_total("u1") == 150
    assert store.get_used("u1") == 0


def test_redis_store_maps_errors_to_sync_error():
    client = MagicMock()
    client.hset.side_effect = RedisConnectionError("down")
    client.hget.side_effect = RedisConnectionError("down")
    store = RedisQuotaStore(client)

    with pytest.raises(SyncError):
        store.set_used("u1", 1)
    with pytest.raises(SyncError):
        store.get_total("u1")


def test_in_memory_store_defaults_to_zero():
    store = InMemoryQuotaStore()
    assert store.get_total("nobody") == 0
    store.set_total("u1", 5)
    store.clear()
    assert store.get_total("u1") == 0


def test_build_quota_store_by_backend():
    assert isinstance(build_quota_store(Settings(QUOTA_STORE_BACKEND="memory")), InMemoryQuotaStore)
    http = build_quota_store(Settings(QUOTA_STORE_BACKEND="http", QUOTA_STORE_URL="http://gw.test/"))
    assert isinstance(http, HttpQuotaStore)
    http.close()
    assert isinstance(build_quota_store(Settings(QUOTA_STORE_BACKEND="redis")), RedisQuotaStore)

    with pytest.raises(RuntimeError):
        build_quota_store(Settings(QUOTA_STORE_BACKEND="http", QUOTA_STORE_URL=None))
    with pytest.raises(RuntimeError):
        build_quota_store(Settings(QUOTA_STORE_BACKEND="carrier-pigeon"))


def test_process_wide_store_can_be_replaced():
    custom = InMemoryQuotaStore()
    set_quota_store(custom)
    try:
        assert get_quota_store() is custom
    finally:
        set_quota_store(None)
