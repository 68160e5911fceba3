"""
Quota store protocol and backends.

The quota store is the AI gateway's authority for per-user capacity (total)
and consumption (used). The core only mirrors the ledger into it; every
backend failure surfaces as SyncError.
"""
from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

import httpx
from redis import Redis
from redis.exceptions import RedisError

from quota_manager.core.config import Settings, settings
from quota_manager.core.errors import SyncError


class QuotaStore(Protocol):
    """
    Protocol for external quota stores.

    Implementations must raise SyncError when the store is unreachable or
    rejects an update.
    """

    def set_total(self, user_id: str, amount: float) -> None:
        ...

    def set_used(self, user_id: str, amount: float) -> None:
        ...

    def get_total(self, user_id: str) -> float:
        ...

    def get_used(self, user_id: str) -> float:
        ...


class InMemoryQuotaStore:
    """Thread-safe dict-backed store for development and tests."""

    def __init__(self):
        self._totals: Dict[str, float] = {}
        self._used: Dict[str, float] = {}
        self._lock = threading.Lock()

    def set_total(self, user_id: str, amount: float) -> None:
        with self._lock:
            self._totals[user_id] = float(amount)

    def set_used(self, user_id: str, amount: float) -> None:
        with self._lock:
            self._used[user_id] = float(amount)

    def get_total(self, user_id: str) -> float:
        with self._lock:
            return self._totals.get(user_id, 0.0)

    def get_used(self, user_id: str) -> float:
        with self._lock:
            return self._used.get(user_id, 0.0)

    def clear(self) -> None:
        with self._lock:
            self._totals.clear()
            self._used.clear()


class HttpQuotaStore:
    """
    Gateway quota API over HTTP.

    GET  {base}/quota/{user_id}        -> {"total": float, "used": float}
    PUT  {base}/quota/{user_id}/total  <- {"amount": float}
    PUT  {base}/quota/{user_id}/used   <- {"amount": float}
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise SyncError(f"Quota store {method} {path} failed: {exc}") from exc
        if response.status_code >= 300:
            raise SyncError(f"Quota store {method} {path} rejected: {response.status_code} {response.text[:200]}")
        return response

    def _read(self, user_id: str, field: str) -> float:
        response = self._request("GET", f"/quota/{user_id}")
        try:
            return float(response.json().get(field, 0.0))
        except (ValueError, TypeError, AttributeError) as exc:
            raise SyncError(f"Quota store returned malformed payload for {user_id}: {exc}") from exc

    def set_total(self, user_id: str, amount: float) -> None:
        self._request("PUT", f"/quota/{user_id}/total", json={"amount": float(amount)})

    def set_used(self, user_id: str, amount: float) -> None:
        self._request("PUT", f"/quota/{user_id}/used", json={"amount": float(amount)})

    def get_total(self, user_id: str) -> float:
        return self._read(user_id, "total")

    def get_used(self, user_id: str) -> float:
        return self._read(user_id, "used")

    def close(self) -> None:
        self._client.close()


class RedisQuotaStore:
    """Counters kept in a redis hash per user: {prefix}:{user_id} -> {total, used}."""

    def __init__(self, client: Redis, *, prefix: str = "quota"):
        self._redis = client
        self._prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self._prefix}:{user_id}"

    def _write(self, user_id: str, field: str, amount: float) -> None:
        try:
            self._redis.hset(self._key(user_id), field, repr(float(amount)))
        except RedisError as exc:
            raise SyncError(f"Redis write {field} for {user_id} failed: {exc}") from exc

    def _read(self, user_id: str, field: str) -> float:
        try:
            raw = self._redis.hget(self._key(user_id), field)
        except RedisError as exc:
            raise SyncError(f"Redis read {field} for {user_id} failed: {exc}") from exc
        if raw is None:
            return 0.0
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return float(raw)

    def set_total(self, user_id: str, amount: float) -> None:
        self._write(user_id, "total", amount)

    def set_used(self, user_id: str, amount: float) -> None:
        self._write(user_id, "used", amount)

    def get_total(self, user_id: str) -> float:
        return self._read(user_id, "total")

    def get_used(self, user_id: str) -> float:
        return self._read(user_id, "used")


_default_store: Optional[QuotaStore] = None
_default_lock = threading.Lock()


def build_quota_store(cfg: Optional[Settings] = None) -> QuotaStore:
    cfg = cfg or settings
    backend = (cfg.QUOTA_STORE_BACKEND or "memory").lower()
    if backend == "memory":
        return InMemoryQuotaStore()
    if backend == "http":
        if not cfg.QUOTA_STORE_URL:
            raise RuntimeError("QUOTA_STORE_URL is not configured")
        return HttpQuotaStore(
            cfg.QUOTA_STORE_URL,
            token=cfg.QUOTA_STORE_TOKEN,
            timeout=cfg.QUOTA_STORE_TIMEOUT_SECONDS,
        )
    if backend == "redis":
        return RedisQuotaStore(Redis.from_url(cfg.REDIS_URL), prefix=cfg.QUOTA_STORE_REDIS_PREFIX)
    raise RuntimeError(f"Unknown QUOTA_STORE_BACKEND: {backend}")


def get_quota_store() -> QuotaStore:
    """Process-wide store built from settings on first use."""
    global _default_store
    with _default_lock:
        if _default_store is None:
            _default_store = build_quota_store()
        return _default_store


def set_quota_store(store: Optional[QuotaStore]) -> None:
    global _default_store
    with _default_lock:
        _default_store = store
