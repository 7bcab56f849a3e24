"""Short-lived caching for segment previews, backed by Redis when reachable."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import redis
from loguru import logger

from alo.config import settings


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def build_cache_key(**components: Any) -> str:
    """Return a stable hash for the provided components."""

    payload = json.dumps(components, sort_keys=True, default=_json_default)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


@dataclass
class _CacheEntry:
    expires_at: float | None
    payload: str


class CacheBackend:
    """Namespaced JSON cache.

    Writes go to Redis and to a process-local dictionary; reads prefer Redis.
    The first Redis error disables it for the lifetime of the backend so a
    missing cache server degrades to per-process caching instead of failing
    requests.
    """

    def __init__(self, redis_url: str | None = None) -> None:
        self._lock = threading.Lock()
        self._local: dict[str, _CacheEntry] = {}
        self._redis: redis.Redis | None = None
        if redis_url:
            self._redis = redis.Redis.from_url(redis_url, decode_responses=True)

    @staticmethod
    def _compose(namespace: str, key: str) -> str:
        return f"{namespace}:{key}"

    def _with_redis(self, operation: Callable[[redis.Redis], Any]) -> Any:
        if self._redis is None:
            return None
        try:
            return operation(self._redis)
        except redis.RedisError as exc:
            logger.warning("Redis cache unavailable, using local cache", error=str(exc))
            self._redis = None
            return None

    def get(self, namespace: str, key: str) -> Any | None:
        namespaced = self._compose(namespace, key)
        value = self._with_redis(lambda client: client.get(namespaced))
        if value is not None:
            return json.loads(value)
        with self._lock:
            entry = self._local.get(namespaced)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at < time.time():
                del self._local[namespaced]
                return None
            return json.loads(entry.payload)

    def set(self, namespace: str, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        namespaced = self._compose(namespace, key)
        payload = json.dumps(value, default=_json_default)
        self._with_redis(lambda client: client.set(namespaced, payload, ex=ttl_seconds))
        with self._lock:
            self._local[namespaced] = _CacheEntry(
                expires_at=time.time() + ttl_seconds, payload=payload
            )

    def invalidate(self, namespace: str, *, key: str | None = None) -> None:
        """Drop one key, or the whole namespace when ``key`` is omitted."""

        if key is not None:
            namespaced = self._compose(namespace, key)
            self._with_redis(lambda client: client.delete(namespaced))
            with self._lock:
                self._local.pop(namespaced, None)
            return

        prefix = self._compose(namespace, "")

        def _drop_namespace(client: redis.Redis) -> None:
            for cache_key in client.scan_iter(f"{prefix}*"):
                client.delete(cache_key)

        self._with_redis(_drop_namespace)
        with self._lock:
            for cache_key in [item for item in self._local if item.startswith(prefix)]:
                del self._local[cache_key]

    def clear(self) -> None:
        """Reset the in-memory cache for test environments."""

        with self._lock:
            self._local.clear()


cache_backend = CacheBackend(str(settings.REDIS_URL) if settings.CACHE_USE_REDIS else None)


__all__ = ["cache_backend", "CacheBackend", "build_cache_key"]
