# server/services/kv_store.py
# Key-value stores behind the gateway: instance configs, rate-limit counters, analytics.
# Notes:
# - Production binds all three namespaces to Redis; dev/tests use the in-memory store.
# - Values are strings (JSON documents); every write may carry a TTL in seconds.
# - Transport failures surface as StoreUnavailable so callers can fail open.

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

try:
    from ..errors import StoreUnavailable  # type: ignore
except ImportError:  # top-level mode: gunicorn --chdir server app:app
    from errors import StoreUnavailable  # type: ignore


class KeyValueStore:
    """Minimal contract shared by the three namespaces. No compare-and-swap."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def ttl(self, key: str) -> Optional[int]:
        """Seconds until `key` expires, or None if absent / no expiry."""
        raise NotImplementedError

    # ---- JSON helpers ----------------------------------------------------------

    def get_json(self, key: str) -> Any:
        raw = self.get(key)
        if raw is None:
            return None
        return json.loads(raw)  # ValueError on malformed documents

    def put_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self.put(key, json.dumps(value, separators=(",", ":")), ttl_seconds)


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store with lazy TTL expiry. Clock is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()  # gthread workers share the dict

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0, int(entry[1] - self._clock()))

    def keys(self, prefix: str = "") -> list:
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))


class RedisKeyValueStore(KeyValueStore):
    """Thin redis-py wrapper; one client may back several namespaces."""

    def __init__(self, client: Redis, namespace: str = "") -> None:
        self.client = client
        self._prefix = f"{namespace}:" if namespace else ""

    @classmethod
    def from_url(cls, url: str, namespace: str = "", *, socket_timeout: float = 5.0) -> "RedisKeyValueStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, namespace)

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._k(key))
        except RedisError as exc:
            raise StoreUnavailable() from exc

    def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            self.client.set(self._k(key), value, ex=ttl_seconds or None)
        except RedisError as exc:
            raise StoreUnavailable() from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(self._k(key))
        except RedisError as exc:
            raise StoreUnavailable() from exc

    def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = self.client.ttl(self._k(key))
        except RedisError as exc:
            raise StoreUnavailable() from exc
        return remaining if remaining is not None and remaining >= 0 else None  # -1/-2: no expiry / absent


@dataclass
class Platform:
    """The external bindings one gateway process talks to."""

    config_store: KeyValueStore
    counter_store: KeyValueStore
    analytics_store: KeyValueStore

    @classmethod
    def in_memory(cls, clock: Callable[[], float] = time.time) -> "Platform":
        return cls(
            config_store=MemoryKeyValueStore(clock),
            counter_store=MemoryKeyValueStore(clock),
            analytics_store=MemoryKeyValueStore(clock),
        )

    @classmethod
    def from_url(cls, url: str) -> "Platform":
        # Key prefixes (instance:, ratelimit:, analytics:) already keep namespaces apart.
        store = RedisKeyValueStore.from_url(url)
        return cls(config_store=store, counter_store=store, analytics_store=store)
