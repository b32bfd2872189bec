"""Namespaced in-process memoization cache with TTL and explicit invalidation."""

from __future__ import annotations

import logging
import threading
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Tuple

logger = logging.getLogger("recordkit.cache")

MISSING = object()

# (value, expires_at); expires_at None means "until deleted"
Entry = Tuple[Any, float | None]


class SystemClock:
    def now(self) -> float:
        return time.time()

    def today(self) -> date:
        return datetime.fromtimestamp(self.now()).date()


class MemoCache:
    """Process-wide memo store.

    Entries are partitioned by namespace. Nothing here knows what a cached
    value depends on: callers must ``delete`` the keys they invalidate.
    """

    def __init__(self, clock: SystemClock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Entry]] = {}

    def _expires_at(self, ttl_seconds: float | None) -> float | None:
        if not ttl_seconds:
            return None
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        return self._clock.now() + ttl_seconds

    def _live(self, namespace: str, key: str) -> Entry | None:
        # caller holds the lock
        bucket = self._entries.get(namespace)
        if not bucket:
            return None
        entry = bucket.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and self._clock.now() >= expires_at:
            del bucket[key]
            if not bucket:
                del self._entries[namespace]
            return None
        return entry

    def get(self, namespace: str, key: str, default: Any = MISSING) -> Any:
        with self._lock:
            entry = self._live(namespace, key)
        if entry is None:
            return default
        return entry[0]

    def exists(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._live(namespace, key) is not None

    def set(self, namespace: str, key: str, value: Any, ttl_seconds: float | None = 0) -> None:
        expires_at = self._expires_at(ttl_seconds)
        with self._lock:
            self._entries.setdefault(namespace, {})[key] = (value, expires_at)

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            bucket = self._entries.get(namespace)
            if not bucket or key not in bucket:
                return False
            del bucket[key]
            if not bucket:
                del self._entries[namespace]
        logger.debug("cache_delete namespace=%s key=%s", namespace, key)
        return True

    def remember(self, namespace: str, key: str, ttl_seconds: float | None, producer: Callable[[], Any]) -> Any:
        with self._lock:
            entry = self._live(namespace, key)
        if entry is not None:
            logger.debug("cache_hit=%s key=%s", namespace, key)
            return entry[0]
        # producer runs unlocked; concurrent misses may both produce, last write wins
        value = producer()
        self.set(namespace, key, value, ttl_seconds)
        logger.info("cache_miss=%s key=%s", namespace, key)
        return value

    def get_many(self, namespace: str, keys: Iterable[str], default: Any = MISSING) -> dict:
        return {key: self.get(namespace, key, default) for key in keys}

    def set_many(self, namespace: str, items: dict, ttl_seconds: float | None = 0) -> None:
        for key, value in items.items():
            self.set(namespace, key, value, ttl_seconds)

    def keys(self, namespace: str) -> List[str]:
        with self._lock:
            bucket = self._entries.get(namespace) or {}
            return [key for key in list(bucket.keys()) if self._live(namespace, key) is not None]

    def stats(self, namespace: str) -> dict:
        keys = self.keys(namespace)
        return {"count": len(keys), "keys": keys}

    def clear_namespace(self, namespace: str) -> int:
        with self._lock:
            bucket = self._entries.pop(namespace, None) or {}
        if bucket:
            logger.info("cache_clear namespace=%s count=%s", namespace, len(bucket))
        return len(bucket)

    def flush_expired(self, namespace: str | None = None) -> int:
        removed = 0
        with self._lock:
            namespaces = [namespace] if namespace is not None else list(self._entries.keys())
            for ns in namespaces:
                for key in list((self._entries.get(ns) or {}).keys()):
                    if self._live(ns, key) is None:
                        removed += 1
        return removed


shared_cache = MemoCache()
