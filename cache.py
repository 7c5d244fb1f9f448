"""
Key/value cache used for order listings, product queries and carts.

MemoryCache is process local; RedisCache is picked when REDIS_URL is set.
Both store JSON-compatible documents (ObjectId/datetime survive through
bson.json_util on the Redis side). `delete_pattern` takes a glob such as
`products:*` and clears every matching key, whichever process wrote it.
"""

import copy
import fnmatch
import threading
import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

import redis
import structlog
from bson import json_util

logger = structlog.get_logger(__name__)


class MemoryCache:
    def __init__(self, default_ttl: int = 300, max_entries: int = 1024):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._store: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at < time.monotonic():
                self._store.pop(key, None)
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        now = time.monotonic()
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = (now + ttl, copy.deepcopy(value))
            self._sweep(now)
            # oldest writes go first
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                del self._store[key]
        return len(keys)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def _sweep(self, now: float) -> None:
        expired = [k for k, (expires_at, _) in self._store.items() if expires_at < now]
        for key in expired:
            del self._store[key]


class RedisCache:
    def __init__(self, url: str, default_ttl: int = 300):
        self.default_ttl = default_ttl
        self.client = redis.Redis.from_url(url)

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(key)
        if raw is None:
            return None
        return json_util.loads(raw)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self.client.set(key, json_util.dumps(value), ex=ttl)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def delete_pattern(self, pattern: str) -> int:
        keys = list(self.client.scan_iter(match=pattern, count=500))
        if keys:
            self.client.delete(*keys)
        return len(keys)

    def __contains__(self, key: str) -> bool:
        return bool(self.client.exists(key))


def build_cache(redis_url: Optional[str], default_ttl: int = 300):
    if redis_url:
        logger.info("cache_backend", backend="redis")
        return RedisCache(redis_url, default_ttl)
    logger.info("cache_backend", backend="memory")
    return MemoryCache(default_ttl)
