# rewards_engine/cache/genealogy_cache.py
"""
Aggregate cache for genealogy and leg-volume queries.

Keys are `<namespace>:<rootId>:<kind>:...` so every entry of a subtree root
can be dropped with one prefix delete. Values are JSON with Decimal and
datetime preserved, identical across backends.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
import json
import logging
import threading
import time

import redis

import config

logger = logging.getLogger(__name__)


def _encodeValue(value):
    if isinstance(value, Decimal):
        return {"__decimal__": str(value)}
    if isinstance(value, datetime):
        return {"__datetime__": value.isoformat()}
    raise TypeError(f"Object of type {value.__class__.__name__} is not cacheable")


def _decodeObject(obj: dict):
    if "__decimal__" in obj and len(obj) == 1:
        return Decimal(obj["__decimal__"])
    if "__datetime__" in obj and len(obj) == 1:
        return datetime.fromisoformat(obj["__datetime__"])
    return obj


def dumps(value: Any) -> str:
    return json.dumps(value, default=_encodeValue, sort_keys=True)


def loads(raw: str) -> Any:
    return json.loads(raw, object_hook=_decodeObject)


class CacheBackendError(Exception):
    """Backend unreachable or misbehaving."""


class InMemoryCacheBackend:
    """Process-local backend with per-entry expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expiresAt, raw = entry
            if expiresAt <= self._clock():
                del self._entries[key]
                return None
            return raw

    def set(self, key: str, raw: str, ttl: int):
        with self._lock:
            self._entries[key] = (self._clock() + ttl, raw)

    def deletePrefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for k in keys:
                del self._entries[k]
            return len(keys)

    def clear(self, prefix: str) -> int:
        return self.deletePrefix(prefix)


class RedisCacheBackend:
    """redis-py backend; all client errors surface as CacheBackendError."""

    def __init__(self, client: redis.Redis = None, url: str = None):
        self.client = client or redis.Redis.from_url(url or config.REDIS_URL)

    def get(self, key: str) -> Optional[str]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e
        if raw is None:
            return None
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    def set(self, key: str, raw: str, ttl: int):
        try:
            self.client.setex(key, ttl, raw)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def deletePrefix(self, prefix: str) -> int:
        try:
            keys = list(self.client.scan_iter(match=f"{prefix}*"))
            if keys:
                self.client.delete(*keys)
            return len(keys)
        except redis.RedisError as e:
            raise CacheBackendError(str(e)) from e

    def clear(self, prefix: str) -> int:
        return self.deletePrefix(prefix)


class NullCacheBackend:
    """Stores nothing; every lookup is a miss."""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, raw: str, ttl: int):
        return None

    def deletePrefix(self, prefix: str) -> int:
        return 0

    def clear(self, prefix: str) -> int:
        return 0


class GenealogyCache:
    """get-or-compute with prefix invalidation by subtree root."""

    def __init__(self, backend=None, ttl: int = None, namespace: str = None):
        self.backend = backend if backend is not None else InMemoryCacheBackend()
        self.ttl = ttl if ttl is not None else config.GENEALOGY_CACHE_TTL
        self.namespace = namespace or config.GENEALOGY_CACHE_NAMESPACE
        # Set when an invalidation could not reach the backend
        self._bypass = False

    @classmethod
    def fromConfig(cls) -> "GenealogyCache":
        if config.REDIS_URL:
            return cls(RedisCacheBackend(url=config.REDIS_URL))
        return cls(InMemoryCacheBackend())

    def rootPrefix(self, rootId: int) -> str:
        return f"{self.namespace}:{rootId}:"

    def makeKey(self, rootId: int, kind: str, *parts) -> str:
        suffix = ":".join(str(p) for p in parts)
        return f"{self.rootPrefix(rootId)}{kind}:{suffix}" if suffix else f"{self.rootPrefix(rootId)}{kind}"

    def getOrCompute(self, key: str, factory: Callable[[], Any], ttl: int = None) -> Any:
        """Return the cached value or compute, store and return it."""
        if self._bypass and not self._recover():
            return factory()

        try:
            raw = self.backend.get(key)
        except CacheBackendError as e:
            logger.warning(f"Cache read failed for {key}, computing directly: {e}")
            return factory()

        if raw is not None:
            logger.debug(f"Cache hit {key}")
            return loads(raw)

        value = factory()
        try:
            self.backend.set(key, dumps(value), ttl or self.ttl)
        except CacheBackendError as e:
            logger.warning(f"Cache write failed for {key}: {e}")
        return value

    def invalidateRoots(self, rootIds: Iterable[int]) -> int:
        """Drop every entry cached for the given subtree roots."""
        removed = 0
        try:
            for rootId in set(rootIds):
                removed += self.backend.deletePrefix(self.rootPrefix(rootId))
        except CacheBackendError as e:
            logger.warning(f"Cache invalidation failed, bypassing cache until flushed: {e}")
            self._bypass = True
            return removed
        logger.debug(f"Invalidated {removed} cache entries")
        return removed

    def invalidateAll(self) -> bool:
        try:
            self.backend.clear(f"{self.namespace}:")
        except CacheBackendError as e:
            logger.warning(f"Cache flush failed: {e}")
            self._bypass = True
            return False
        self._bypass = False
        return True

    def _recover(self) -> bool:
        """Flush the namespace so stale entries from before an outage are gone."""
        return self.invalidateAll()
