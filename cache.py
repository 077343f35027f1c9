from __future__ import annotations

import fnmatch
import json
import logging
import threading
import time
from functools import lru_cache
from typing import Callable, Iterable, Optional, Protocol, TypeVar

import redis
from redis.exceptions import RedisError

from config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

ANALYTICS = "analytics"
TRANSACTIONS = "transactions"

# Index sets outlive every entry TTL; stale members are harmless.
INDEX_TTL_SECS = 24 * 3600


class CacheUnavailable(RuntimeError):
    pass


# Stores wrap client errors in CacheUnavailable; bare socket errors are
# treated the same way.
STORE_ERRORS = (CacheUnavailable, OSError)


def build_key(
    namespace: str, user_id: int, operation: str, **params: object
) -> str:
    parts = [f"{namespace}:user:{user_id}:{operation}"]
    for name in sorted(params):
        value = params[name]
        if value is None:
            value = "-"
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        elif hasattr(value, "value"):
            value = value.value
        parts.append(f"{name}={value}")
    return ":".join(parts)


def owner_tag(namespace: str, user_id: int) -> str:
    return f"{namespace}:user:{user_id}"


def owner_pattern(namespace: str, user_id: int) -> str:
    return f"{owner_tag(namespace, user_id)}:*"


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int, tags: Iterable[str]) -> None: ...

    def delete_matching(self, pattern: str) -> int: ...

    def delete_tag(self, tag: str) -> int: ...

    def ping(self) -> None: ...

    def sweep(self) -> int: ...


class MemoryCacheStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, str]] = {}
        self._tags: dict[str, set[str]] = {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int, tags: Iterable[str]) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)

    def delete_matching(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def delete_tag(self, tag: str) -> int:
        with self._lock:
            keys = self._tags.pop(tag, set())
            removed = 0
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    def ping(self) -> None:
        return None

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
            for key in expired:
                del self._entries[key]
            for tag in list(self._tags):
                live = {k for k in self._tags[tag] if k in self._entries}
                if live:
                    self._tags[tag] = live
                else:
                    del self._tags[tag]
            return len(expired)


class RedisCacheStore:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, *, timeout: float) -> "RedisCacheStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client)

    @staticmethod
    def _index_key(tag: str) -> str:
        return f"cache-index:{tag}"

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except RedisError as exc:
            raise CacheUnavailable(f"Redis GET failed for {key}") from exc

    def set(self, key: str, value: str, ttl_seconds: int, tags: Iterable[str]) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.setex(key, ttl_seconds, value)
            for tag in tags:
                index = self._index_key(tag)
                pipe.sadd(index, key)
                pipe.expire(index, max(ttl_seconds, INDEX_TTL_SECS))
            pipe.execute()
        except RedisError as exc:
            raise CacheUnavailable(f"Redis SET failed for {key}") from exc

    def delete_matching(self, pattern: str) -> int:
        try:
            keys = list(self.client.scan_iter(match=pattern, count=500))
            if not keys:
                return 0
            return int(self.client.delete(*keys))
        except RedisError as exc:
            raise CacheUnavailable(f"Redis delete failed for {pattern}") from exc

    def delete_tag(self, tag: str) -> int:
        index = self._index_key(tag)
        try:
            keys = list(self.client.smembers(index))
            removed = int(self.client.delete(*keys)) if keys else 0
            self.client.delete(index)
            return removed
        except RedisError as exc:
            raise CacheUnavailable(f"Redis tag delete failed for {tag}") from exc

    def ping(self) -> None:
        try:
            self.client.ping()
        except RedisError as exc:
            raise CacheUnavailable("Redis PING failed") from exc

    def sweep(self) -> int:
        # Redis expires entries itself.
        return 0


class CacheFacade:
    """Best-effort read-through cache.

    Every store failure is logged and answered by computing the value directly.
    After a failure reads and writes skip the store for ``retry_after`` seconds
    so a dead backend costs at most one timeout per window. Invalidation is
    always attempted so a write is never followed by a stale hit.
    """

    def __init__(
        self,
        store: Optional[CacheStore],
        *,
        retry_after: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.retry_after = retry_after
        self._clock = clock
        self._skip_until = 0.0

    def _usable(self) -> bool:
        return self.store is not None and self._clock() >= self._skip_until

    def _mark_failed(self, action: str, exc: Exception) -> None:
        self._skip_until = self._clock() + self.retry_after
        logger.warning(
            f"cache_unavailable: action={action} retry_in={self.retry_after}s error={exc}"
        )

    def get_or_compute(
        self,
        key: str,
        ttl_seconds: int,
        compute: Callable[[], T],
        *,
        tags: Iterable[str] = (),
    ) -> T:
        if not self._usable():
            return compute()

        try:
            raw = self.store.get(key)
        except STORE_ERRORS as exc:
            self._mark_failed("get", exc)
            return compute()

        if raw is not None:
            try:
                return json.loads(raw)
            except (TypeError, ValueError) as exc:
                logger.warning(f"cache_malformed: key={key} error={exc}")
                return compute()

        value = compute()
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning(f"cache_unserializable: key={key} error={exc}")
            return value
        try:
            self.store.set(key, payload, ttl_seconds, tuple(tags))
        except STORE_ERRORS as exc:
            self._mark_failed("set", exc)
        return value

    def invalidate(self, pattern: str) -> int:
        if self.store is None:
            return 0
        try:
            removed = self.store.delete_matching(pattern)
        except STORE_ERRORS as exc:
            self._mark_failed("invalidate", exc)
            return 0
        logger.info(f"cache_invalidate: pattern={pattern} removed={removed}")
        return removed

    def invalidate_tags(self, *tags: str) -> int:
        if self.store is None:
            return 0
        removed = 0
        for tag in tags:
            try:
                removed += self.store.delete_tag(tag)
            except STORE_ERRORS as exc:
                self._mark_failed("invalidate_tag", exc)
                return removed
        logger.info(f"cache_invalidate: tags={','.join(tags)} removed={removed}")
        return removed

    def invalidate_user(self, user_id: int) -> int:
        return self.invalidate_tags(
            owner_tag(ANALYTICS, user_id), owner_tag(TRANSACTIONS, user_id)
        )

    def healthy(self) -> bool:
        if self.store is None:
            return False
        try:
            self.store.ping()
        except STORE_ERRORS as exc:
            self._mark_failed("ping", exc)
            return False
        self._skip_until = 0.0
        return True

    def sweep(self) -> int:
        if not self._usable():
            return 0
        try:
            return self.store.sweep()
        except STORE_ERRORS as exc:
            self._mark_failed("sweep", exc)
            return 0


@lru_cache(maxsize=1)
def get_cache() -> CacheFacade:
    settings = get_settings()
    if settings.redis_url:
        store: CacheStore = RedisCacheStore.from_url(
            settings.redis_url, timeout=settings.cache_timeout_secs
        )
        logger.info("cache_backend: redis")
    else:
        store = MemoryCacheStore()
        logger.info("cache_backend: memory")
    return CacheFacade(store, retry_after=settings.cache_retry_secs)
