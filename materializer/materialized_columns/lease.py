import uuid
import threading
from types import TracebackType
from typing import Optional

import structlog
from django.conf import settings
from django.core.cache import cache, caches
from django_redis import get_redis_connection
from django_redis.cache import RedisCache

from materializer.exceptions import LockContention

logger = structlog.get_logger(__name__)

LEASE_KEY = "materialized_columns:cycle:lease"
ABORT_KEY = "materialized_columns:cycle:abort"

# Both scripts run atomically on the Redis server, so the lease can't change hands between the check and the write.
REFRESH_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# guards check-then-write for cache backends that only live in this process (local memory in tests)
_local_lock = threading.Lock()


def _redis_backend() -> Optional[RedisCache]:
    backend = caches["default"]
    return backend if isinstance(backend, RedisCache) else None


def _run_if_owner(backend: RedisCache, script: str, key: str, token: str, *args) -> bool:
    redis_client = get_redis_connection("default")
    return bool(redis_client.eval(script, 1, backend.client.make_key(key), backend.client.encode(token), *args))


def compare_and_touch(key: str, token: str, ttl: int) -> bool:
    """Extends the expiry of ``key`` only if it still holds ``token``."""
    if (backend := _redis_backend()) is not None:
        return _run_if_owner(backend, REFRESH_SCRIPT, key, token, ttl)
    with _local_lock:
        return cache.get(key) == token and cache.touch(key, timeout=ttl)


def compare_and_delete(key: str, token: str) -> bool:
    """Deletes ``key`` only if it still holds ``token``."""
    if (backend := _redis_backend()) is not None:
        return _run_if_owner(backend, RELEASE_SCRIPT, key, token)
    with _local_lock:
        return cache.get(key) == token and cache.delete(key)


class CycleLease:
    """
    Makes sure that only one materialization cycle runs at a time.

    The lease expires after ``ttl`` seconds unless refreshed, so a crashed process can't block future cycles forever.
    Only the holder can refresh or release it.
    """

    def __init__(self, key: str = LEASE_KEY, ttl: Optional[int] = None) -> None:
        self.key = key
        self.ttl = ttl if ttl is not None else settings.MATERIALIZE_COLUMNS_LEASE_TTL
        self.token = uuid.uuid4().hex
        self.held = False

    def acquire(self) -> bool:
        with _local_lock:
            self.held = cache.add(self.key, self.token, timeout=self.ttl)
        return self.held

    def refresh(self) -> bool:
        """Extends the lease. Returns False if it was lost (expired, or taken over by another cycle.)"""
        if not self.held:
            return False
        if not compare_and_touch(self.key, self.token, self.ttl):
            logger.warning("Lost the materialization cycle lease.", key=self.key)
            self.held = False
            return False
        return True

    def release(self) -> None:
        if self.held:
            compare_and_delete(self.key, self.token)
        self.held = False

    def __enter__(self) -> "CycleLease":
        if not self.acquire():
            raise LockContention(f"lease {self.key!r} is held by another cycle")
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.release()


def request_abort(ttl: Optional[int] = None) -> None:
    """Asks the running cycle to stop starting new backfill chunks."""
    cache.set(ABORT_KEY, True, timeout=ttl if ttl is not None else settings.MATERIALIZE_COLUMNS_LEASE_TTL)


def abort_requested() -> bool:
    return bool(cache.get(ABORT_KEY))


def clear_abort() -> None:
    cache.delete(ABORT_KEY)
