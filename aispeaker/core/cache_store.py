"""
Shared per-video artifact cache.

One Redis hash per video; `merge` writes only the supplied fields (HSET), so
concurrent stages enriching different fields of the same video never clobber
each other. An unreachable store raises CacheUnavailableError; callers must
never read that as a miss, or expensive work would silently repeat.
"""

import logging
import threading

import redis

from aispeaker.core.constants import CACHE_KEY_PREFIX
from aispeaker.core.error_codes import CacheUnavailableError
from aispeaker.core.models import CacheEntry

logger = logging.getLogger(__name__)


class CacheStore:
    """Interface: get(video_id) → CacheEntry | None; merge(video_id, partial)."""

    def get(self, video_id: str) -> CacheEntry | None:
        raise NotImplementedError

    def merge(self, video_id: str, partial: CacheEntry) -> CacheEntry:
        """Merge the set fields of `partial`; return the canonical entry."""
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def get_voice_id(self, video_id: str) -> str | None:
        entry = self.get(video_id)
        return entry.voice_id if entry else None


class MemoryCacheStore(CacheStore):
    """Process-local store for single-process deployments and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: dict[str, dict] = {}

    def get(self, video_id: str) -> CacheEntry | None:
        with self._lock:
            fields = self._data.get(video_id)
            return CacheEntry.from_fields(fields) if fields else None

    def merge(self, video_id: str, partial: CacheEntry) -> CacheEntry:
        with self._lock:
            fields = self._data.setdefault(video_id, {})
            fields.update(partial.as_fields())
            return CacheEntry.from_fields(fields)

    def ping(self) -> bool:
        return True


class RedisCacheStore(CacheStore):
    """Redis-backed store shared by every API process and worker."""

    def __init__(self, redis_url: str, ttl_sec: int = 0,
                 client: redis.Redis | None = None, socket_timeout: float = 5.0):
        self.ttl_sec = ttl_sec
        self.client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(video_id: str) -> str:
        return f"{CACHE_KEY_PREFIX}{video_id}"

    def get(self, video_id: str) -> CacheEntry | None:
        try:
            fields = self.client.hgetall(self._key(video_id))
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache read failed for {video_id}: {e}") from e
        return CacheEntry.from_fields(fields) if fields else None

    def merge(self, video_id: str, partial: CacheEntry) -> CacheEntry:
        fields = partial.as_fields()
        key = self._key(video_id)
        try:
            if fields:
                pipe = self.client.pipeline(transaction=True)
                pipe.hset(key, mapping=fields)
                if self.ttl_sec:
                    pipe.expire(key, self.ttl_sec)
                pipe.execute()
            merged = self.client.hgetall(key)
        except redis.RedisError as e:
            raise CacheUnavailableError(f"Cache write failed for {video_id}: {e}") from e
        logger.info("CACHE WRITE: %s fields=%s", video_id, sorted(fields))
        return CacheEntry.from_fields(merged)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning("Cache ping failed: %s", e)
            return False


def create_cache_store(config: dict) -> CacheStore:
    """Redis when a URL is configured, otherwise the in-process store."""
    redis_url = config.get('redis_url') or ''
    if redis_url:
        logger.info("Using Redis cache store")
        return RedisCacheStore(redis_url, ttl_sec=config.get('cache_ttl_sec', 0))
    logger.warning("REDIS_URL not set, using process-local cache store")
    return MemoryCacheStore()
