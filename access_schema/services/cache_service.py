"""Redis cache service: namespaced memo with per-entry TTL and invalidation hooks."""

import json
import logging
from typing import Any, Dict, Optional

import redis

from access_schema.core.config import settings
from access_schema.core.exceptions import StorageError

logger = logging.getLogger("access_schema.cache")

GLOBAL_VERSION = "all"


class CacheService:
    """Redis-backed namespaced cache.

    Keys are laid out as ``<prefix>:<namespace>:<key>``. The cache is never
    authoritative: a miss, a disabled cache or an unreachable Redis all fall
    through to the stores, so only latency changes. A None namespace (see
    ``versioned``) is always a miss.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        prefix: Optional[str] = None,
        enabled: Optional[bool] = None,
    ):
        self._client = client
        self._url = url or settings.REDIS_URL
        self.prefix = prefix or settings.CACHE_PREFIX
        self.enabled = settings.CACHE_ENABLED if enabled is None else enabled

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._url,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def _key(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    @staticmethod
    def user_namespace(user_id: int) -> str:
        return f"user:{user_id}"

    def get(self, namespace: Optional[str], key: str) -> Optional[str]:
        """Get a cached raw value; any failure is a miss."""
        if not self.enabled or namespace is None:
            return None
        try:
            return self.client.get(self._key(namespace, key))
        except redis.RedisError:
            logger.warning("Cache read failed for %s/%s", namespace, key)
            return None

    def set(self, namespace: Optional[str], key: str, value: str, ttl_seconds: int = 600) -> None:
        """Set a cached value with TTL."""
        if not self.enabled or namespace is None or ttl_seconds <= 0:
            return
        try:
            self.client.setex(self._key(namespace, key), int(ttl_seconds), value)
        except redis.RedisError:
            logger.warning("Cache write failed for %s/%s", namespace, key)

    def get_json(self, namespace: Optional[str], key: str) -> Optional[Any]:
        """Get and parse a JSON cached value."""
        raw = self.get(namespace, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def set_json(self, namespace: Optional[str], key: str, value: Any, ttl_seconds: int = 600) -> None:
        """Serialize and cache a JSON value."""
        self.set(namespace, key, json.dumps(value, default=str), ttl_seconds)

    def delete(self, namespace: str, key: str) -> None:
        """Delete a cached key."""
        if not self.enabled:
            return
        try:
            self.client.delete(self._key(namespace, key))
        except redis.RedisError:
            logger.error("Cache invalidation failed for %s/%s", namespace, key)

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def _version_key(self, namespace: str) -> str:
        # Outside "<prefix>:*" so pattern deletes and stats never touch it
        return f"{self.prefix}.version:{namespace}"

    def versioned(self, namespace: str) -> Optional[str]:
        """``namespace`` tagged with its own version and the global one.

        Take the tag before loading from the stores and use it for both the
        lookup and the write: a bump in between leaves the write under a tag
        nobody reads any more. Returns None, which bypasses the cache, when
        the cache is disabled or the versions cannot be read.
        """
        if not self.enabled:
            return None
        try:
            local, shared = self.client.mget(
                self._version_key(namespace), self._version_key(GLOBAL_VERSION)
            )
        except redis.RedisError:
            logger.warning("Cache version read failed for %s", namespace)
            return None
        return f"{namespace}:v{shared or 0}.{local or 0}"

    def user_scope(self, user_id: int) -> Optional[str]:
        return self.versioned(self.user_namespace(user_id))

    def bump(self, namespace: Optional[str] = None) -> None:
        """Advance the version of ``namespace``, or of every namespace when None.

        Raises:
            StorageError: Redis did not record the new version.
        """
        if not self.enabled:
            return
        target = namespace or GLOBAL_VERSION
        try:
            self.client.incr(self._version_key(target))
        except redis.RedisError as e:
            logger.error("Cache version bump failed for %s", target)
            raise StorageError(f"Cache invalidation failed for {target}: {e}") from e

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern (relative to the prefix).

        Reclaims memory only; readers are cut off by ``bump``.
        """
        if not self.enabled:
            return 0
        try:
            keys = list(self.client.scan_iter(match=f"{self.prefix}:{pattern}"))
            if keys:
                return self.client.delete(*keys)
        except redis.RedisError:
            logger.error("Cache invalidation failed for pattern %s", pattern)
        return 0

    def invalidate_namespace(self, namespace: str, strict: bool = True) -> int:
        """Bump ``namespace`` and drop its keys.

        With ``strict`` a failed bump raises ``StorageError``; otherwise it is
        logged and 0 is returned.
        """
        try:
            self.bump(namespace)
        except StorageError:
            if strict:
                raise
            return 0
        return self.invalidate_pattern(f"{namespace}:*")

    def invalidate_user(self, user_id: int, strict: bool = True) -> int:
        """Drop every cached role list and decision for one principal."""
        return self.invalidate_namespace(self.user_namespace(user_id), strict)

    def flush(self, strict: bool = True) -> int:
        """Drop every key under the prefix, across all namespaces."""
        try:
            self.bump()
        except StorageError:
            if strict:
                raise
            return 0
        return self.invalidate_pattern("*")

    def stats(self) -> Dict[str, Any]:
        """Key counts per top-level namespace. Degrades to ``{}`` on failure."""
        if not self.enabled:
            return {}
        try:
            counts: Dict[str, int] = {}
            for key in self.client.scan_iter(match=f"{self.prefix}:*"):
                namespace = key[len(self.prefix) + 1:].split(":", 1)[0]
                counts[namespace] = counts.get(namespace, 0) + 1
            return {"total_keys": sum(counts.values()), "namespaces": counts}
        except redis.RedisError:
            return {}

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
