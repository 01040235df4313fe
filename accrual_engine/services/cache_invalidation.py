"""Redis key-pattern cache invalidation.

Best effort: a redis outage is logged and reported back to the caller, which
for outbox-driven invalidation means the event is retried with the normal
outbox backoff. Deleting keys is idempotent so duplicate delivery is harmless.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import redis

from accrual_engine.config import CACHE_SETTINGS, REDIS_URL
from accrual_engine.utils import get_logger

logger = get_logger(__name__)


class CacheInvalidationError(Exception):
    pass


class CacheInvalidator:
    def __init__(self, client: Optional[redis.Redis] = None, *, redis_url: str | None = None):
        self._redis_url = redis_url or REDIS_URL
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            timeout = float(CACHE_SETTINGS.get("socket_timeout_seconds", 2.0))  # type: ignore[arg-type]
            self._client = redis.from_url(self._redis_url, socket_timeout=timeout, socket_connect_timeout=timeout)
        return self._client

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Cache backend unavailable", error=str(e))
            return False

    def invalidate_patterns(self, patterns: Iterable[str]) -> int:
        """Delete every key matching any pattern. Returns the number of keys removed."""
        if not CACHE_SETTINGS.get("enabled", True):
            return 0
        removed = 0
        try:
            for pattern in patterns:
                keys = list(self.client.scan_iter(match=pattern, count=200))
                if keys:
                    removed += int(self.client.delete(*keys) or 0)
        except (redis.RedisError, ConnectionError) as e:
            logger.warning("Cache invalidation failed", error=str(e))
            raise CacheInvalidationError(str(e)) from e
        return removed

    def invalidate_user(self, user_id: int) -> int:
        patterns = [p.format(user_id=user_id) for p in CACHE_SETTINGS["user_key_patterns"]]  # type: ignore[union-attr]
        removed = self.invalidate_patterns(patterns)
        logger.debug("User cache invalidated", user_id=user_id, keys_removed=removed)
        return removed

    def invalidate_admin(self) -> int:
        return self.invalidate_patterns(CACHE_SETTINGS["admin_key_patterns"])  # type: ignore[arg-type]

    def invalidate_for_event(self, event_type: str, user_ids: List[int]) -> Dict[str, Any]:
        removed = 0
        for uid in dict.fromkeys(u for u in user_ids if u is not None):
            removed += self.invalidate_user(uid)
        removed += self.invalidate_admin()
        return {"event_type": event_type, "users": user_ids, "keys_removed": removed}


__all__ = ["CacheInvalidator", "CacheInvalidationError"]
