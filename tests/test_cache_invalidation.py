from unittest.mock import MagicMock

import pytest
import redis

from accrual_engine import config
from accrual_engine.services.cache_invalidation import CacheInvalidationError, CacheInvalidator


def test_invalidate_user_scans_every_pattern(cache, redis_client):
    redis_client.scan_iter.side_effect = lambda match, count: [f"{match[:-1]}summary"]
    redis_client.delete.return_value = 1

    removed = cache.invalidate_user(42)
    patterns = [c.kwargs["match"] for c in redis_client.scan_iter.call_args_list]
    assert patterns == [p.format(user_id=42) for p in config.CACHE_SETTINGS["user_key_patterns"]]
    assert removed == len(patterns)
    redis_client.delete.assert_any_call("user:42:summary")


def test_no_delete_when_nothing_matches(cache, redis_client):
    assert cache.invalidate_patterns(["user:1:*"]) == 0
    redis_client.delete.assert_not_called()


def test_invalidate_for_event_dedupes_users_and_hits_admin(cache, redis_client):
    result = cache.invalidate_for_event("COMMISSION_UNLOCKED", [5, 5, None, 6])
    matches = [c.kwargs["match"] for c in redis_client.scan_iter.call_args_list]
    assert matches.count("user:5:*") == 1
    assert "user:6:*" in matches
    assert "admin:dashboard:*" in matches
    assert "admin:stats:*" in matches
    assert result["event_type"] == "COMMISSION_UNLOCKED"
    assert result["keys_removed"] == 0


def test_redis_error_raises_invalidation_error(cache, redis_client):
    redis_client.scan_iter.side_effect = redis.TimeoutError("timed out")
    with pytest.raises(CacheInvalidationError):
        cache.invalidate_admin()


def test_disabled_cache_is_a_no_op(cache, redis_client, monkeypatch):
    monkeypatch.setitem(config.CACHE_SETTINGS, "enabled", False)
    assert cache.invalidate_user(1) == 0
    redis_client.scan_iter.assert_not_called()


def test_health_check(redis_client):
    assert CacheInvalidator(client=redis_client).health_check() is True

    broken = MagicMock()
    broken.ping.side_effect = redis.ConnectionError("refused")
    assert CacheInvalidator(client=broken).health_check() is False
