"""Unit tests for taskdash.engine.cache — fingerprints, ResultCache, RedisResultCache."""

import json
import threading
from unittest.mock import MagicMock, patch

import pytest

from taskdash.analytics.aggregator import aggregate
from taskdash.analytics.models import AggregateResult, Task
from taskdash.engine.cache import (
    CacheEntry,
    Fingerprint,
    RedisResultCache,
    ResultCache,
    build_fingerprint,
    create_result_cache,
)
from taskdash.engine.config import build_config


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def fp(tasks, **kwargs):
    kwargs.setdefault("month_id", "2026-03")
    return build_fingerprint("month", tasks, **kwargs)


RESULT = AggregateResult(total_tasks=1, total_hours=2.0)


class TestFingerprint:
    def setup_method(self):
        self.tasks = [
            {"id": "a", "ownerId": "u1", "hoursSpent": 2, "updatedAt": 100},
            {"id": "b", "ownerId": "u2", "hoursSpent": 3, "updatedAt": 200},
        ]

    def test_deterministic(self):
        assert fp(self.tasks).key == fp(self.tasks).key

    def test_order_independent(self):
        assert fp(self.tasks).key == fp(list(reversed(self.tasks))).key

    def test_hours_edit_changes_key(self):
        edited = [dict(self.tasks[0], hoursSpent=2.5), self.tasks[1]]
        assert fp(edited).key != fp(self.tasks).key

    def test_insert_and_delete_change_key(self):
        assert fp(self.tasks[:1]).key != fp(self.tasks).key
        extra = self.tasks + [{"id": "c", "ownerId": "u1"}]
        assert fp(extra).key != fp(self.tasks).key

    def test_scope_and_type_change_key(self):
        base = fp(self.tasks).key
        assert fp(self.tasks, user_id="u1").key != base
        assert fp(self.tasks, reporter_id="r1").key != base
        assert fp(self.tasks, month_id="2026-04").key != base
        assert build_fingerprint("week-1", self.tasks, month_id="2026-03").key != base

    def test_summary_fields(self):
        fingerprint = fp(self.tasks)
        assert fingerprint.task_count == 2
        assert fingerprint.last_modified == 200
        assert fingerprint.key.startswith("month:2026-03:")

    def test_round_trips_through_dict(self):
        fingerprint = fp(self.tasks, user_id="u1")
        assert Fingerprint.from_dict(fingerprint.to_dict()) == fingerprint

    def test_skips_unusable_records(self):
        assert fp([None, "x", Task(id="a")]).task_count == 1


class TestResultCache:
    def setup_method(self):
        self.clock = FakeClock()
        self.cache = ResultCache(ttl_ms=1000, max_entries=3, clock=self.clock)
        self.key = fp([{"id": "a", "hoursSpent": 1}])

    def test_miss_then_hit(self):
        assert self.cache.get(self.key) is None
        self.cache.set(self.key, RESULT)
        assert self.cache.get(self.key) is RESULT

    def test_entry_records_computed_at(self):
        entry = self.cache.set(self.key, RESULT)
        assert isinstance(entry, CacheEntry)
        assert entry.computed_at == self.clock.now
        assert entry.key == self.key.key

    def test_ttl_expiry(self):
        self.cache.set(self.key, RESULT)
        self.clock.advance(999)
        assert self.cache.get(self.key) is RESULT
        self.clock.advance(1)
        assert self.cache.get(self.key) is None
        assert len(self.cache) == 0

    def test_lru_eviction(self):
        keys = [fp([{"id": str(i)}]) for i in range(4)]
        for key in keys[:3]:
            self.cache.set(key, RESULT)
        # Touch the oldest so the second becomes least recently used
        assert self.cache.get(keys[0]) is RESULT
        self.cache.set(keys[3], RESULT)
        assert len(self.cache) == 3
        assert self.cache.get(keys[1]) is None
        assert self.cache.get(keys[0]) is RESULT

    def test_invalidate_predicate(self):
        march = fp([{"id": "a"}], month_id="2026-03")
        april = fp([{"id": "a"}], month_id="2026-04")
        self.cache.set(march, RESULT)
        self.cache.set(april, RESULT)
        assert self.cache.invalidate(lambda f: f.month_id == "2026-03") == 1
        assert self.cache.get(march) is None
        assert self.cache.get(april) is RESULT

    def test_invalidate_type_and_month(self):
        month = build_fingerprint("month", [], month_id="2026-03")
        week = build_fingerprint("week-2", [], month_id="2026-03")
        self.cache.set(month, RESULT)
        self.cache.set(week, RESULT)
        assert self.cache.invalidate_type("week-2") == 1
        assert self.cache.invalidate_month("2026-03") == 1
        assert len(self.cache) == 0

    def test_invalidate_all(self):
        self.cache.set(self.key, RESULT)
        assert self.cache.invalidate_all() == 1
        assert self.cache.get(self.key) is None

    def test_cleanup_and_stats(self):
        self.cache.set(self.key, RESULT)
        self.clock.advance(500)
        fresh = fp([{"id": "b"}])
        self.cache.set(fresh, RESULT)
        self.clock.advance(600)
        stats = self.cache.stats()
        assert stats["total_entries"] == 2
        assert stats["valid_entries"] == 1
        assert stats["expired_entries"] == 1
        assert self.cache.cleanup() == 1
        assert self.cache.get(fresh) is RESULT
        stats = self.cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 0
        assert stats["max_entries"] == 3
        assert stats["ttl_ms"] == 1000

    def test_get_or_compute_computes_once(self):
        compute = MagicMock(return_value=RESULT)
        assert self.cache.get_or_compute(self.key, compute) is RESULT
        assert self.cache.get_or_compute(self.key, compute) is RESULT
        compute.assert_called_once()

    def test_get_or_compute_concurrent_callers_share_one_computation(self):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_compute():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return RESULT

        results = []
        first = threading.Thread(
            target=lambda: results.append(self.cache.get_or_compute(self.key, slow_compute))
        )
        first.start()
        assert started.wait(timeout=5)
        second = threading.Thread(
            target=lambda: results.append(self.cache.get_or_compute(self.key, slow_compute))
        )
        second.start()
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)
        assert results == [RESULT, RESULT]
        assert len(calls) == 1

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            ResultCache(ttl_ms=0)
        with pytest.raises(ValueError):
            ResultCache(max_entries=0)

    def test_hours_edit_forces_recompute(self):
        tasks = [{"id": "a", "hoursSpent": 1}]
        self.cache.set(fp(tasks), aggregate(tasks))
        edited = [{"id": "a", "hoursSpent": 2}]
        assert self.cache.get(fp(edited)) is None
        assert self.cache.get(fp(tasks)) is not None


class TestRedisResultCacheUnavailable:
    def test_initial_state(self):
        cache = RedisResultCache()
        assert cache.is_available is False
        assert cache.is_circuit_open is False

    def test_operations_degrade_to_miss(self):
        cache = RedisResultCache()
        key = fp([])
        assert cache.get(key) is None
        assert cache.set(key, RESULT) is False
        assert cache.invalidate_all() == 0
        assert cache.invalidate(lambda f: True) == 0
        assert cache.cleanup() == 0
        assert cache.stats()["misses"] == 1

    def test_get_or_compute_still_computes(self):
        cache = RedisResultCache()
        assert cache.get_or_compute(fp([]), lambda: RESULT) is RESULT


class TestRedisResultCacheWithMock:
    def setup_method(self):
        self.clock = FakeClock()
        self.cache = RedisResultCache(
            prefix="test:", ttl_ms=1000, max_entries=2, db=3, clock=self.clock
        )
        self.client = MagicMock()
        self.client.zcard.return_value = 1
        self.cache._client = self.client
        self.cache._available = True
        self.key = fp([{"id": "a"}])

    def _payload(self, fingerprint, computed_at=None):
        return json.dumps({
            "fingerprint": fingerprint.to_dict(),
            "computedAt": self.clock.now if computed_at is None else computed_at,
            "data": RESULT.to_dict(),
        })

    def test_set_stores_json_with_expiry(self):
        assert self.cache.set(self.key, RESULT) is True
        args, kwargs = self.client.set.call_args
        assert args[0] == f"test:{self.key.key}"
        assert kwargs == {"px": 1000}
        body = json.loads(args[1])
        assert body["data"]["totalTasks"] == 1
        assert body["fingerprint"]["month_id"] == "2026-03"
        self.client.zadd.assert_called_once_with(
            "test:__index__", {f"test:{self.key.key}": self.clock.now}
        )

    def test_set_evicts_oldest_past_max_entries(self):
        self.client.zcard.return_value = 4
        self.client.zpopmin.return_value = [("test:old1", 1.0), ("test:old2", 2.0)]
        self.cache.set(self.key, RESULT)
        self.client.zpopmin.assert_called_once_with("test:__index__", 2)
        self.client.delete.assert_called_once_with("test:old1", "test:old2")

    def test_get_hit(self):
        self.client.get.return_value = self._payload(self.key)
        assert self.cache.get(self.key) == RESULT
        self.client.get.assert_called_once_with(f"test:{self.key.key}")

    def test_get_expired_payload_is_miss(self):
        self.client.get.return_value = self._payload(self.key, computed_at=self.clock.now - 1000)
        assert self.cache.get(self.key) is None

    def test_corrupt_payload_is_miss_and_deleted(self):
        self.client.get.return_value = "not json{"
        assert self.cache.get(self.key) is None
        self.client.delete.assert_called_once_with(f"test:{self.key.key}")

    def test_failure_is_miss_and_recorded(self):
        self.client.get.side_effect = Exception("connection lost")
        assert self.cache.get(self.key) is None
        assert self.cache._failure_count == 1

    def test_circuit_breaker_opens(self):
        self.client.get.side_effect = Exception("fail")
        for _ in range(5):
            self.cache.get(self.key)
        assert self.cache.is_circuit_open is True
        self.client.get.reset_mock()
        assert self.cache.get(self.key) is None
        self.client.get.assert_not_called()

    def test_invalidate_predicate(self):
        march = fp([{"id": "a"}], month_id="2026-03")
        april = fp([{"id": "a"}], month_id="2026-04")
        payloads = {
            f"test:{march.key}": self._payload(march),
            f"test:{april.key}": self._payload(april),
        }
        self.client.scan_iter.return_value = iter(["test:__index__", *payloads])
        self.client.get.side_effect = payloads.get
        assert self.cache.invalidate_month("2026-03") == 1
        self.client.delete.assert_called_once_with(f"test:{march.key}")
        self.client.zrem.assert_called_once_with("test:__index__", f"test:{march.key}")

    def test_invalidate_all(self):
        self.client.scan_iter.return_value = iter(["test:__index__", "test:k1", "test:k2"])
        assert self.cache.invalidate_all() == 2
        self.client.delete.assert_called_once_with("test:__index__", "test:k1", "test:k2")

    def test_cleanup_trims_index(self):
        self.client.zremrangebyscore.return_value = 3
        assert self.cache.cleanup() == 3
        self.client.zremrangebyscore.assert_called_once_with(
            "test:__index__", "-inf", self.clock.now - 1000
        )

    def test_stats(self):
        self.client.zcard.return_value = 2
        stats = self.cache.stats()
        assert stats["backend"] == "redis"
        assert stats["total_entries"] == 2
        assert stats["available"] is True

    def test_close(self):
        self.cache.close()
        self.client.close.assert_called_once()
        assert self.cache.is_available is False


class TestCreateResultCache:
    def test_memory_backend_from_config(self):
        config = build_config({"ttlMs": 5000, "maxCacheEntries": 7})
        cache = create_result_cache(config)
        assert isinstance(cache, ResultCache)
        assert cache.ttl_ms == 5000
        assert cache.max_entries == 7

    def test_default_config(self):
        cache = create_result_cache()
        assert cache.ttl_ms == 120_000
        assert cache.max_entries == 30

    def test_redis_backend(self):
        config = build_config({"cache": {"backend": "redis", "redis_url": "redis://cache:6379/0"}})
        with patch.object(RedisResultCache, "connect", return_value=True) as connect:
            cache = create_result_cache(config)
        assert isinstance(cache, RedisResultCache)
        assert cache._db == 3
        assert cache._prefix == "taskdash:agg:"
        connect.assert_called_once()
