"""Unit tests for taskdash.analytics.service — the filter/bucket/aggregate/cache pipeline."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from conftest import ms, read_log_entries

from taskdash.analytics.service import AnalyticsService, MONTH_COMPUTATION, week_computation
from taskdash.engine.cache import ResultCache
from taskdash.engine.config import build_config
from taskdash.engine.errors import TaskDashValidationError
from taskdash.engine.logging import get_log_queue, init_logging, shutdown_logging


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def service():
    config = build_config({"calendar": {"timezone": "UTC"}, "ttlMs": 1000})
    cache = ResultCache(ttl_ms=1000, max_entries=10, clock=FakeClock())
    return AnalyticsService(config, cache=cache)


@pytest.fixture
def tasks(march_tasks):
    return march_tasks + [
        {"id": "apr", "ownerId": "u1", "createdAt": ms(2026, 4, 2), "hoursSpent": 8},
        {"id": "undated", "ownerId": "u2", "hoursSpent": 0.5},
    ]


class TestComputeMonth:
    def test_admin_sees_month(self, service, tasks, admin):
        result = service.compute_month(tasks, admin, month_id="2026-03")
        # Five March tasks plus the undated one; the April task is out of period
        assert result.total_tasks == 6
        assert result.total_hours == 11.25
        assert "2026-04-02" not in result.by_day

    def test_user_sees_own_tasks(self, service, tasks, user_u1):
        result = service.compute_month(tasks, user_u1, month_id="2026-03")
        assert result.total_tasks == 3
        assert list(result.by_user) == ["u1"]

    def test_admin_scoped_by_reporter(self, service, tasks, admin):
        result = service.compute_month(
            tasks, admin, {"selectedReporterId": "r1"}, month_id="2026-03"
        )
        assert result.total_tasks == 3
        assert set(result.by_user) == {"u1", "u2"}

    def test_user_reporter_scope_requires_ownership(self, service, tasks, user_u1):
        result = service.compute_month(
            tasks, user_u1, {"selectedReporterId": "r1"}, month_id="2026-03"
        )
        assert result.total_tasks == 2

    def test_inactive_viewer_gets_empty_result(self, service, tasks):
        viewer = {"role": "admin", "userId": "boss", "isActive": False}
        assert service.compute_month(tasks, viewer, month_id="2026-03").total_tasks == 0

    def test_second_call_hits_cache(self, service, tasks, admin):
        first = service.compute_month(tasks, admin, month_id="2026-03")
        second = service.compute_month(tasks, admin, month_id="2026-03")
        assert second is first
        assert service.cache_stats()["hits"] == 1

    def test_edit_forces_recompute(self, service, tasks, admin):
        before = service.compute_month(tasks, admin, month_id="2026-03")
        edited = [dict(t, hoursSpent=10) if t["id"] == "t1" else t for t in tasks]
        after = service.compute_month(edited, admin, month_id="2026-03")
        assert after.total_hours == before.total_hours + 8

    def test_removed_task_is_not_an_error(self, service, tasks, admin):
        service.compute_month(tasks, admin, month_id="2026-03")
        result = service.compute_month(tasks[1:], admin, month_id="2026-03")
        assert result.total_tasks == 5

    def test_scope_ids_are_part_of_the_key(self, service, tasks):
        a = {"role": "user", "userId": "u2", "isActive": True}
        b = {"role": "admin", "isActive": True}
        service.compute_month(tasks, a, month_id="2026-03")
        service.compute_month(tasks, b, {"selectedUserId": "u2"}, month_id="2026-03")
        assert len(service.cache) == 2

    def test_defaults_to_current_month(self, service, admin):
        result = service.compute_month([{"id": "x", "hoursSpent": 1}], admin)
        assert result.total_tasks == 1

    def test_invalid_month_raises(self, service, tasks, admin):
        with pytest.raises(TaskDashValidationError):
            service.compute_month(tasks, admin, month_id="2026-3")

    def test_summarize_month(self, service, tasks, admin):
        summary = service.summarize_month(tasks, admin, month_id="2026-03")
        assert summary["totalTasks"] == 6


class TestComputeWeek:
    def test_first_week(self, service, tasks, admin):
        result = service.compute_week(tasks, admin, 1, month_id="2026-03")
        assert result.total_tasks == 2
        assert set(result.by_day) == {"2026-03-02", "2026-03-03"}

    def test_weekend_task_counts_in_its_week(self, service, tasks, admin):
        # t4 was created on Saturday March 14
        result = service.compute_week(tasks, admin, 2, month_id="2026-03")
        assert result.total_tasks == 2
        assert "2026-03-14" in result.by_day

    def test_last_partial_week(self, service, tasks, admin):
        result = service.compute_week(tasks, admin, 5, month_id="2026-03")
        assert result.total_tasks == 1
        assert result.total_hours == 0.25

    def test_unknown_week_is_empty(self, service, tasks, admin):
        assert service.compute_week(tasks, admin, 9, month_id="2026-03").total_tasks == 0

    def test_week_and_month_are_cached_separately(self, service, tasks, admin):
        service.compute_month(tasks, admin, month_id="2026-03")
        service.compute_week(tasks, admin, 1, month_id="2026-03")
        assert service.cache.invalidate_type(week_computation(1)) == 1
        assert service.cache.invalidate_type(MONTH_COMPUTATION) == 1


class TestInvalidation:
    def test_invalidate_month(self, service, tasks, admin):
        service.compute_month(tasks, admin, month_id="2026-03")
        service.compute_month(tasks, admin, month_id="2026-04")
        assert service.invalidate_month("2026-03") == 1
        assert len(service.cache) == 1

    def test_invalidate_all(self, service, tasks, admin):
        service.compute_month(tasks, admin, month_id="2026-03")
        assert service.invalidate_all() == 1


class TestMidnightRollover:
    def _run_one_cycle(self, service, on_rollover=None):
        state = {"now": datetime(2026, 3, 10, 23, 59, tzinfo=timezone.utc)}

        async def fake_sleep(seconds):
            state["now"] += timedelta(seconds=seconds)
            await asyncio.sleep(0)

        async def scenario():
            def after():
                if on_rollover is not None:
                    on_rollover()
                service.stop()

            scheduler = service.start_midnight_rollover(
                after, clock=lambda: state["now"], sleep=fake_sleep
            )
            assert scheduler.next_delay_ms == 60_000
            await scheduler.wait()
            return scheduler

        return asyncio.run(scenario())

    def test_rollover_clears_cache(self, service, tasks, admin):
        service.compute_month(tasks, admin, month_id="2026-03")
        callback = MagicMock()
        scheduler = self._run_one_cycle(service, callback)
        assert len(service.cache) == 0
        callback.assert_called_once()
        assert scheduler.fired_count == 1

    def test_rollover_runs_log_cleanup_when_enabled(self, tasks, tmp_path):
        config = build_config({
            "calendar": {"timezone": "UTC"},
            "logging": {"directory": str(tmp_path / "logs")},
            "scheduler": {"run_log_cleanup": True},
        })
        service = AnalyticsService(config, cache=ResultCache(clock=FakeClock()))
        with patch(
            "taskdash.analytics.service.LogRetentionManager.cleanup",
            return_value={"deleted": 0, "compressed": 0},
        ) as cleanup:
            self._run_one_cycle(service)
        cleanup.assert_called_once()

    def test_cleanup_runs_in_a_worker_thread(self, tmp_path):
        config = build_config({
            "calendar": {"timezone": "UTC"},
            "logging": {"directory": str(tmp_path / "logs")},
            "scheduler": {"run_log_cleanup": True},
        })
        service = AnalyticsService(config, cache=ResultCache(clock=FakeClock()))
        with patch(
            "taskdash.analytics.service.asyncio.to_thread",
            side_effect=asyncio.to_thread,
        ) as to_thread:
            self._run_one_cycle(service)
        to_thread.assert_called_once()


class TestStructuredTrail:
    def test_compute_writes_aggregation_entries(self, service, tasks, admin, tmp_path):
        log_dir = tmp_path / "logs"
        init_logging(log_dir=str(log_dir))
        service.compute_month(tasks, admin, month_id="2026-03")
        service.compute_month(tasks, admin, month_id="2026-03")
        shutdown_logging()

        entries = read_log_entries(log_dir, "aggregations", "execution")
        assert [e["cached"] for e in entries] == [False, True]
        assert entries[0]["computation"] == "month"
        assert entries[0]["month_id"] == "2026-03"
        perf = read_log_entries(log_dir, "aggregations", "performance")
        assert len(perf) == 1
        assert perf[0]["visible_count"] == 6

    def test_audit_trail_follows_structured_setting(self, tasks, admin, tmp_path):
        log_dir = tmp_path / "logs"
        config = build_config({
            "calendar": {"timezone": "UTC"},
            "logging": {"structured": True, "directory": str(log_dir)},
        })
        service = AnalyticsService(config, cache=ResultCache(clock=FakeClock()))
        assert service.start_audit_trail() is True
        assert get_log_queue() is not None
        service.compute_month(tasks, admin, month_id="2026-03")
        service.close_audit_trail()

        assert get_log_queue() is None
        assert len(read_log_entries(log_dir, "aggregations", "execution")) == 1
        events = [e["event"] for e in read_log_entries(log_dir, "system", "execution")]
        assert "audit_trail_started" in events

    def test_audit_trail_off_by_default(self, service):
        assert service.start_audit_trail() is False
        assert get_log_queue() is None

    def test_running_queue_is_left_alone(self, tmp_path):
        config = build_config({"logging": {"structured": True, "directory": str(tmp_path)}})
        service = AnalyticsService(config, cache=ResultCache(clock=FakeClock()))
        queue = init_logging(log_dir=str(tmp_path / "elsewhere"))
        assert service.start_audit_trail() is True
        service.close_audit_trail()
        assert get_log_queue() is queue


class TestRolloverLifecycle:
    def test_disabled_rollover_is_not_armed(self):
        config = build_config({
            "calendar": {"timezone": "UTC"},
            "scheduler": {"midnight_rollover": False},
        })
        service = AnalyticsService(config, cache=ResultCache(clock=FakeClock()))

        async def scenario():
            return service.start_midnight_rollover()

        assert asyncio.run(scenario()) is None

    def test_aclose_waits_for_the_timer(self, service):
        async def forever(seconds):
            await asyncio.Event().wait()

        async def scenario():
            scheduler = service.start_midnight_rollover(sleep=forever)
            await asyncio.sleep(0)
            assert scheduler.is_running
            await service.aclose()
            return scheduler

        scheduler = asyncio.run(scenario())
        assert not scheduler.is_running
        assert scheduler.fired_count == 0


class TestCompareMonth:
    def test_against_previous_month(self, service, tasks, admin):
        comparison = service.compare_month(tasks, admin, month_id="2026-03")
        # February only holds the undated task
        assert comparison["totalTasks"]["current"] == 6
        assert comparison["totalTasks"]["previous"] == 1
        assert comparison["totalTasks"]["trend"] == {"direction": "up", "percentage": 500}
        assert comparison["aiTasks"]["previous"] == 0
        assert comparison["aiTasks"]["trend"] == {"direction": "up", "percentage": 100}

    def test_respects_viewer_scope(self, service, tasks, user_u1):
        comparison = service.compare_month(tasks, user_u1, month_id="2026-04")
        assert comparison["totalTasks"]["current"] == 1
        assert comparison["totalTasks"]["previous"] == 3
        assert comparison["totalTasks"]["trend"] == {"direction": "down", "percentage": 67}
