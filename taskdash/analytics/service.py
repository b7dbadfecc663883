"""
taskdash Analytics Service — the request pipeline of the dashboard.

    raw tasks ─▶ normalize ─▶ access filter ─▶ month/week bucket ─▶ aggregate
                                                    │                  │
                                                    └── fingerprint ───┴─▶ result cache

One service instance owns its result cache (and, when started, its midnight
rollover scheduler); nothing here is module-global.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, List, Optional

from taskdash.analytics.aggregator import aggregate, compare_results, summarize
from taskdash.analytics.buckets import (
    current_month_id,
    current_week_number,
    parse_month_id,
    previous_month_id,
    to_local,
    week_span,
    weeks_in_month,
)
from taskdash.analytics.models import AggregateResult, ScopeFilter, Task, Viewer
from taskdash.analytics.normalize import normalize_tasks
from taskdash.engine.cache import build_fingerprint, create_result_cache
from taskdash.engine.config import TaskDashConfig, get_config
from taskdash.engine.logging import (
    LogRetentionManager,
    get_log_queue,
    init_logging,
    log,
    log_aggregation,
    log_aggregation_performance,
    log_system_event,
    shutdown_logging,
)
from taskdash.process.scheduler import MidnightScheduler
from taskdash.security.access import TaskAccessPolicy

logger = logging.getLogger("taskdash.analytics.service")

MONTH_COMPUTATION = "month"


def week_computation(week_number: int) -> str:
    return f"week-{week_number}"


class AnalyticsService:
    """
    Computes role-scoped monthly and weekly aggregates with caching.

    Args:
        config: Engine config; the loaded ``taskdash.yaml`` when omitted.
        cache: A ResultCache / RedisResultCache; built from config when omitted.
    """

    def __init__(self, config: Optional[TaskDashConfig] = None, cache: Any = None):
        self.config = config or get_config()
        self.cache = cache if cache is not None else create_result_cache(self.config)
        self._tz = self.config.calendar.tzinfo
        self._scheduler: Optional[MidnightScheduler] = None
        self._owns_audit_trail = False

    # ── Pipeline stages ──

    def prepare(self, raw_tasks: Any) -> List[Task]:
        return normalize_tasks(raw_tasks, self._tz)

    def _resolve_month(self, month_id: Optional[str]) -> str:
        if month_id is None:
            return current_month_id(tz=self._tz)
        parse_month_id(month_id, strict=True)
        return month_id

    def visible_tasks(
        self,
        raw_tasks: Any,
        viewer: Any,
        scope: Any = None,
        month_id: Optional[str] = None,
    ) -> List[Task]:
        """
        Tasks *viewer* may see under *scope*, optionally limited to one month.

        A task with neither a timestamp nor a month id stays in: the caller
        delivers period-scoped collections, so it still counts in totals.
        """
        policy = TaskAccessPolicy(viewer, scope)
        tasks = policy.filter(self.prepare(raw_tasks))
        if month_id is not None:
            tasks = [t for t in tasks if t.month_id is None or t.month_id == month_id]
        return tasks

    def _compute(
        self,
        computation: str,
        tasks: List[Task],
        month_id: str,
        scope: ScopeFilter,
        viewer_id: Optional[str],
        input_count: int,
    ) -> AggregateResult:
        fingerprint = build_fingerprint(
            computation,
            tasks,
            month_id=month_id,
            user_id=scope.selected_user_id,
            reporter_id=scope.selected_reporter_id,
        )
        started = time.perf_counter()
        computed = False

        def compute() -> AggregateResult:
            nonlocal computed
            computed = True
            fold_started = time.perf_counter()
            result = aggregate(tasks, self._tz)
            log(log_aggregation_performance(
                computation=computation,
                input_count=input_count,
                visible_count=len(tasks),
                duration_ms=(time.perf_counter() - fold_started) * 1000,
            ))
            return result

        result = self.cache.get_or_compute(fingerprint, compute)
        duration_ms = (time.perf_counter() - started) * 1000

        logger.debug(
            f"{computation} {month_id}: {len(tasks)} task(s), "
            f"{'computed' if computed else 'cached'} in {duration_ms:.1f}ms"
        )
        log(log_aggregation(
            computation=computation,
            month_id=month_id,
            viewer_id=viewer_id,
            task_count=len(tasks),
            duration_ms=duration_ms,
            cached=not computed,
            fingerprint=fingerprint.key,
        ))
        return result

    # ── Public API ──

    def compute_month(
        self,
        raw_tasks: Any,
        viewer: Any,
        scope: Any = None,
        month_id: Optional[str] = None,
    ) -> AggregateResult:
        """
        Aggregate of every task *viewer* may see in *month_id*.

        Defaults to the current month. Raises TaskDashValidationError only
        for a malformed *month_id* argument.
        """
        month_id = self._resolve_month(month_id)
        prepared = self.prepare(raw_tasks)
        tasks = self.visible_tasks(prepared, viewer, scope, month_id)
        return self._compute(
            MONTH_COMPUTATION, tasks, month_id, ScopeFilter.from_raw(scope),
            Viewer.from_raw(viewer).user_id, len(prepared),
        )

    def compute_week(
        self,
        raw_tasks: Any,
        viewer: Any,
        week_number: Optional[int] = None,
        scope: Any = None,
        month_id: Optional[str] = None,
    ) -> AggregateResult:
        """
        Aggregate of one business week of *month_id*.

        The week owns its whole Monday..Sunday span inside the month, so
        weekend work lands in the week that just ended. Tasks without a
        timestamp cannot be placed in a week and are left out. An unknown
        week number yields an empty result.
        """
        month_id = self._resolve_month(month_id)
        if week_number is None:
            week_number = current_week_number(month_id, tz=self._tz)

        policy = TaskAccessPolicy(viewer, scope)
        prepared = self.prepare(raw_tasks)
        week = next((w for w in weeks_in_month(month_id) if w.week_number == week_number), None)
        if week is None:
            logger.warning(f"{month_id} has no business week {week_number}")
            tasks: List[Task] = []
        else:
            start, end = week_span(week, month_id)
            tasks = []
            for task in policy.filter(prepared):
                local = to_local(task.created_at, self._tz) if task.created_at is not None else None
                if local is not None and start <= local.date() <= end:
                    tasks.append(task)

        return self._compute(
            week_computation(week_number), tasks, month_id, policy.scope,
            policy.viewer.user_id, len(prepared),
        )

    def summarize_month(self, raw_tasks: Any, viewer: Any, scope: Any = None,
                        month_id: Optional[str] = None) -> dict:
        return summarize(self.compute_month(raw_tasks, viewer, scope, month_id))

    def compare_month(self, raw_tasks: Any, viewer: Any, scope: Any = None,
                      month_id: Optional[str] = None) -> dict:
        """
        Headline metrics of *month_id* against the month before, with trends.

        Both months come from the same task collection, so the caller has to
        deliver tasks of both. Undated tasks count in both periods.
        """
        month_id = self._resolve_month(month_id)
        current = self.compute_month(raw_tasks, viewer, scope, month_id)
        previous = self.compute_month(raw_tasks, viewer, scope, previous_month_id(month_id))
        return compare_results(current, previous)

    # ── Invalidation ──

    def invalidate_month(self, month_id: str) -> int:
        """Drop cached results of *month_id*, e.g. after a task in it was edited."""
        count = self.cache.invalidate_month(month_id)
        logger.debug(f"Invalidated {count} cached result(s) for {month_id}")
        return count

    def invalidate_all(self) -> int:
        return self.cache.invalidate_all()

    def cache_stats(self) -> dict:
        return self.cache.stats()

    # ── Midnight rollover ──

    async def _rollover(self, on_rollover: Optional[Callable[[], Any]]) -> None:
        cleared = self.cache.invalidate_all()
        details = {"cleared": cleared}
        if self.config.scheduler.run_log_cleanup:
            retention = self.config.logging.retention
            manager = LogRetentionManager(
                log_dir=self.config.logging.directory,
                retention_days=retention.execution_days,
                compress_after_days=retention.compress_after_days,
            )
            # File deletes and gzip run off the event loop
            details.update(await asyncio.to_thread(manager.cleanup))
        logger.info(f"Midnight rollover: {details}")
        log(log_system_event("midnight_rollover", details=details))
        if on_rollover is not None:
            result = on_rollover()
            if inspect.isawaitable(result):
                await result

    def start_midnight_rollover(
        self,
        on_rollover: Optional[Callable[[], Any]] = None,
        **scheduler_kwargs: Any,
    ) -> Optional[MidnightScheduler]:
        """
        Clear the result cache at every local midnight, then call *on_rollover*.

        Must run inside an event loop. Raises TaskDashSchedulerError when the
        timer cannot be armed. Returns None when ``scheduler.midnight_rollover``
        is switched off.
        """
        if not self.config.scheduler.midnight_rollover:
            logger.info("Midnight rollover disabled in config")
            return None
        if self._scheduler is not None and self._scheduler.is_running:
            return self._scheduler
        scheduler_kwargs.setdefault("tz", self._tz)
        self._scheduler = MidnightScheduler(
            lambda: self._rollover(on_rollover),
            name="rollover",
            **scheduler_kwargs,
        )
        return self._scheduler.start()

    def stop(self) -> None:
        """Cancel the rollover timer without waiting; safe from inside its callback."""
        if self._scheduler is not None:
            self._scheduler.cancel()
            self._scheduler = None

    async def aclose(self) -> None:
        """Stop the rollover timer and wait for it, then flush the audit trail."""
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            await scheduler.stop()
        self.close_audit_trail()

    # ── Structured audit trail ──

    def start_audit_trail(self) -> bool:
        """
        Start the JSONL audit trail when ``logging.structured`` is on.

        A queue someone else already started is reused and left running.
        Returns whether entries are being recorded.
        """
        settings = self.config.logging
        if not settings.structured:
            return False
        if get_log_queue() is None:
            init_logging(log_dir=settings.directory, **settings.async_queue.model_dump())
            self._owns_audit_trail = True
            log(log_system_event(
                "audit_trail_started",
                details={"environment": self.config.environment, "directory": settings.directory},
            ))
        return True

    def close_audit_trail(self) -> None:
        if self._owns_audit_trail:
            shutdown_logging()
            self._owns_audit_trail = False
