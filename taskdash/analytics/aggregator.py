"""
Aggregator — single-pass fold of visible, period-scoped tasks into metrics.

The fold never raises. Raw records are normalized on the way in and any
field that cannot be read contributes its default (0 hours, no bucket).
Derived percentages live in ``summarize`` and guard every division.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import tzinfo
from typing import Any, Dict, Iterable, Mapping, Optional

from taskdash.analytics.buckets import date_key_of, resolve_tz
from taskdash.analytics.models import (
    AggregateResult,
    AIBreakdown,
    AIUsage,
    CountHours,
    Task,
)
from taskdash.analytics.normalize import normalize_task

logger = logging.getLogger("taskdash.analytics.aggregator")


class _Tally:
    """Mutable count/hours pair used while folding."""

    __slots__ = ("count", "hours")

    def __init__(self) -> None:
        self.count = 0
        self.hours = 0.0

    def add(self, hours: float) -> None:
        self.count += 1
        self.hours += hours

    def freeze(self) -> CountHours:
        return CountHours(count=self.count, hours=self.hours)


class _Split:
    """Mutable AI / non-AI split used while folding."""

    __slots__ = ("ai_tasks", "ai_hours", "non_ai_tasks", "non_ai_hours", "total_hours")

    def __init__(self) -> None:
        self.ai_tasks = 0
        self.ai_hours = 0.0
        self.non_ai_tasks = 0
        self.non_ai_hours = 0.0
        self.total_hours = 0.0

    def add(self, task: Task) -> None:
        self.total_hours += task.hours_spent
        if task.ai_used:
            self.ai_tasks += 1
            self.ai_hours += task.ai_hours_spent
        else:
            self.non_ai_tasks += 1
            self.non_ai_hours += task.hours_spent

    def freeze(self) -> AIBreakdown:
        return AIBreakdown(
            ai_tasks=self.ai_tasks,
            ai_hours=self.ai_hours,
            non_ai_tasks=self.non_ai_tasks,
            non_ai_hours=self.non_ai_hours,
            total_tasks=self.ai_tasks + self.non_ai_tasks,
            total_hours=self.total_hours,
        )


def _freeze(tallies: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: tally.freeze() for key, tally in tallies.items()}


def aggregate(tasks: Optional[Iterable[Any]], tz: Optional[tzinfo] = None) -> AggregateResult:
    """
    Fold *tasks* into an AggregateResult.

    Callers pass tasks already narrowed by the access filter and scoped to the
    target period. Every task counts in the totals; a task without an owner
    is left out of ``by_user`` (keyed on the primary owner), one without a
    reporter out of ``by_reporter`` and one without a timestamp out of ``by_day``.
    """
    zone = tz or resolve_tz()

    total_tasks = 0
    total_hours = 0.0
    ai_tasks = 0
    ai_hours = 0.0
    reworked = 0

    by_user: Dict[str, _Tally] = defaultdict(_Tally)
    by_reporter: Dict[str, _Tally] = defaultdict(_Tally)
    by_market: Dict[str, _Tally] = defaultdict(_Tally)
    by_product: Dict[str, _Tally] = defaultdict(_Tally)
    by_ai_model: Dict[str, int] = defaultdict(int)
    by_deliverable: Dict[str, _Tally] = defaultdict(_Tally)
    by_day: Dict[str, _Tally] = defaultdict(_Tally)
    split_by_product: Dict[str, _Split] = defaultdict(_Split)
    split_by_market: Dict[str, _Split] = defaultdict(_Split)

    for raw in tasks or ():
        task = raw if isinstance(raw, Task) else normalize_task(raw, zone)
        if task is None:
            continue

        hours = task.hours_spent
        total_tasks += 1
        total_hours += hours

        if task.ai_used:
            ai_tasks += 1
            ai_hours += task.ai_hours_spent
        if task.reworked:
            reworked += 1

        if task.owner_id:
            by_user[task.owner_id].add(hours)
        if task.reporter_id:
            by_reporter[task.reporter_id].add(hours)

        if task.created_at is not None:
            day = date_key_of(task.created_at, zone)
            if day:
                by_day[day].add(hours)

        for market in task.markets:
            by_market[market].add(hours)
            split_by_market[market].add(task)

        if task.product:
            by_product[task.product].add(hours)
            split_by_product[task.product].add(task)

        for model in task.ai_models:
            by_ai_model[model] += 1

        for label in task.deliverables:
            by_deliverable[label].add(hours)

    return AggregateResult(
        total_tasks=total_tasks,
        total_hours=total_hours,
        ai=AIUsage(tasks=ai_tasks, hours=ai_hours),
        reworked_count=reworked,
        by_user=_freeze(by_user),
        by_reporter=_freeze(by_reporter),
        by_market=_freeze(by_market),
        by_product=_freeze(by_product),
        by_ai_model=dict(by_ai_model),
        by_deliverable=_freeze(by_deliverable),
        by_day=_freeze(by_day),
        ai_breakdown_by_product=_freeze(split_by_product),
        ai_breakdown_by_market=_freeze(split_by_market),
    )


# ---------------------------------------------------------------------------
# Combining results
# ---------------------------------------------------------------------------

def _merge_count_hours(
    left: Mapping[str, CountHours], right: Mapping[str, CountHours]
) -> Dict[str, CountHours]:
    merged = dict(left)
    for key, value in right.items():
        if key in merged:
            current = merged[key]
            merged[key] = CountHours(
                count=current.count + value.count,
                hours=current.hours + value.hours,
            )
        else:
            merged[key] = value
    return merged


def _merge_breakdowns(
    left: Mapping[str, AIBreakdown], right: Mapping[str, AIBreakdown]
) -> Dict[str, AIBreakdown]:
    merged = dict(left)
    for key, value in right.items():
        current = merged.get(key)
        if current is None:
            merged[key] = value
            continue
        merged[key] = AIBreakdown(
            ai_tasks=current.ai_tasks + value.ai_tasks,
            ai_hours=current.ai_hours + value.ai_hours,
            non_ai_tasks=current.non_ai_tasks + value.non_ai_tasks,
            non_ai_hours=current.non_ai_hours + value.non_ai_hours,
            total_tasks=current.total_tasks + value.total_tasks,
            total_hours=current.total_hours + value.total_hours,
        )
    return merged


def merge_results(left: AggregateResult, right: AggregateResult) -> AggregateResult:
    """
    Field-wise sum of two results.

    For disjoint task sets ``merge_results(aggregate(a), aggregate(b))``
    equals ``aggregate(a + b)``.
    """
    models = dict(left.by_ai_model)
    for model, count in right.by_ai_model.items():
        models[model] = models.get(model, 0) + count

    return AggregateResult(
        total_tasks=left.total_tasks + right.total_tasks,
        total_hours=left.total_hours + right.total_hours,
        ai=AIUsage(
            tasks=left.ai.tasks + right.ai.tasks,
            hours=left.ai.hours + right.ai.hours,
        ),
        reworked_count=left.reworked_count + right.reworked_count,
        by_user=_merge_count_hours(left.by_user, right.by_user),
        by_reporter=_merge_count_hours(left.by_reporter, right.by_reporter),
        by_market=_merge_count_hours(left.by_market, right.by_market),
        by_product=_merge_count_hours(left.by_product, right.by_product),
        by_ai_model=models,
        by_deliverable=_merge_count_hours(left.by_deliverable, right.by_deliverable),
        by_day=_merge_count_hours(left.by_day, right.by_day),
        ai_breakdown_by_product=_merge_breakdowns(
            left.ai_breakdown_by_product, right.ai_breakdown_by_product
        ),
        ai_breakdown_by_market=_merge_breakdowns(
            left.ai_breakdown_by_market, right.ai_breakdown_by_market
        ),
    )


# ---------------------------------------------------------------------------
# Derived metrics
# ---------------------------------------------------------------------------

def percentage(part: float, total: float, digits: int = 2) -> float:
    """``part / total * 100`` rounded; 0 when *total* is 0."""
    if not total:
        return 0.0
    return round(part / total * 100, digits)


def _ratio(part: float, total: float, digits: int = 2) -> float:
    if not total:
        return 0.0
    return round(part / total, digits)


def _js_round(value: float, digits: int = 0) -> float:
    """Half-up rounding, so 2.5 -> 3 like the dashboard cards show it."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _shares(buckets: Mapping[str, CountHours], total_hours: float) -> Dict[str, Dict[str, Any]]:
    return {
        key: {
            "count": bucket.count,
            "hours": round(bucket.hours, 2),
            "hoursShare": percentage(bucket.hours, total_hours),
        }
        for key, bucket in buckets.items()
    }


def _reporter_metrics(result: AggregateResult) -> Dict[str, Any]:
    reporters = result.by_reporter
    active = len(reporters)
    top = sorted(reporters.items(), key=lambda item: (-item[1].count, item[0]))[:3]
    return {
        "activeCount": active,
        "averageTasksPerReporter": _js_round(result.total_tasks / active, 1) if active else 0.0,
        "top": [
            {"id": reporter, "count": bucket.count, "hours": _js_round(bucket.hours, 1)}
            for reporter, bucket in top
        ],
    }


def summarize(result: AggregateResult) -> Dict[str, Any]:
    """
    Dashboard card metrics derived from *result*.

    Every ratio renders as 0 when its denominator is 0.
    """
    return {
        "totalTasks": result.total_tasks,
        "totalHours": round(result.total_hours, 2),
        "averageHoursPerTask": _ratio(result.total_hours, result.total_tasks),
        "aiTasks": result.ai.tasks,
        "aiHours": round(result.ai.hours, 2),
        "aiTaskPercentage": percentage(result.ai.tasks, result.total_tasks),
        "aiHoursPercentage": percentage(result.ai.hours, result.total_hours),
        "reworkedCount": result.reworked_count,
        "reworkRate": percentage(result.reworked_count, result.total_tasks),
        "userCount": len(result.by_user),
        "markets": _shares(result.by_market, result.total_hours),
        "products": _shares(result.by_product, result.total_hours),
        "reporters": _reporter_metrics(result),
        "topAIModels": [
            {"model": model, "count": count}
            for model, count in sorted(
                result.by_ai_model.items(), key=lambda item: (-item[1], item[0])
            )[:5]
        ],
    }


# ---------------------------------------------------------------------------
# Period comparison
# ---------------------------------------------------------------------------

TREND_UP = "up"
TREND_DOWN = "down"
TREND_NEUTRAL = "neutral"

# summarize() keys compared between two periods
TREND_METRICS = ("totalTasks", "totalHours", "aiTasks", "aiHours", "reworkedCount")


def trend(current: float, previous: float) -> Dict[str, Any]:
    """
    Direction and whole-number percentage change from *previous* to *current*.

    A previous value of 0 reads as +100% when anything happened since,
    otherwise as no change.
    """
    if not previous:
        if current > 0:
            return {"direction": TREND_UP, "percentage": 100}
        return {"direction": TREND_NEUTRAL, "percentage": 0}

    change = int(_js_round((current - previous) / previous * 100))
    if change > 0:
        direction = TREND_UP
    elif change < 0:
        direction = TREND_DOWN
    else:
        direction = TREND_NEUTRAL
    return {"direction": direction, "percentage": abs(change)}


def compare_results(current: AggregateResult, previous: AggregateResult) -> Dict[str, Any]:
    """Month-to-month cards: each headline metric with its trend."""
    now, before = summarize(current), summarize(previous)
    return {
        metric: {
            "current": now[metric],
            "previous": before[metric],
            "trend": trend(now[metric], before[metric]),
        }
        for metric in TREND_METRICS
    }
