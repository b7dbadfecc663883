"""
Input adapter — raw task records to canonical ``Task`` objects.

Records arrive from REST fetches and real-time subscriptions in several
historical shapes. Business fields may sit at the top level or be nested
under ``data_task``; the nested value wins when both exist.

    owner        ownerId | userUID | createbyUID | userId (all kept for matching)
    reporter     reporterId | reporters | reporterUID
    hours        hoursSpent | timeInHours
    AI hours     aiHoursSpent | timeSpentOnAI | sum of aiUsed[].aiTime/hours
    AI used      aiUsed (bool) | aiUsed (list of {aiModels, aiTime})
    markets      markets (list) | market (scalar)
    AI models    aiModels (list) | aiModel (scalar) | aiUsed[].aiModels
    deliverables deliverables (list) | deliverable (scalar) | deliverablesUsed[].name

Nothing here raises: an unusable record is skipped, an unusable field takes
its default from ``taskdash.analytics.coerce``.
"""

from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from taskdash.analytics.buckets import is_valid_month_id, month_id_of, resolve_tz
from taskdash.analytics.coerce import (
    to_bool,
    to_epoch_ms,
    to_hours,
    to_id,
    to_label,
    to_labels,
)
from taskdash.analytics.models import Task

logger = logging.getLogger("taskdash.analytics.normalize")

_NESTED_KEY = "data_task"


def _pick(record: Mapping[str, Any], *names: str) -> Any:
    """First non-None value among *names*, nested ``data_task`` first."""
    nested = record.get(_NESTED_KEY)
    sources = (nested, record) if isinstance(nested, Mapping) else (record,)
    for source in sources:
        for name in names:
            value = source.get(name)
            if value is not None:
                return value
    return None


_OWNER_KEYS = ("ownerId", "owner_id", "userUID", "createbyUID", "userId")


def _owner_ids(record: Mapping[str, Any]) -> Tuple[str, ...]:
    """Distinct owner ids across every alias, in lookup order."""
    nested = record.get(_NESTED_KEY)
    sources = (nested, record) if isinstance(nested, Mapping) else (record,)
    found: List[str] = []
    for source in sources:
        for name in _OWNER_KEYS:
            owner = to_id(source.get(name))
            if owner is not None and owner not in found:
                found.append(owner)
    return tuple(found)


def _ai_entries(raw_ai: Any) -> Tuple[bool, float, Tuple[str, ...]]:
    """
    Interpret ``aiUsed``: a flag, or a list of per-use entries.

    Returns (used, hours from entries, models from entries).
    """
    if not isinstance(raw_ai, (list, tuple)):
        return to_bool(raw_ai), 0.0, ()

    hours = 0.0
    models: List[str] = []
    for entry in raw_ai:
        if not isinstance(entry, Mapping):
            continue
        value = entry.get("aiTime")
        hours += to_hours(value if value is not None else entry.get("hours"))
        for model in to_labels(entry.get("aiModels", entry.get("aiModel"))):
            if model not in models:
                models.append(model)
    return len(raw_ai) > 0, hours, tuple(models)


def _deliverables(record: Mapping[str, Any]) -> Tuple[str, ...]:
    raw = _pick(record, "deliverables")
    if raw is None:
        raw = _pick(record, "deliverable")
    if raw is not None:
        return to_labels(raw, unique=False)

    used = _pick(record, "deliverablesUsed")
    if not isinstance(used, (list, tuple)):
        return ()
    # Only entries that actually name a deliverable count
    names = (to_label(item.get("name")) for item in used if isinstance(item, Mapping))
    return tuple(name for name in names if name)


def normalize_task(raw: Any, tz: Optional[tzinfo] = None) -> Optional[Task]:
    """
    One raw record to a Task, or None when the record is not a mapping.

    ``month_id`` is derived from ``created_at`` when there is one; a declared
    ``monthId`` is only used for records without a usable timestamp.
    """
    if isinstance(raw, Task):
        return raw
    if not isinstance(raw, Mapping):
        return None

    zone = tz or resolve_tz()

    created_at = to_epoch_ms(_pick(raw, "createdAt", "created_at"), zone)
    updated_at = to_epoch_ms(_pick(raw, "updatedAt", "updated_at"), zone)

    declared_month = _pick(raw, "monthId", "month_id")
    month_id = month_id_of(created_at, zone) if created_at is not None else None
    if month_id is None and is_valid_month_id(declared_month):
        month_id = declared_month
    elif month_id and declared_month and declared_month != month_id:
        logger.debug(
            f"Task {raw.get('id')}: monthId {declared_month} disagrees with "
            f"createdAt, using {month_id}"
        )

    ai_flag, entry_hours, entry_models = _ai_entries(_pick(raw, "aiUsed", "ai_used"))
    ai_hours = to_hours(_pick(raw, "aiHoursSpent", "ai_hours_spent", "timeSpentOnAI")) or entry_hours

    raw_markets = _pick(raw, "markets")
    markets = to_labels(raw_markets if raw_markets is not None else _pick(raw, "market"))

    owners = _owner_ids(raw)

    raw_models = _pick(raw, "aiModels", "ai_models")
    ai_models = to_labels(raw_models if raw_models is not None else _pick(raw, "aiModel"))
    if not ai_models:
        ai_models = entry_models

    return Task(
        id=to_id(_pick(raw, "id", "taskId")),
        owner_id=owners[0] if owners else None,
        owner_ids=owners,
        reporter_id=to_id(_pick(raw, "reporterId", "reporter_id", "reporters", "reporterUID")),
        created_at=created_at,
        updated_at=updated_at,
        month_id=month_id,
        hours_spent=to_hours(_pick(raw, "hoursSpent", "hours_spent", "timeInHours")),
        ai_used=ai_flag or ai_hours > 0,
        ai_hours_spent=ai_hours,
        reworked=to_bool(_pick(raw, "reworked")),
        markets=markets,
        product=to_label(_pick(raw, "product")),
        ai_models=ai_models,
        deliverables=_deliverables(raw),
    )


def normalize_tasks(raw_tasks: Any, tz: Optional[tzinfo] = None) -> List[Task]:
    """Normalize a collection; non-iterables give [] and bad records are skipped."""
    if raw_tasks is None or isinstance(raw_tasks, (str, bytes, Mapping)):
        return []
    if not isinstance(raw_tasks, Iterable):
        return []

    zone = tz or resolve_tz()
    tasks: List[Task] = []
    skipped = 0
    for raw in raw_tasks:
        task = normalize_task(raw, zone)
        if task is None:
            skipped += 1
            continue
        tasks.append(task)

    if skipped:
        logger.debug(f"Skipped {skipped} unusable task record(s)")
    return tasks
