"""
Time Bucketer — month ids, business weeks and membership tests.

All derivations happen in the configured calendar timezone
(``calendar.timezone`` in taskdash.yaml), so the same instant always maps to
the same month/day regardless of the host's local zone. Weeks start on
Monday and end on Friday, clipped to the month.
"""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from taskdash.analytics.coerce import from_epoch_ms, to_epoch_ms
from taskdash.analytics.models import MonthInfo, Week
from taskdash.engine.errors import TaskDashValidationError

MONTH_ID_RE = re.compile(r"(\d{4})-(\d{2})")

TimezoneLike = Union[str, tzinfo, None]


def resolve_tz(tz: TimezoneLike = None) -> tzinfo:
    """A tzinfo from a zone name, a tzinfo, or the configured default."""
    if isinstance(tz, tzinfo):
        return tz
    if isinstance(tz, str):
        return ZoneInfo(tz)
    from taskdash.engine.config import get_config
    return get_config().calendar.tzinfo


def to_local(instant: Any, tz: TimezoneLike = None) -> Optional[datetime]:
    """Any accepted timestamp shape as an aware datetime in the calendar zone."""
    zone = resolve_tz(tz)
    return from_epoch_ms(to_epoch_ms(instant, zone), zone)


def _to_local_date(instant: Any, tz: TimezoneLike = None) -> Optional[date]:
    if isinstance(instant, date) and not isinstance(instant, datetime):
        return instant
    local = to_local(instant, tz)
    return local.date() if local else None


# ---------------------------------------------------------------------------
# Month ids
# ---------------------------------------------------------------------------

def parse_month_id(month_id: Any, strict: bool = False) -> Optional[Tuple[int, int]]:
    """
    ``"2026-03"`` -> ``(2026, 3)``.

    Invalid ids give None, or raise TaskDashValidationError when *strict*.
    """
    match = MONTH_ID_RE.fullmatch(month_id) if isinstance(month_id, str) else None
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12 and year >= 1:
            return year, month
    if strict:
        raise TaskDashValidationError(
            f"Invalid month id {month_id!r}, expected YYYY-MM",
            component="buckets",
            month_id=str(month_id),
        )
    return None


def is_valid_month_id(month_id: Any) -> bool:
    return parse_month_id(month_id) is not None


def format_month_id(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def month_id_of(instant: Any, tz: TimezoneLike = None) -> Optional[str]:
    """YYYY-MM of the calendar month containing *instant*; None if unparseable."""
    day = _to_local_date(instant, tz)
    return format_month_id(day.year, day.month) if day else None


def date_key_of(instant: Any, tz: TimezoneLike = None) -> Optional[str]:
    """YYYY-MM-DD of the calendar day containing *instant*; None if unparseable."""
    day = _to_local_date(instant, tz)
    return day.isoformat() if day else None


def is_in_month(instant: Any, month_id: str, tz: TimezoneLike = None) -> bool:
    return month_id_of(instant, tz) == month_id


def month_bounds(month_id: str) -> Optional[Tuple[date, date]]:
    """First and last calendar day of the month."""
    parsed = parse_month_id(month_id)
    if parsed is None:
        return None
    year, month = parsed
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def previous_month_id(month_id: str) -> Optional[str]:
    parsed = parse_month_id(month_id)
    if parsed is None:
        return None
    year, month = parsed
    return format_month_id(year - 1, 12) if month == 1 else format_month_id(year, month - 1)


def next_month_id(month_id: str) -> Optional[str]:
    parsed = parse_month_id(month_id)
    if parsed is None:
        return None
    year, month = parsed
    return format_month_id(year + 1, 1) if month == 12 else format_month_id(year, month + 1)


def current_month_id(now: Optional[datetime] = None, tz: TimezoneLike = None) -> str:
    zone = resolve_tz(tz)
    moment = now.astimezone(zone) if now else datetime.now(zone)
    return format_month_id(moment.year, moment.month)


def current_month_info(now: Optional[datetime] = None, tz: TimezoneLike = None) -> MonthInfo:
    month_id = current_month_id(now, tz)
    start, end = month_bounds(month_id)
    return MonthInfo(
        month_id=month_id,
        month_name=calendar.month_name[start.month],
        year=start.year,
        month=start.month,
        start_date=start,
        end_date=end,
        days_in_month=end.day,
    )


# ---------------------------------------------------------------------------
# Weeks
# ---------------------------------------------------------------------------

def weeks_in_month(month_id: str) -> List[Week]:
    """
    Partition the month into Monday-start, Friday-end business weeks.

    Each week is clipped to the month; a week with no business day inside
    the month (a month starting on Saturday or Sunday) is omitted and the
    numbering stays sequential.
    """
    bounds = month_bounds(month_id)
    if bounds is None:
        return []
    first, last = bounds

    weeks: List[Week] = []
    monday = first - timedelta(days=first.weekday())
    while monday <= last:
        friday = monday + timedelta(days=4)
        start = max(monday, first)
        end = min(friday, last)
        days = tuple(
            start + timedelta(days=offset)
            for offset in range((end - start).days + 1)
        ) if start <= end else ()
        business_days = tuple(d for d in days if d.weekday() < 5)
        if business_days:
            weeks.append(Week(
                week_number=len(weeks) + 1,
                start_date=business_days[0],
                end_date=business_days[-1],
                business_days=business_days,
            ))
        monday += timedelta(days=7)
    return weeks


def _same_calendar_week(a: date, b: date) -> bool:
    return a.isocalendar()[:2] == b.isocalendar()[:2]


def week_of(instant: Any, month_id: str, tz: TimezoneLike = None) -> Optional[Week]:
    """
    The business week of *month_id* whose Monday–Sunday span contains *instant*.

    A Saturday or Sunday belongs to the week that just ended. None when the
    instant is outside the month or in a weekend-only stretch at its start.
    """
    day = _to_local_date(instant, tz)
    if day is None or format_month_id(day.year, day.month) != month_id:
        return None
    for week in weeks_in_month(month_id):
        if _same_calendar_week(week.start_date, day):
            return week
    return None


def current_week_number(
    month_id: str,
    now: Optional[datetime] = None,
    tz: TimezoneLike = None,
) -> int:
    """Week number containing *now* when *now* is in *month_id*, else 1."""
    zone = resolve_tz(tz)
    moment = now.astimezone(zone) if now else datetime.now(zone)
    week = week_of(moment, month_id, zone)
    return week.week_number if week else 1


def week_span(week: Week, month_id: str) -> Tuple[date, date]:
    """Calendar span owned by *week*: its Monday..Sunday, clipped to the month."""
    first, last = month_bounds(month_id)
    monday = week.start_date - timedelta(days=week.start_date.weekday())
    return max(monday, first), min(monday + timedelta(days=6), last)
