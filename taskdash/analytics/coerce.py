"""
Normalize-or-default helpers.

Every field read from a raw task record goes through one of these. Each
helper is total: malformed input resolves to a safe default (``0``, ``None``,
``False`` or an empty tuple) and never raises. Keeping the degradation policy
in one module makes it auditable and testable on its own.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timezone, tzinfo
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Tuple

MISSING_LABEL = "N/A"

_TRUE_STRINGS = frozenset({"true", "yes", "y", "1", "on"})

# Keys under which nested label/id objects carry their value
_LABEL_KEYS = ("name", "label", "value")
_ID_KEYS = ("id", "uid", "userUID", "reporterUID")


def to_number(value: Any) -> Optional[float]:
    """Finite float, or None. Booleans are not numbers here."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def to_hours(value: Any) -> float:
    """Non-negative hours; anything missing, non-numeric or negative is 0."""
    number = to_number(value)
    if number is None or number < 0:
        return 0.0
    return number


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, (int, float, Decimal)):
        number = to_number(value)
        return bool(number)
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) > 0
    return False


def to_id(value: Any) -> Optional[str]:
    """
    Canonical identifier string used for every owner/reporter comparison.

    Strings are stripped, integers stringified, nested ``{"id": ...}``
    objects unwrapped. Empty or unrecognised values are None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Mapping):
        for key in _ID_KEYS:
            if key in value:
                return to_id(value[key])
    return None


def to_label(value: Any) -> Optional[str]:
    """A single category label (product, market...). Empty -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        return text or None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, Mapping):
        for key in _LABEL_KEYS:
            if key in value:
                return to_label(value[key])
    return None


def to_labels(value: Any, *, unique: bool = True) -> Tuple[str, ...]:
    """
    Label list from a scalar or a sequence.

    A scalar yields at most one label. Inside a sequence an empty element
    still counts and is bucketed under ``N/A``.
    """
    if value is None:
        return ()
    if isinstance(value, (str, Mapping)) or not isinstance(value, Iterable):
        label = to_label(value)
        return (label,) if label else ()

    labels = []
    for item in value:
        label = to_label(item) or MISSING_LABEL
        if unique and label in labels:
            continue
        labels.append(label)
    return tuple(labels)


def _as_utc_ms(moment: datetime) -> int:
    return int(round(moment.timestamp() * 1000))


def to_epoch_ms(value: Any, tz: Optional[tzinfo] = None) -> Optional[int]:
    """
    Milliseconds since the epoch, or None.

    Accepts aware/naive datetimes, dates, ISO-8601 strings, numeric epoch
    milliseconds (numbers or numeric strings) and ``{"seconds": ..}`` /
    ``{"_seconds": ..}`` timestamp objects. Naive values are read in *tz*
    (UTC when not given).
    """
    zone = tz or timezone.utc
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=zone)
        return _as_utc_ms(moment)

    if isinstance(value, date):
        return _as_utc_ms(datetime.combine(value, time.min, tzinfo=zone))

    if isinstance(value, (int, float, Decimal)):
        number = to_number(value)
        return int(number) if number is not None else None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        number = to_number(text)
        if number is not None:
            return int(number)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if not parsed.tzinfo:
            parsed = parsed.replace(tzinfo=zone)
        return _as_utc_ms(parsed)

    if isinstance(value, Mapping):
        seconds = to_number(value.get("seconds", value.get("_seconds")))
        if seconds is None:
            return None
        nanos = to_number(value.get("nanoseconds", value.get("_nanoseconds"))) or 0.0
        return int(seconds * 1000 + nanos / 1_000_000)

    return None


def from_epoch_ms(ms: Optional[int], tz: tzinfo) -> Optional[datetime]:
    """Aware datetime for an epoch-ms value in *tz*; None when out of range."""
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).astimezone(tz)
    except (OverflowError, OSError, ValueError):
        return None
