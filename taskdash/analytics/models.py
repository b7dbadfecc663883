"""
Task, Viewer, ScopeFilter and AggregateResult models.

``Task`` is the single canonical shape the engine works on; raw records with
historical field aliases are turned into it by ``taskdash.analytics.normalize``.
``AggregateResult`` serializes with the camelCase field names the dashboard
tables and charts read (``totalTasks``, ``byAIModel``, ...).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taskdash.analytics.coerce import to_bool, to_id

ADMIN_ROLE = "admin"
USER_ROLE = "user"
KNOWN_ROLES = (ADMIN_ROLE, USER_ROLE)


class Task(BaseModel):
    """
    Normalized task record.

    Invariants (enforced by the normalizer):
      - hours_spent >= 0 and ai_hours_spent >= 0
      - ai_hours_spent > 0 implies ai_used
      - month_id matches created_at whenever created_at is known
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    owner_id: Optional[str] = None
    owner_ids: Tuple[str, ...] = Field(default=(), description="Every owner alias on the record")
    reporter_id: Optional[str] = None
    created_at: Optional[int] = Field(default=None, description="Epoch milliseconds")
    updated_at: Optional[int] = Field(default=None, description="Epoch milliseconds")
    month_id: Optional[str] = Field(default=None, description="YYYY-MM")
    hours_spent: float = Field(default=0.0, ge=0)
    ai_used: bool = False
    ai_hours_spent: float = Field(default=0.0, ge=0)
    reworked: bool = False
    markets: Tuple[str, ...] = ()
    product: Optional[str] = None
    ai_models: Tuple[str, ...] = ()
    deliverables: Tuple[str, ...] = ()

    @property
    def last_modified(self) -> int:
        return self.updated_at or self.created_at or 0

    @property
    def owners(self) -> Tuple[str, ...]:
        """Ids the task can be matched on; ``owner_id`` comes first."""
        if self.owner_ids:
            return self.owner_ids
        return (self.owner_id,) if self.owner_id else ()


class Viewer(BaseModel):
    """The identity performing a query. Inactive viewers never see anything."""

    model_config = ConfigDict(frozen=True)

    role: str
    user_id: Optional[str] = None
    is_active: bool

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @classmethod
    def from_raw(cls, raw: Any) -> "Viewer":
        """
        Build a Viewer from a loose mapping (``role``, ``userId``/``userUID``,
        ``isActive``). A missing active flag is read as inactive.
        """
        if isinstance(raw, Viewer):
            return raw
        if not isinstance(raw, Mapping):
            return cls(role="", user_id=None, is_active=False)
        role = raw.get("role")
        return cls(
            role=role.strip().lower() if isinstance(role, str) else "",
            user_id=to_id(raw.get("user_id", raw.get("userId", raw.get("userUID")))),
            is_active=to_bool(raw.get("is_active", raw.get("isActive", False))),
        )


class ScopeFilter(BaseModel):
    """Optional caller-supplied narrowing on top of role visibility."""

    model_config = ConfigDict(frozen=True)

    selected_user_id: Optional[str] = None
    selected_reporter_id: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "ScopeFilter":
        if isinstance(raw, ScopeFilter):
            return raw
        if not isinstance(raw, Mapping):
            return cls()
        return cls(
            selected_user_id=to_id(raw.get("selected_user_id", raw.get("selectedUserId"))),
            selected_reporter_id=to_id(
                raw.get("selected_reporter_id", raw.get("selectedReporterId"))
            ),
        )


# ---------------------------------------------------------------------------
# Aggregate output
# ---------------------------------------------------------------------------

class _Output(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class CountHours(_Output):
    count: int = 0
    hours: float = 0.0


class AIUsage(_Output):
    tasks: int = 0
    hours: float = 0.0


class AIBreakdown(_Output):
    ai_tasks: int = 0
    ai_hours: float = 0.0
    non_ai_tasks: int = 0
    non_ai_hours: float = 0.0
    total_tasks: int = 0
    total_hours: float = 0.0


class AggregateResult(_Output):
    """
    Metrics for one filtered, period-scoped task collection.

    Immutable once produced; a later computation supersedes it.
    ``by_ai_model`` is a usage tally (count only, no hours).
    """

    total_tasks: int = 0
    total_hours: float = 0.0
    ai: AIUsage = AIUsage()
    reworked_count: int = 0
    by_user: Dict[str, CountHours] = Field(default_factory=dict)
    by_reporter: Dict[str, CountHours] = Field(default_factory=dict)
    by_market: Dict[str, CountHours] = Field(default_factory=dict)
    by_product: Dict[str, CountHours] = Field(default_factory=dict)
    by_ai_model: Dict[str, int] = Field(default_factory=dict, alias="byAIModel")
    by_deliverable: Dict[str, CountHours] = Field(default_factory=dict)
    by_day: Dict[str, CountHours] = Field(default_factory=dict)
    ai_breakdown_by_product: Dict[str, AIBreakdown] = Field(default_factory=dict)
    ai_breakdown_by_market: Dict[str, AIBreakdown] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """camelCase dict for rendering collaborators."""
        return self.model_dump(by_alias=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AggregateResult":
        return cls.model_validate(data)


@dataclass(frozen=True)
class Week:
    """A Monday-to-Friday business week clipped to its month."""

    week_number: int
    start_date: date
    end_date: date
    business_days: Tuple[date, ...]

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "weekNumber": self.week_number,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "businessDays": [d.isoformat() for d in self.business_days],
        }


@dataclass(frozen=True)
class MonthInfo:
    month_id: str
    month_name: str
    year: int
    month: int
    start_date: date
    end_date: date
    days_in_month: int
