"""
taskdash Error Hierarchy — Structured exceptions for the aggregation engine.

The filter, bucketer and aggregator are total functions and never raise; bad
input degrades to safe defaults. Exceptions exist for the few places where
silence would be worse than failure:

Hierarchy:
    TaskDashError
    ├── TaskDashConfigError      — Invalid taskdash.yaml / engine options
    ├── TaskDashSchedulerError   — Timer could not be armed (permanent staleness risk)
    └── TaskDashValidationError  — Strict-mode input validation failed (CLI, strict parsers)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class TaskDashError(Exception):
    """
    Base error for all taskdash failures.
    All context is serializable to JSON for the structured log trail.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.error_type: str = self.__class__.__name__
        self.component: Optional[str] = context.get("component")
        self.month_id: Optional[str] = context.get("month_id")
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict for logging."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "component": self.component,
            "month_id": self.month_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("component", "month_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.component:
            parts.append(f"component={self.component}")
        if self.month_id:
            parts.append(f"month_id={self.month_id}")
        return " | ".join(parts)


class TaskDashConfigError(TaskDashError):
    """Configuration error — invalid taskdash.yaml or engine options."""

    def __init__(self, message: str, **context: Any):
        self.config_path: Optional[str] = context.get("config_path")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["config_path"] = self.config_path
        return d


class TaskDashSchedulerError(TaskDashError):
    """
    The scheduler could not arm its timer.
    The only engine failure that propagates to callers, since a silently
    missed re-arm would leave cached aggregates stale forever.
    """

    def __init__(self, message: str, **context: Any):
        self.delay_ms: Optional[float] = context.get("delay_ms")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["delay_ms"] = self.delay_ms
        return d


class TaskDashValidationError(TaskDashError):
    """
    Strict input validation failed. Includes field-level error details.
    Raised only by strict entry points, never from inside the fold.
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: Optional[List[Any]] = context.get("validation_errors")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d
