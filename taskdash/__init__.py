"""
taskdash — Role-Scoped Task Aggregation Engine

Turns an already-fetched task collection into the metrics behind the task
dashboard: who may see which task, which month/week it belongs to, the
totals and breakdowns, and a cache keyed by a fingerprint of the inputs.

Entry point for most callers:

    from taskdash.analytics.service import AnalyticsService
"""

__version__ = "1.0.0"
__all__ = ["analytics", "engine", "process", "security"]
