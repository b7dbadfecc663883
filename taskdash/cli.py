"""
taskdash CLI — run the aggregation engine over an exported task file.

Commands:
- taskdash aggregate     — Role-scoped month (or week) aggregate of a JSON task export
  (--compare: month-over-month trends)
- taskdash weeks         — Business weeks of a month
- taskdash check-config  — Validate taskdash.yaml and print the effective settings
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("taskdash.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="taskdash",
        description="taskdash — role-scoped task aggregation engine",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # taskdash aggregate
    agg_parser = subparsers.add_parser("aggregate", help="Aggregate a JSON task export")
    agg_parser.add_argument("tasks_file", help="JSON file: a list of tasks or {\"tasks\": [...]}")
    agg_parser.add_argument("--month", help="Month id YYYY-MM (default: current month)")
    agg_parser.add_argument("--role", default="admin", help="Viewer role (default: admin)")
    agg_parser.add_argument("--viewer-id", help="Viewer user id (required for role 'user')")
    agg_parser.add_argument("--user", help="Scope to tasks owned by this user id")
    agg_parser.add_argument("--reporter", help="Scope to tasks filed against this reporter id")
    agg_parser.add_argument("--inactive", action="store_true", help="Run as an inactive viewer")
    agg_parser.add_argument("--week", type=int, help="Aggregate one business week instead of the month")
    agg_parser.add_argument("--summary", action="store_true", help="Print derived dashboard metrics")
    agg_parser.add_argument("--compare", action="store_true", help="Compare the month with the previous one")
    agg_parser.add_argument("--config", help="Path to taskdash.yaml (default: auto-discover)")

    # taskdash weeks
    weeks_parser = subparsers.add_parser("weeks", help="List the business weeks of a month")
    weeks_parser.add_argument("month", help="Month id YYYY-MM")

    # taskdash check-config
    check_parser = subparsers.add_parser("check-config", help="Validate taskdash.yaml")
    check_parser.add_argument("--config", help="Path to taskdash.yaml (default: auto-discover)")

    args = parser.parse_args(argv)

    if args.command == "aggregate":
        return cmd_aggregate(args)
    elif args.command == "weeks":
        return cmd_weeks(args)
    elif args.command == "check-config":
        return cmd_check_config(args)
    else:
        parser.print_help()
        return 0


def _load_tasks(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("tasks", [])
    return data


def cmd_aggregate(args: argparse.Namespace) -> int:
    """Aggregate a task export as a given viewer."""
    from pydantic import ValidationError

    from taskdash.analytics.aggregator import summarize
    from taskdash.analytics.service import AnalyticsService
    from taskdash.engine.cache import ResultCache
    from taskdash.engine.config import load_config
    from taskdash.engine.errors import TaskDashError
    from taskdash.engine.logging import configure_logging

    try:
        config = load_config(args.config)
    except (TaskDashError, ValidationError) as e:
        print(f"[ERROR] Invalid configuration: {e}")
        return 1
    configure_logging(config.logging.level, stream=sys.stderr)

    path = Path(args.tasks_file)
    try:
        raw_tasks = _load_tasks(path)
    except (OSError, ValueError) as e:
        print(f"[ERROR] Could not read {path}: {e}")
        return 1

    if args.role == "user" and not args.viewer_id:
        print("[WARN] role 'user' without --viewer-id sees no tasks")

    viewer = {"role": args.role, "userId": args.viewer_id, "isActive": not args.inactive}
    scope = {"selectedUserId": args.user, "selectedReporterId": args.reporter}

    # One-shot run: nothing to share, keep the cache in-process
    service = AnalyticsService(
        config,
        cache=ResultCache(ttl_ms=config.cache.ttl_ms, max_entries=config.cache.max_entries),
    )
    service.start_audit_trail()
    try:
        if args.compare:
            output = service.compare_month(raw_tasks, viewer, scope, args.month)
        elif args.week is not None:
            result = service.compute_week(raw_tasks, viewer, args.week, scope, args.month)
            output = summarize(result) if args.summary else result.to_dict()
        else:
            result = service.compute_month(raw_tasks, viewer, scope, args.month)
            output = summarize(result) if args.summary else result.to_dict()
    except TaskDashError as e:
        print(f"[ERROR] {e}")
        return 1
    finally:
        service.close_audit_trail()

    print(json.dumps(output, indent=2, sort_keys=True))
    return 0


def cmd_weeks(args: argparse.Namespace) -> int:
    """Print the business weeks of a month."""
    from taskdash.analytics.buckets import is_valid_month_id, weeks_in_month

    if not is_valid_month_id(args.month):
        print(f"[ERROR] Invalid month id '{args.month}', expected YYYY-MM")
        return 1

    weeks = weeks_in_month(args.month)
    for week in weeks:
        print(
            f"Week {week.week_number}: {week.start_date.isoformat()} .. "
            f"{week.end_date.isoformat()} ({len(week.business_days)} business days)"
        )
    print(f"\n{len(weeks)} week(s), {sum(len(w.business_days) for w in weeks)} business days")
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    """Validate taskdash.yaml and print the effective configuration."""
    from pydantic import ValidationError

    from taskdash.engine.config import load_config
    from taskdash.engine.errors import TaskDashError

    try:
        config = load_config(args.config)
    except TaskDashError as e:
        print(f"[ERROR] {e.message}")
        return 1
    except ValidationError as e:
        print(f"[ERROR] {e.error_count()} invalid setting(s):")
        for err in e.errors():
            location = ".".join(str(part) for part in err["loc"])
            print(f"  - {location}: {err['msg']}")
        return 1

    print("[OK] Configuration valid")
    print(json.dumps(config.model_dump(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
