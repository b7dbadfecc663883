"""
taskdash Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import MagicMock

import pytest


# ---------------------------------------------------------------------------
# Environment setup
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Reset global singletons between tests; the default calendar zone is UTC."""
    import taskdash.engine.config as cfg_mod
    from taskdash.engine.logging import shutdown_logging

    cfg_mod._config = cfg_mod.build_config({"calendar": {"timezone": "UTC"}})
    yield
    cfg_mod._config = None
    shutdown_logging()


def read_log_entries(log_dir, object_type: str, category: str) -> List[Dict[str, Any]]:
    """Every JSONL entry written under one object type/category, oldest first."""
    entries: List[Dict[str, Any]] = []
    for path in sorted((Path(log_dir) / object_type / category).glob("*.jsonl")):
        entries.extend(json.loads(line) for line in path.read_text().splitlines() if line.strip())
    return entries


def ms(year: int, month: int, day: int, hour: int = 12, minute: int = 0) -> int:
    """Epoch milliseconds of a UTC wall-clock time."""
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.fixture
def admin() -> Dict[str, Any]:
    return {"role": "admin", "userId": "boss", "isActive": True}


@pytest.fixture
def user_u1() -> Dict[str, Any]:
    return {"role": "user", "userId": "u1", "isActive": True}


@pytest.fixture
def march_tasks() -> List[Dict[str, Any]]:
    """Five March 2026 tasks across two owners, two reporters and three markets."""
    return [
        {
            "id": "t1", "ownerId": "u1", "reporterId": "r1",
            "createdAt": ms(2026, 3, 2), "hoursSpent": 2, "aiUsed": False,
            "markets": ["ro", "de"], "product": "marketing",
            "deliverables": ["banner"],
        },
        {
            "id": "t2", "ownerId": "u1", "reporterId": "r2",
            "createdAt": ms(2026, 3, 3), "hoursSpent": 3, "aiUsed": True,
            "aiHoursSpent": 1, "aiModels": ["gpt", "claude"], "markets": ["ro"],
            "product": "marketing", "reworked": True,
        },
        {
            "id": "t3", "ownerId": "u2", "reporterId": "r1",
            "createdAt": ms(2026, 3, 10), "hoursSpent": 4, "markets": ["uk"],
            "product": "product", "deliverables": ["banner", "video"],
        },
        {
            "id": "t4", "ownerId": "u2", "reporterId": "r2",
            "createdAt": ms(2026, 3, 14), "hoursSpent": 1.5, "aiUsed": True,
            "aiHoursSpent": 0.5, "aiModels": ["gpt"], "markets": ["de"],
            "product": "product",
        },
        {
            "id": "t5", "ownerId": "u1", "reporterId": "r1",
            "createdAt": ms(2026, 3, 31, 23), "hoursSpent": 0.25,
            "product": "misc",
        },
    ]


@pytest.fixture
def mock_redis():
    """Return a mock Redis client."""
    client = MagicMock()
    client.ping.return_value = True
    client.get.return_value = None
    client.set.return_value = True
    client.delete.return_value = 1
    client.zcard.return_value = 0
    client.zpopmin.return_value = []
    client.scan_iter.return_value = iter([])
    return client
