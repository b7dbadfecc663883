"""
taskdash Access Filter — role/ownership/scope visibility of tasks.

Decision order (first matching rule wins):

    1. inactive viewer                      -> hidden
    2. admin
       a. user + reporter scope             -> owner AND reporter match
       b. user scope only                   -> owner matches
       c. reporter scope only               -> reporter matches
       d. no scope                          -> visible
    3. user
       a. task owned by the viewer          -> required, regardless of scope
       b. reporter scope                    -> reporter must match as well
    4. any other role                       -> hidden (fail closed)

An admin scoped by reporter alone does not also need ownership, while a
user's reporter scope always applies on top of ownership. The predicate is
pure and total: missing or malformed owner/reporter ids are "no match".
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from taskdash.analytics.coerce import to_id
from taskdash.analytics.models import ADMIN_ROLE, USER_ROLE, ScopeFilter, Task, Viewer
from taskdash.analytics.normalize import normalize_task

logger = logging.getLogger("taskdash.security.access")


def normalize_scope_id(value: Any) -> Optional[str]:
    """Scope ids are compared as stripped strings; blanks mean "not set"."""
    return to_id(value)


def _matches(task_value: Optional[str], wanted: Optional[str]) -> bool:
    task_id = to_id(task_value)
    return task_id is not None and wanted is not None and task_id == wanted


def _owned_by(task: Task, wanted: Optional[str]) -> bool:
    return wanted is not None and any(_matches(owner, wanted) for owner in task.owners)


def is_visible(task: Any, viewer: Any, scope: Any = None) -> bool:
    """Whether *viewer* may see *task* under the optional *scope*."""
    viewer = Viewer.from_raw(viewer)
    if not viewer.is_active:
        return False

    if not isinstance(task, Task):
        task = normalize_task(task)
        if task is None:
            return False

    scope = ScopeFilter.from_raw(scope)
    selected_user = normalize_scope_id(scope.selected_user_id)
    selected_reporter = normalize_scope_id(scope.selected_reporter_id)
    role = viewer.role.strip().lower()

    if role == ADMIN_ROLE:
        if selected_user and selected_reporter:
            return (
                _owned_by(task, selected_user)
                and _matches(task.reporter_id, selected_reporter)
            )
        if selected_user:
            return _owned_by(task, selected_user)
        if selected_reporter:
            return _matches(task.reporter_id, selected_reporter)
        return True

    if role == USER_ROLE:
        if not _owned_by(task, to_id(viewer.user_id)):
            return False
        if selected_reporter:
            return _matches(task.reporter_id, selected_reporter)
        return True

    return False


def filter_visible(tasks: Iterable[Any], viewer: Any, scope: Any = None) -> List[Task]:
    """The visible subset of *tasks*, order preserved, as canonical Tasks."""
    policy = TaskAccessPolicy(viewer, scope)
    return policy.filter(tasks)


class TaskAccessPolicy:
    """
    A viewer/scope pair bound once and applied to many tasks.

    Resolves the viewer and scope from loose mappings the same way the
    dashboard session hands them over (``role``, ``userId``, ``isActive``,
    ``selectedUserId``, ``selectedReporterId``).
    """

    def __init__(self, viewer: Any, scope: Any = None):
        self.viewer: Viewer = Viewer.from_raw(viewer)
        self.scope: ScopeFilter = ScopeFilter.from_raw(scope)

    def __call__(self, task: Any) -> bool:
        return is_visible(task, self.viewer, self.scope)

    def filter(self, tasks: Iterable[Any]) -> List[Task]:
        if tasks is None:
            return []
        visible: List[Task] = []
        for raw in tasks:
            task = raw if isinstance(raw, Task) else normalize_task(raw)
            if task is not None and is_visible(task, self.viewer, self.scope):
                visible.append(task)
        logger.debug(
            f"Access filter ({self.describe()}): {len(visible)} visible task(s)"
        )
        return visible

    def describe(self) -> str:
        parts = [
            f"role={self.viewer.role or '?'}",
            f"user={self.viewer.user_id or '-'}",
            f"active={self.viewer.is_active}",
        ]
        if self.scope.selected_user_id:
            parts.append(f"scope_user={self.scope.selected_user_id}")
        if self.scope.selected_reporter_id:
            parts.append(f"scope_reporter={self.scope.selected_reporter_id}")
        return " ".join(parts)
