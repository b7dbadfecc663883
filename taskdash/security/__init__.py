"""taskdash Security — task visibility by role, ownership and scope."""

from taskdash.security.access import (  # noqa: F401
    TaskAccessPolicy,
    filter_visible,
    is_visible,
    normalize_scope_id,
)

__all__ = [
    "TaskAccessPolicy",
    "filter_visible",
    "is_visible",
    "normalize_scope_id",
]
