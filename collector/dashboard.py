"""Aggregate the recorders' read APIs into one dashboard snapshot."""
from __future__ import annotations

from typing import Any, Dict

from .actions import ActionRecorder
from .error_reports import ErrorRecorder
from .filters import NO_FILTERS, StatsFilters
from .installations import InstallationRecorder


def build_snapshot(
    actions: ActionRecorder,
    installations: InstallationRecorder,
    errors: ErrorRecorder,
    filters: StatsFilters = NO_FILTERS,
    top_limit: int = 10,
    recent_limit: int = 50,
    recent_actions_limit: int = 100,
) -> Dict[str, Any]:
    return {
        "filters": filters.model_dump(exclude_none=True),
        "actions": {
            "stats": actions.stats(filters).model_dump(),
            "top": [item.model_dump() for item in actions.top_actions(top_limit, filters)],
            "visitors": [item.model_dump() for item in actions.visitor_summary(filters)],
            "recent": actions.recent_actions(recent_actions_limit),
        },
        "installations": {
            "stats": installations.stats(filters).model_dump(),
            "versions": [item.model_dump() for item in installations.version_breakdown(filters)],
            "os": [item.model_dump() for item in installations.os_breakdown(filters)],
            "recent": installations.recent_installations(recent_limit, filters),
            "by_ip": [item.model_dump() for item in installations.installations_by_ip()],
        },
        "errors": {
            "stats": errors.stats(filters).model_dump(),
            "breakdown": [item.model_dump() for item in errors.error_breakdown(filters=filters)],
            "recent": [group.to_dict() for group in errors.recent_errors(recent_limit, filters)],
        },
    }


__all__ = ["build_snapshot"]
