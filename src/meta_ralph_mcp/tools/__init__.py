"""Tools package for meta-ralph-mcp."""

from .ci import get_ci_poll, get_ci_status, watch_ci
from .process import cancel_processing, get_session, list_sessions, process_issues
from .status import check_status

__all__ = [
    "process_issues",
    "cancel_processing",
    "get_session",
    "list_sessions",
    "get_ci_status",
    "watch_ci",
    "get_ci_poll",
    "check_status",
]
