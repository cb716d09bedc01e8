"""Executor package for running meta-ralph and streaming its events."""

from .cli import check_meta_ralph_available, find_meta_ralph
from .events import create_parse_state, parse_line, parse_lines
from .models import Activity, ExecutionMetrics, ParseState, ProcessingSession, StreamEvent
from .runner import BatchRun, LineBuffer, parse_event_line, process_issues
from .sessions import SessionRegistry
from .sse import format_sse, parse_sse

__all__ = [
    "process_issues",
    "BatchRun",
    "LineBuffer",
    "parse_event_line",
    "check_meta_ralph_available",
    "find_meta_ralph",
    "create_parse_state",
    "parse_line",
    "parse_lines",
    "SessionRegistry",
    "format_sse",
    "parse_sse",
    "Activity",
    "ExecutionMetrics",
    "ParseState",
    "ProcessingSession",
    "StreamEvent",
]
