"""Parser for the agent's stream-json output.

Turns one physical stdout line at a time into domain activities and
metrics snapshots. The parser is pure: all state lives in ``ParseState``,
which callers thread through successive ``parse_line`` calls.

Input lines come from a process this package does not control, so every
line is recoverable: anything that is not one of the known JSON shapes
degrades to a plain ``message`` activity.
"""

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional, Union

from .logging import get_logger
from .models import Activity, ExecutionMetrics, ParseState, StreamEvent
from .utils import format_duration, format_path, truncate, truncate_command

KNOWN_TOOLS = (
    "Read",
    "Write",
    "Edit",
    "Bash",
    "Glob",
    "Grep",
    "Task",
    "TodoWrite",
    "WebFetch",
    "WebSearch",
)

MESSAGE_PREVIEW_LENGTH = 200


# ============================================================================
# Raw events
# ============================================================================


@dataclass(frozen=True)
class AssistantEvent:
    text: str


@dataclass(frozen=True)
class ContentBlockStartEvent:
    block_type: str
    tool_name: Optional[str] = None


@dataclass(frozen=True)
class ContentBlockDeltaEvent:
    partial_json: str = ""
    text: str = ""


@dataclass(frozen=True)
class ContentBlockStopEvent:
    pass


@dataclass(frozen=True)
class ResultEvent:
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    is_error: bool = False


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class SystemEvent:
    message: str


@dataclass(frozen=True)
class UnknownEvent:
    """Well-formed JSON object of a type the parser does not handle."""
    event_type: str


@dataclass(frozen=True)
class PlainText:
    """Anything that is not a JSON object: free text or garbled output."""
    text: str


RawEvent = Union[
    AssistantEvent,
    ContentBlockStartEvent,
    ContentBlockDeltaEvent,
    ContentBlockStopEvent,
    ResultEvent,
    ErrorEvent,
    SystemEvent,
    UnknownEvent,
    PlainText,
]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _assistant_text(data: dict) -> str:
    message = data.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, list) and content:
            first = content[0]
            if isinstance(first, dict) and isinstance(first.get("text"), str):
                return first["text"]
        elif isinstance(content, str):
            return content
    content = data.get("content")
    return content if isinstance(content, str) else ""


def _error_message(data: dict) -> str:
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    if isinstance(data.get("message"), str) and data["message"]:
        return data["message"]
    return "Unknown error"


def _result_event(data: dict) -> ResultEvent:
    nested = data.get("result")
    nested = nested if isinstance(nested, dict) else {}

    cost = _number(nested.get("cost_usd"))
    if cost is None:
        cost = _number(data.get("cost_usd"))
    duration = _number(nested.get("duration_ms"))
    if duration is None:
        duration = _number(data.get("duration_ms"))

    return ResultEvent(
        cost_usd=cost or 0.0,
        duration_ms=duration or 0.0,
        is_error=bool(nested.get("is_error", data.get("is_error", False))),
    )


def decode_raw_event(line: str) -> RawEvent:
    """Decode one line into the closed set of raw stream-json events."""
    try:
        data = json.loads(line)
    except (ValueError, RecursionError):
        return PlainText(line)

    if not isinstance(data, dict):
        return PlainText(line)

    event_type = data.get("type")

    if event_type == "assistant":
        return AssistantEvent(_assistant_text(data))

    if event_type == "content_block_start":
        block = data.get("content_block")
        block = block if isinstance(block, dict) else {}
        name = block.get("name")
        return ContentBlockStartEvent(
            block_type=str(block.get("type") or ""),
            tool_name=name if isinstance(name, str) else None,
        )

    if event_type == "content_block_delta":
        delta = data.get("delta")
        delta = delta if isinstance(delta, dict) else {}
        partial = delta.get("partial_json")
        text = delta.get("text")
        return ContentBlockDeltaEvent(
            partial_json=partial if isinstance(partial, str) else "",
            text=text if isinstance(text, str) else "",
        )

    if event_type == "content_block_stop":
        return ContentBlockStopEvent()

    if event_type == "result":
        return _result_event(data)

    if event_type == "error":
        return ErrorEvent(_error_message(data))

    if event_type == "system":
        message = data.get("message") or data.get("subtype")
        return SystemEvent(str(message) if message else "System event")

    return UnknownEvent(str(event_type))


# ============================================================================
# Tool details
# ============================================================================


def normalize_tool_name(name: Optional[str]) -> Optional[str]:
    """Return the canonical spelling of a known tool, or None."""
    if not name:
        return None
    lowered = name.lower()
    for tool in KNOWN_TOOLS:
        if tool.lower() == lowered:
            return tool
    return None


def format_tool_details(tool: str, params: dict) -> str:
    """Human-readable summary of a tool call from its complete parameters."""
    name = tool.lower()

    if name == "read":
        return f"Reading {format_path(params.get('file_path'))}"
    if name == "write":
        return f"Writing {format_path(params.get('file_path'))}"
    if name == "edit":
        return f"Editing {format_path(params.get('file_path'))}"
    if name == "bash":
        return f"Running: {truncate_command(params.get('command'))}"
    if name == "glob":
        return f"Searching: {params.get('pattern', '')}"
    if name == "grep":
        return f"Searching for: {params.get('pattern', '')}"
    if name == "task":
        return f"Task: {truncate(params.get('description'), 50)}"
    if name == "todowrite":
        return "Updating todo list"
    if name == "webfetch":
        return f"Fetching: {truncate(params.get('url'), 50)}"
    if name == "websearch":
        return f"Searching: {truncate(params.get('query'), 50)}"
    return f"{tool}: {json.dumps(params)[:50]}"


_PARTIAL_FIELDS = {
    "file_path": re.compile(r'"file_path"\s*:\s*"([^"]+)'),
    "command": re.compile(r'"command"\s*:\s*"([^"]+)'),
    "pattern": re.compile(r'"pattern"\s*:\s*"([^"]+)'),
    "query": re.compile(r'"query"\s*:\s*"([^"]+)'),
}


def _salvage_partial_details(tool: str, partial_json: str) -> Optional[str]:
    """Pull a key field out of truncated or otherwise invalid tool input."""
    match = _PARTIAL_FIELDS["file_path"].search(partial_json)
    if match:
        action = {"read": "Reading", "write": "Writing"}.get(tool.lower(), "Editing")
        return f"{action} {format_path(match.group(1))}"

    match = _PARTIAL_FIELDS["command"].search(partial_json)
    if match:
        return f"Running: {truncate_command(match.group(1))}"

    for key in ("pattern", "query"):
        match = _PARTIAL_FIELDS[key].search(partial_json)
        if match:
            return f"Searching: {match.group(1)}"

    return None


def extract_tool_details(tool: str, tool_input: str) -> str:
    """Summarise an accumulated tool input buffer."""
    try:
        params = json.loads(tool_input)
    except (ValueError, RecursionError):
        params = None

    if isinstance(params, dict):
        return format_tool_details(tool, params)

    salvaged = _salvage_partial_details(tool, tool_input)
    if salvaged:
        return salvaged
    return f"{tool}: {truncate(tool_input, 50)}"


# ============================================================================
# Line parser
# ============================================================================


@dataclass(frozen=True)
class ParseResult:
    """Outcome of parsing one line.

    Attributes:
        activity: Activity produced by the line itself, if any.
        metrics: Metrics snapshot (only for ``result`` lines).
        state: State to pass to the next call.
        flushed: Completed tool summary released because this line closed
            an active tool. Emit it before ``activity``.
    """
    activity: Optional[Activity]
    metrics: Optional[ExecutionMetrics]
    state: ParseState
    flushed: Optional[Activity] = None

    @property
    def activities(self) -> tuple[Activity, ...]:
        """Activities in emission order."""
        return tuple(a for a in (self.flushed, self.activity) if a is not None)


@dataclass
class ParseBatch:
    activities: list[Activity] = field(default_factory=list)
    metrics: Optional[ExecutionMetrics] = None


def create_parse_state(max_iterations: int = 10) -> ParseState:
    """Fresh parser state."""
    return ParseState(max_iterations=max_iterations)


def _clear_tool(state: ParseState) -> ParseState:
    return replace(state, current_tool=None, current_tool_input="", current_tool_activity_id=None)


def _flush_tool(state: ParseState) -> tuple[Optional[Activity], ParseState]:
    if not state.current_tool or not state.current_tool_input:
        return None, state

    activity = Activity.create(
        "tool",
        details=extract_tool_details(state.current_tool, state.current_tool_input),
        status="success",
        tool=state.current_tool,
        id=state.current_tool_activity_id,
    )
    return activity, replace(state, current_tool_input="")


def _handle_result(event: ResultEvent, state: ParseState) -> ParseResult:
    iteration = state.iteration + 1
    total_cost = state.total_cost_usd + event.cost_usd
    total_duration = state.total_duration_ms + event.duration_ms

    new_state = replace(
        _clear_tool(state),
        iteration=iteration,
        total_cost_usd=total_cost,
        total_duration_ms=total_duration,
    )

    activity = Activity.create(
        "result",
        details=(
            f"Iteration {iteration} complete "
            f"(${event.cost_usd:.4f}, {format_duration(event.duration_ms)})"
        ),
        status="error" if event.is_error else "success",
        duration=event.duration_ms,
    )
    metrics = ExecutionMetrics(
        iteration=iteration,
        max_iterations=state.max_iterations,
        cost_usd=event.cost_usd,
        duration_ms=event.duration_ms,
        total_cost_usd=total_cost,
        total_duration_ms=total_duration,
    )
    return ParseResult(activity, metrics, new_state)


def _parse(line: str, state: ParseState) -> ParseResult:
    event = decode_raw_event(line.strip())

    if isinstance(event, ContentBlockDeltaEvent):
        if state.current_tool and event.partial_json:
            state = replace(state, current_tool_input=state.current_tool_input + event.partial_json)
        return ParseResult(None, None, state)

    flushed, state = _flush_tool(state)

    if isinstance(event, PlainText):
        activity = Activity.create("message", details=line, status="success")
        return ParseResult(activity, None, state, flushed)

    if isinstance(event, AssistantEvent):
        if not event.text.strip():
            return ParseResult(None, None, state, flushed)
        details = event.text
        if len(details) > MESSAGE_PREVIEW_LENGTH:
            details = details[:MESSAGE_PREVIEW_LENGTH] + "..."
        activity = Activity.create("message", details=details, status="success")
        return ParseResult(activity, None, state, flushed)

    if isinstance(event, ContentBlockStartEvent):
        tool = normalize_tool_name(event.tool_name) if event.block_type == "tool_use" else None
        if tool is None:
            return ParseResult(None, None, _clear_tool(state), flushed)
        activity = Activity.create("tool", details=f"Starting {tool}...", status="pending", tool=tool)
        state = replace(
            state,
            current_tool=tool,
            current_tool_input="",
            current_tool_activity_id=activity.id,
        )
        return ParseResult(activity, None, state, flushed)

    if isinstance(event, ContentBlockStopEvent):
        return ParseResult(None, None, _clear_tool(state), flushed)

    if isinstance(event, ResultEvent):
        result = _handle_result(event, state)
        return replace(result, flushed=flushed)

    if isinstance(event, ErrorEvent):
        activity = Activity.create("error", details=event.message, status="error")
        return ParseResult(activity, None, state, flushed)

    if isinstance(event, SystemEvent):
        activity = Activity.create("system", details=event.message, status="success")
        return ParseResult(activity, None, state, flushed)

    return ParseResult(None, None, state, flushed)


def parse_line(line: str, state: ParseState) -> ParseResult:
    """Parse one output line.

    Args:
        line: One physical line, without its trailing newline.
        state: State returned by the previous call (see ``create_parse_state``).

    Returns:
        ParseResult with the produced activity/metrics and the new state.
        Never raises.
    """
    if not line or not line.strip():
        return ParseResult(None, None, state)

    line = line.rstrip("\r\n")
    try:
        return _parse(line, state)
    except Exception as e:
        get_logger().debug(f"Stream line degraded to plain text ({type(e).__name__}): {line[:100]}")
        # Drop any half-built tool so the next line starts clean
        return ParseResult(Activity.create("message", details=line, status="success"), None, _clear_tool(state))


def parse_lines(lines: Iterable[str], max_iterations: int = 10) -> ParseBatch:
    """Fold ``parse_line`` over a batch of log entries.

    Entries may contain embedded newlines; each physical line is parsed on
    its own. Returns every activity in order and only the last metrics
    snapshot.
    """
    batch = ParseBatch()
    state = create_parse_state(max_iterations)

    for entry in lines:
        for line in entry.split("\n"):
            result = parse_line(line, state)
            state = result.state
            batch.activities.extend(result.activities)
            if result.metrics is not None:
                batch.metrics = result.metrics

    return batch


def line_to_stream_events(
    line: str,
    state: ParseState,
    issue_id: str,
) -> tuple[list[StreamEvent], ParseState]:
    """Parse one line and wrap its output as ordered StreamEvents for ``issue_id``."""
    result = parse_line(line, state)
    events = [StreamEvent.activity(issue_id, a) for a in result.activities]
    if result.metrics is not None:
        events.append(StreamEvent.metrics(issue_id, result.metrics))
    return events, result.state


# ============================================================================
# Free-form log lines
# ============================================================================

_ERROR_PATTERN = re.compile(r"\[error\]|\bError\b|\bERROR\b")
_WARN_PATTERN = re.compile(r"\bwarn(ing)?\b", re.IGNORECASE)
_SUCCESS_PATTERN = re.compile(r"\b(success(ful|fully)?|complete[d]?|passed)\b", re.IGNORECASE)


def create_log_activity(line: str) -> Activity:
    """Classify a free-form log line into an activity by simple markers."""
    if _ERROR_PATTERN.search(line):
        return Activity.create("error", details=line, status="error")
    if _WARN_PATTERN.search(line):
        return Activity.create("message", details=line, status="pending")
    if _SUCCESS_PATTERN.search(line):
        return Activity.create("result", details=line, status="success")
    if line.lstrip().startswith((">>>", "===")):
        return Activity.create("system", details=line, status="success")
    return Activity.create("message", details=line, status="success")
