"""Utility functions for executor module."""

import random
import re
import string
import time
from datetime import datetime, timezone
from typing import Optional

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b[@-Z\\-_]")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text.

    This removes color codes, cursor movement, and other terminal control sequences.

    Args:
        text: Text potentially containing ANSI escape codes.

    Returns:
        Clean text without ANSI codes.
    """
    return _ANSI_PATTERN.sub("", text)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_activity_id(prefix: str = "act") -> str:
    """Generate a unique activity ID like ``act-1718000000000-k3j9x0a``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"{prefix}-{now_ms()}-{suffix}"


def truncate(text: Optional[str], max_length: int) -> str:
    """Truncate string to max_length (ellipsis included)."""
    if not text:
        return ""
    text = str(text)
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def truncate_command(command: Optional[str], max_length: int = 60) -> str:
    """Collapse newlines in a shell command and truncate it for display."""
    if not command:
        return "command"
    return truncate(str(command).replace("\n", " ").strip(), max_length)


def format_path(path: Optional[str]) -> str:
    """Shorten a file path to its last two segments."""
    if not path:
        return "file"
    path = str(path)
    segments = [s for s in path.split("/") if s]
    if len(segments) <= 2:
        return path
    return ".../" + "/".join(segments[-2:])


def format_duration(ms: float) -> str:
    """Format milliseconds as ``850ms``, ``12.5s`` or ``2m 5s``."""
    if ms < 1000:
        return f"{int(ms)}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    minutes = int(ms // 60000)
    seconds = int((ms % 60000) // 1000)
    return f"{minutes}m {seconds}s"
