"""Server-Sent Events framing for StreamEvents."""

import json
from collections.abc import AsyncIterator
from typing import Optional

from .logging import get_logger
from .models import StreamEvent

SSE_DATA_PREFIX = "data: "


def format_sse(event: StreamEvent) -> str:
    """Format a StreamEvent as one SSE message."""
    return f"{SSE_DATA_PREFIX}{json.dumps(event.to_dict())}\n\n"


def parse_sse(line: str) -> Optional[StreamEvent]:
    """Parse an SSE ``data:`` line back into a StreamEvent."""
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    try:
        data = json.loads(line[len(SSE_DATA_PREFIX):])
    except json.JSONDecodeError:
        get_logger().debug(f"Failed to parse SSE event: {line[:100]}")
        return None
    return StreamEvent.from_dict(data)


async def sse_frames(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Serialise an event stream to SSE frames, preserving order."""
    async for event in events:
        yield format_sse(event)
