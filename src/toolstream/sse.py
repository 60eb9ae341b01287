"""Server-Sent Events adapter for streaming events."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from pydantic_core import to_jsonable_python

from toolstream.events import StreamEvent


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        data = json.dumps(to_jsonable_python(event, fallback=str))
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
