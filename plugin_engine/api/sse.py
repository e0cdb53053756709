# =============================================================================
# Server-Sent Events — Wire Encoding for Engine Event Streams
# =============================================================================
#
# Each engine StreamEvent becomes one SSE frame:
#
#   event: <kind>
#   data: {"type": "<kind>", ...payload}
#
# The stream always ends with exactly one `done` or `error` frame (the
# engine guarantees it), so clients can close on either.
#
# DESIGN DECISION: Proxy buffering is disabled (X-Accel-Buffering: no) so
# token deltas reach the client as they are produced.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi.responses import StreamingResponse

from plugin_engine.agents.streaming import StreamEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def encode_sse(event: StreamEvent) -> str:
    return f"event: {event.kind}\ndata: {json.dumps(event.to_dict(), default=str)}\n\n"


async def _frames(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    count = 0
    async for event in events:
        count += 1
        yield encode_sse(event)
    logger.debug("SSE stream closed after %d event(s)", count)


def event_stream_response(events: AsyncIterator[StreamEvent]) -> StreamingResponse:
    return StreamingResponse(
        _frames(events),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
