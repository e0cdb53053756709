# =============================================================================
# Streaming Transport — Ordered, Bounded, Single-Terminal Event Stream
# =============================================================================
#
# Every orchestrator has a streaming variant built the same way: the pipeline
# runs as a producer task that emits StreamEvents into an EventStream, and
# the caller iterates the events.
#
# GUARANTEES:
# 1. Order — events are delivered in emission order (one FIFO queue).
# 2. Backpressure — the queue is bounded (settings.stream_buffer_size);
#    emit() waits while it is full, so a slow consumer throttles the
#    producer instead of the buffer growing without limit.
# 3. Exactly one terminal event (`done` or `error`) and nothing after it.
#    Emitting after a terminal event raises RuntimeError. If the producer
#    returns without a terminal event, `done` is emitted for it; if it
#    raises, the exception becomes the `error` event.
# 4. Cancellation — when the consumer stops iterating (client disconnect),
#    the producer task is cancelled, which cancels every in-flight external
#    call it is awaiting.
#
# DESIGN DECISION: The transport knows nothing about wire formats. SSE
# encoding is an adapter in api/sse.py.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from plugin_engine.config import settings
from plugin_engine.errors import EngineError

logger = logging.getLogger(__name__)

TERMINAL_KINDS = frozenset({"done", "error"})


@dataclass(frozen=True)
class StreamEvent:
    """A tagged, self-describing stream record."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, **self.payload}


class EventStream:
    """Producer-side sink backed by a bounded queue."""

    def __init__(self, maxsize: int | None = None) -> None:
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(
            maxsize=maxsize or settings.stream_buffer_size
        )
        self._terminated = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def emit(self, kind: str, payload: dict[str, Any] | None = None) -> None:
        if self._terminated:
            raise RuntimeError(f"Cannot emit '{kind}': stream already terminated")
        event = StreamEvent(kind, payload or {})
        if event.terminal:
            self._terminated = True
        await self._queue.put(event)

    async def next_event(self) -> StreamEvent:
        return await self._queue.get()


Producer = Callable[[EventStream], Awaitable[Any]]


def open_stream(producer: Producer, maxsize: int | None = None) -> AsyncIterator[StreamEvent]:
    """
    Run `producer` as a task and return an iterator over its events.

    The iterator ends right after the terminal event.
    """

    async def _iterate() -> AsyncIterator[StreamEvent]:
        stream = EventStream(maxsize)

        async def _run() -> None:
            try:
                await producer(stream)
                if not stream.terminated:
                    await stream.emit("done")
            except EngineError as exc:
                logger.warning("Stream producer failed: %s (%s)", exc.message, exc.code)
                if not stream.terminated:
                    await stream.emit("error", exc.to_dict())
            except Exception as exc:
                logger.exception("Stream producer crashed")
                if not stream.terminated:
                    await stream.emit("error", {
                        "code": "internal_error",
                        "message": str(exc) or exc.__class__.__name__,
                        "details": {},
                    })

        task = asyncio.create_task(_run())
        try:
            while True:
                event = await stream.next_event()
                yield event
                if event.terminal:
                    break
            await task
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    return _iterate()


async def collect(events: AsyncIterator[StreamEvent]) -> list[StreamEvent]:
    """Drain an event iterator into a list."""
    return [event async for event in events]
