"""Server-sent event framing and the queue-to-stream pump used by the stream endpoint."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

KEEP_ALIVE = ": keep-alive\n\n"
KEEP_ALIVE_INTERVAL_SEC = 0.75

StreamEvent = tuple[str, dict[str, Any]]


def format_sse(event: str, payload: dict[str, Any], *, event_id: str | None = None) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)
    frame = f"event: {event}\ndata: {data}\n\n"
    return f"id: {event_id}\n{frame}" if event_id else frame


async def pump_events(
    queue: asyncio.Queue[StreamEvent],
    done: asyncio.Event,
    *,
    keep_alive_sec: float = KEEP_ALIVE_INTERVAL_SEC,
) -> AsyncIterator[str]:
    """Yield queued events as SSE frames until the producer is done and the queue is drained.

    A comment frame goes out whenever no event arrives within ``keep_alive_sec``
    so proxies do not close an idle connection.
    """
    sequence = 0
    while not (done.is_set() and queue.empty()):
        try:
            event_name, payload = await asyncio.wait_for(queue.get(), timeout=keep_alive_sec)
        except asyncio.TimeoutError:
            yield KEEP_ALIVE
            continue
        sequence += 1
        yield format_sse(event_name, payload, event_id=str(sequence))
