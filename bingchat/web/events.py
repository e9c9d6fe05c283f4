"""In-memory change hub for the session SSE feed."""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from collections import defaultdict
from typing import Any, AsyncIterator, Awaitable, Callable


class EventHub:
    """Per-session view snapshots + pub/sub for SSE streaming.

    Only the most recent `max_events_per_session` snapshots are kept; a client
    that falls behind simply skips to the newest view.
    """

    def __init__(self, max_events_per_session: int = 200):
        self._events: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._conditions: dict[str, asyncio.Condition] = defaultdict(asyncio.Condition)
        self._ids = itertools.count(1)
        self._max_events_per_session = max_events_per_session
        self._notify_tasks: set[asyncio.Task[None]] = set()

    def publish_nowait(self, channel: str, view: dict[str, Any]) -> dict[str, Any]:
        """Record a snapshot and wake subscribers from synchronous code."""
        event = {"id": next(self._ids), "channel": channel, "view": view}
        bucket = self._events[channel]
        bucket.append(event)
        if len(bucket) > self._max_events_per_session:
            del bucket[: len(bucket) - self._max_events_per_session]

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return event
        task = loop.create_task(self._notify(channel))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)
        return event

    async def _notify(self, channel: str) -> None:
        cond = self._conditions[channel]
        async with cond:
            cond.notify_all()

    def latest_id(self, channel: str) -> int:
        bucket = self._events.get(channel)
        return int(bucket[-1]["id"]) if bucket else 0

    def get_since(self, channel: str, last_event_id: int | None = None) -> list[dict[str, Any]]:
        """Get channel events after `last_event_id` (exclusive)."""
        events = list(self._events.get(channel, []))
        if last_event_id is None:
            return events
        return [e for e in events if int(e["id"]) > last_event_id]

    async def wait_for_new(
        self,
        channel: str,
        last_event_id: int | None = None,
        timeout_s: float = 15.0,
    ) -> bool:
        """Wait until the channel holds an event newer than `last_event_id`.

        Returns immediately when one is already pending, so a publish that
        happened while nobody was waiting is not lost.
        """
        after = last_event_id or 0
        cond = self._conditions[channel]
        try:
            async with cond:
                await asyncio.wait_for(
                    cond.wait_for(lambda: self.latest_id(channel) > after),
                    timeout=timeout_s,
                )
            return True
        except asyncio.TimeoutError:
            return False


def _sse(event: str, payload: dict[str, Any], event_id: int | None = None) -> str:
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def stream_views(
    hub: EventHub,
    channel: str,
    current_view: Callable[[], dict[str, Any]],
    *,
    is_disconnected: Callable[[], Awaitable[bool]],
    wait_timeout_s: float = 15.0,
    heartbeat_s: float = 15.0,
) -> AsyncIterator[str]:
    """SSE frames for one session: a snapshot, then the newest view on each change.

    Pending views are drained before every wait. A heartbeat goes out when
    nothing was written for `heartbeat_s`.
    """
    yield _sse("snapshot", {"id": 0, "channel": channel, "view": current_view()})
    last_id = hub.latest_id(channel)
    last_write = time.monotonic()

    while not await is_disconnected():
        items = hub.get_since(channel, last_id)
        if items:
            # Views are full snapshots; only the newest matters.
            item = items[-1]
            last_id = int(item["id"])
            last_write = time.monotonic()
            yield _sse("view", item, event_id=last_id)
            continue

        if await hub.wait_for_new(channel, last_id, timeout_s=wait_timeout_s):
            continue

        if time.monotonic() - last_write >= heartbeat_s:
            last_write = time.monotonic()
            yield _sse("heartbeat", {"ts": time.time(), "type": "heartbeat", "channel": channel})
