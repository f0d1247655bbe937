from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

FINAL_STATUSES = frozenset({"completed", "failed"})


class EventBus:
    """In-process fan-out of execution status changes to stream subscribers.

    Each subscriber gets a bounded buffer; when a slow consumer falls behind,
    its oldest undelivered event is dropped.
    """

    def __init__(self, buffer_size: int = 64) -> None:
        self.buffer_size = buffer_size
        self._subscribers: dict[str, list[asyncio.Queue[dict[str, Any]]]] = defaultdict(list)

    async def publish(self, execution_id: str, event: dict[str, Any]) -> int:
        """Deliver to current subscribers of one execution. Returns how many received it."""
        queues = list(self._subscribers.get(execution_id, ()))
        for queue in queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
        return len(queues)

    async def subscribe(
        self, execution_id: str, *, idle_timeout: float | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield events for ``execution_id``; the stream ends after a completed/failed status.

        With ``idle_timeout`` set, an ``{"type": "idle"}`` event is yielded whenever that many
        seconds pass without a published event.
        """
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.buffer_size)
        self._subscribers[execution_id].append(queue)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), idle_timeout)
                except TimeoutError:
                    event = {"type": "idle", "execution_id": execution_id}
                yield event
                if event.get("status") in FINAL_STATUSES:
                    return
        finally:
            subscribers = self._subscribers.get(execution_id, [])
            if queue in subscribers:
                subscribers.remove(queue)
            if not subscribers:
                self._subscribers.pop(execution_id, None)

    def subscriber_count(self, execution_id: str) -> int:
        return len(self._subscribers.get(execution_id, ()))


_EVENT_BUS: EventBus | None = None


def get_event_bus() -> EventBus:
    global _EVENT_BUS
    if _EVENT_BUS is None:
        _EVENT_BUS = EventBus()
    return _EVENT_BUS
