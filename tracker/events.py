"""In-process change feed.

Mutations publish the name of the collection they touched; subscribers
(the SSE endpoint) re-read a fresh snapshot instead of patching state.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime

log = logging.getLogger(__name__)

COLLECTIONS = ("members", "tasks", "ratings")


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    action: str
    entity_id: str | None = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "collection": self.collection, "action": self.action,
            "entity_id": self.entity_id, "at": self.at.isoformat(),
        }


class ChangeFeed:
    """Fan-out of change events to any number of async subscribers."""

    def __init__(self, max_queue: int = 100):
        self._max_queue = max_queue
        self._subscribers: set[asyncio.Queue[ChangeEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, collection: str, action: str, entity_id: str | None = None) -> ChangeEvent:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        evt = ChangeEvent(collection=collection, action=action, entity_id=entity_id)
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()  # drop oldest
            queue.put_nowait(evt)
        log.debug("Published %s %s (%d subscribers)", collection, action, len(self._subscribers))
        return evt

    async def subscribe(self) -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)


feed = ChangeFeed()
