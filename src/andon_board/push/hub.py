"""Room-based fan-out of snapshot messages to WebSocket subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)


def dept_room(dept_id: str) -> str:
    return f"dept:{dept_id}"


def cell_room(cell_id: str) -> str:
    return f"cell:{cell_id}"


class Subscription:
    """One subscriber's bounded inbox.

    When the inbox is full the oldest message is dropped, so a slow client
    always ends up with the latest snapshot rather than a stale backlog.
    """

    def __init__(self, rooms: set[str], max_queue: int) -> None:
        self.rooms = frozenset(rooms)
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0

    def offer(self, message: dict[str, Any]) -> None:
        while True:
            try:
                self.queue.put_nowait(message)
                return
            except asyncio.QueueFull:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    async def next(self) -> dict[str, Any]:
        return await self.queue.get()


class SnapshotHub:
    def __init__(self, max_queue: int = 16) -> None:
        self._max_queue = max_queue
        self._rooms: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, rooms: set[str]) -> Subscription:
        sub = Subscription(rooms, self._max_queue)
        for room in sub.rooms:
            self._rooms[room].add(sub)
        logger.debug("Subscriber joined %s", sorted(sub.rooms))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        for room in sub.rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(sub)
            if not members:
                del self._rooms[room]
        if sub.dropped:
            logger.debug("Subscriber left after dropping %d stale messages", sub.dropped)

    def subscriber_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def publish(self, room: str, event: str, data: Any) -> int:
        """Queue ``{event, data}`` for every subscriber of ``room``; never blocks."""
        members = self._rooms.get(room)
        if not members:
            return 0
        message = {"event": event, "data": data}
        for sub in list(members):
            sub.offer(message)
        return len(members)
