"""
Room broadcaster.

Connections register an outbound queue; rooms are sets of connection ids.
``publish`` enqueues synchronously, so events published in commit order reach
every member queue in that order. Delivery to the socket happens in the
connection's writer task.
"""

import asyncio
from collections import defaultdict
from typing import Protocol

from app.infrastructure.observability.logging import get_logger

from .events import RealtimeEvent

logger = get_logger(__name__)


class RoomBroadcaster(Protocol):
    def join(self, connection_id: str, room: str) -> None: ...

    def leave(self, connection_id: str, room: str) -> None: ...

    def publish(self, room: str, event: RealtimeEvent, exclude: str | None = None) -> int: ...


class LocalRoomBroadcaster:
    """In-process rooms backed by one asyncio.Queue per connection."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._queues: dict[str, asyncio.Queue] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)

    def register(self, connection_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues[connection_id] = queue
        return queue

    def unregister(self, connection_id: str) -> None:
        for room in list(self._memberships.get(connection_id, ())):
            self.leave(connection_id, room)
        self._memberships.pop(connection_id, None)
        self._queues.pop(connection_id, None)

    def join(self, connection_id: str, room: str) -> None:
        if connection_id not in self._queues:
            raise KeyError(f"Unknown connection {connection_id}")
        self._rooms[room].add(connection_id)
        self._memberships[connection_id].add(room)

    def leave(self, connection_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]
        self._memberships.get(connection_id, set()).discard(room)

    def members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, ()))

    def send(self, connection_id: str, event: RealtimeEvent) -> bool:
        queue = self._queues.get(connection_id)
        if queue is None:
            return False
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            # At-most-once: a stalled client loses events and refetches on reconnect
            logger.warning(
                "Outbound queue full, dropping event",
                connection_id=connection_id,
                event_name=event.name,
            )
            return False
        return True

    def publish(self, room: str, event: RealtimeEvent, exclude: str | None = None) -> int:
        delivered = 0
        for connection_id in sorted(self._rooms.get(room, ())):
            if connection_id == exclude:
                continue
            if self.send(connection_id, event):
                delivered += 1
        logger.debug("Room event published", room=room, event_name=event.name, recipients=delivered)
        return delivered
