"""
Presence: which users currently hold at least one live connection.

Two backends:
    InMemoryPresenceStore - per-process map, single-instance deployments.
    RedisPresenceStore    - shared set per user with a TTL, so a user connected
                            to one process is visible to the dispatcher in another.

A Redis failure reads as "offline"; the dispatcher then persists and pushes.
"""

from collections import defaultdict
from typing import Protocol

from app.infrastructure.observability.logging import get_logger
from app.infrastructure.redis_client import FastRedisClient

logger = get_logger(__name__)


class PresenceStore(Protocol):
    async def add(self, user_id: str, connection_id: str) -> None: ...

    async def remove(self, user_id: str, connection_id: str) -> None: ...

    async def is_online(self, user_id: str) -> bool: ...


class InMemoryPresenceStore:
    def __init__(self):
        self._connections: dict[str, set[str]] = defaultdict(set)

    async def add(self, user_id: str, connection_id: str) -> None:
        self._connections[user_id].add(connection_id)

    async def remove(self, user_id: str, connection_id: str) -> None:
        connections = self._connections.get(user_id)
        if connections is None:
            return
        connections.discard(connection_id)
        if not connections:
            del self._connections[user_id]

    async def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))


class RedisPresenceStore:
    KEY_PREFIX = "presence:user:"

    def __init__(self, client: FastRedisClient, ttl_s: int = 120):
        self.client = client
        self.ttl_s = ttl_s

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def add(self, user_id: str, connection_id: str) -> None:
        if not await self.client.add_to_set(self._key(user_id), connection_id, self.ttl_s):
            logger.warning("Presence add failed", user_id=user_id, connection_id=connection_id)

    async def remove(self, user_id: str, connection_id: str) -> None:
        await self.client.remove_from_set(self._key(user_id), connection_id)

    async def is_online(self, user_id: str) -> bool:
        size = await self.client.set_size(self._key(user_id))
        if size is None:
            logger.warning("Presence lookup failed, treating user as offline", user_id=user_id)
            return False
        return size > 0
