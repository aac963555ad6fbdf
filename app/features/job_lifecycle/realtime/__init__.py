"""Rooms, presence and the real-time gateway for job channels."""

from .broadcaster import LocalRoomBroadcaster, RoomBroadcaster  # noqa: F401
from .events import RealtimeEvent, job_room, role_room, user_room  # noqa: F401
from .presence import InMemoryPresenceStore, PresenceStore, RedisPresenceStore  # noqa: F401
