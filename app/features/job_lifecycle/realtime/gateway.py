"""
Real-time gateway

Purpose:
    Transport-independent connection handling for the job channel.

    CONNECTING --(token verified)--> CONNECTED --(disconnect)--> CLOSED

    A connected user is placed in `user:<id>` and `role:<role>` automatically
    and joins `job:<id>` rooms on request. Inbound events are authorized,
    delegated to the engine or messaging service, and on failure answered
    with an `error {message, code}` event to the requester only.

Usage:
    conn = await gateway.connect(token)        # raises AuthenticationError
    heartbeat = asyncio.create_task(gateway.keep_presence(conn))
    await gateway.handle(conn, "job:join", {"jobId": job_id})
    event = await conn.queue.get()             # outbound RealtimeEvent
    await gateway.disconnect(conn)
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from app.auth.verify import AuthenticationError, verify_token
from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Principal, Role

from ..domain.errors import ErrorKind, Outcome, ServiceError, StorageUnavailableError
from ..domain.models import new_id, utc_now
from ..repository.base import EntityStore
from ..services.messaging_service import MessagingService
from ..services.transition_engine import TransitionEngine
from . import events
from .broadcaster import LocalRoomBroadcaster
from .events import RealtimeEvent, job_room, role_room, user_room
from .presence import PresenceStore

logger = get_logger(__name__)


class ConnectionState(StrEnum):
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    CLOSED = "CLOSED"


@dataclass(eq=False)
class Connection:
    id: str = field(default_factory=new_id)
    state: ConnectionState = ConnectionState.CONNECTING
    user_id: str | None = None
    role: Role | None = None
    queue: asyncio.Queue | None = None


Handler = Callable[[Connection, dict[str, Any]], Awaitable[Outcome[Any]]]


class RealtimeGateway:
    def __init__(
        self,
        store: EntityStore,
        broadcaster: LocalRoomBroadcaster,
        presence: PresenceStore,
        engine: TransitionEngine,
        messaging: MessagingService,
        verifier: Callable[[str | None], Principal] = verify_token,
        presence_refresh_s: float = 60.0,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.presence = presence
        self.engine = engine
        self.messaging = messaging
        self.verifier = verifier
        self.presence_refresh_s = presence_refresh_s
        self._handlers: dict[str, Handler] = {
            events.JOB_JOIN: self._join_job,
            events.JOB_LEAVE: self._leave_job,
            events.JOB_UPDATE_STATUS: self._update_status,
            events.JOB_UPDATE_LOCATION: self._update_location,
            events.JOB_UPDATE_ETA: self._update_eta,
            events.MESSAGE_SEND: self._send_message,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, token: str | None) -> Connection:
        """
        Authenticate and register a connection.

        Raises:
            AuthenticationError: invalid token, or unknown / inactive user.
                The connection never reaches CONNECTED.
        """
        conn = Connection()
        try:
            principal = self.verifier(token)
            user = await self.store.get_user(principal.user_id)
            if user is None or not user.is_active:
                raise AuthenticationError("Unknown or inactive user")
        except AuthenticationError as e:
            conn.state = ConnectionState.CLOSED
            logger.info("Real-time connection rejected", connection_id=conn.id, reason=str(e))
            raise

        conn.user_id = user.id
        conn.role = user.role
        conn.queue = self.broadcaster.register(conn.id)
        self.broadcaster.join(conn.id, user_room(user.id))
        self.broadcaster.join(conn.id, role_room(user.role.value))
        await self.presence.add(user.id, conn.id)
        conn.state = ConnectionState.CONNECTED

        logger.info("Real-time connection established", connection_id=conn.id, user_id=user.id, role=user.role.value)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        if conn.state is ConnectionState.CLOSED:
            return

        for room in self.broadcaster.rooms_of(conn.id):
            if room.startswith("job:"):
                self.broadcaster.publish(
                    room,
                    RealtimeEvent(
                        events.JOB_USER_LEFT,
                        {"jobId": room.removeprefix("job:"), "userId": conn.user_id},
                    ),
                    exclude=conn.id,
                )
        self.broadcaster.unregister(conn.id)
        if conn.user_id:
            await self.presence.remove(conn.user_id, conn.id)
        conn.state = ConnectionState.CLOSED
        logger.info("Real-time connection closed", connection_id=conn.id, user_id=conn.user_id)

    async def keep_presence(self, conn: Connection) -> None:
        """
        Re-announce presence every `presence_refresh_s` while the connection is open.

        Presence entries expire after a TTL; an idle socket must refresh to stay
        online. Runs until cancelled or the connection closes.
        """
        while conn.state is ConnectionState.CONNECTED:
            await asyncio.sleep(self.presence_refresh_s)
            if conn.state is ConnectionState.CONNECTED:
                await self.presence.add(conn.user_id, conn.id)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def handle(self, conn: Connection, event: str, data: dict[str, Any] | None) -> bool:
        """Process one inbound event; returns False when an error event was sent."""
        if conn.state is not ConnectionState.CONNECTED:
            return False

        handler = self._handlers.get(event)
        if handler is None:
            self._send_error(conn, ServiceError(ErrorKind.VALIDATION_ERROR, f"Unknown event: {event}"))
            return False

        # Refresh presence TTL on activity
        await self.presence.add(conn.user_id, conn.id)

        try:
            outcome = await handler(conn, data or {})
        except ValidationError as e:
            self._send_error(
                conn,
                ServiceError(ErrorKind.VALIDATION_ERROR, "Invalid payload", {"errors": e.errors(include_url=False)}),
            )
            return False
        except StorageUnavailableError as e:
            logger.error(
                "Storage unavailable while handling event",
                connection_id=conn.id,
                event_name=event,
                operation=e.operation,
                error=str(e),
            )
            self._send_error(conn, ServiceError(ErrorKind.STORAGE_UNAVAILABLE, "Service temporarily unavailable"))
            return False

        if not outcome.ok:
            logger.info(
                "Real-time event rejected",
                connection_id=conn.id,
                event_name=event,
                code=outcome.error.code,
            )
            self._send_error(conn, outcome.error)
            return False
        return True

    def _send_error(self, conn: Connection, error: ServiceError) -> None:
        data = {"message": error.message, "code": error.code}
        if error.details:
            data["details"] = error.details
        self.broadcaster.send(conn.id, RealtimeEvent(events.ERROR, data))

    async def _join_job(self, conn: Connection, data: dict[str, Any]) -> Outcome[None]:
        payload = events.JobRoomPayload.model_validate(data)
        job = await self.store.get_job(payload.job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=payload.job_id)
        if not (conn.role is Role.ADMIN or job.is_participant(conn.user_id)):
            return Outcome.failure(ErrorKind.FORBIDDEN, "Not authorized to join this job")

        room = job_room(job.id)
        self.broadcaster.join(conn.id, room)
        self.broadcaster.send(
            conn.id, RealtimeEvent(events.JOB_JOINED, {"jobId": job.id, "job": job.model_dump(mode="json")})
        )
        self.broadcaster.publish(
            room,
            RealtimeEvent(
                events.JOB_USER_JOINED,
                {
                    "jobId": job.id,
                    "userId": conn.user_id,
                    "role": conn.role.value,
                    "timestamp": utc_now().isoformat(),
                },
            ),
            exclude=conn.id,
        )
        logger.info("Joined job room", connection_id=conn.id, user_id=conn.user_id, job_id=job.id)
        return Outcome.success(None)

    async def _leave_job(self, conn: Connection, data: dict[str, Any]) -> Outcome[None]:
        payload = events.JobRoomPayload.model_validate(data)
        room = job_room(payload.job_id)
        was_member = room in self.broadcaster.rooms_of(conn.id)
        self.broadcaster.leave(conn.id, room)
        self.broadcaster.send(conn.id, RealtimeEvent(events.JOB_LEFT, {"jobId": payload.job_id}))
        if was_member:
            self.broadcaster.publish(
                room,
                RealtimeEvent(
                    events.JOB_USER_LEFT,
                    {"jobId": payload.job_id, "userId": conn.user_id, "timestamp": utc_now().isoformat()},
                ),
            )
        return Outcome.success(None)

    async def _update_status(self, conn: Connection, data: dict[str, Any]) -> Outcome[Any]:
        payload = events.StatusUpdatePayload.model_validate(data)
        return await self.engine.update_job_status(
            payload.job_id, conn.user_id, payload.status, notes=payload.notes
        )

    async def _update_location(self, conn: Connection, data: dict[str, Any]) -> Outcome[Any]:
        payload = events.LocationUpdatePayload.model_validate(data)
        return await self.engine.update_mechanic_location(
            payload.job_id, conn.user_id, payload.lat, payload.lng, eta_minutes=payload.eta_minutes
        )

    async def _update_eta(self, conn: Connection, data: dict[str, Any]) -> Outcome[Any]:
        payload = events.EtaUpdatePayload.model_validate(data)
        return await self.engine.update_eta(payload.job_id, conn.user_id, payload.eta_minutes)

    async def _send_message(self, conn: Connection, data: dict[str, Any]) -> Outcome[Any]:
        payload = events.MessageSendPayload.model_validate(data)
        return await self.messaging.send_message(
            payload.job_id, conn.user_id, payload.content, payload.type
        )
