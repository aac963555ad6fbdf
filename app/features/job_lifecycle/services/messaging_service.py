"""
Job chat between the customer and the assigned mechanic.

Messages are persisted, broadcast to the job room as `message:new`, and handed
to the dispatcher so an offline counterpart gets an inbox entry and a push.
"""

from datetime import datetime

from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Role

from ..domain.errors import ErrorKind, Outcome
from ..domain.models import ChatMessage, Job, MessageType, NotificationType
from ..domain.rules import MAX_MESSAGE_LENGTH, NOTIFICATION_TITLES
from ..realtime.broadcaster import RoomBroadcaster
from ..realtime.events import MESSAGE_NEW, RealtimeEvent, job_room
from ..repository.base import EntityStore
from .notification_dispatcher import NotificationDispatcher

logger = get_logger(__name__)

PREVIEW_LENGTH = 50


def preview(content: str) -> str:
    return content if len(content) <= PREVIEW_LENGTH else f"{content[:PREVIEW_LENGTH]}..."


class MessagingService:
    def __init__(
        self,
        store: EntityStore,
        broadcaster: RoomBroadcaster,
        dispatcher: NotificationDispatcher,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher

    async def _job_for(self, job_id: str, user_id: str, allow_admin: bool) -> Outcome[Job]:
        job = await self.store.get_job(job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
        if job.is_participant(user_id):
            return Outcome.success(job)
        if allow_admin:
            user = await self.store.get_user(user_id)
            if user is not None and user.role is Role.ADMIN:
                return Outcome.success(job)
        return Outcome.failure(ErrorKind.FORBIDDEN, "Only job participants can use this chat")

    async def send_message(
        self,
        job_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
    ) -> Outcome[ChatMessage]:
        content = (content or "").strip()
        if not content:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Message cannot be empty")
        if len(content) > MAX_MESSAGE_LENGTH:
            return Outcome.failure(
                ErrorKind.VALIDATION_ERROR, f"Message exceeds {MAX_MESSAGE_LENGTH} characters"
            )
        try:
            message_type = MessageType(str(message_type).upper())
        except ValueError:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, f"Unknown message type: {message_type}")

        loaded = await self._job_for(job_id, sender_id, allow_admin=False)
        if not loaded.ok:
            return loaded
        job = loaded.value

        message = await self.store.insert_message(
            ChatMessage(job_id=job_id, sender_id=sender_id, content=content, type=message_type)
        )

        logger.info("Message sent", job_id=job_id, message_id=message.id, sender_id=sender_id)
        self.broadcaster.publish(
            job_room(job_id), RealtimeEvent(MESSAGE_NEW, {"message": message.model_dump(mode="json")})
        )
        await self.dispatcher.dispatch(
            job,
            sender_id,
            NotificationType.CHAT_MESSAGE,
            NOTIFICATION_TITLES[NotificationType.CHAT_MESSAGE],
            preview(content),
            {"messageId": message.id, "senderId": sender_id},
        )
        return Outcome.success(message)

    async def list_messages(
        self, job_id: str, actor_id: str, limit: int = 50, before: datetime | None = None
    ) -> Outcome[list[ChatMessage]]:
        loaded = await self._job_for(job_id, actor_id, allow_admin=True)
        if not loaded.ok:
            return loaded
        return Outcome.success(await self.store.list_messages(job_id, limit=limit, before=before))

    async def mark_read(self, job_id: str, actor_id: str) -> Outcome[int]:
        loaded = await self._job_for(job_id, actor_id, allow_admin=False)
        if not loaded.ok:
            return loaded
        return Outcome.success(await self.store.mark_messages_read(job_id, actor_id))
