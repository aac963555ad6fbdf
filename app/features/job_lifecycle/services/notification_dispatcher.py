"""
Notification Dispatcher

Purpose:
    Decide, per recipient, how a job event reaches them.

    - Online recipient: the live room event is enough. A Notification is still
      persisted for always-persisted types (REVIEW_REQUEST, PAYMENT_UPDATE) or
      when the event has no live counterpart, and announced on `user:<id>`.
    - Offline recipient: persist a Notification and send a push.

    Persistence and push are independent and best-effort: each failure is
    logged and never blocks or rolls back the other.

Usage:
    await dispatcher.dispatch(job, actor_id, NotificationType.JOB_UPDATE,
                              "Job Update", "Your mechanic is on the way")
"""

from dataclasses import dataclass
from typing import Any

from app.infrastructure.observability.logging import get_logger

from ..domain.models import Job, Notification, NotificationType
from ..domain.rules import ALWAYS_PERSISTED_TYPES
from ..realtime.broadcaster import RoomBroadcaster
from ..realtime.events import NOTIFICATION_NEW, RealtimeEvent, user_room
from ..realtime.presence import PresenceStore
from ..repository.base import EntityStore
from .push_sender import PushSender

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryReport:
    user_id: str
    online: bool
    notification: Notification | None = None
    pushed: bool = False


def recipients_for(job: Job, actor_id: str | None) -> list[str]:
    """{customer, mechanic} minus the actor and unset references, in that order."""
    recipients: list[str] = []
    for user_id in (job.customer_id, job.mechanic_id):
        if user_id and user_id != actor_id and user_id not in recipients:
            recipients.append(user_id)
    return recipients


class NotificationDispatcher:
    def __init__(
        self,
        store: EntityStore,
        presence: PresenceStore,
        broadcaster: RoomBroadcaster,
        push_sender: PushSender,
    ):
        self.store = store
        self.presence = presence
        self.broadcaster = broadcaster
        self.push_sender = push_sender

    async def dispatch(
        self,
        job: Job,
        actor_id: str | None,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> list[DeliveryReport]:
        payload = {"jobId": job.id, **(data or {})}
        return [
            await self.notify_user(user_id, notification_type, title, message, payload)
            for user_id in recipients_for(job, actor_id)
        ]

    async def notify_user(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        has_live_event: bool = True,
    ) -> DeliveryReport:
        """
        Deliver one notice to one user.

        Args:
            has_live_event: False when no room event carries this notice, so an
                online user still needs the persisted copy.
        """
        data = data or {}
        online = await self._is_online(user_id)
        persist = (
            not online
            or notification_type in ALWAYS_PERSISTED_TYPES
            or not has_live_event
        )

        notification = None
        if persist:
            notification = await self._persist(user_id, notification_type, title, message, data)

        if online and notification is not None:
            self.broadcaster.publish(
                user_room(user_id),
                RealtimeEvent(NOTIFICATION_NEW, {"notification": notification.model_dump(mode="json")}),
            )

        pushed = False
        if not online:
            push_data = {"type": notification_type.value, **data}
            if notification is not None:
                push_data["notificationId"] = notification.id
            pushed = await self._push(user_id, title, message, push_data)
            if pushed and notification is not None:
                await self._mark_delivered(notification.id)

        logger.info(
            "Notification dispatched",
            user_id=user_id,
            notification_type=notification_type.value,
            online=online,
            persisted=notification is not None,
            pushed=pushed,
        )
        return DeliveryReport(user_id=user_id, online=online, notification=notification, pushed=pushed)

    async def _is_online(self, user_id: str) -> bool:
        try:
            return await self.presence.is_online(user_id)
        except Exception as e:
            logger.warning("Presence check failed, assuming offline", user_id=user_id, error=str(e))
            return False

    async def _persist(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any],
    ) -> Notification | None:
        try:
            return await self.store.insert_notification(
                Notification(
                    user_id=user_id,
                    type=notification_type,
                    title=title,
                    message=message,
                    data=data,
                )
            )
        except Exception as e:
            logger.error(
                "Failed to persist notification",
                user_id=user_id,
                notification_type=notification_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    async def _push(self, user_id: str, title: str, message: str, data: dict[str, Any]) -> bool:
        try:
            result = await self.push_sender.send_to_user(user_id, title, message, data)
        except Exception as e:
            logger.error(
                "Push send failed", user_id=user_id, error=str(e), error_type=type(e).__name__
            )
            return False
        return result.delivered

    async def _mark_delivered(self, notification_id: str) -> None:
        try:
            await self.store.mark_notification_delivered(notification_id)
        except Exception as e:
            logger.warning(
                "Failed to mark notification delivered", notification_id=notification_id, error=str(e)
            )
