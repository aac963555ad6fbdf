"""Per-user notification inbox and push token registration."""

from app.infrastructure.observability.logging import get_logger

from ..domain.errors import ErrorKind, Outcome
from ..domain.models import Notification, PushToken
from ..repository.base import EntityStore

logger = get_logger(__name__)

MAX_PAGE_SIZE = 100
PUSH_PLATFORMS = frozenset({"ios", "android", "web"})


class NotificationInbox:
    def __init__(self, store: EntityStore):
        self.store = store

    async def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> Outcome[list[Notification]]:
        if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Invalid pagination parameters")
        return Outcome.success(
            await self.store.list_notifications(user_id, unread_only=unread_only, limit=limit, offset=offset)
        )

    async def unread_count(self, user_id: str) -> Outcome[int]:
        return Outcome.success(await self.store.count_unread_notifications(user_id))

    async def mark_read(self, notification_id: str, user_id: str) -> Outcome[Notification]:
        notification = await self.store.mark_notification_read(notification_id, user_id)
        if notification is None:
            # Someone else's notification reads as missing
            return Outcome.failure(
                ErrorKind.NOT_FOUND, "Notification not found", notification_id=notification_id
            )
        return Outcome.success(notification)

    async def mark_all_read(self, user_id: str) -> Outcome[int]:
        count = await self.store.mark_all_notifications_read(user_id)
        logger.info("Notifications marked read", user_id=user_id, count=count)
        return Outcome.success(count)

    async def register_push_token(self, user_id: str, token: str, platform: str) -> Outcome[PushToken]:
        token = (token or "").strip()
        platform = (platform or "").strip().lower()
        if not token:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Push token is required")
        if platform not in PUSH_PLATFORMS:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, f"Unsupported platform: {platform}")
        saved = await self.store.upsert_push_token(PushToken(user_id=user_id, token=token, platform=platform))
        logger.info("Push token registered", user_id=user_id, platform=platform)
        return Outcome.success(saved)
