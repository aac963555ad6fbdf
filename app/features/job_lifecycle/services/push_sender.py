"""
Push notification senders.

ExpoPushSender posts to the Expo push API using the device tokens registered
for the user. NullPushSender is used when push is disabled; it reports nothing
delivered so notifications stay unread-and-undelivered in the inbox.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.infrastructure.observability.logging import get_logger

from ..repository.base import EntityStore

logger = get_logger(__name__)

REQUEST_TIMEOUT = 10  # seconds


@dataclass(frozen=True, slots=True)
class PushResult:
    delivered: bool
    error: str | None = None


class PushSender(Protocol):
    async def send_to_user(
        self, user_id: str, title: str, body: str, data: dict[str, Any]
    ) -> PushResult: ...


class NullPushSender:
    async def send_to_user(
        self, user_id: str, title: str, body: str, data: dict[str, Any]
    ) -> PushResult:
        logger.debug("Push disabled, skipping", user_id=user_id, title=title)
        return PushResult(delivered=False, error="push disabled")


class ExpoPushSender:
    def __init__(self, store: EntityStore, push_url: str, access_token: str | None = None):
        self.store = store
        self.push_url = push_url
        self.access_token = access_token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send_to_user(
        self, user_id: str, title: str, body: str, data: dict[str, Any]
    ) -> PushResult:
        tokens = await self.store.list_push_tokens(user_id)
        if not tokens:
            return PushResult(delivered=False, error="no push tokens")

        messages = [
            {"to": t.token, "title": title, "body": body, "data": data, "sound": "default"}
            for t in tokens
        ]

        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.post(self.push_url, json=messages, headers=self._headers())
        except httpx.RequestError as e:
            logger.warning("Expo push request failed", user_id=user_id, error=str(e))
            return PushResult(delivered=False, error=str(e))

        if response.status_code != 200:
            logger.warning(
                "Expo push rejected", user_id=user_id, status_code=response.status_code
            )
            return PushResult(delivered=False, error=f"HTTP {response.status_code}")

        tickets = response.json().get("data", [])
        delivered = any(ticket.get("status") == "ok" for ticket in tickets)
        if not delivered:
            logger.warning("Expo push returned no successful tickets", user_id=user_id, tickets=tickets)
        return PushResult(delivered=delivered)
