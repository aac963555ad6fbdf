"""
Entity store contract shared by the Postgres and in-memory backends.

Writes to jobs and quotes are versioned: ``save_job`` / ``save_quote`` take the
version the caller read and raise ``ConflictError`` when the stored row has
moved on. Reviews and payments change through single-statement updates
(``increment_review_reports``, ``set_review_hidden``, ``transition_payment``)
that never write back a stale copy. ``transaction()`` yields a store whose
writes commit together or not at all.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime

from app.models.domain.user_domain import Role, UserAccount

from ..domain.models import (
    ChatMessage,
    Job,
    JobStatus,
    JobTimelineEntry,
    MechanicProfile,
    Notification,
    Payment,
    PaymentStatus,
    PushToken,
    Quote,
    Review,
)


class EntityStore(ABC):
    # -- users -----------------------------------------------------------
    @abstractmethod
    async def get_user(self, user_id: str) -> UserAccount | None: ...

    @abstractmethod
    async def list_users_by_role(self, role: Role) -> list[UserAccount]: ...

    @abstractmethod
    async def get_mechanic_profile(self, user_id: str) -> MechanicProfile | None: ...

    @abstractmethod
    async def save_mechanic_profile(self, profile: MechanicProfile) -> MechanicProfile: ...

    # -- jobs ------------------------------------------------------------
    @abstractmethod
    async def insert_job(self, job: Job) -> Job: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def save_job(self, job: Job, expected_version: int) -> Job: ...

    @abstractmethod
    async def list_jobs_for_user(
        self, user_id: str, status: JobStatus | None = None, limit: int = 50
    ) -> list[Job]: ...

    @abstractmethod
    async def list_open_jobs(self, limit: int = 50) -> list[Job]:
        """Unassigned PENDING or QUOTED jobs, newest first."""

    @abstractmethod
    async def list_jobs_awaiting_review(self, user_id: str, limit: int = 10) -> list[Job]: ...

    @abstractmethod
    async def append_timeline(self, entry: JobTimelineEntry) -> JobTimelineEntry: ...

    @abstractmethod
    async def list_timeline(self, job_id: str) -> list[JobTimelineEntry]: ...

    # -- quotes ----------------------------------------------------------
    @abstractmethod
    async def insert_quote(self, quote: Quote) -> Quote: ...

    @abstractmethod
    async def get_quote(self, quote_id: str) -> Quote | None: ...

    @abstractmethod
    async def save_quote(self, quote: Quote, expected_version: int) -> Quote: ...

    @abstractmethod
    async def list_quotes_for_job(self, job_id: str) -> list[Quote]: ...

    # -- reviews ---------------------------------------------------------
    @abstractmethod
    async def insert_review(self, review: Review) -> Review: ...

    @abstractmethod
    async def get_review(self, review_id: str) -> Review | None: ...

    @abstractmethod
    async def find_review(self, job_id: str, reviewer_id: str) -> Review | None: ...

    @abstractmethod
    async def set_review_hidden(self, review_id: str, is_hidden: bool) -> Review | None: ...

    @abstractmethod
    async def increment_review_reports(self, review_id: str) -> Review | None:
        """Atomically add one report; None when the review does not exist."""

    @abstractmethod
    async def list_reviews_for_reviewee(
        self, reviewee_id: str, include_hidden: bool = False
    ) -> list[Review]: ...

    # -- notifications ---------------------------------------------------
    @abstractmethod
    async def insert_notification(self, notification: Notification) -> Notification: ...

    @abstractmethod
    async def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> list[Notification]: ...

    @abstractmethod
    async def count_unread_notifications(self, user_id: str) -> int: ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: str, user_id: str) -> Notification | None: ...

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str) -> int: ...

    @abstractmethod
    async def mark_notification_delivered(self, notification_id: str) -> None: ...

    # -- messages --------------------------------------------------------
    @abstractmethod
    async def insert_message(self, message: ChatMessage) -> ChatMessage: ...

    @abstractmethod
    async def list_messages(
        self, job_id: str, limit: int = 50, before: datetime | None = None
    ) -> list[ChatMessage]: ...

    @abstractmethod
    async def mark_messages_read(self, job_id: str, reader_id: str) -> int: ...

    # -- payments --------------------------------------------------------
    @abstractmethod
    async def insert_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    async def get_payment_by_intent(self, intent_id: str) -> Payment | None: ...

    @abstractmethod
    async def transition_payment(
        self, payment_id: str, expected: PaymentStatus, target: PaymentStatus
    ) -> Payment | None:
        """Move a payment from ``expected`` to ``target``; None when it is no longer ``expected``."""

    @abstractmethod
    async def list_payments_for_job(self, job_id: str) -> list[Payment]: ...

    # -- push tokens -----------------------------------------------------
    @abstractmethod
    async def upsert_push_token(self, token: PushToken) -> PushToken: ...

    @abstractmethod
    async def list_push_tokens(self, user_id: str) -> list[PushToken]: ...

    # -- units of work ---------------------------------------------------
    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager["EntityStore"]: ...
