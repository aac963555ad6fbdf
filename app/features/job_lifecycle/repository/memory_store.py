"""
In-process entity store.

Suitable for single-instance development and for tests. Records are copied on
the way in and out so callers never share mutable state with the store.
"""

import asyncio
import copy
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

from app.models.domain.user_domain import Role, UserAccount

from ..domain.errors import ConflictError, DuplicateRecordError
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
    utc_now,
)
from .base import EntityStore


@dataclass
class _State:
    users: dict[str, UserAccount] = field(default_factory=dict)
    profiles: dict[str, MechanicProfile] = field(default_factory=dict)
    jobs: dict[str, Job] = field(default_factory=dict)
    timeline: list[JobTimelineEntry] = field(default_factory=list)
    quotes: dict[str, Quote] = field(default_factory=dict)
    reviews: dict[str, Review] = field(default_factory=dict)
    notifications: dict[str, Notification] = field(default_factory=dict)
    messages: list[ChatMessage] = field(default_factory=list)
    payments: dict[str, Payment] = field(default_factory=dict)
    push_tokens: dict[str, PushToken] = field(default_factory=dict)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryEntityStore(EntityStore):
    def __init__(self):
        self._state = _State()
        self._tx_lock = asyncio.Lock()

    # Seeding helper for users and profiles, which are owned by the auth service
    def add_user(self, user: UserAccount) -> UserAccount:
        self._state.users[user.id] = _copy(user)
        if user.role is Role.MECHANIC and user.id not in self._state.profiles:
            self._state.profiles[user.id] = MechanicProfile(user_id=user.id)
        return _copy(user)

    # -- users -----------------------------------------------------------
    async def get_user(self, user_id: str) -> UserAccount | None:
        return _copy(self._state.users.get(user_id))

    async def list_users_by_role(self, role: Role) -> list[UserAccount]:
        return [_copy(u) for u in self._state.users.values() if u.role is role and u.is_active]

    async def get_mechanic_profile(self, user_id: str) -> MechanicProfile | None:
        return _copy(self._state.profiles.get(user_id))

    async def save_mechanic_profile(self, profile: MechanicProfile) -> MechanicProfile:
        stored = profile.model_copy(update={"updated_at": utc_now()}, deep=True)
        self._state.profiles[profile.user_id] = stored
        return _copy(stored)

    # -- jobs ------------------------------------------------------------
    async def insert_job(self, job: Job) -> Job:
        if job.id in self._state.jobs:
            raise DuplicateRecordError(f"job {job.id} already exists")
        self._state.jobs[job.id] = _copy(job)
        return _copy(job)

    async def get_job(self, job_id: str) -> Job | None:
        return _copy(self._state.jobs.get(job_id))

    async def save_job(self, job: Job, expected_version: int) -> Job:
        current = self._state.jobs.get(job.id)
        if current is None or current.version != expected_version:
            raise ConflictError("job", job.id, expected_version)
        stored = job.model_copy(
            update={"version": expected_version + 1, "updated_at": utc_now()}, deep=True
        )
        self._state.jobs[job.id] = stored
        return _copy(stored)

    async def list_jobs_for_user(
        self, user_id: str, status: JobStatus | None = None, limit: int = 50
    ) -> list[Job]:
        jobs = [
            j
            for j in self._state.jobs.values()
            if user_id in (j.customer_id, j.mechanic_id) and (status is None or j.status is status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [_copy(j) for j in jobs[:limit]]

    async def list_open_jobs(self, limit: int = 50) -> list[Job]:
        jobs = [
            j for j in self._state.jobs.values() if j.status in (JobStatus.PENDING, JobStatus.QUOTED)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [_copy(j) for j in jobs[:limit]]

    async def list_jobs_awaiting_review(self, user_id: str, limit: int = 10) -> list[Job]:
        reviewed = {r.job_id for r in self._state.reviews.values() if r.reviewer_id == user_id}
        jobs = [
            j
            for j in self._state.jobs.values()
            if j.status is JobStatus.COMPLETED
            and user_id in (j.customer_id, j.mechanic_id)
            and j.id not in reviewed
        ]
        jobs.sort(key=lambda j: j.updated_at, reverse=True)
        return [_copy(j) for j in jobs[:limit]]

    async def append_timeline(self, entry: JobTimelineEntry) -> JobTimelineEntry:
        self._state.timeline.append(_copy(entry))
        return _copy(entry)

    async def list_timeline(self, job_id: str) -> list[JobTimelineEntry]:
        return [_copy(e) for e in self._state.timeline if e.job_id == job_id]

    # -- quotes ----------------------------------------------------------
    async def insert_quote(self, quote: Quote) -> Quote:
        self._state.quotes[quote.id] = _copy(quote)
        return _copy(quote)

    async def get_quote(self, quote_id: str) -> Quote | None:
        return _copy(self._state.quotes.get(quote_id))

    async def save_quote(self, quote: Quote, expected_version: int) -> Quote:
        current = self._state.quotes.get(quote.id)
        if current is None or current.version != expected_version:
            raise ConflictError("quote", quote.id, expected_version)
        stored = quote.model_copy(
            update={"version": expected_version + 1, "updated_at": utc_now()}, deep=True
        )
        self._state.quotes[quote.id] = stored
        return _copy(stored)

    async def list_quotes_for_job(self, job_id: str) -> list[Quote]:
        quotes = [q for q in self._state.quotes.values() if q.job_id == job_id]
        quotes.sort(key=lambda q: q.created_at)
        return [_copy(q) for q in quotes]

    # -- reviews ---------------------------------------------------------
    async def insert_review(self, review: Review) -> Review:
        if await self.find_review(review.job_id, review.reviewer_id) is not None:
            raise DuplicateRecordError(
                f"review for job {review.job_id} by {review.reviewer_id} already exists"
            )
        self._state.reviews[review.id] = _copy(review)
        return _copy(review)

    async def get_review(self, review_id: str) -> Review | None:
        return _copy(self._state.reviews.get(review_id))

    async def find_review(self, job_id: str, reviewer_id: str) -> Review | None:
        for review in self._state.reviews.values():
            if review.job_id == job_id and review.reviewer_id == reviewer_id:
                return _copy(review)
        return None

    async def set_review_hidden(self, review_id: str, is_hidden: bool) -> Review | None:
        return self._update_review(review_id, is_hidden=is_hidden)

    async def increment_review_reports(self, review_id: str) -> Review | None:
        review = self._state.reviews.get(review_id)
        if review is None:
            return None
        return self._update_review(review_id, report_count=review.report_count + 1)

    def _update_review(self, review_id: str, **changes) -> Review | None:
        review = self._state.reviews.get(review_id)
        if review is None:
            return None
        stored = review.model_copy(update={**changes, "updated_at": utc_now()}, deep=True)
        self._state.reviews[review_id] = stored
        return _copy(stored)

    async def list_reviews_for_reviewee(
        self, reviewee_id: str, include_hidden: bool = False
    ) -> list[Review]:
        reviews = [
            r
            for r in self._state.reviews.values()
            if r.reviewee_id == reviewee_id and (include_hidden or not r.is_hidden)
        ]
        reviews.sort(key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in reviews]

    # -- notifications ---------------------------------------------------
    async def insert_notification(self, notification: Notification) -> Notification:
        self._state.notifications[notification.id] = _copy(notification)
        return _copy(notification)

    async def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 20, offset: int = 0
    ) -> list[Notification]:
        rows = [
            n
            for n in self._state.notifications.values()
            if n.user_id == user_id and (not unread_only or not n.read)
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [_copy(n) for n in rows[offset : offset + limit]]

    async def count_unread_notifications(self, user_id: str) -> int:
        return sum(
            1 for n in self._state.notifications.values() if n.user_id == user_id and not n.read
        )

    async def mark_notification_read(self, notification_id: str, user_id: str) -> Notification | None:
        notification = self._state.notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return None
        notification.read = True
        return _copy(notification)

    async def mark_all_notifications_read(self, user_id: str) -> int:
        count = 0
        for notification in self._state.notifications.values():
            if notification.user_id == user_id and not notification.read:
                notification.read = True
                count += 1
        return count

    async def mark_notification_delivered(self, notification_id: str) -> None:
        notification = self._state.notifications.get(notification_id)
        if notification is not None:
            notification.delivered = True

    # -- messages --------------------------------------------------------
    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        self._state.messages.append(_copy(message))
        return _copy(message)

    async def list_messages(
        self, job_id: str, limit: int = 50, before: datetime | None = None
    ) -> list[ChatMessage]:
        rows = [
            m
            for m in self._state.messages
            if m.job_id == job_id and (before is None or m.created_at < before)
        ]
        rows.sort(key=lambda m: m.created_at)
        return [_copy(m) for m in rows[-limit:]]

    async def mark_messages_read(self, job_id: str, reader_id: str) -> int:
        now = utc_now()
        count = 0
        for message in self._state.messages:
            if message.job_id == job_id and message.sender_id != reader_id and message.read_at is None:
                message.read_at = now
                count += 1
        return count

    # -- payments --------------------------------------------------------
    async def insert_payment(self, payment: Payment) -> Payment:
        if await self.get_payment_by_intent(payment.intent_id) is not None:
            raise DuplicateRecordError(f"payment intent {payment.intent_id} already recorded")
        self._state.payments[payment.id] = _copy(payment)
        return _copy(payment)

    async def get_payment_by_intent(self, intent_id: str) -> Payment | None:
        for payment in self._state.payments.values():
            if payment.intent_id == intent_id:
                return _copy(payment)
        return None

    async def transition_payment(
        self, payment_id: str, expected: PaymentStatus, target: PaymentStatus
    ) -> Payment | None:
        payment = self._state.payments.get(payment_id)
        if payment is None or payment.status is not expected:
            return None
        stored = payment.model_copy(update={"status": target, "updated_at": utc_now()}, deep=True)
        self._state.payments[payment_id] = stored
        return _copy(stored)

    async def list_payments_for_job(self, job_id: str) -> list[Payment]:
        rows = [p for p in self._state.payments.values() if p.job_id == job_id]
        rows.sort(key=lambda p: p.created_at)
        return [_copy(p) for p in rows]

    # -- push tokens -----------------------------------------------------
    async def upsert_push_token(self, token: PushToken) -> PushToken:
        self._state.push_tokens[token.token] = _copy(token)
        return _copy(token)

    async def list_push_tokens(self, user_id: str) -> list[PushToken]:
        return [_copy(t) for t in self._state.push_tokens.values() if t.user_id == user_id]

    # -- units of work ---------------------------------------------------
    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator["InMemoryEntityStore", None]:
        async with self._tx_lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield self
            except BaseException:
                self._state = snapshot
                raise
