"""
State Transition Engine

Purpose:
    The single authority for Job and Quote status changes and their direct
    side effects: timeline entries, cost recomputation, timestamp stamping.

    Every operation returns an Outcome. Business-rule violations come back as
    typed errors; only infrastructure faults raise (StorageUnavailableError).

Concurrency:
    Reads happen outside the store transaction; writes are versioned
    compare-and-swap saves inside it. A lost race (ConflictError) is retried
    once from a fresh read; a second loss surfaces as CONFLICT.

    After commit the room event is published (synchronous enqueue, so commit
    order equals broadcast order per job), then the dispatcher runs.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar

from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Role, UserAccount

from ..domain.errors import ConflictError, ErrorKind, Outcome
from ..domain.models import (
    ZERO,
    GeoPoint,
    Job,
    JobLocation,
    JobPart,
    JobPhoto,
    JobStatus,
    JobTimelineEntry,
    NotificationType,
    Payment,
    PaymentStatus,
    Quote,
    QuoteBreakdown,
    QuoteLineItem,
    QuoteStatus,
    TimerAction,
    TimerEntry,
    Urgency,
    VehicleInfo,
    money,
    utc_now,
)
from ..domain.rules import (
    COST_EDITABLE_STATUSES,
    LOCATION_TRACKING_STATUSES,
    NOTIFICATION_TITLES,
    QUOTABLE_STATUSES,
    QUOTE_DRIVEN_STATUSES,
    TIMELINE_EVENTS,
    TIMER_TRANSITIONS,
    BusinessRules,
    can_transition,
)
from ..realtime import events
from ..realtime.broadcaster import RoomBroadcaster
from ..realtime.events import RealtimeEvent, job_room, role_room
from ..repository.base import EntityStore
from .notification_dispatcher import NotificationDispatcher

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class AcceptedQuote:
    job: Job
    quote: Quote


@dataclass(slots=True)
class _Change:
    before: Job
    after: Job
    changed: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json")


def _settled(payment: Payment, target: PaymentStatus) -> Outcome[Payment]:
    """Outcome for a confirmation that arrives after the payment left PENDING."""
    if payment.status is target:
        return Outcome.success(payment)
    return Outcome.failure(
        ErrorKind.INVALID_TRANSITION,
        f"Payment already {payment.status.value.lower()}",
        current_status=payment.status.value,
    )


class TransitionEngine:
    def __init__(
        self,
        store: EntityStore,
        broadcaster: RoomBroadcaster,
        dispatcher: NotificationDispatcher,
        rules: BusinessRules | None = None,
        currency: str = "usd",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.rules = rules or BusinessRules()
        self.currency = currency
        self._now = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _active_user(self, user_id: str) -> UserAccount | None:
        user = await self.store.get_user(user_id)
        if user is None or not user.is_active:
            return None
        return user

    async def _retry_on_conflict(
        self, operation: str, entity_id: str, attempt: Callable[[], Awaitable[Outcome[T]]]
    ) -> Outcome[T]:
        try:
            return await attempt()
        except ConflictError as e:
            logger.info(
                "Write conflict, retrying from fresh read",
                operation=operation,
                entity_id=entity_id,
                entity=e.entity,
            )

        try:
            return await attempt()
        except ConflictError as e:
            logger.warning(
                "Write conflict persisted after retry",
                operation=operation,
                entity_id=entity_id,
                entity=e.entity,
            )
            return Outcome.failure(ErrorKind.CONFLICT, entity=e.entity, entity_id=e.entity_id)

    def _timeline(
        self,
        job: Job,
        event: str,
        description: str,
        actor_id: str | None,
        from_status: JobStatus | None = None,
        to_status: JobStatus | None = None,
        **metadata: Any,
    ) -> JobTimelineEntry:
        return JobTimelineEntry(
            job_id=job.id,
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            description=description,
            metadata={k: v for k, v in metadata.items() if v is not None},
            created_at=self._now(),
        )

    def _publish(self, job_id: str, name: str, data: dict[str, Any]) -> None:
        self.broadcaster.publish(job_room(job_id), RealtimeEvent(name, data))

    async def _save_with_timeline(self, job: Job, expected_version: int, entry: JobTimelineEntry | None) -> Job:
        async with self.store.transaction() as tx:
            saved = await tx.save_job(job, expected_version=expected_version)
            if entry is not None:
                await tx.append_timeline(entry)
        return saved

    def _can_view(self, job: Job, user: UserAccount) -> bool:
        if user.role is Role.ADMIN or job.is_participant(user.id):
            return True
        # Mechanics browse open requests so they can quote them
        return user.role is Role.MECHANIC and job.status in QUOTABLE_STATUSES

    async def _load_for_mechanic(
        self, job_id: str, actor_id: str, allow_admin: bool = True
    ) -> Outcome[Job]:
        """Load a job the actor works on as assigned mechanic (or admin)."""
        actor = await self._active_user(actor_id)
        if actor is None:
            return Outcome.failure(ErrorKind.FORBIDDEN)
        job = await self.store.get_job(job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
        is_admin = allow_admin and actor.role is Role.ADMIN
        if not is_admin and (job.mechanic_id is None or job.mechanic_id != actor_id):
            return Outcome.failure(
                ErrorKind.FORBIDDEN, "Only the assigned mechanic can update this job"
            )
        return Outcome.success(job)

    # ------------------------------------------------------------------
    # Service requests
    # ------------------------------------------------------------------

    async def create_service_request(
        self,
        customer_id: str,
        service_type: str,
        description: str,
        location: JobLocation,
        vehicle: VehicleInfo | None = None,
        urgency: Urgency = Urgency.MEDIUM,
        scheduled_start: datetime | None = None,
        scheduled_end: datetime | None = None,
        notes: str | None = None,
    ) -> Outcome[Job]:
        """
        Open a new PENDING job for a customer.

        Args:
            customer_id: Requesting customer (an admin may file on their own id)
            service_type: Service category, e.g. "oil_change"
            location: Service address with optional coordinates

        Returns:
            Outcome with the created Job
        """
        actor = await self._active_user(customer_id)
        if actor is None or actor.role not in (Role.CUSTOMER, Role.ADMIN):
            return Outcome.failure(ErrorKind.FORBIDDEN, "Only customers can request service")

        service_type = (service_type or "").strip()
        description = (description or "").strip()
        if not service_type or not description:
            return Outcome.failure(
                ErrorKind.VALIDATION_ERROR, "Service type and description are required"
            )
        if scheduled_start and scheduled_end and scheduled_end < scheduled_start:
            return Outcome.failure(
                ErrorKind.VALIDATION_ERROR, "Scheduled window ends before it starts"
            )

        now = self._now()
        job = Job(
            customer_id=customer_id,
            title=service_type.replace("_", " ").title(),
            description=description,
            category=service_type,
            urgency=urgency,
            vehicle=vehicle,
            location=location,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            notes=notes,
            created_at=now,
            updated_at=now,
        )

        async with self.store.transaction() as tx:
            job = await tx.insert_job(job)
            await tx.append_timeline(
                self._timeline(
                    job,
                    TIMELINE_EVENTS[JobStatus.PENDING],
                    "Service request created",
                    customer_id,
                    to_status=JobStatus.PENDING,
                )
            )

        logger.info("Service request created", job_id=job.id, customer_id=customer_id, category=job.category)
        self.broadcaster.publish(
            role_room(Role.MECHANIC.value), RealtimeEvent(events.JOB_CREATED, {"job": _dump(job)})
        )
        return Outcome.success(job)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def create_quote(
        self,
        job_id: str,
        mechanic_id: str,
        breakdown: QuoteBreakdown,
        description: str,
        valid_until: datetime | None = None,
        estimated_duration_minutes: int | None = None,
        line_items: list[QuoteLineItem] | None = None,
    ) -> Outcome[Quote]:
        """
        Price a job and move it to QUOTED.

        Total is labor + parts + travel; without an explicit total the
        configured tax rate is added on top.
        """
        actor = await self._active_user(mechanic_id)
        if actor is None or actor.role is not Role.MECHANIC:
            return Outcome.failure(ErrorKind.FORBIDDEN, "Only mechanics can send quotes")

        if breakdown.has_negative_component():
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Quote amounts cannot be negative")
        if not (description or "").strip():
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Quote description is required")
        if estimated_duration_minutes is not None and estimated_duration_minutes <= 0:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Estimated duration must be positive")

        now = self._now()
        if valid_until is None:
            valid_until = now + timedelta(days=self.rules.quote_validity_days)
        elif valid_until <= now:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "validUntil must be in the future")

        pricing = self.rules.price_quote(
            breakdown.labor, breakdown.parts, breakdown.travel, explicit_total=breakdown.total
        )

        async def attempt() -> Outcome[tuple[Job, Quote]]:
            job = await self.store.get_job(job_id)
            if job is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
            if job.status not in QUOTABLE_STATUSES:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot quote a job in status {job.status}",
                    current_status=job.status.value,
                )

            quote = Quote(
                job_id=job.id,
                customer_id=job.customer_id,
                mechanic_id=mechanic_id,
                description=description.strip(),
                labor_cost=money(breakdown.labor),
                parts_cost=money(breakdown.parts),
                travel_cost=money(breakdown.travel),
                tax=pricing.tax,
                amount=pricing.amount,
                currency=self.currency,
                valid_until=valid_until,
                estimated_duration_minutes=estimated_duration_minutes,
                line_items=list(line_items or []),
                created_at=now,
                updated_at=now,
            )
            previous = job.status
            updated = job.model_copy(update={"status": JobStatus.QUOTED})
            entry = self._timeline(
                job,
                TIMELINE_EVENTS[JobStatus.QUOTED],
                f"Quote sent for {pricing.amount} {self.currency.upper()}",
                mechanic_id,
                from_status=previous,
                to_status=JobStatus.QUOTED,
                quote_id=quote.id,
            )

            async with self.store.transaction() as tx:
                saved_quote = await tx.insert_quote(quote)
                saved_job = await tx.save_job(updated, expected_version=job.version)
                await tx.append_timeline(entry)
            return Outcome.success((saved_job, saved_quote))

        outcome = await self._retry_on_conflict("create_quote", job_id, attempt)
        if not outcome.ok:
            return outcome
        job, quote = outcome.value

        logger.info("Quote created", job_id=job.id, quote_id=quote.id, mechanic_id=mechanic_id, amount=str(quote.amount))
        self._publish(job.id, events.QUOTE_RECEIVED, {"quote": _dump(quote), "job": _dump(job)})
        await self.dispatcher.dispatch(
            job,
            mechanic_id,
            NotificationType.QUOTE_RECEIVED,
            NOTIFICATION_TITLES[NotificationType.QUOTE_RECEIVED],
            f"New quote for {job.title}: {quote.amount} {quote.currency.upper()}",
            {"quoteId": quote.id},
        )
        return Outcome.success(quote)

    async def approve_quote(self, quote_id: str, actor_id: str) -> Outcome[Quote]:
        actor = await self._active_user(actor_id)
        if actor is None or actor.role is not Role.ADMIN:
            return Outcome.failure(ErrorKind.FORBIDDEN, "Only administrators can approve quotes")

        async def attempt() -> Outcome[tuple[Quote, bool]]:
            quote = await self.store.get_quote(quote_id)
            if quote is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Quote not found", quote_id=quote_id)
            effective = quote.effective_status(self._now())
            if effective is QuoteStatus.APPROVED:
                return Outcome.success((quote, False))
            if effective is QuoteStatus.EXPIRED:
                return Outcome.failure(ErrorKind.EXPIRED)
            if effective is not QuoteStatus.PENDING:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot approve a quote in status {effective}",
                    current_status=effective.value,
                )
            async with self.store.transaction() as tx:
                saved = await tx.save_quote(
                    quote.model_copy(update={"status": QuoteStatus.APPROVED}),
                    expected_version=quote.version,
                )
            return Outcome.success((saved, True))

        outcome = await self._retry_on_conflict("approve_quote", quote_id, attempt)
        if not outcome.ok:
            return outcome
        quote, changed = outcome.value
        if changed:
            logger.info("Quote approved", quote_id=quote.id, job_id=quote.job_id, actor_id=actor_id)
            self._publish(quote.job_id, events.QUOTE_APPROVED, {"quote": _dump(quote)})
        return Outcome.success(quote)

    async def accept_quote(self, quote_id: str, actor_id: str) -> Outcome[AcceptedQuote]:
        """
        Customer accepts a quote: quote -> ACCEPTED, job QUOTED -> ACCEPTED.

        Accepting an already-accepted quote is a no-op success so clients can
        safely resend.
        """

        async def attempt() -> Outcome[tuple[AcceptedQuote, bool, list[Quote]]]:
            quote = await self.store.get_quote(quote_id)
            if quote is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Quote not found", quote_id=quote_id)
            if quote.customer_id != actor_id:
                return Outcome.failure(ErrorKind.FORBIDDEN, "Only the customer can accept this quote")

            job = await self.store.get_job(quote.job_id)
            if job is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=quote.job_id)

            if quote.status is QuoteStatus.ACCEPTED:
                return Outcome.success((AcceptedQuote(job=job, quote=quote), False, []))

            now = self._now()
            effective = quote.effective_status(now)
            if effective is QuoteStatus.EXPIRED:
                return Outcome.failure(ErrorKind.EXPIRED)
            if not quote.is_open(now):
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot accept a quote in status {effective}",
                    current_status=effective.value,
                )
            if job.status is not JobStatus.QUOTED:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot accept a quote while the job is {job.status}",
                    current_status=job.status.value,
                )

            competing = [
                q for q in await self.store.list_quotes_for_job(job.id)
                if q.id != quote.id and q.status in (QuoteStatus.PENDING, QuoteStatus.APPROVED)
            ]

            accepted = quote.model_copy(update={"status": QuoteStatus.ACCEPTED, "accepted_at": now})
            updated_job = job.model_copy(
                update={"status": JobStatus.ACCEPTED, "mechanic_id": quote.mechanic_id}
            )
            entry = self._timeline(
                job,
                TIMELINE_EVENTS[JobStatus.ACCEPTED],
                f"Quote accepted for {quote.amount} {quote.currency.upper()}",
                actor_id,
                from_status=job.status,
                to_status=JobStatus.ACCEPTED,
                quote_id=quote.id,
                mechanic_id=quote.mechanic_id,
            )

            rejected: list[Quote] = []
            async with self.store.transaction() as tx:
                saved_quote = await tx.save_quote(accepted, expected_version=quote.version)
                saved_job = await tx.save_job(updated_job, expected_version=job.version)
                await tx.append_timeline(entry)
                for other in competing:
                    rejected.append(
                        await tx.save_quote(
                            other.model_copy(update={"status": QuoteStatus.REJECTED}),
                            expected_version=other.version,
                        )
                    )
            return Outcome.success((AcceptedQuote(job=saved_job, quote=saved_quote), True, rejected))

        outcome = await self._retry_on_conflict("accept_quote", quote_id, attempt)
        if not outcome.ok:
            return outcome
        result, changed, rejected = outcome.value
        if not changed:
            logger.info("Quote already accepted", quote_id=quote_id, actor_id=actor_id)
            return Outcome.success(result)

        job, quote = result.job, result.quote
        logger.info("Quote accepted", quote_id=quote.id, job_id=job.id, mechanic_id=job.mechanic_id)
        timestamp = self._now().isoformat()
        self._publish(job.id, events.QUOTE_ACCEPTED, {"quote": _dump(quote), "job": _dump(job)})
        self._publish(
            job.id,
            events.JOB_STATUS_UPDATED,
            {"job": _dump(job), "updatedBy": actor_id, "timestamp": timestamp},
        )
        await self.dispatcher.dispatch(
            job,
            actor_id,
            NotificationType.QUOTE_ACCEPTED,
            NOTIFICATION_TITLES[NotificationType.QUOTE_ACCEPTED],
            f"Your quote for {job.title} was accepted",
            {"quoteId": quote.id},
        )
        for other in rejected:
            await self.dispatcher.notify_user(
                other.mechanic_id,
                NotificationType.JOB_UPDATE,
                NOTIFICATION_TITLES[NotificationType.JOB_UPDATE],
                f"The customer chose another quote for {job.title}",
                {"jobId": job.id, "quoteId": other.id},
                has_live_event=False,
            )
        return Outcome.success(result)

    async def reject_quote(
        self, quote_id: str, actor_id: str, reason: str | None = None
    ) -> Outcome[Quote]:
        """Customer declines a quote; the job reopens when no other quote is open."""

        async def attempt() -> Outcome[tuple[Quote, Job | None, bool]]:
            quote = await self.store.get_quote(quote_id)
            if quote is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Quote not found", quote_id=quote_id)
            if quote.customer_id != actor_id:
                return Outcome.failure(ErrorKind.FORBIDDEN, "Only the customer can reject this quote")
            if quote.status is QuoteStatus.REJECTED:
                return Outcome.success((quote, None, False))

            now = self._now()
            effective = quote.effective_status(now)
            if effective is QuoteStatus.EXPIRED:
                return Outcome.failure(ErrorKind.EXPIRED)
            if not quote.is_open(now):
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot reject a quote in status {effective}",
                    current_status=effective.value,
                )

            job = await self.store.get_job(quote.job_id)
            if job is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=quote.job_id)
            others_open = any(
                q.id != quote.id and q.is_open(now)
                for q in await self.store.list_quotes_for_job(job.id)
            )
            reopen = job.status is JobStatus.QUOTED and not others_open

            async with self.store.transaction() as tx:
                saved_quote = await tx.save_quote(
                    quote.model_copy(update={"status": QuoteStatus.REJECTED}),
                    expected_version=quote.version,
                )
                saved_job = None
                if reopen:
                    saved_job = await tx.save_job(
                        job.model_copy(update={"status": JobStatus.PENDING}),
                        expected_version=job.version,
                    )
                await tx.append_timeline(
                    self._timeline(
                        job,
                        "QUOTE_REJECTED",
                        "Quote rejected by customer",
                        actor_id,
                        from_status=job.status if reopen else None,
                        to_status=JobStatus.PENDING if reopen else None,
                        quote_id=quote.id,
                        reason=reason,
                    )
                )
            return Outcome.success((saved_quote, saved_job, True))

        outcome = await self._retry_on_conflict("reject_quote", quote_id, attempt)
        if not outcome.ok:
            return outcome
        quote, reopened_job, changed = outcome.value
        if not changed:
            return Outcome.success(quote)

        logger.info("Quote rejected", quote_id=quote.id, job_id=quote.job_id, reopened=reopened_job is not None)
        self._publish(quote.job_id, events.QUOTE_REJECTED, {"quote": _dump(quote)})
        if reopened_job is not None:
            self._publish(
                quote.job_id,
                events.JOB_STATUS_UPDATED,
                {"job": _dump(reopened_job), "updatedBy": actor_id, "timestamp": self._now().isoformat()},
            )
        await self.dispatcher.notify_user(
            quote.mechanic_id,
            NotificationType.JOB_UPDATE,
            NOTIFICATION_TITLES[NotificationType.JOB_UPDATE],
            "Your quote was declined by the customer",
            {"jobId": quote.job_id, "quoteId": quote.id},
            has_live_event=False,
        )
        return Outcome.success(quote)

    # ------------------------------------------------------------------
    # Job status
    # ------------------------------------------------------------------

    async def update_job_status(
        self,
        job_id: str,
        actor_id: str,
        new_status: JobStatus | str,
        notes: str | None = None,
    ) -> Outcome[Job]:
        """
        Drive a job through the status machine.

        Requesting the status the job already has is a no-op success, so a
        client resending after a dropped acknowledgement is safe. QUOTED and
        ACCEPTED are reached only through the quote operations.
        """
        if not isinstance(new_status, JobStatus):
            try:
                new_status = JobStatus.parse(new_status)
            except ValueError as e:
                return Outcome.failure(ErrorKind.VALIDATION_ERROR, str(e))

        actor = await self._active_user(actor_id)
        if actor is None:
            return Outcome.failure(ErrorKind.FORBIDDEN)

        async def attempt() -> Outcome[_Change]:
            job = await self.store.get_job(job_id)
            if job is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)

            if new_status is JobStatus.CANCELED:
                allowed = actor.role is Role.ADMIN or job.is_participant(actor_id)
            else:
                allowed = actor.role is Role.ADMIN or (
                    job.mechanic_id is not None and job.mechanic_id == actor_id
                )
            if not allowed:
                return Outcome.failure(
                    ErrorKind.FORBIDDEN, "You are not allowed to change this job's status"
                )

            if job.status is new_status:
                return Outcome.success(_Change(before=job, after=job, changed=False))

            if new_status in QUOTE_DRIVEN_STATUSES or not can_transition(job.status, new_status):
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot move job from {job.status} to {new_status}",
                    current_status=job.status.value,
                    requested_status=new_status.value,
                )

            now = self._now()
            update: dict[str, Any] = {"status": new_status}
            if new_status is JobStatus.ACTIVE and job.started_at is None:
                update["started_at"] = now
            elif new_status is JobStatus.COMPLETED:
                update["completed_at"] = now
            elif new_status is JobStatus.CANCELED:
                update["mechanic_id"] = None

            updated = job.model_copy(update=update)
            entry = self._timeline(
                job,
                TIMELINE_EVENTS[new_status],
                f"Status changed from {job.status} to {new_status}",
                actor_id,
                from_status=job.status,
                to_status=new_status,
                notes=notes,
            )

            withdrawn: list[Quote] = []
            if new_status is JobStatus.CANCELED:
                withdrawn = [
                    q for q in await self.store.list_quotes_for_job(job.id)
                    if q.status in (QuoteStatus.PENDING, QuoteStatus.APPROVED)
                ]

            async with self.store.transaction() as tx:
                saved = await tx.save_job(updated, expected_version=job.version)
                await tx.append_timeline(entry)
                for quote in withdrawn:
                    await tx.save_quote(
                        quote.model_copy(update={"status": QuoteStatus.REJECTED}),
                        expected_version=quote.version,
                    )
            return Outcome.success(_Change(before=job, after=saved))

        outcome = await self._retry_on_conflict("update_job_status", job_id, attempt)
        if not outcome.ok:
            return outcome
        change = outcome.value
        if not change.changed:
            logger.info("Status unchanged, treating as no-op", job_id=job_id, status=new_status.value)
            return Outcome.success(change.after)

        job = change.after
        logger.info(
            "Job status updated",
            job_id=job.id,
            from_status=change.before.status.value,
            to_status=job.status.value,
            actor_id=actor_id,
        )
        self._publish(
            job.id,
            events.JOB_STATUS_UPDATED,
            {"job": _dump(job), "updatedBy": actor_id, "timestamp": self._now().isoformat()},
        )
        # Recipients come from the pre-change job so a cancelled mechanic still hears about it
        await self.dispatcher.dispatch(
            change.before,
            actor_id,
            NotificationType.JOB_UPDATE,
            NOTIFICATION_TITLES[NotificationType.JOB_UPDATE],
            f"{job.title} is now {job.status.value.lower()}",
            {"status": job.status.value},
        )
        if job.status is JobStatus.COMPLETED:
            for user_id in (job.customer_id, job.mechanic_id):
                await self.dispatcher.notify_user(
                    user_id,
                    NotificationType.REVIEW_REQUEST,
                    NOTIFICATION_TITLES[NotificationType.REVIEW_REQUEST],
                    f"How did {job.title} go? Leave a review",
                    {"jobId": job.id},
                )
        return Outcome.success(job)

    # ------------------------------------------------------------------
    # Location / ETA
    # ------------------------------------------------------------------

    async def update_mechanic_location(
        self,
        job_id: str,
        actor_id: str,
        lat: float,
        lng: float,
        eta_minutes: int | None = None,
    ) -> Outcome[Job]:
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Coordinates out of range")
        if eta_minutes is not None and eta_minutes < 0:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "ETA cannot be negative")

        async def attempt() -> Outcome[Job]:
            loaded = await self._load_for_mechanic(job_id, actor_id, allow_admin=False)
            if not loaded.ok:
                return loaded
            job = loaded.value
            if job.status not in LOCATION_TRACKING_STATUSES:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Location updates are not accepted while the job is {job.status}",
                    current_status=job.status.value,
                )
            update: dict[str, Any] = {"current_location": GeoPoint(latitude=lat, longitude=lng)}
            if eta_minutes is not None:
                update["eta"] = self._now() + timedelta(minutes=eta_minutes)
            saved = await self._save_with_timeline(
                job.model_copy(update=update), job.version, entry=None
            )
            return Outcome.success(saved)

        outcome = await self._retry_on_conflict("update_mechanic_location", job_id, attempt)
        if not outcome.ok:
            return outcome
        job = outcome.value
        self._publish(
            job.id,
            events.JOB_LOCATION_UPDATED,
            {
                "location": {"lat": lat, "lng": lng},
                "eta": job.eta.isoformat() if job.eta else None,
                "mechanicId": actor_id,
                "timestamp": self._now().isoformat(),
            },
        )
        return Outcome.success(job)

    async def update_eta(self, job_id: str, actor_id: str, eta_minutes: int) -> Outcome[Job]:
        if eta_minutes < 0:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "ETA cannot be negative")

        async def attempt() -> Outcome[Job]:
            loaded = await self._load_for_mechanic(job_id, actor_id, allow_admin=False)
            if not loaded.ok:
                return loaded
            job = loaded.value
            if job.status not in LOCATION_TRACKING_STATUSES:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"ETA updates are not accepted while the job is {job.status}",
                    current_status=job.status.value,
                )
            eta = self._now() + timedelta(minutes=eta_minutes)
            saved = await self._save_with_timeline(
                job.model_copy(update={"eta": eta}), job.version, entry=None
            )
            return Outcome.success(saved)

        outcome = await self._retry_on_conflict("update_eta", job_id, attempt)
        if not outcome.ok:
            return outcome
        job = outcome.value
        self._publish(
            job.id,
            events.JOB_ETA_UPDATED,
            {
                "eta": job.eta.isoformat(),
                "etaMinutes": eta_minutes,
                "mechanicId": actor_id,
                "timestamp": self._now().isoformat(),
            },
        )
        await self.dispatcher.dispatch(
            job,
            actor_id,
            NotificationType.JOB_UPDATE,
            NOTIFICATION_TITLES[NotificationType.JOB_UPDATE],
            f"Your mechanic will arrive in about {eta_minutes} minutes",
            {"eta": job.eta.isoformat()},
        )
        return Outcome.success(job)

    # ------------------------------------------------------------------
    # Parts, totals, timer, photos
    # ------------------------------------------------------------------

    async def _edit_job(
        self,
        operation: str,
        job_id: str,
        actor_id: str,
        allowed_statuses: frozenset[JobStatus],
        edit: Callable[[Job], Outcome[tuple[dict[str, Any], JobTimelineEntry | None]]],
    ) -> Outcome[Job]:
        """Shared read/authorize/gate/CAS-write path for mechanic job edits."""

        async def attempt() -> Outcome[Job]:
            loaded = await self._load_for_mechanic(job_id, actor_id)
            if not loaded.ok:
                return loaded
            job = loaded.value
            if job.status not in allowed_statuses:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Cannot {operation.replace('_', ' ')} while the job is {job.status}",
                    current_status=job.status.value,
                )
            edited = edit(job)
            if not edited.ok:
                return edited
            update, entry = edited.value
            saved = await self._save_with_timeline(
                job.model_copy(update=update), job.version, entry
            )
            return Outcome.success(saved)

        outcome = await self._retry_on_conflict(operation, job_id, attempt)
        if outcome.ok:
            logger.info("Job updated", operation=operation, job_id=job_id, actor_id=actor_id)
            self._publish(
                job_id,
                events.JOB_UPDATED,
                {"job": _dump(outcome.value), "updatedBy": actor_id, "timestamp": self._now().isoformat()},
            )
        return outcome

    async def add_job_part(self, job_id: str, actor_id: str, part: JobPart) -> Outcome[Job]:
        def edit(job: Job):
            parts = [*job.parts, part]
            parts_total = money(sum((p.line_total for p in parts), ZERO))
            totals = job.totals.model_copy(update={"parts": parts_total}).recomputed()
            entry = self._timeline(
                job,
                "PART_ADDED",
                f"Added {part.quantity} x {part.name}",
                actor_id,
                part=part.name,
                quantity=part.quantity,
                unit_price=str(part.unit_price),
            )
            return Outcome.success(({"parts": parts, "totals": totals}, entry))

        return await self._edit_job("add_job_part", job_id, actor_id, COST_EDITABLE_STATUSES, edit)

    async def update_totals(
        self,
        job_id: str,
        actor_id: str,
        labor: Decimal | None = None,
        parts: Decimal | None = None,
        fees: Decimal | None = None,
        discounts: Decimal | None = None,
    ) -> Outcome[Job]:
        """
        Merge cost components and recompute the total.

        Negative components are rejected; a total that would go below zero
        because discounts exceed cost is clamped at zero.
        """
        supplied = {
            name: value
            for name, value in (("labor", labor), ("parts", parts), ("fees", fees), ("discounts", discounts))
            if value is not None
        }
        if any(Decimal(v) < 0 for v in supplied.values()):
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Cost components cannot be negative")
        if not supplied:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "No cost components supplied")

        def edit(job: Job):
            merged = {name: money(value) for name, value in supplied.items()}
            totals = job.totals.model_copy(update=merged).recomputed()
            entry = self._timeline(
                job, "TOTALS_UPDATED", f"Totals updated to {totals.total}", actor_id,
                **{name: str(value) for name, value in merged.items()},
            )
            return Outcome.success(({"totals": totals}, entry))

        return await self._edit_job("update_totals", job_id, actor_id, COST_EDITABLE_STATUSES, edit)

    async def record_timer(
        self, job_id: str, actor_id: str, action: TimerAction | str
    ) -> Outcome[Job]:
        if not isinstance(action, TimerAction):
            try:
                action = TimerAction(str(action).strip().upper())
            except ValueError:
                return Outcome.failure(ErrorKind.VALIDATION_ERROR, f"Unknown timer action: {action}")

        def edit(job: Job):
            last = job.timer_entries[-1].action if job.timer_entries else None
            if action not in TIMER_TRANSITIONS[last]:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION,
                    f"Timer cannot {action.value.lower()} after {last or 'no entries'}",
                    last_action=last.value if last else None,
                )
            entries = [*job.timer_entries, TimerEntry(action=action, timestamp=self._now())]
            entry = self._timeline(
                job, f"TIMER_{action.value}", f"Work timer {action.value.lower()}", actor_id
            )
            return Outcome.success(({"timer_entries": entries}, entry))

        return await self._edit_job(
            "record_timer", job_id, actor_id, frozenset({JobStatus.ACTIVE}), edit
        )

    async def add_job_photo(
        self, job_id: str, actor_id: str, url: str, description: str | None = None
    ) -> Outcome[Job]:
        url = (url or "").strip()
        if not url.startswith(("https://", "http://")):
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Photo URL must be an http(s) URL")

        async def attempt() -> Outcome[Job]:
            job = await self.store.get_job(job_id)
            if job is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
            actor = await self._active_user(actor_id)
            if actor is None or not (actor.role is Role.ADMIN or job.is_participant(actor_id)):
                return Outcome.failure(ErrorKind.FORBIDDEN)
            if job.status is JobStatus.CANCELED:
                return Outcome.failure(
                    ErrorKind.INVALID_TRANSITION, "Cannot add photos to a cancelled job"
                )
            photo = JobPhoto(url=url, description=description, uploaded_by=actor_id, created_at=self._now())
            entry = self._timeline(job, "PHOTO_ADDED", "Photo added", actor_id, url=url)
            saved = await self._save_with_timeline(
                job.model_copy(update={"photos": [*job.photos, photo]}), job.version, entry
            )
            return Outcome.success(saved)

        outcome = await self._retry_on_conflict("add_job_photo", job_id, attempt)
        if outcome.ok:
            self._publish(
                job_id,
                events.JOB_UPDATED,
                {"job": _dump(outcome.value), "updatedBy": actor_id, "timestamp": self._now().isoformat()},
            )
        return outcome

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def confirm_payment(self, intent_id: str, succeeded: bool) -> Outcome[Payment]:
        """React to the gateway's boolean confirmation for a payment intent."""
        payment = await self.store.get_payment_by_intent(intent_id)
        if payment is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Payment not found", intent_id=intent_id)

        target = PaymentStatus.SUCCEEDED if succeeded else PaymentStatus.FAILED
        if payment.status is not PaymentStatus.PENDING:
            return _settled(payment, target)

        job = await self.store.get_job(payment.job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=payment.job_id)

        event = "PAYMENT_RECEIVED" if succeeded else "PAYMENT_FAILED"
        async with self.store.transaction() as tx:
            saved = await tx.transition_payment(payment.id, PaymentStatus.PENDING, target)
            if saved is None:
                # Another delivery settled it first
                current = await tx.get_payment_by_intent(intent_id)
                return _settled(current, target)
            await tx.append_timeline(
                self._timeline(
                    job,
                    event,
                    f"{payment.kind.value.title()} payment of {payment.amount} {payment.currency.upper()} "
                    f"{'received' if succeeded else 'failed'}",
                    None,
                    intent_id=intent_id,
                    amount=str(payment.amount),
                    kind=payment.kind.value,
                )
            )

        logger.info("Payment confirmed", intent_id=intent_id, job_id=job.id, status=target.value)
        self._publish(job.id, events.PAYMENT_UPDATED, {"payment": _dump(saved)})
        await self.dispatcher.dispatch(
            job,
            None,
            NotificationType.PAYMENT_UPDATE,
            NOTIFICATION_TITLES[NotificationType.PAYMENT_UPDATE],
            f"Payment of {saved.amount} {saved.currency.upper()} "
            f"{'succeeded' if succeeded else 'failed'}",
            {"paymentId": saved.id, "status": target.value},
        )
        return Outcome.success(saved)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str, actor_id: str) -> Outcome[Job]:
        job = await self.store.get_job(job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
        actor = await self._active_user(actor_id)
        if actor is None or not self._can_view(job, actor):
            return Outcome.failure(ErrorKind.FORBIDDEN)
        return Outcome.success(job)

    async def list_jobs(
        self, actor_id: str, status: JobStatus | None = None, limit: int = 50
    ) -> Outcome[list[Job]]:
        return Outcome.success(await self.store.list_jobs_for_user(actor_id, status, limit))

    async def list_open_jobs(self, actor_id: str, limit: int = 50) -> Outcome[list[Job]]:
        """Jobs still looking for a mechanic; visible to mechanics and admins."""
        actor = await self._active_user(actor_id)
        if actor is None or actor.role not in (Role.MECHANIC, Role.ADMIN):
            return Outcome.failure(ErrorKind.FORBIDDEN, "Only mechanics can browse open jobs")
        return Outcome.success(await self.store.list_open_jobs(limit))

    async def get_timeline(self, job_id: str, actor_id: str) -> Outcome[list[JobTimelineEntry]]:
        job_outcome = await self.get_job(job_id, actor_id)
        if not job_outcome.ok:
            return job_outcome
        return Outcome.success(await self.store.list_timeline(job_id))

    async def get_quote(self, quote_id: str, actor_id: str) -> Outcome[Quote]:
        quote = await self.store.get_quote(quote_id)
        if quote is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Quote not found", quote_id=quote_id)
        actor = await self._active_user(actor_id)
        if actor is None or not (
            actor.role is Role.ADMIN or actor_id in (quote.customer_id, quote.mechanic_id)
        ):
            return Outcome.failure(ErrorKind.FORBIDDEN)
        return Outcome.success(
            quote.model_copy(update={"status": quote.effective_status(self._now())})
        )

    async def list_quotes(self, job_id: str, actor_id: str) -> Outcome[list[Quote]]:
        """Quotes on a job; a mechanic only sees their own."""
        job_outcome = await self.get_job(job_id, actor_id)
        if not job_outcome.ok:
            return job_outcome
        job = job_outcome.value
        now = self._now()
        quotes = await self.store.list_quotes_for_job(job_id)
        if actor_id != job.customer_id:
            actor = await self._active_user(actor_id)
            if actor is not None and actor.role is Role.MECHANIC:
                quotes = [q for q in quotes if q.mechanic_id == actor_id]
        return Outcome.success(
            [q.model_copy(update={"status": q.effective_status(now)}) for q in quotes]
        )
