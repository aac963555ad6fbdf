"""
Tests for the job / quote state machine.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    MECHANIC_ID,
    OTHER_CUSTOMER_ID,
    OTHER_MECHANIC_ID,
    JobFlow,
    drain,
)

from app.features.job_lifecycle.domain.errors import ErrorKind
from app.features.job_lifecycle.domain.models import (
    JobLocation,
    JobPart,
    JobStatus,
    NotificationType,
    QuoteBreakdown,
    QuoteStatus,
    TimerAction,
    utc_now,
)
from app.features.job_lifecycle.repository.memory_store import InMemoryEntityStore
from app.features.job_lifecycle.services.transition_engine import TransitionEngine


@pytest.mark.asyncio
async def test_create_service_request_starts_pending(services, store, flow):
    job = await flow.create_job()

    assert job.status is JobStatus.PENDING
    assert job.mechanic_id is None
    assert job.category == "brake_repair"
    timeline = await store.list_timeline(job.id)
    assert [e.event for e in timeline] == ["JOB_CREATED"]


@pytest.mark.asyncio
async def test_mechanic_cannot_request_service(services):
    outcome = await services.engine.create_service_request(
        MECHANIC_ID, "oil_change", "Oil change", JobLocation(address="2 Side St")
    )

    assert outcome.error.kind is ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_quote_applies_default_tax_and_moves_job_to_quoted(services, store, flow):
    job = await flow.create_job()

    quote = await flow.quote(job.id, labor="50.00", parts="30.00")

    assert quote.amount == Decimal("86.40")
    assert quote.tax == Decimal("6.40")
    assert quote.status is QuoteStatus.PENDING
    assert (await store.get_job(job.id)).status is JobStatus.QUOTED
    assert quote.valid_until - quote.created_at == timedelta(days=7)


@pytest.mark.asyncio
async def test_explicit_quote_total_skips_tax(services, flow):
    job = await flow.create_job()

    outcome = await services.engine.create_quote(
        job.id,
        MECHANIC_ID,
        QuoteBreakdown(labor=Decimal("50"), parts=Decimal("30"), total=Decimal("90")),
        "Flat rate",
    )

    assert outcome.value.amount == Decimal("90.00")


@pytest.mark.asyncio
async def test_quote_rejects_negative_amounts(services, flow):
    job = await flow.create_job()

    outcome = await services.engine.create_quote(
        job.id, MECHANIC_ID, QuoteBreakdown(labor=Decimal("-1")), "Bad quote"
    )

    assert outcome.error.kind is ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_only_mechanics_can_quote(services, flow):
    job = await flow.create_job()

    for actor in (CUSTOMER_ID, ADMIN_ID):
        outcome = await services.engine.create_quote(
            job.id, actor, QuoteBreakdown(labor=Decimal("10")), "Quote"
        )
        assert outcome.error.kind is ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_accept_quote_binds_mechanic_and_rejects_competitors(services, store, flow):
    job = await flow.create_job()
    winner = await flow.quote(job.id, MECHANIC_ID)
    loser = await flow.quote(job.id, OTHER_MECHANIC_ID, labor="40.00")

    result = (await services.engine.accept_quote(winner.id, CUSTOMER_ID)).unwrap()

    assert result.job.status is JobStatus.ACCEPTED
    assert result.job.mechanic_id == MECHANIC_ID
    assert result.quote.status is QuoteStatus.ACCEPTED
    assert result.quote.accepted_at is not None
    assert (await store.get_quote(loser.id)).status is QuoteStatus.REJECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("mechanic_online, expected", [(False, 1), (True, 0)])
async def test_accept_quote_notifies_mechanic_once_unless_online(
    services, store, presence, push_sender, flow, mechanic_online, expected
):
    job = await flow.create_job()
    quote = await flow.quote(job.id, MECHANIC_ID)
    if mechanic_online:
        await presence.add(MECHANIC_ID, "mechanic-socket")

    await services.engine.accept_quote(quote.id, CUSTOMER_ID)

    accepted = [
        n for n in await store.list_notifications(MECHANIC_ID) if n.type is NotificationType.QUOTE_ACCEPTED
    ]
    assert len(accepted) == expected
    assert [p["user_id"] for p in push_sender.sent].count(MECHANIC_ID) == expected


@pytest.mark.asyncio
async def test_accept_quote_twice_is_idempotent(services, store, flow):
    job = await flow.create_job()
    quote = await flow.quote(job.id)

    first = (await services.engine.accept_quote(quote.id, CUSTOMER_ID)).unwrap()
    second = await services.engine.accept_quote(quote.id, CUSTOMER_ID)

    assert second.ok
    assert second.value.job.status is JobStatus.ACCEPTED
    assert second.value.job.version == first.job.version
    accepted_entries = [e for e in await store.list_timeline(job.id) if e.event == "QUOTE_ACCEPTED"]
    assert len(accepted_entries) == 1


@pytest.mark.asyncio
async def test_only_the_customer_can_accept(services, flow):
    job = await flow.create_job()
    quote = await flow.quote(job.id)

    outcome = await services.engine.accept_quote(quote.id, OTHER_CUSTOMER_ID)

    assert outcome.error.kind is ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_expired_quote_cannot_be_accepted(store, services):
    flow = JobFlow(services)
    job = await flow.create_job()
    quote = await flow.quote(job.id, valid_until=utc_now() + timedelta(minutes=5))

    later = TransitionEngine(
        store,
        services.broadcaster,
        services.dispatcher,
        rules=services.rules,
        clock=lambda: utc_now() + timedelta(hours=1),
    )
    outcome = await later.accept_quote(quote.id, CUSTOMER_ID)

    assert outcome.error.kind is ErrorKind.EXPIRED
    assert (await store.get_job(job.id)).status is JobStatus.QUOTED


@pytest.mark.asyncio
async def test_reject_last_open_quote_reopens_job(services, store, flow):
    job = await flow.create_job()
    quote = await flow.quote(job.id)

    rejected = (await services.engine.reject_quote(quote.id, CUSTOMER_ID, reason="Too pricey")).unwrap()

    assert rejected.status is QuoteStatus.REJECTED
    assert (await store.get_job(job.id)).status is JobStatus.PENDING


@pytest.mark.asyncio
async def test_admin_approves_pending_quote(services, flow):
    job = await flow.create_job()
    quote = await flow.quote(job.id)

    assert (await services.engine.approve_quote(quote.id, MECHANIC_ID)).error.kind is ErrorKind.FORBIDDEN
    approved = (await services.engine.approve_quote(quote.id, ADMIN_ID)).unwrap()

    assert approved.status is QuoteStatus.APPROVED
    # An approved quote can still be accepted
    assert (await services.engine.accept_quote(quote.id, CUSTOMER_ID)).ok


@pytest.mark.asyncio
async def test_full_lifecycle_stamps_timestamps(services, store, flow):
    job, _ = await flow.accepted()

    active = (await services.engine.update_job_status(job.id, MECHANIC_ID, "in-progress")).unwrap()
    assert active.status is JobStatus.ACTIVE
    assert active.started_at is not None

    completed = (await services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.COMPLETED)).unwrap()
    assert completed.status is JobStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.mechanic_id == MECHANIC_ID

    events = [e.event for e in await store.list_timeline(job.id)]
    assert events == ["JOB_CREATED", "QUOTE_SENT", "QUOTE_ACCEPTED", "SERVICE_STARTED", "SERVICE_COMPLETED"]


@pytest.mark.asyncio
async def test_invalid_transition_leaves_job_unchanged(services, store, flow):
    job, _ = await flow.accepted()
    before = await store.get_job(job.id)

    outcome = await services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.COMPLETED)

    assert outcome.error.kind is ErrorKind.INVALID_TRANSITION
    after = await store.get_job(job.id)
    assert after.status is JobStatus.ACCEPTED
    assert after.version == before.version
    assert len(await store.list_timeline(job.id)) == 3


@pytest.mark.asyncio
async def test_quote_driven_statuses_are_not_directly_settable(services, flow):
    job = await flow.create_job()

    outcome = await services.engine.update_job_status(job.id, ADMIN_ID, JobStatus.QUOTED)

    assert outcome.error.kind is ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_terminal_jobs_reject_further_changes(services, flow):
    job, _ = await flow.completed()

    outcome = await services.engine.update_job_status(job.id, ADMIN_ID, JobStatus.CANCELED)

    assert outcome.error.kind is ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_same_status_request_is_noop(services, store, flow):
    job, _ = await flow.active()
    entries_before = len(await store.list_timeline(job.id))

    outcome = await services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.ACTIVE)

    assert outcome.ok
    assert len(await store.list_timeline(job.id)) == entries_before


@pytest.mark.asyncio
async def test_customer_cannot_start_work(services, flow):
    job, _ = await flow.accepted()

    outcome = await services.engine.update_job_status(job.id, CUSTOMER_ID, JobStatus.ACTIVE)

    assert outcome.error.kind is ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_unknown_status_is_validation_error(services, flow):
    job, _ = await flow.accepted()

    outcome = await services.engine.update_job_status(job.id, MECHANIC_ID, "teleported")

    assert outcome.error.kind is ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_cancel_clears_mechanic_and_withdraws_open_quotes(services, store, flow):
    job = await flow.create_job()
    quote = await flow.quote(job.id)

    canceled = (await services.engine.update_job_status(job.id, CUSTOMER_ID, "cancelled")).unwrap()

    assert canceled.status is JobStatus.CANCELED
    assert canceled.mechanic_id is None
    assert (await store.get_quote(quote.id)).status is QuoteStatus.REJECTED


@pytest.mark.asyncio
async def test_assigned_mechanic_can_cancel(services, flow):
    job, _ = await flow.active()

    canceled = (await services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.CANCELED)).unwrap()

    assert canceled.mechanic_id is None


@pytest.mark.asyncio
async def test_location_updates_only_while_tracking(services, flow):
    job = await flow.create_job()

    pending = await services.engine.update_mechanic_location(job.id, MECHANIC_ID, 40.1, -74.1)
    assert pending.error.kind is ErrorKind.FORBIDDEN

    accepted_job, _ = await flow.accepted()
    wrong_mechanic = await services.engine.update_mechanic_location(accepted_job.id, OTHER_MECHANIC_ID, 40.1, -74.1)
    assert wrong_mechanic.error.kind is ErrorKind.FORBIDDEN

    moved = (await services.engine.update_mechanic_location(accepted_job.id, MECHANIC_ID, 40.1, -74.1, eta_minutes=15)).unwrap()
    assert moved.current_location.latitude == 40.1
    assert moved.eta is not None


@pytest.mark.asyncio
async def test_location_rejected_after_completion(services, flow):
    job, _ = await flow.completed()

    outcome = await services.engine.update_mechanic_location(job.id, MECHANIC_ID, 40.1, -74.1)

    assert outcome.error.kind is ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_location_out_of_range(services, flow):
    job, _ = await flow.accepted()

    outcome = await services.engine.update_mechanic_location(job.id, MECHANIC_ID, 95.0, 0.0)

    assert outcome.error.kind is ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_parts_and_totals_recompute(services, flow):
    job, _ = await flow.active()

    with_part = (
        await services.engine.add_job_part(
            job.id, MECHANIC_ID, JobPart(name="Brake pad", quantity=2, unit_price=Decimal("12.50"))
        )
    ).unwrap()
    assert with_part.totals.parts == Decimal("25.00")
    assert with_part.totals.total == Decimal("25.00")

    updated = (
        await services.engine.update_totals(job.id, MECHANIC_ID, labor=Decimal("60"), fees=Decimal("5"), discounts=Decimal("10"))
    ).unwrap()
    assert updated.totals.total == Decimal("80.00")


@pytest.mark.asyncio
async def test_totals_clamp_at_zero_and_reject_negatives(services, flow):
    job, _ = await flow.active()

    clamped = (
        await services.engine.update_totals(job.id, MECHANIC_ID, labor=Decimal("10"), discounts=Decimal("50"))
    ).unwrap()
    assert clamped.totals.total == Decimal("0.00")

    negative = await services.engine.update_totals(job.id, MECHANIC_ID, fees=Decimal("-1"))
    assert negative.error.kind is ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_timer_sequence(services, flow):
    job, _ = await flow.active()
    engine = services.engine

    assert (await engine.record_timer(job.id, MECHANIC_ID, TimerAction.PAUSE)).error.kind is ErrorKind.INVALID_TRANSITION
    for action in ("start", "pause", "resume", "end"):
        assert (await engine.record_timer(job.id, MECHANIC_ID, action)).ok
    after_end = await engine.record_timer(job.id, MECHANIC_ID, TimerAction.START)

    assert after_end.error.kind is ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_timer_requires_active_job(services, flow):
    job, _ = await flow.accepted()

    outcome = await services.engine.record_timer(job.id, MECHANIC_ID, TimerAction.START)

    assert outcome.error.kind is ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_photo_requires_http_url(services, flow):
    job, _ = await flow.accepted()

    assert (await services.engine.add_job_photo(job.id, CUSTOMER_ID, "ftp://x")).error.kind is ErrorKind.VALIDATION_ERROR
    saved = (await services.engine.add_job_photo(job.id, CUSTOMER_ID, "https://cdn.example.com/a.jpg")).unwrap()
    assert saved.photos[0].uploaded_by == CUSTOMER_ID


@pytest.mark.asyncio
async def test_visibility_rules(services, flow):
    job = await flow.create_job()
    engine = services.engine

    assert (await engine.get_job(job.id, OTHER_CUSTOMER_ID)).error.kind is ErrorKind.FORBIDDEN
    # Open requests are visible to mechanics so they can quote
    assert (await engine.get_job(job.id, OTHER_MECHANIC_ID)).ok

    accepted_job, _ = await flow.accepted()
    assert (await engine.get_job(accepted_job.id, OTHER_MECHANIC_ID)).error.kind is ErrorKind.FORBIDDEN
    assert (await engine.get_job(accepted_job.id, ADMIN_ID)).ok
    assert (await engine.get_job("missing", ADMIN_ID)).error.kind is ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_open_jobs_listing(services, flow):
    open_job = await flow.create_job()
    taken, _ = await flow.accepted()

    listed = (await services.engine.list_open_jobs(OTHER_MECHANIC_ID)).unwrap()

    assert open_job.id in {j.id for j in listed}
    assert taken.id not in {j.id for j in listed}
    assert (await services.engine.list_open_jobs(CUSTOMER_ID)).error.kind is ErrorKind.FORBIDDEN


@pytest.mark.asyncio
async def test_status_change_is_broadcast_to_job_room(services, flow):
    job, _ = await flow.accepted()
    broadcaster = services.broadcaster
    queue = broadcaster.register("watcher")
    broadcaster.join("watcher", f"job:{job.id}")

    await services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.ACTIVE)

    names = [e.name for e in drain(queue)]
    assert names == ["job:status-updated"]


@pytest.mark.asyncio
async def test_completion_sends_review_requests_to_both_parties(services, store, flow):
    job, _ = await flow.completed()

    for user_id in (CUSTOMER_ID, MECHANIC_ID):
        types = [n.type.value for n in await store.list_notifications(user_id)]
        assert "REVIEW_REQUEST" in types


class GatedStore(InMemoryEntityStore):
    """Holds the first two get_job calls until both have read the same version."""

    def __init__(self):
        super().__init__()
        self.gate_enabled = False
        self._arrived = 0
        self._both_read = asyncio.Event()

    async def get_job(self, job_id):
        job = await super().get_job(job_id)
        if self.gate_enabled and self._arrived < 2:
            self._arrived += 1
            if self._arrived == 2:
                self._both_read.set()
            await self._both_read.wait()
        return job


@pytest.mark.asyncio
async def test_concurrent_completion_has_single_winner(presence, push_sender, payment_gateway):
    from conftest import seed_users

    from app.config import settings
    from app.features.job_lifecycle.container import build_services

    store = GatedStore()
    seed_users(store)
    services = build_services(
        settings, store=store, presence=presence, push_sender=push_sender, payment_gateway=payment_gateway
    )
    job, _ = await JobFlow(services).active()
    queue = services.broadcaster.register("watcher")
    services.broadcaster.join("watcher", f"job:{job.id}")

    store.gate_enabled = True
    first, second = await asyncio.gather(
        services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.COMPLETED),
        services.engine.update_job_status(job.id, ADMIN_ID, JobStatus.COMPLETED),
    )

    assert first.ok and second.ok
    assert first.value.status is JobStatus.COMPLETED
    assert second.value.status is JobStatus.COMPLETED
    completions = [e for e in await store.list_timeline(job.id) if e.event == "SERVICE_COMPLETED"]
    assert len(completions) == 1
    assert [e.name for e in drain(queue)].count("job:status-updated") == 1
