"""
Tests for job chat, payment intents and the notification inbox.
"""

import asyncio
from decimal import Decimal

import pytest
from conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    MECHANIC_ID,
    OTHER_CUSTOMER_ID,
    JobFlow,
    ReadBarrier,
    build_with_store,
)

from app.features.job_lifecycle.domain.errors import ErrorKind
from app.features.job_lifecycle.domain.models import NotificationType, PaymentKind, PaymentStatus
from app.features.job_lifecycle.domain.rules import MAX_MESSAGE_LENGTH
from app.features.job_lifecycle.repository.memory_store import InMemoryEntityStore
from app.features.job_lifecycle.services.messaging_service import preview

# -- messaging ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_message_to_offline_counterpart_is_persisted_and_pushed(services, store, push_sender, flow):
    job, _ = await flow.accepted()

    message = (await services.messaging.send_message(job.id, CUSTOMER_ID, "  Gate code is 1234  ")).unwrap()

    assert message.content == "Gate code is 1234"
    [notice] = [n for n in await store.list_notifications(MECHANIC_ID) if n.type is NotificationType.CHAT_MESSAGE]
    assert notice.data["messageId"] == message.id
    assert push_sender.sent[-1]["user_id"] == MECHANIC_ID


@pytest.mark.asyncio
async def test_message_validation(services, flow):
    job, _ = await flow.accepted()

    empty = await services.messaging.send_message(job.id, CUSTOMER_ID, "   ")
    too_long = await services.messaging.send_message(job.id, CUSTOMER_ID, "x" * (MAX_MESSAGE_LENGTH + 1))
    bad_type = await services.messaging.send_message(job.id, CUSTOMER_ID, "hi", "video")

    assert empty.error.kind is ErrorKind.VALIDATION_ERROR
    assert too_long.error.kind is ErrorKind.VALIDATION_ERROR
    assert bad_type.error.kind is ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_outsiders_cannot_chat_but_admins_can_read(services, flow):
    job, _ = await flow.accepted()
    await services.messaging.send_message(job.id, CUSTOMER_ID, "hello")

    outsider = await services.messaging.send_message(job.id, OTHER_CUSTOMER_ID, "hi")
    assert outsider.error.kind is ErrorKind.FORBIDDEN

    admin_send = await services.messaging.send_message(job.id, ADMIN_ID, "hi")
    assert admin_send.error.kind is ErrorKind.FORBIDDEN

    history = (await services.messaging.list_messages(job.id, ADMIN_ID)).unwrap()
    assert [m.content for m in history] == ["hello"]


@pytest.mark.asyncio
async def test_mark_read_only_counts_counterpart_messages(services, flow):
    job, _ = await flow.accepted()
    await services.messaging.send_message(job.id, CUSTOMER_ID, "one")
    await services.messaging.send_message(job.id, CUSTOMER_ID, "two")
    await services.messaging.send_message(job.id, MECHANIC_ID, "reply")

    assert (await services.messaging.mark_read(job.id, MECHANIC_ID)).unwrap() == 2
    assert (await services.messaging.mark_read(job.id, MECHANIC_ID)).unwrap() == 0


def test_preview_truncates_long_messages():
    assert preview("short") == "short"
    assert preview("a" * 60) == "a" * 50 + "..."


# -- payments ----------------------------------------------------------------


@pytest.mark.asyncio
async def test_deposit_intent_charges_fraction_of_quote(services, payment_gateway, flow):
    job, quote = await flow.accepted()

    created = (await services.payments.create_intent(job.id, CUSTOMER_ID, "deposit")).unwrap()

    assert quote.amount == Decimal("86.40")
    assert created.payment.amount == Decimal("17.28")
    assert created.payment.status is PaymentStatus.PENDING
    assert created.client_secret == "pi_1_secret"
    assert payment_gateway.created[0]["metadata"] == {
        "job_id": job.id,
        "customer_id": CUSTOMER_ID,
        "kind": "DEPOSIT",
    }


@pytest.mark.asyncio
async def test_successful_payment_updates_record_timeline_and_inbox(services, store, flow):
    job, _ = await flow.accepted()
    created = (await services.payments.create_intent(job.id, CUSTOMER_ID, PaymentKind.DEPOSIT)).unwrap()

    confirmed = (
        await services.payments.handle_gateway_event("payment_intent.succeeded", created.payment.intent_id)
    ).unwrap()

    assert confirmed.status is PaymentStatus.SUCCEEDED
    assert (await store.list_timeline(job.id))[-1].event == "PAYMENT_RECEIVED"
    for user_id in (CUSTOMER_ID, MECHANIC_ID):
        notices = await store.list_notifications(user_id)
        assert any(n.type is NotificationType.PAYMENT_UPDATE for n in notices)

    # Gateways retry webhooks
    again = await services.payments.handle_gateway_event("payment_intent.succeeded", created.payment.intent_id)
    assert again.ok
    assert len([e for e in await store.list_timeline(job.id) if e.event == "PAYMENT_RECEIVED"]) == 1

    late_failure = await services.payments.handle_gateway_event(
        "payment_intent.payment_failed", created.payment.intent_id
    )
    assert late_failure.error.kind is ErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_full_payment_charges_remaining_balance(services, flow):
    job, _ = await flow.accepted()
    deposit = (await services.payments.create_intent(job.id, CUSTOMER_ID, "DEPOSIT")).unwrap()
    await services.payments.handle_gateway_event("payment_intent.succeeded", deposit.payment.intent_id)

    second_deposit = await services.payments.create_intent(job.id, CUSTOMER_ID, "DEPOSIT")
    assert second_deposit.error.kind is ErrorKind.INVALID_TRANSITION

    full = (await services.payments.create_intent(job.id, CUSTOMER_ID, "FULL")).unwrap()
    assert full.payment.amount == Decimal("69.12")


@pytest.mark.asyncio
async def test_payment_preconditions(services, flow):
    pending_job = await flow.create_job()
    job, _ = await flow.accepted()

    assert (await services.payments.create_intent(pending_job.id, CUSTOMER_ID, "FULL")).error.kind is (
        ErrorKind.INVALID_TRANSITION
    )
    assert (await services.payments.create_intent(job.id, MECHANIC_ID, "FULL")).error.kind is ErrorKind.FORBIDDEN
    assert (await services.payments.create_intent(job.id, CUSTOMER_ID, "tip")).error.kind is (
        ErrorKind.VALIDATION_ERROR
    )
    assert (await services.payments.create_intent("missing", CUSTOMER_ID, "FULL")).error.kind is (
        ErrorKind.NOT_FOUND
    )


@pytest.mark.asyncio
async def test_unrelated_and_unknown_gateway_events(services):
    ignored = await services.payments.handle_gateway_event("charge.refunded", "pi_1")
    assert ignored.ok and ignored.value is None

    unknown = await services.payments.handle_gateway_event("payment_intent.succeeded", "pi_missing")
    assert unknown.error.kind is ErrorKind.NOT_FOUND


class PaymentReadBarrierStore(InMemoryEntityStore):
    def __init__(self):
        super().__init__()
        self.barrier = ReadBarrier()

    async def get_payment_by_intent(self, intent_id):
        payment = await super().get_payment_by_intent(intent_id)
        await self.barrier.wait()
        return payment


@pytest.mark.asyncio
async def test_concurrent_webhook_deliveries_settle_once(presence, push_sender, payment_gateway):
    store = PaymentReadBarrierStore()
    services = build_with_store(store, presence, push_sender, payment_gateway)
    job, _ = await JobFlow(services).accepted()
    created = (await services.payments.create_intent(job.id, CUSTOMER_ID, PaymentKind.DEPOSIT)).unwrap()
    intent_id = created.payment.intent_id

    store.barrier.enabled = True
    first, second = await asyncio.gather(
        services.payments.handle_gateway_event("payment_intent.succeeded", intent_id),
        services.payments.handle_gateway_event("payment_intent.succeeded", intent_id),
    )

    assert first.ok and second.ok
    assert (await store.get_payment_by_intent(intent_id)).status is PaymentStatus.SUCCEEDED
    received = [e for e in await store.list_timeline(job.id) if e.event == "PAYMENT_RECEIVED"]
    assert len(received) == 1
    updates = [
        n for n in await store.list_notifications(CUSTOMER_ID) if n.type is NotificationType.PAYMENT_UPDATE
    ]
    assert len(updates) == 1


# -- inbox -------------------------------------------------------------------


@pytest.mark.asyncio
async def test_inbox_read_tracking(services, flow):
    job, _ = await flow.accepted()
    inbox = services.inbox
    await inbox.mark_all_read(CUSTOMER_ID)
    await services.messaging.send_message(job.id, MECHANIC_ID, "On my way")
    await services.messaging.send_message(job.id, MECHANIC_ID, "Parked outside")

    assert (await inbox.unread_count(CUSTOMER_ID)).unwrap() == 2

    first = (await inbox.list_for_user(CUSTOMER_ID, unread_only=True)).unwrap()[0]
    assert (await inbox.mark_read(first.id, CUSTOMER_ID)).unwrap().read is True
    assert (await inbox.mark_read(first.id, MECHANIC_ID)).error.kind is ErrorKind.NOT_FOUND
    assert len((await inbox.list_for_user(CUSTOMER_ID, unread_only=True)).unwrap()) == 1

    assert (await inbox.mark_all_read(CUSTOMER_ID)).unwrap() == 1
    assert (await inbox.unread_count(CUSTOMER_ID)).unwrap() == 0


@pytest.mark.asyncio
async def test_inbox_pagination_and_push_tokens(services, store):
    inbox = services.inbox

    assert (await inbox.list_for_user(CUSTOMER_ID, limit=0)).error.kind is ErrorKind.VALIDATION_ERROR
    assert (await inbox.register_push_token(CUSTOMER_ID, "tok", "blackberry")).error.kind is (
        ErrorKind.VALIDATION_ERROR
    )

    saved = (await inbox.register_push_token(CUSTOMER_ID, " ExponentPushToken[abc] ", "iOS")).unwrap()
    assert saved.platform == "ios"
    assert [t.token for t in await store.list_push_tokens(CUSTOMER_ID)] == ["ExponentPushToken[abc]"]
