"""
Payment intents for accepted jobs.

DEPOSIT charges the accepted quote amount times the deposit fraction; FULL
charges whatever remains of the job total (or the quote amount while no final
total has been recorded) after succeeded payments.
"""

from dataclasses import dataclass
from decimal import Decimal

from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Role

from ..domain.errors import ErrorKind, Outcome
from ..domain.models import ZERO, Job, Payment, PaymentKind, PaymentStatus, QuoteStatus, money
from ..domain.rules import PAYABLE_STATUSES, BusinessRules
from ..repository.base import EntityStore
from .payment_gateway import PaymentGateway
from .transition_engine import TransitionEngine

logger = get_logger(__name__)

SUCCEEDED_EVENTS = frozenset({"payment_intent.succeeded"})
FAILED_EVENTS = frozenset({"payment_intent.payment_failed", "payment_intent.failed"})


@dataclass(frozen=True, slots=True)
class CreatedIntent:
    payment: Payment
    client_secret: str


class PaymentService:
    def __init__(
        self,
        store: EntityStore,
        gateway: PaymentGateway,
        engine: TransitionEngine,
        rules: BusinessRules | None = None,
        currency: str = "usd",
    ):
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.rules = rules or BusinessRules()
        self.currency = currency

    async def _amount_due(self, job: Job, kind: PaymentKind) -> Outcome[Decimal]:
        quotes = await self.store.list_quotes_for_job(job.id)
        accepted = next((q for q in quotes if q.status is QuoteStatus.ACCEPTED), None)
        if accepted is None:
            return Outcome.failure(ErrorKind.INVALID_TRANSITION, "Job has no accepted quote")

        payments = await self.store.list_payments_for_job(job.id)
        succeeded = [p for p in payments if p.status is PaymentStatus.SUCCEEDED]

        if kind is PaymentKind.DEPOSIT:
            if any(p.kind is PaymentKind.DEPOSIT for p in succeeded):
                return Outcome.failure(ErrorKind.INVALID_TRANSITION, "Deposit already paid")
            return Outcome.success(self.rules.deposit_for(accepted.amount))

        base = job.totals.total if job.totals.total > ZERO else accepted.amount
        remaining = money(base - sum((p.amount for p in succeeded), ZERO))
        if remaining <= ZERO:
            return Outcome.failure(ErrorKind.INVALID_TRANSITION, "Nothing left to pay on this job")
        return Outcome.success(remaining)

    async def create_intent(
        self, job_id: str, actor_id: str, kind: PaymentKind | str
    ) -> Outcome[CreatedIntent]:
        """
        Create a gateway payment intent and a PENDING payment record.

        Raises:
            PaymentGatewayError: the gateway refused or was unreachable
        """
        if not isinstance(kind, PaymentKind):
            try:
                kind = PaymentKind(str(kind).upper())
            except ValueError:
                return Outcome.failure(ErrorKind.VALIDATION_ERROR, f"Unknown payment kind: {kind}")

        job = await self.store.get_job(job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
        if job.customer_id != actor_id:
            return Outcome.failure(ErrorKind.FORBIDDEN, "Only the customer can pay for this job")
        if job.status not in PAYABLE_STATUSES:
            return Outcome.failure(
                ErrorKind.INVALID_TRANSITION,
                f"Payments are not accepted while the job is {job.status}",
                current_status=job.status.value,
            )

        due = await self._amount_due(job, kind)
        if not due.ok:
            return due
        amount = due.value

        intent = await self.gateway.create_payment_intent(
            amount, self.currency, {"job_id": job.id, "customer_id": actor_id, "kind": kind.value}
        )
        payment = await self.store.insert_payment(
            Payment(
                job_id=job.id,
                customer_id=actor_id,
                intent_id=intent.intent_id,
                amount=amount,
                currency=self.currency,
                kind=kind,
            )
        )
        logger.info(
            "Payment intent created",
            job_id=job.id,
            intent_id=intent.intent_id,
            kind=kind.value,
            amount=str(amount),
        )
        return Outcome.success(CreatedIntent(payment=payment, client_secret=intent.client_secret))

    async def handle_gateway_event(self, event_type: str, intent_id: str) -> Outcome[Payment | None]:
        """Feed a verified webhook event into the engine; unrelated events are ignored."""
        if event_type in SUCCEEDED_EVENTS:
            return await self.engine.confirm_payment(intent_id, succeeded=True)
        if event_type in FAILED_EVENTS:
            return await self.engine.confirm_payment(intent_id, succeeded=False)
        logger.debug("Ignoring payment event", event_type=event_type, intent_id=intent_id)
        return Outcome.success(None)

    async def list_payments(self, job_id: str, actor_id: str) -> Outcome[list[Payment]]:
        job = await self.store.get_job(job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
        if not job.is_participant(actor_id):
            actor = await self.store.get_user(actor_id)
            if actor is None or actor.role is not Role.ADMIN:
                return Outcome.failure(ErrorKind.FORBIDDEN)
        return Outcome.success(await self.store.list_payments_for_job(job_id))
