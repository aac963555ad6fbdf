"""
Business rules: pricing constants and the job / timer transition tables.

The numeric constants are defaults; ``BusinessRules.from_settings`` lets a
deployment override them through configuration.
"""

from dataclasses import dataclass
from decimal import Decimal

from .models import (
    ZERO,
    JobStatus,
    NotificationType,
    TimerAction,
    money,
)

DEFAULT_TAX_RATE = Decimal("0.08")
DEPOSIT_FRACTION = Decimal("0.20")
QUOTE_VALIDITY_DAYS = 7

MAX_MESSAGE_LENGTH = 2000

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUOTED, JobStatus.CANCELED}),
    JobStatus.QUOTED: frozenset({JobStatus.ACCEPTED, JobStatus.CANCELED}),
    JobStatus.ACCEPTED: frozenset({JobStatus.ACTIVE, JobStatus.CANCELED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.CANCELED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}

# Reachable only through create_quote / accept_quote.
QUOTE_DRIVEN_STATUSES = frozenset({JobStatus.QUOTED, JobStatus.ACCEPTED})

MECHANIC_ASSIGNED_STATUSES = frozenset({JobStatus.ACCEPTED, JobStatus.ACTIVE, JobStatus.COMPLETED})
LOCATION_TRACKING_STATUSES = frozenset({JobStatus.ACCEPTED, JobStatus.ACTIVE})
QUOTABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUOTED})
COST_EDITABLE_STATUSES = frozenset({JobStatus.ACCEPTED, JobStatus.ACTIVE})
PAYABLE_STATUSES = frozenset({JobStatus.ACCEPTED, JobStatus.ACTIVE, JobStatus.COMPLETED})

TIMELINE_EVENTS: dict[JobStatus, str] = {
    JobStatus.PENDING: "JOB_CREATED",
    JobStatus.QUOTED: "QUOTE_SENT",
    JobStatus.ACCEPTED: "QUOTE_ACCEPTED",
    JobStatus.ACTIVE: "SERVICE_STARTED",
    JobStatus.COMPLETED: "SERVICE_COMPLETED",
    JobStatus.CANCELED: "JOB_CANCELLED",
}

# Last recorded timer action -> actions allowed next
TIMER_TRANSITIONS: dict[TimerAction | None, frozenset[TimerAction]] = {
    None: frozenset({TimerAction.START}),
    TimerAction.START: frozenset({TimerAction.PAUSE, TimerAction.END}),
    TimerAction.PAUSE: frozenset({TimerAction.RESUME, TimerAction.END}),
    TimerAction.RESUME: frozenset({TimerAction.PAUSE, TimerAction.END}),
    TimerAction.END: frozenset(),
}

# Persisted even when the recipient is watching live
ALWAYS_PERSISTED_TYPES = frozenset({NotificationType.REVIEW_REQUEST, NotificationType.PAYMENT_UPDATE})

NOTIFICATION_TITLES: dict[NotificationType, str] = {
    NotificationType.JOB_UPDATE: "Job Update",
    NotificationType.QUOTE_RECEIVED: "Quote Received",
    NotificationType.QUOTE_ACCEPTED: "Quote Accepted",
    NotificationType.CHAT_MESSAGE: "New Message",
    NotificationType.PAYMENT_UPDATE: "Payment Update",
    NotificationType.REVIEW_REQUEST: "Leave a Review",
    NotificationType.SYSTEM_ALERT: "System Alert",
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class QuotePricing:
    subtotal: Decimal
    tax: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class BusinessRules:
    tax_rate: Decimal = DEFAULT_TAX_RATE
    deposit_fraction: Decimal = DEPOSIT_FRACTION
    quote_validity_days: int = QUOTE_VALIDITY_DAYS

    @classmethod
    def from_settings(cls, settings) -> "BusinessRules":
        return cls(
            tax_rate=Decimal(str(settings.DEFAULT_TAX_RATE)),
            deposit_fraction=Decimal(str(settings.DEPOSIT_FRACTION)),
            quote_validity_days=int(settings.QUOTE_VALIDITY_DAYS),
        )

    def price_quote(
        self,
        labor: Decimal,
        parts: Decimal,
        travel: Decimal = ZERO,
        explicit_total: Decimal | None = None,
    ) -> QuotePricing:
        """
        Subtotal is labor + parts + travel. Without an explicit total the
        configured tax rate is applied on top of the subtotal.
        """
        subtotal = money(labor + parts + travel)
        if explicit_total is not None:
            amount = money(explicit_total)
            return QuotePricing(subtotal=subtotal, tax=money(max(amount - subtotal, ZERO)), amount=amount)

        tax = money(subtotal * self.tax_rate)
        return QuotePricing(subtotal=subtotal, tax=tax, amount=money(subtotal + tax))

    def deposit_for(self, amount: Decimal) -> Decimal:
        return money(amount * self.deposit_fraction)
