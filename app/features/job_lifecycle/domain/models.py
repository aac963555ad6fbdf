"""
Domain models for the job lifecycle feature.

Jobs, quotes, reviews, notifications, chat messages and payments as they are
persisted by the entity store. Status enums here are the single canonical
representation shared by every layer; alternative spellings are only accepted
when parsing client input.
"""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


def money(value: Decimal | int | float | str) -> Decimal:
    """Quantize an amount to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class JobStatus(StrEnum):
    PENDING = "PENDING"
    QUOTED = "QUOTED"
    ACCEPTED = "ACCEPTED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"

    @classmethod
    def parse(cls, raw: str) -> "JobStatus":
        """Accept client spellings (lowercase, in-progress, cancelled)."""
        normalized = raw.strip().upper().replace("-", "_")
        normalized = _JOB_STATUS_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as e:
            raise ValueError(f"Unknown job status: {raw}") from e

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELED)


_JOB_STATUS_ALIASES = {
    "IN_PROGRESS": "ACTIVE",
    "CANCELLED": "CANCELED",
}


class QuoteStatus(StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class Urgency(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EMERGENCY = "EMERGENCY"


class TimerAction(StrEnum):
    START = "START"
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    END = "END"


class NotificationType(StrEnum):
    JOB_UPDATE = "JOB_UPDATE"
    QUOTE_RECEIVED = "QUOTE_RECEIVED"
    QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
    CHAT_MESSAGE = "CHAT_MESSAGE"
    PAYMENT_UPDATE = "PAYMENT_UPDATE"
    REVIEW_REQUEST = "REVIEW_REQUEST"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class MessageType(StrEnum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PaymentKind(StrEnum):
    DEPOSIT = "DEPOSIT"
    FULL = "FULL"


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class JobLocation(BaseModel):
    address: str
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)


class VehicleInfo(BaseModel):
    make: str
    model: str
    year: int
    vin: str | None = None


class JobPart(BaseModel):
    name: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class TimerEntry(BaseModel):
    action: TimerAction
    timestamp: datetime


class CostTotals(BaseModel):
    labor: Decimal = ZERO
    parts: Decimal = ZERO
    fees: Decimal = ZERO
    discounts: Decimal = ZERO
    total: Decimal = ZERO

    def recomputed(self) -> "CostTotals":
        """labor + parts + fees - discounts, never below zero."""
        raw = self.labor + self.parts + self.fees - self.discounts
        return self.model_copy(update={"total": money(max(raw, ZERO))})


class JobPhoto(BaseModel):
    url: str
    description: str | None = None
    uploaded_by: str
    created_at: datetime = Field(default_factory=utc_now)


class Job(BaseModel):
    id: str = Field(default_factory=new_id)
    customer_id: str
    mechanic_id: str | None = None
    title: str
    description: str
    category: str
    status: JobStatus = JobStatus.PENDING
    urgency: Urgency = Urgency.MEDIUM
    vehicle: VehicleInfo | None = None
    location: JobLocation
    current_location: GeoPoint | None = None
    eta: datetime | None = None
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    parts: list[JobPart] = Field(default_factory=list)
    timer_entries: list[TimerEntry] = Field(default_factory=list)
    totals: CostTotals = Field(default_factory=CostTotals)
    photos: list[JobPhoto] = Field(default_factory=list)
    notes: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0

    @property
    def participant_ids(self) -> set[str]:
        return {uid for uid in (self.customer_id, self.mechanic_id) if uid}

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def counterpart_of(self, user_id: str) -> str | None:
        if user_id == self.customer_id:
            return self.mechanic_id
        if user_id == self.mechanic_id:
            return self.customer_id
        return None


class JobTimelineEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    event: str
    from_status: JobStatus | None = None
    to_status: JobStatus | None = None
    actor_id: str | None = None
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Quote
# ---------------------------------------------------------------------------


class QuoteLineItem(BaseModel):
    name: str
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(..., ge=0)


class Quote(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    customer_id: str
    mechanic_id: str
    description: str
    labor_cost: Decimal
    parts_cost: Decimal
    travel_cost: Decimal = ZERO
    tax: Decimal = ZERO
    amount: Decimal
    currency: str = "usd"
    status: QuoteStatus = QuoteStatus.PENDING
    valid_until: datetime
    estimated_duration_minutes: int | None = None
    line_items: list[QuoteLineItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    accepted_at: datetime | None = None
    version: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.valid_until < now

    def effective_status(self, now: datetime) -> QuoteStatus:
        """Open quotes past valid_until read as EXPIRED whatever is stored."""
        if self.status in (QuoteStatus.PENDING, QuoteStatus.APPROVED) and self.is_expired(now):
            return QuoteStatus.EXPIRED
        return self.status

    def is_open(self, now: datetime) -> bool:
        return self.effective_status(now) in (QuoteStatus.PENDING, QuoteStatus.APPROVED)


# ---------------------------------------------------------------------------
# Reviews, notifications, messages, payments
# ---------------------------------------------------------------------------


class CategoryRatings(BaseModel):
    punctuality: int | None = Field(default=None, ge=1, le=5)
    quality: int | None = Field(default=None, ge=1, le=5)
    communication: int | None = Field(default=None, ge=1, le=5)
    value: int | None = Field(default=None, ge=1, le=5)


class Review(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    reviewer_id: str
    reviewee_id: str
    rating: int = Field(..., ge=1, le=5)
    category_ratings: CategoryRatings = Field(default_factory=CategoryRatings)
    comment: str | None = None
    photos: list[str] = Field(default_factory=list)
    is_hidden: bool = False
    report_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MechanicProfile(BaseModel):
    user_id: str
    average_rating: float = 0.0
    total_reviews: int = 0
    updated_at: datetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    delivered: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    sender_id: str
    content: str
    type: MessageType = MessageType.TEXT
    read_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str
    customer_id: str
    intent_id: str
    amount: Decimal
    currency: str = "usd"
    kind: PaymentKind
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class PushToken(BaseModel):
    user_id: str
    token: str
    platform: str
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class QuoteBreakdown(BaseModel):
    """Mechanic-supplied pricing; an explicit total overrides the tax rule."""

    labor: Decimal = ZERO
    parts: Decimal = ZERO
    travel: Decimal = ZERO
    total: Decimal | None = None

    def has_negative_component(self) -> bool:
        values = [self.labor, self.parts, self.travel]
        if self.total is not None:
            values.append(self.total)
        return any(v < 0 for v in values)
