"""
Request and response models for the job lifecycle HTTP API.

Range checks on money and ratings are left to the services so that every
business-rule violation comes back in the same `{code, message}` shape.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ..domain.models import (
    CategoryRatings,
    Job,
    JobLocation,
    Payment,
    Quote,
    QuoteLineItem,
    Urgency,
    VehicleInfo,
)

# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    service_type: str = Field(..., description="Service category, e.g. oil_change")
    description: str
    location: JobLocation
    vehicle: VehicleInfo | None = None
    urgency: Urgency = Urgency.MEDIUM
    scheduled_start: datetime | None = None
    scheduled_end: datetime | None = None
    notes: str | None = Field(default=None, max_length=2000)


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., description="Target status; in-progress and cancelled are accepted")
    notes: str | None = None


class LocationUpdateRequest(BaseModel):
    lat: float
    lng: float
    eta_minutes: int | None = None


class EtaUpdateRequest(BaseModel):
    eta_minutes: int


class TotalsUpdateRequest(BaseModel):
    labor: Decimal | None = None
    parts: Decimal | None = None
    fees: Decimal | None = None
    discounts: Decimal | None = None


class TimerRequest(BaseModel):
    action: str = Field(..., description="START, PAUSE, RESUME or END")


class PhotoRequest(BaseModel):
    url: str
    description: str | None = None


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


class CreateQuoteRequest(BaseModel):
    job_id: str
    description: str
    labor_cost: Decimal = Decimal("0")
    parts_cost: Decimal = Decimal("0")
    travel_cost: Decimal = Decimal("0")
    total: Decimal | None = Field(default=None, description="Explicit total; skips the tax rule")
    valid_until: datetime | None = None
    estimated_duration_minutes: int | None = Field(default=None, ge=0)
    line_items: list[QuoteLineItem] = Field(default_factory=list)


class RejectQuoteRequest(BaseModel):
    reason: str | None = None


class AcceptQuoteResponse(BaseModel):
    job: Job
    quote: Quote


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


class SubmitReviewRequest(BaseModel):
    job_id: str
    rating: int
    category_ratings: CategoryRatings | None = None
    comment: str | None = None
    photos: list[str] = Field(default_factory=list)


class ModerateReviewRequest(BaseModel):
    is_hidden: bool


class ReportReviewRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Notifications, messages, payments
# ---------------------------------------------------------------------------


class CountResponse(BaseModel):
    count: int


class PushTokenRequest(BaseModel):
    token: str
    platform: str = Field(..., description="ios, android or web")


class SendMessageRequest(BaseModel):
    content: str
    type: str = "TEXT"


class CreatePaymentIntentRequest(BaseModel):
    job_id: str
    kind: str = Field(..., description="DEPOSIT or FULL")


class PaymentIntentResponse(BaseModel):
    payment: Payment
    client_secret: str


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool
