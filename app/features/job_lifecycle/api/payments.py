"""
payments.py
-----------
Purpose:
    Payment intents for accepted jobs and the gateway webhook.

    The webhook body is authenticated with an HMAC-SHA256 hex digest of the
    raw bytes in the `x-payment-signature` header, keyed by
    PAYMENT_WEBHOOK_SECRET. Verified events feed confirm_payment.

Usage:
    POST /payments/intents           - customer starts a DEPOSIT or FULL payment
    GET  /payments/jobs/{job_id}     - payment records for a job
    POST /payments/webhook           - gateway callback (signature, no bearer)
"""

import hashlib
import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.auth.verify import auth_dependency
from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Principal

from ..container import MarketplaceServices
from ..domain.errors import ErrorKind
from ..domain.models import Payment
from .deps import get_services
from .errors import unwrap
from .schemas import CreatePaymentIntentRequest, PaymentIntentResponse, WebhookAck

router = APIRouter(prefix="/payments", tags=["payments"])
logger = get_logger(__name__)

SIGNATURE_HEADER = "x-payment-signature"


def verify_signature(raw: bytes, signature: str | None) -> None:
    secret = settings.PAYMENT_WEBHOOK_SECRET
    if not secret:
        logger.error("Payment webhook received but PAYMENT_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=401, detail="Webhook not configured")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    mac = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(mac, signature):
        logger.warning("Payment webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")


@router.post("/intents", response_model=PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
async def create_intent(
    body: CreatePaymentIntentRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    created = unwrap(await services.payments.create_intent(body.job_id, principal.user_id, body.kind))
    return PaymentIntentResponse(payment=created.payment, client_secret=created.client_secret)


@router.get("/jobs/{job_id}", response_model=list[Payment])
async def list_payments(
    job_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.payments.list_payments(job_id, principal.user_id))


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(request: Request, services: MarketplaceServices = Depends(get_services)):
    raw = await request.body()
    verify_signature(raw, request.headers.get(SIGNATURE_HEADER))

    try:
        payload = json.loads(raw)
        event_type = payload["type"]
        intent_id = payload["data"]["object"]["id"]
    except (ValueError, KeyError, TypeError) as e:
        raise HTTPException(status_code=400, detail="Malformed webhook payload") from e

    outcome = await services.payments.handle_gateway_event(event_type, intent_id)
    if not outcome.ok and outcome.error.kind is ErrorKind.NOT_FOUND:
        # Intents created outside this service; acknowledge so the gateway stops retrying
        logger.warning("Webhook for unknown payment intent", intent_id=intent_id, event_type=event_type)
        return WebhookAck(handled=False)

    payment = unwrap(outcome)
    logger.info("Payment webhook processed", event_type=event_type, intent_id=intent_id)
    return WebhookAck(handled=payment is not None)
