"""
Payment gateway client.

Only the intent-creation call is used here; confirmation arrives through the
signed webhook (see api/payments.py).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 10  # seconds


class PaymentGatewayError(Exception):
    """The gateway rejected or could not process a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class PaymentIntent:
    intent_id: str
    client_secret: str


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntent: ...


def to_minor_units(amount: Decimal) -> int:
    """Dollars to cents."""
    return int((amount * 100).to_integral_value())


class StripePaymentGateway:
    def __init__(self, secret_key: str | None, api_url: str = "https://api.stripe.com/v1"):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")

    async def create_payment_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntent:
        if not self.secret_key:
            raise PaymentGatewayError("Payment gateway is not configured")

        data = {
            "amount": str(to_minor_units(amount)),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value

        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.post(
                    f"{self.api_url}/payment_intents",
                    data=data,
                    auth=(self.secret_key, ""),
                )
        except httpx.RequestError as e:
            logger.error("Payment gateway request failed", error=str(e), error_type=type(e).__name__)
            raise PaymentGatewayError(f"Payment gateway unreachable: {e}") from e

        if response.status_code != 200:
            body = response.json() if response.content else {}
            message = body.get("error", {}).get("message", "Payment gateway error")
            logger.warning("Payment intent rejected", status_code=response.status_code, message=message)
            raise PaymentGatewayError(message, status_code=response.status_code)

        payload = response.json()
        return PaymentIntent(intent_id=payload["id"], client_secret=payload["client_secret"])
