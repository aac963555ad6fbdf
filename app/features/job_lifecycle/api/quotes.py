"""Quote endpoints: mechanics price jobs, admins approve, customers decide."""

from fastapi import APIRouter, Depends, status

from app.auth.verify import auth_dependency
from app.models.domain.user_domain import Principal

from ..container import MarketplaceServices
from ..domain.models import Quote, QuoteBreakdown
from .deps import get_services
from .errors import unwrap
from .schemas import AcceptQuoteResponse, CreateQuoteRequest, RejectQuoteRequest

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.post("", response_model=Quote, status_code=status.HTTP_201_CREATED)
async def create_quote(
    body: CreateQuoteRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    breakdown = QuoteBreakdown(
        labor=body.labor_cost, parts=body.parts_cost, travel=body.travel_cost, total=body.total
    )
    return unwrap(
        await services.engine.create_quote(
            body.job_id,
            principal.user_id,
            breakdown,
            body.description,
            valid_until=body.valid_until,
            estimated_duration_minutes=body.estimated_duration_minutes,
            line_items=body.line_items,
        )
    )


@router.get("/{quote_id}", response_model=Quote)
async def get_quote(
    quote_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.get_quote(quote_id, principal.user_id))


@router.post("/{quote_id}/approve", response_model=Quote)
async def approve_quote(
    quote_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.engine.approve_quote(quote_id, principal.user_id))


@router.post("/{quote_id}/accept", response_model=AcceptQuoteResponse)
async def accept_quote(
    quote_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    """
    Accept a quote and bind its mechanic to the job.

    Accepting an already accepted quote returns the current state unchanged.

    Raises:
        410: quote expired
        409: job no longer accepts this quote
    """
    accepted = unwrap(await services.engine.accept_quote(quote_id, principal.user_id))
    return AcceptQuoteResponse(job=accepted.job, quote=accepted.quote)


@router.post("/{quote_id}/reject", response_model=Quote)
async def reject_quote(
    quote_id: str,
    body: RejectQuoteRequest | None = None,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    reason = body.reason if body else None
    return unwrap(await services.engine.reject_quote(quote_id, principal.user_id, reason=reason))
