"""Job chat over HTTP; the same send path backs the `message:send` socket event."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from app.auth.verify import auth_dependency
from app.models.domain.user_domain import Principal

from ..container import MarketplaceServices
from ..domain.models import ChatMessage
from .deps import get_services
from .errors import unwrap
from .schemas import CountResponse, SendMessageRequest

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/{job_id}", response_model=list[ChatMessage])
async def list_messages(
    job_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    before: datetime | None = None,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.messaging.list_messages(job_id, principal.user_id, limit=limit, before=before)
    )


@router.post("/{job_id}", response_model=ChatMessage, status_code=status.HTTP_201_CREATED)
async def send_message(
    job_id: str,
    body: SendMessageRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.messaging.send_message(job_id, principal.user_id, body.content, body.type)
    )


@router.post("/{job_id}/read", response_model=CountResponse)
async def mark_read(
    job_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return CountResponse(count=unwrap(await services.messaging.mark_read(job_id, principal.user_id)))
