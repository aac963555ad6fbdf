"""Notification inbox and push token registration."""

from fastapi import APIRouter, Depends, Query, status

from app.auth.verify import auth_dependency
from app.models.domain.user_domain import Principal

from ..container import MarketplaceServices
from ..domain.models import Notification, PushToken
from .deps import get_services
from .errors import unwrap
from .schemas import CountResponse, PushTokenRequest

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[Notification])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.inbox.list_for_user(principal.user_id, unread_only=unread_only, limit=limit, offset=offset)
    )


@router.get("/unread-count", response_model=CountResponse)
async def unread_count(
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return CountResponse(count=unwrap(await services.inbox.unread_count(principal.user_id)))


@router.post("/read-all", response_model=CountResponse)
async def mark_all_read(
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return CountResponse(count=unwrap(await services.inbox.mark_all_read(principal.user_id)))


@router.post("/push-tokens", response_model=PushToken, status_code=status.HTTP_201_CREATED)
async def register_push_token(
    body: PushTokenRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.inbox.register_push_token(principal.user_id, body.token, body.platform)
    )


@router.post("/{notification_id}/read", response_model=Notification)
async def mark_read(
    notification_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.inbox.mark_read(notification_id, principal.user_id))
