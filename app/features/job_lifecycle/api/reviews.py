"""
reviews.py
----------
Purpose:
    Ratings and reviews after job completion, plus moderation.

Usage:
    POST  /reviews                               - submit a review
    GET   /reviews/pending                       - completed jobs awaiting my review
    GET   /reviews/users/{user_id}               - visible reviews about a user
    GET   /reviews/mechanics/{id}/summary        - average, distribution, recent
    PATCH /reviews/{id}/moderation               - admin hide/unhide
    POST  /reviews/{id}/report                   - flag for moderation
"""

from typing import Literal

from fastapi import APIRouter, Depends, Query, status

from app.auth.verify import auth_dependency
from app.models.domain.user_domain import Principal

from ..container import MarketplaceServices
from ..domain.models import Job, Review
from ..services.review_service import ReviewPage, ReviewSummary
from .deps import get_services
from .errors import unwrap
from .schemas import ModerateReviewRequest, ReportReviewRequest, SubmitReviewRequest

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.post("", response_model=Review, status_code=status.HTTP_201_CREATED)
async def submit_review(
    body: SubmitReviewRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.reviews.submit_review(
            body.job_id,
            principal.user_id,
            body.rating,
            category_ratings=body.category_ratings,
            comment=body.comment,
            photos=body.photos,
        )
    )


@router.get("/pending", response_model=list[Job])
async def pending_reviews(
    limit: int = Query(default=10, ge=1, le=50),
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.reviews.pending_reviews(principal.user_id, limit))


@router.get("/users/{user_id}", response_model=ReviewPage)
async def list_reviews_for_user(
    user_id: str,
    sort: Literal["newest", "oldest", "rating_high", "rating_low"] = "newest",
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.reviews.list_reviews_for_user(user_id, sort, limit, offset))


@router.get("/mechanics/{mechanic_id}/summary", response_model=ReviewSummary)
async def mechanic_summary(
    mechanic_id: str,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.reviews.mechanic_review_summary(mechanic_id))


@router.patch("/{review_id}/moderation", response_model=Review)
async def moderate_review(
    review_id: str,
    body: ModerateReviewRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(
        await services.reviews.moderate_review(review_id, principal.user_id, body.is_hidden)
    )


@router.post("/{review_id}/report", response_model=Review)
async def report_review(
    review_id: str,
    body: ReportReviewRequest,
    principal: Principal = Depends(auth_dependency),
    services: MarketplaceServices = Depends(get_services),
):
    return unwrap(await services.reviews.report_review(review_id, principal.user_id, body.reason))
