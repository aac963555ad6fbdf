"""
Review operations: submission, moderation, reporting and read models.

Every mutation that can change a mechanic's visible review set recomputes
their aggregate rating inside the same store transaction.
"""

from typing import Literal

from pydantic import BaseModel, ValidationError

from app.infrastructure.observability.logging import get_logger
from app.models.domain.user_domain import Role

from ..domain.errors import DuplicateRecordError, ErrorKind, Outcome
from ..domain.models import CategoryRatings, Job, JobStatus, NotificationType, Review
from ..domain.rules import NOTIFICATION_TITLES
from ..repository.base import EntityStore
from .notification_dispatcher import NotificationDispatcher
from .rating_aggregator import RatingAggregator, average_rating

logger = get_logger(__name__)

MAX_COMMENT_LENGTH = 1000
RECENT_REVIEWS = 5

ReviewSort = Literal["newest", "oldest", "rating_high", "rating_low"]


class ReviewStats(BaseModel):
    average_rating: float
    total_reviews: int
    distribution: dict[int, int]


class PublicReview(BaseModel):
    review: Review
    reviewer_name: str


class ReviewPage(BaseModel):
    reviews: list[PublicReview]
    stats: ReviewStats
    has_more: bool


class ReviewSummary(BaseModel):
    mechanic_id: str
    stats: ReviewStats
    recent: list[PublicReview]


def _stats(reviews: list[Review]) -> ReviewStats:
    distribution = {star: 0 for star in range(1, 6)}
    for review in reviews:
        distribution[review.rating] += 1
    ratings = [r.rating for r in reviews]
    return ReviewStats(
        average_rating=average_rating(ratings),
        total_reviews=len(ratings),
        distribution=distribution,
    )


def _sorted(reviews: list[Review], sort: ReviewSort) -> list[Review]:
    if sort == "oldest":
        return sorted(reviews, key=lambda r: r.created_at)
    if sort == "rating_high":
        return sorted(reviews, key=lambda r: (-r.rating, -r.created_at.timestamp()))
    if sort == "rating_low":
        return sorted(reviews, key=lambda r: (r.rating, -r.created_at.timestamp()))
    return sorted(reviews, key=lambda r: r.created_at, reverse=True)


class ReviewService:
    def __init__(
        self,
        store: EntityStore,
        aggregator: RatingAggregator,
        dispatcher: NotificationDispatcher,
    ):
        self.store = store
        self.aggregator = aggregator
        self.dispatcher = dispatcher

    async def _is_mechanic(self, user_id: str) -> bool:
        user = await self.store.get_user(user_id)
        return user is not None and user.role is Role.MECHANIC

    async def submit_review(
        self,
        job_id: str,
        reviewer_id: str,
        rating: int,
        category_ratings: CategoryRatings | dict | None = None,
        comment: str | None = None,
        photos: list[str] | None = None,
    ) -> Outcome[Review]:
        """
        Record one participant's review of the other on a completed job.

        Returns:
            Outcome with the stored Review; ALREADY_REVIEWED on a second
            submission by the same reviewer.
        """
        if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Rating must be between 1 and 5")
        if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
            return Outcome.failure(
                ErrorKind.VALIDATION_ERROR, f"Comment exceeds {MAX_COMMENT_LENGTH} characters"
            )
        try:
            categories = CategoryRatings.model_validate(category_ratings or {})
        except ValidationError:
            return Outcome.failure(ErrorKind.VALIDATION_ERROR, "Category ratings must be between 1 and 5")

        job = await self.store.get_job(job_id)
        if job is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Job not found", job_id=job_id)
        if not job.is_participant(reviewer_id):
            return Outcome.failure(ErrorKind.FORBIDDEN, "You can only review jobs you took part in")
        if job.status is not JobStatus.COMPLETED:
            return Outcome.failure(
                ErrorKind.INVALID_TRANSITION,
                "Can only review completed jobs",
                current_status=job.status.value,
            )
        if await self.store.find_review(job_id, reviewer_id) is not None:
            return Outcome.failure(ErrorKind.ALREADY_REVIEWED)

        reviewee_id = job.counterpart_of(reviewer_id)
        review = Review(
            job_id=job_id,
            reviewer_id=reviewer_id,
            reviewee_id=reviewee_id,
            rating=rating,
            category_ratings=categories,
            comment=comment.strip() if comment else None,
            photos=list(photos or []),
        )

        reviewee_is_mechanic = reviewee_id == job.mechanic_id
        try:
            async with self.store.transaction() as tx:
                review = await tx.insert_review(review)
                if reviewee_is_mechanic:
                    await self.aggregator.recompute(reviewee_id, store=tx)
        except DuplicateRecordError:
            logger.info("Duplicate review rejected", job_id=job_id, reviewer_id=reviewer_id)
            return Outcome.failure(ErrorKind.ALREADY_REVIEWED)

        logger.info(
            "Review submitted", review_id=review.id, job_id=job_id, reviewee_id=reviewee_id, rating=rating
        )
        await self.dispatcher.notify_user(
            reviewee_id,
            NotificationType.JOB_UPDATE,
            "New Review",
            f"You received a {rating}-star review for {job.title}",
            {"jobId": job_id, "reviewId": review.id},
            has_live_event=False,
        )
        return Outcome.success(review)

    async def moderate_review(self, review_id: str, actor_id: str, is_hidden: bool) -> Outcome[Review]:
        actor = await self.store.get_user(actor_id)
        if actor is None or not actor.is_active or actor.role is not Role.ADMIN:
            return Outcome.failure(ErrorKind.FORBIDDEN, "Only administrators can moderate reviews")

        review = await self.store.get_review(review_id)
        if review is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Review not found", review_id=review_id)
        if review.is_hidden == is_hidden:
            return Outcome.success(review)

        recompute = await self._is_mechanic(review.reviewee_id)
        async with self.store.transaction() as tx:
            review = await tx.set_review_hidden(review_id, is_hidden)
            if review is None:
                return Outcome.failure(ErrorKind.NOT_FOUND, "Review not found", review_id=review_id)
            if recompute:
                await self.aggregator.recompute(review.reviewee_id, store=tx)

        logger.info("Review moderated", review_id=review_id, is_hidden=is_hidden, actor_id=actor_id)
        return Outcome.success(review)

    async def report_review(
        self, review_id: str, reporter_id: str, reason: str | None = None
    ) -> Outcome[Review]:
        """Flag a review for moderation and alert administrators."""
        reporter = await self.store.get_user(reporter_id)
        if reporter is None or not reporter.is_active:
            return Outcome.failure(ErrorKind.FORBIDDEN)

        review = await self.store.get_review(review_id)
        if review is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Review not found", review_id=review_id)
        if review.reviewer_id == reporter_id:
            return Outcome.failure(ErrorKind.FORBIDDEN, "You cannot report your own review")

        review = await self.store.increment_review_reports(review_id)
        if review is None:
            return Outcome.failure(ErrorKind.NOT_FOUND, "Review not found", review_id=review_id)

        logger.info("Review reported", review_id=review_id, reporter_id=reporter_id, report_count=review.report_count)
        for admin in await self.store.list_users_by_role(Role.ADMIN):
            await self.dispatcher.notify_user(
                admin.id,
                NotificationType.SYSTEM_ALERT,
                NOTIFICATION_TITLES[NotificationType.SYSTEM_ALERT],
                f"Review {review_id} was reported: {reason or 'no reason given'}",
                {"reviewId": review_id, "reportCount": review.report_count},
                has_live_event=False,
            )
        return Outcome.success(review)

    async def _public(self, reviews: list[Review]) -> list[PublicReview]:
        names: dict[str, str] = {}
        result = []
        for review in reviews:
            if review.reviewer_id not in names:
                user = await self.store.get_user(review.reviewer_id)
                names[review.reviewer_id] = user.short_name if user else "Former user"
            result.append(PublicReview(review=review, reviewer_name=names[review.reviewer_id]))
        return result

    async def list_reviews_for_user(
        self, user_id: str, sort: ReviewSort = "newest", limit: int = 20, offset: int = 0
    ) -> Outcome[ReviewPage]:
        reviews = await self.store.list_reviews_for_reviewee(user_id, include_hidden=False)
        page = _sorted(reviews, sort)[offset : offset + limit]
        return Outcome.success(
            ReviewPage(
                reviews=await self._public(page),
                stats=_stats(reviews),
                has_more=offset + limit < len(reviews),
            )
        )

    async def mechanic_review_summary(self, mechanic_id: str) -> Outcome[ReviewSummary]:
        if not await self._is_mechanic(mechanic_id):
            return Outcome.failure(ErrorKind.NOT_FOUND, "Mechanic not found", mechanic_id=mechanic_id)
        reviews = await self.store.list_reviews_for_reviewee(mechanic_id, include_hidden=False)
        recent = _sorted(reviews, "newest")[:RECENT_REVIEWS]
        return Outcome.success(
            ReviewSummary(mechanic_id=mechanic_id, stats=_stats(reviews), recent=await self._public(recent))
        )

    async def pending_reviews(self, user_id: str, limit: int = 10) -> Outcome[list[Job]]:
        """Completed jobs the user took part in but has not reviewed yet."""
        return Outcome.success(await self.store.list_jobs_awaiting_review(user_id, limit))
