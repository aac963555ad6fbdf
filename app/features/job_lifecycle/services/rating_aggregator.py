"""
Rating aggregator: keeps a mechanic's average_rating / total_reviews in step
with their visible reviews.

Always a full recomputation over the non-hidden set, never a running average,
so moderation can toggle reviews in and out without drift.
"""

from app.infrastructure.observability.logging import get_logger

from ..domain.models import MechanicProfile, utc_now
from ..repository.base import EntityStore

logger = get_logger(__name__)


def average_rating(ratings: list[int]) -> float:
    """Arithmetic mean of the ratings; 0 for no ratings."""
    if not ratings:
        return 0.0
    return sum(ratings) / len(ratings)


class RatingAggregator:
    def __init__(self, store: EntityStore):
        self.store = store

    async def recompute(self, mechanic_id: str, store: EntityStore | None = None) -> MechanicProfile:
        """
        Recompute and persist a mechanic's aggregate rating.

        Args:
            mechanic_id: Reviewee whose profile is refreshed
            store: Transaction-bound store when called inside a unit of work
        """
        store = store or self.store
        reviews = await store.list_reviews_for_reviewee(mechanic_id, include_hidden=False)
        ratings = [r.rating for r in reviews]

        profile = await store.get_mechanic_profile(mechanic_id) or MechanicProfile(user_id=mechanic_id)
        profile = profile.model_copy(
            update={
                "average_rating": average_rating(ratings),
                "total_reviews": len(ratings),
                "updated_at": utc_now(),
            }
        )
        saved = await store.save_mechanic_profile(profile)

        logger.info(
            "Mechanic rating recomputed",
            mechanic_id=mechanic_id,
            average_rating=saved.average_rating,
            total_reviews=saved.total_reviews,
        )
        return saved
