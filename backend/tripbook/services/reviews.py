import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from uuid import uuid4

from tripbook.models import RatingSummary, Review, ReviewCreate
from tripbook.services.booking_store import BookingStore
from tripbook.services.clock import Clock, utcnow
from tripbook.services.errors import (
    BookingValidationError,
    DuplicateReviewError,
    NotEligibleError,
    NotFoundError,
)
from tripbook.services.notification_store import NotificationDispatcher
from tripbook.services.policy import VerticalPolicy, resolve_policy

logger = logging.getLogger(__name__)


@dataclass
class ReviewAggregator:
    store: BookingStore
    policies: Dict[str, VerticalPolicy]
    notifier: Optional[NotificationDispatcher] = None
    clock: Clock = utcnow

    def add_review(self, vertical: str, request: ReviewCreate) -> Review:
        policy = resolve_policy(self.policies, vertical)
        booking = self.store.get_booking(request.booking_id)
        if not booking or booking.vertical != policy.name:
            raise NotFoundError("Booking not found")
        parties = {booking.provider_id, booking.requester_id}
        if request.reviewer_id not in parties:
            raise NotEligibleError("Only participants of the booking can leave a review")
        if booking.status != "COMPLETED":
            raise NotEligibleError("Reviews open once the booking is completed")
        counterpart = booking.requester_id if request.reviewer_id == booking.provider_id else booking.provider_id
        if request.reviewee_id != counterpart:
            raise BookingValidationError("Reviewee must be the other participant of the booking")
        if self.store.find_review(booking.id, request.reviewer_id):
            raise DuplicateReviewError("You have already reviewed this booking")

        review = self.store.insert_review(
            Review(
                id=f"rev_{uuid4().hex[:10]}",
                booking_id=booking.id,
                vertical=policy.name,
                reviewer_id=request.reviewer_id,
                reviewee_id=request.reviewee_id,
                rating=request.rating,
                categories=dict(request.categories),
                comment=request.comment.strip(),
                is_public=request.is_public,
                created_at=self.clock(),
            )
        )
        logger.info("Review %s added for booking %s", review.id, booking.id)
        self.recompute_rating(policy.name, review.reviewee_id)
        if self.notifier is not None:
            self.notifier.notify(
                review.reviewee_id,
                "review_received",
                vertical=policy.name,
                booking_id=booking.id,
                rating=review.rating,
            )
        return review

    def rating_for(self, vertical: str, user_id: str) -> RatingSummary:
        policy = resolve_policy(self.policies, vertical)
        ratings = self.store.public_ratings(policy.name, user_id)
        if not ratings:
            return RatingSummary(vertical=policy.name, user_id=user_id, rating=0.0, review_count=0)
        return RatingSummary(
            vertical=policy.name,
            user_id=user_id,
            rating=round(sum(ratings) / len(ratings), 2),
            review_count=len(ratings),
        )

    def recompute_rating(self, vertical: str, user_id: str) -> RatingSummary:
        summary = self.rating_for(vertical, user_id)
        # Not locked: two concurrent reviews may write a stale summary last.
        # The next review or recompute rewrites it from the stored reviews.
        # Requesters have no profile to carry the rating; only providers get it stored.
        self.store.write_provider_rating(summary.vertical, user_id, summary.rating, summary.review_count)
        return summary

    def list_reviews(self, vertical: str, user_id: str, kind: str = "received") -> List[Review]:
        policy = resolve_policy(self.policies, vertical)
        if kind not in {"given", "received"}:
            raise BookingValidationError("kind must be 'given' or 'received'")
        return self.store.list_reviews(policy.name, user_id, kind=kind)
