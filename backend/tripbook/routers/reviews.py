from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from tripbook.container import Container
from tripbook.models import RatingSummary, Review, ReviewCreate
from tripbook.routers.common import get_container, raise_booking_http_error
from tripbook.services.errors import BookingCoreError

router = APIRouter(prefix="/{vertical}", tags=["reviews"])


@router.post("/reviews", response_model=Review)
def add_review(
    vertical: str,
    request: ReviewCreate,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.reviewer_id, authorization=authorization)
    try:
        return container.reviews.add_review(vertical, request)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/reviews", response_model=list[Review])
def list_reviews(
    vertical: str,
    user_id: str = Query(...),
    kind: str = Query(default="received"),
    container: Container = Depends(get_container),
):
    try:
        return container.reviews.list_reviews(vertical, user_id, kind=kind)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/ratings/{user_id}", response_model=RatingSummary)
def get_rating(
    vertical: str,
    user_id: str,
    container: Container = Depends(get_container),
):
    try:
        return container.reviews.rating_for(vertical, user_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)
