from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from tripbook.container import Container
from tripbook.models import (
    AvailabilityResult,
    Booking,
    BookingActionRequest,
    BookingRequestCreate,
    BookingResponseRequest,
    EngagementSession,
    ProviderDashboard,
)
from tripbook.routers.common import get_container, raise_booking_http_error
from tripbook.services.errors import BookingCoreError
from tripbook.services.policy import resolve_policy

router = APIRouter(prefix="/{vertical}", tags=["bookings"])


@router.get("/availability", response_model=AvailabilityResult)
def check_availability(
    vertical: str,
    provider_id: str = Query(...),
    window_start: datetime = Query(...),
    window_end: datetime = Query(...),
    exclude_booking_id: Optional[str] = Query(default=None),
    container: Container = Depends(get_container),
):
    try:
        policy = resolve_policy(container.policies, vertical)
        return container.availability.check_availability(
            policy.name, provider_id, window_start, window_end, exclude_booking_id
        )
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/dashboard", response_model=ProviderDashboard)
def provider_dashboard(
    vertical: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return container.bookings.dashboard(vertical, user_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings", response_model=Booking)
def request_booking(
    vertical: str,
    request: BookingRequestCreate,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.requester_id, authorization=authorization)
    try:
        return container.bookings.request(vertical, request)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/bookings", response_model=list[Booking])
def list_bookings(
    vertical: str,
    user_id: str = Query(...),
    role: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return container.bookings.list_bookings(vertical, user_id, role=role, status=status)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(
    vertical: str,
    booking_id: str,
    viewer_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=viewer_id, authorization=authorization)
    try:
        return container.bookings.get_booking(vertical, booking_id, viewer_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/bookings/{booking_id}/sessions", response_model=list[EngagementSession])
def list_sessions(
    vertical: str,
    booking_id: str,
    viewer_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=viewer_id, authorization=authorization)
    try:
        return container.bookings.list_sessions(vertical, booking_id, viewer_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/bookings/{booking_id}/history", response_model=list[dict])
def booking_history(
    vertical: str,
    booking_id: str,
    viewer_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=viewer_id, authorization=authorization)
    try:
        return container.bookings.status_history(vertical, booking_id, viewer_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{booking_id}/respond", response_model=Booking)
def respond_booking(
    vertical: str,
    booking_id: str,
    request: BookingResponseRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return container.bookings.respond(vertical, booking_id, request)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{booking_id}/discuss", response_model=Booking)
def open_discussion(
    vertical: str,
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return container.bookings.open_discussion(vertical, booking_id, request.actor_user_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    vertical: str,
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return container.bookings.cancel(vertical, booking_id, request.actor_user_id, request.reason)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{booking_id}/start", response_model=Booking)
def start_booking(
    vertical: str,
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return container.bookings.start(vertical, booking_id, request.actor_user_id, request.notes)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/bookings/{booking_id}/complete", response_model=Booking)
def complete_booking(
    vertical: str,
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return container.bookings.complete(vertical, booking_id, request.actor_user_id, request.notes)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)
