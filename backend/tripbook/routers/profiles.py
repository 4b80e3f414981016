from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from tripbook.container import Container
from tripbook.models import (
    PaymentOption,
    PaymentOptionCreate,
    ProfileCreateRequest,
    ProfileEnableRequest,
    ProfileUpdateRequest,
    ProviderProfile,
)
from tripbook.routers.common import get_container, raise_booking_http_error
from tripbook.services.errors import BookingCoreError, UnauthorizedError

router = APIRouter(prefix="/{vertical}/profiles", tags=["profiles"])


def _assert_owner(user_id: str, owner_id: str) -> None:
    if user_id != owner_id:
        raise_booking_http_error(UnauthorizedError("Only the profile owner can do that"))


@router.get("", response_model=list[ProviderProfile])
def search_profiles(
    vertical: str,
    city: Optional[str] = Query(default=None),
    party_size: Optional[int] = Query(default=None, ge=1),
    window_start: Optional[datetime] = Query(default=None),
    window_end: Optional[datetime] = Query(default=None),
    container: Container = Depends(get_container),
):
    try:
        return container.profiles.search_profiles(
            vertical,
            city=city,
            party_size=party_size,
            window_start=window_start,
            window_end=window_end,
        )
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("", response_model=ProviderProfile)
def create_profile(
    vertical: str,
    request: ProfileCreateRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    try:
        return container.profiles.create_profile(vertical, request.user_id, request.profile)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.get("/{owner_id}", response_model=ProviderProfile)
def get_profile(
    vertical: str,
    owner_id: str,
    viewer_id: Optional[str] = Query(default=None),
    container: Container = Depends(get_container),
):
    try:
        return container.profiles.get_profile(vertical, owner_id, viewer_id=viewer_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.patch("/{owner_id}", response_model=ProviderProfile)
def update_profile(
    vertical: str,
    owner_id: str,
    request: ProfileUpdateRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    _assert_owner(request.user_id, owner_id)
    try:
        return container.profiles.update_profile(vertical, owner_id, request.patch)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/{owner_id}/enabled", response_model=ProviderProfile)
def set_profile_enabled(
    vertical: str,
    owner_id: str,
    request: ProfileEnableRequest,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    _assert_owner(request.user_id, owner_id)
    try:
        return container.profiles.set_enabled(vertical, owner_id, request.is_enabled)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.delete("/{owner_id}", response_model=dict)
def delete_profile(
    vertical: str,
    owner_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    _assert_owner(user_id, owner_id)
    try:
        container.profiles.delete_profile(vertical, owner_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)
    return {"status": "deleted"}


@router.get("/{owner_id}/payment-options", response_model=list[PaymentOption])
def list_payment_options(
    vertical: str,
    owner_id: str,
    container: Container = Depends(get_container),
):
    try:
        return container.payment_options.list(vertical, owner_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.post("/{owner_id}/payment-options", response_model=PaymentOption)
def add_payment_option(
    vertical: str,
    owner_id: str,
    request: PaymentOptionCreate,
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=request.user_id, authorization=authorization)
    _assert_owner(request.user_id, owner_id)
    try:
        return container.payment_options.add(vertical, owner_id, request.payment_type, request.details)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)


@router.delete("/{owner_id}/payment-options/{option_id}", response_model=dict)
def remove_payment_option(
    vertical: str,
    owner_id: str,
    option_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
    container: Container = Depends(get_container),
):
    container.tokens.assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    _assert_owner(user_id, owner_id)
    try:
        container.payment_options.remove(vertical, owner_id, option_id)
    except BookingCoreError as exc:
        raise_booking_http_error(exc)
    return {"status": "deleted"}
