import os
import sys
import threading
from datetime import date, datetime, time, timedelta, timezone

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from tripbook.config import Settings
from tripbook.container import Container
from tripbook.models import BookingRequestCreate, ProfileDescriptor, ProfilePatch
from tripbook.services.errors import (
    AlreadyExistsError,
    BookingCoreError,
    BookingValidationError,
    HasActiveBookingsError,
    NotEligibleError,
    NotFoundError,
)

NOW = datetime(2030, 3, 1, 9, 0, tzinfo=timezone.utc)


def _container(tmp_path) -> Container:
    return Container.build(Settings(db_path=str(tmp_path / "tripbook.sqlite3")), clock=lambda: NOW)


def _descriptor(**overrides) -> ProfileDescriptor:
    data = {
        "title": "Old town walks",
        "city": "Lisbon",
        "address": {"street": "Rua Augusta 1"},
        "coordinates": {"lat": 38.71, "lng": -9.14},
    }
    # Capacity has three spellings; only one may be sent.
    if not {"max_capacity", "max_party_size", "max_guests"} & set(overrides):
        data["max_party_size"] = 6
    data.update(overrides)
    return ProfileDescriptor(**data)


def _enabled_guide(container: Container, owner_id: str = "guide_1", city: str = "Lisbon"):
    container.store.set_reputation(owner_id, 80, "trusted", now=NOW)
    container.profiles.create_profile("guide", owner_id, _descriptor(city=city))
    container.payment_options.add("guide", owner_id, "cash")
    return container.profiles.set_enabled("guide", owner_id, True)


def test_create_requires_trust(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("u1", 60, "trusted", now=NOW)
    with pytest.raises(NotEligibleError):
        container.profiles.create_profile("guide", "u1", _descriptor())

    # No reputation row at all is the same as score 0.
    with pytest.raises(NotEligibleError):
        container.profiles.create_profile("stay", "nobody", _descriptor())


def test_create_starts_disabled_with_zero_stats(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("u1", 70, "verified", now=NOW)
    profile = container.profiles.create_profile("guide", "u1", _descriptor())
    assert profile.is_enabled is False
    assert profile.max_capacity == 6
    assert profile.response_rate == 0
    assert profile.rating == 0
    assert profile.created_at == NOW

    with pytest.raises(AlreadyExistsError):
        container.profiles.create_profile("guide", "u1", _descriptor())


def test_same_owner_can_hold_one_profile_per_vertical(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("u1", 90, "ambassador", now=NOW)
    container.profiles.create_profile("guide", "u1", _descriptor())
    stay = container.profiles.create_profile("stay", "u1", _descriptor(max_guests=2))
    assert stay.vertical == "stay"
    assert stay.max_capacity == 2


def test_enable_guide_requires_payment_option(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("u1", 80, "trusted", now=NOW)
    container.profiles.create_profile("guide", "u1", _descriptor())
    with pytest.raises(BookingValidationError):
        container.profiles.set_enabled("guide", "u1", True)

    container.payment_options.add("guide", "u1", "bank_transfer", "IBAN on request")
    profile = container.profiles.set_enabled("guide", "u1", True)
    assert profile.is_enabled is True
    assert [o.payment_type for o in profile.payment_options] == ["bank_transfer"]


def test_enable_stay_needs_no_payment_option(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("host", 75, "verified", now=NOW)
    container.profiles.create_profile("stay", "host", _descriptor(max_guests=3))
    assert container.profiles.set_enabled("stay", "host", True).is_enabled is True


def test_enable_rechecks_trust_but_disable_always_works(tmp_path):
    container = _container(tmp_path)
    _enabled_guide(container, "g1")
    container.store.set_reputation("g1", 10, "trusted", now=NOW)

    assert container.profiles.set_enabled("guide", "g1", False).is_enabled is False
    with pytest.raises(NotEligibleError):
        container.profiles.set_enabled("guide", "g1", True)


def test_update_profile_patch(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("u1", 80, "trusted", now=NOW)
    container.profiles.create_profile("guide", "u1", _descriptor())

    updated = container.profiles.update_profile(
        "guide", "u1", ProfilePatch(title="Hidden Lisbon", languages=["pt", "en"], max_party_size=8)
    )
    assert updated.title == "Hidden Lisbon"
    assert updated.languages == ["pt", "en"]
    assert updated.max_capacity == 8
    assert updated.city == "Lisbon"

    with pytest.raises(NotFoundError):
        container.profiles.update_profile("guide", "ghost", ProfilePatch(title="x"))


def test_patch_rejects_rolling_stats():
    with pytest.raises(ValidationError):
        ProfilePatch(rating=5)
    with pytest.raises(ValidationError):
        ProfilePatch(response_rate=100)


def test_get_profile_redacts_location_for_others(tmp_path):
    container = _container(tmp_path)
    _enabled_guide(container, "g1")

    own = container.profiles.get_profile("guide", "g1", viewer_id="g1")
    assert own.address == {"street": "Rua Augusta 1"}
    assert own.coordinates is not None

    other = container.profiles.get_profile("guide", "g1", viewer_id="traveler")
    assert other.address is None
    assert other.coordinates is None

    anonymous = container.profiles.get_profile("guide", "g1")
    assert anonymous.address is None


def test_unknown_vertical_is_not_found(tmp_path):
    container = _container(tmp_path)
    with pytest.raises(NotFoundError):
        container.profiles.get_profile("boats", "g1")


def test_delete_blocked_by_active_booking(tmp_path):
    container = _container(tmp_path)
    _enabled_guide(container, "g1")
    booking = container.bookings.request(
        "guide",
        BookingRequestCreate(
            requester_id="t1",
            provider_id="g1",
            tour_date=date(2030, 3, 10),
            start_time=time(10, 0),
            end_time=time(12, 0),
        ),
    )
    with pytest.raises(HasActiveBookingsError):
        container.profiles.delete_profile("guide", "g1")

    container.bookings.cancel("guide", booking.id, "t1", "plans changed")
    container.profiles.delete_profile("guide", "g1")
    with pytest.raises(NotFoundError):
        container.profiles.get_profile("guide", "g1")
    assert container.payment_options.list("guide", "g1") == []
    # History survives the profile.
    assert container.store.get_booking(booking.id).status == "CANCELED_BY_REQUESTER"


def _stay_request(requester_id: str = "guest") -> BookingRequestCreate:
    return BookingRequestCreate(
        requester_id=requester_id,
        provider_id="host",
        check_in_date=date(2030, 3, 10),
        check_out_date=date(2030, 3, 12),
    )


def test_delete_and_request_never_leave_orphan_booking(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("host", 75, "verified", now=NOW)
    container.profiles.create_profile("stay", "host", _descriptor(max_guests=3))
    container.profiles.set_enabled("stay", "host", True)
    outcomes = {}

    def request():
        try:
            outcomes["booking"] = container.bookings.request("stay", _stay_request())
        except BookingCoreError as exc:
            outcomes["request_error"] = exc

    def delete():
        try:
            container.profiles.delete_profile("stay", "host")
            outcomes["deleted"] = True
        except BookingCoreError as exc:
            outcomes["delete_error"] = exc

    threads = [threading.Thread(target=request), threading.Thread(target=delete)]
    with container.store.provider_lock("stay", "host"):
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=0.2)
            assert thread.is_alive()
    for thread in threads:
        thread.join(timeout=5)

    if container.store.get_profile("stay", "host") is None:
        assert "booking" not in outcomes
        assert isinstance(outcomes["request_error"], NotFoundError)
        assert container.store.list_bookings("stay", user_id="host", role="provider") == []
    else:
        assert outcomes["booking"].status == "PENDING"
        assert isinstance(outcomes["delete_error"], HasActiveBookingsError)


def test_disable_waits_for_in_flight_request(tmp_path):
    container = _container(tmp_path)
    container.store.set_reputation("host", 75, "verified", now=NOW)
    container.profiles.create_profile("stay", "host", _descriptor(max_guests=3))
    container.profiles.set_enabled("stay", "host", True)

    disable = threading.Thread(target=container.profiles.set_enabled, args=("stay", "host", False))
    with container.store.provider_lock("stay", "host"):
        disable.start()
        disable.join(timeout=0.2)
        assert disable.is_alive()
    disable.join(timeout=5)

    assert container.store.get_profile("stay", "host").is_enabled is False
    with pytest.raises(BookingValidationError):
        container.bookings.request("stay", _stay_request())


def test_search_filters_enabled_city_capacity_and_window(tmp_path):
    container = _container(tmp_path)
    _enabled_guide(container, "g1", city="Lisbon")
    _enabled_guide(container, "g2", city="Lisbon")
    _enabled_guide(container, "g3", city="Porto")
    container.store.set_reputation("g4", 80, "trusted", now=NOW)
    container.profiles.create_profile("guide", "g4", _descriptor())

    found = container.profiles.search_profiles("guide", city="lisbon")
    assert sorted(p.owner_id for p in found) == ["g1", "g2"]
    assert all(p.address is None for p in found)

    assert container.profiles.search_profiles("guide", party_size=7) == []

    booking = container.bookings.request(
        "guide",
        BookingRequestCreate(
            requester_id="t1",
            provider_id="g1",
            window_start=NOW + timedelta(days=2),
            window_end=NOW + timedelta(days=2, hours=3),
        ),
    )
    container.bookings.approve("guide", booking.id, "g1")
    free = container.profiles.search_profiles(
        "guide",
        city="Lisbon",
        window_start=NOW + timedelta(days=2, hours=1),
        window_end=NOW + timedelta(days=2, hours=2),
    )
    assert [p.owner_id for p in free] == ["g2"]


def test_payment_option_removal(tmp_path):
    container = _container(tmp_path)
    option = _enabled_guide(container, "g1").payment_options[0]
    with pytest.raises(NotFoundError):
        container.payment_options.remove("stay", "g1", option.id)
    container.payment_options.remove("guide", "g1", option.id)
    assert container.payment_options.list("guide", "g1") == []
