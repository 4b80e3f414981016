import os
import sqlite3
import sys
import threading
from datetime import date, datetime, time, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from tripbook.config import Settings
from tripbook.container import Container
from tripbook.models import AgreedTerms, BookingRequestCreate, ProfileDescriptor
from tripbook.services.errors import (
    BookingValidationError,
    ConflictError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    UnauthorizedError,
)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


DAY1 = date(2030, 6, 10)


def _setup(tmp_path, vertical: str = "guide"):
    clock = FakeClock(datetime(2030, 6, 1, 8, 0, tzinfo=timezone.utc))
    db_path = str(tmp_path / "tripbook.sqlite3")
    container = Container.build(Settings(db_path=db_path), clock=clock)
    container.store.set_reputation("prov", 85, "verified", now=clock())
    descriptor = ProfileDescriptor(
        title="Provider",
        city="Kyoto",
        max_capacity=4,
        minimum_stay_nights=1 if vertical == "stay" else None,
        maximum_stay_nights=7 if vertical == "stay" else None,
    )
    container.profiles.create_profile(vertical, "prov", descriptor)
    container.payment_options.add(vertical, "prov", "cash")
    container.profiles.set_enabled(vertical, "prov", True)
    return container, clock, db_path


def _tour(requester: str, start: int = 10, end: int = 12, **extra) -> BookingRequestCreate:
    return BookingRequestCreate(
        requester_id=requester,
        provider_id="prov",
        tour_date=DAY1,
        start_time=time(start, 0),
        end_time=time(end, 0),
        **extra,
    )


def _stay(requester: str, check_in: date, check_out: date, **extra) -> BookingRequestCreate:
    return BookingRequestCreate(
        requester_id=requester,
        provider_id="prov",
        check_in_date=check_in,
        check_out_date=check_out,
        **extra,
    )


def test_scenario_a_low_trust_cannot_create_profile(tmp_path):
    container, clock, _ = _setup(tmp_path)
    container.store.set_reputation("newbie", 50, "trusted", now=clock())
    with pytest.raises(NotEligibleError):
        container.profiles.create_profile("guide", "newbie", ProfileDescriptor(title="x", city="y", max_capacity=1))


def test_scenario_b_second_overlapping_approval_conflicts(tmp_path):
    container, _, _ = _setup(tmp_path)
    first = container.bookings.request("guide", _tour("r1"))
    second = container.bookings.request("guide", _tour("r2"))
    assert first.status == "PENDING"
    assert second.status == "PENDING"

    approved = container.bookings.approve("guide", first.id, "prov")
    assert approved.status == "APPROVED"

    with pytest.raises(ConflictError):
        container.bookings.approve("guide", second.id, "prov")
    assert container.store.get_booking(second.id).status == "PENDING"

    # A fresh request for the taken window is refused outright.
    with pytest.raises(ConflictError):
        container.bookings.request("guide", _tour("r3", 11, 13))

    later = container.bookings.request("guide", _tour("r2", 13, 15))
    assert container.bookings.approve("guide", later.id, "prov").status == "APPROVED"


def test_scenario_c_cancel_twice_is_invalid_state(tmp_path):
    container, clock, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    container.bookings.approve("guide", booking.id, "prov")
    clock.advance(hours=1)

    canceled = container.bookings.cancel("guide", booking.id, "r1", "sick")
    assert canceled.status == "CANCELED_BY_REQUESTER"
    assert canceled.cancelled_at == clock()
    assert canceled.cancellation_reason == "sick"

    clock.advance(hours=1)
    with pytest.raises(InvalidStateError):
        container.bookings.cancel("guide", booking.id, "r1")
    assert container.store.get_booking(booking.id).cancelled_at == canceled.cancelled_at


def test_provider_cancel_status(tmp_path):
    container, _, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    assert container.bookings.cancel("guide", booking.id, "prov").status == "CANCELED_BY_PROVIDER"


def test_request_guards(tmp_path):
    container, clock, _ = _setup(tmp_path)
    with pytest.raises(BookingValidationError):
        container.bookings.request("guide", _tour("prov"))
    with pytest.raises(BookingValidationError):
        container.bookings.request("guide", _tour("r1", party_size=5))
    with pytest.raises(BookingValidationError):
        container.bookings.request("guide", _tour("r1", 12, 10))
    with pytest.raises(BookingValidationError):
        container.bookings.request(
            "guide",
            BookingRequestCreate(
                requester_id="r1",
                provider_id="prov",
                window_start=clock() - timedelta(hours=2),
                window_end=clock() - timedelta(hours=1),
            ),
        )
    with pytest.raises(BookingValidationError):
        container.bookings.request("guide", _tour("r1", payment_option_id="po_missing"))
    with pytest.raises(NotFoundError):
        container.bookings.request(
            "guide",
            BookingRequestCreate(
                requester_id="r1",
                provider_id="ghost",
                tour_date=DAY1,
                start_time=time(9, 0),
                end_time=time(10, 0),
            ),
        )

    container.profiles.set_enabled("guide", "prov", False)
    with pytest.raises(BookingValidationError):
        container.bookings.request("guide", _tour("r1"))


def test_request_with_own_payment_option(tmp_path):
    container, _, _ = _setup(tmp_path)
    option = container.payment_options.list("guide", "prov")[0]
    booking = container.bookings.request("guide", _tour("r1", payment_option_id=option.id))
    assert booking.payment_option_id == option.id


def test_only_provider_responds_and_only_parties_act(tmp_path):
    container, _, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    with pytest.raises(UnauthorizedError):
        container.bookings.approve("guide", booking.id, "r1")
    with pytest.raises(UnauthorizedError):
        container.bookings.reject("guide", booking.id, "stranger")
    with pytest.raises(UnauthorizedError):
        container.bookings.cancel("guide", booking.id, "stranger")
    with pytest.raises(UnauthorizedError):
        container.bookings.get_booking("guide", booking.id, "stranger")
    with pytest.raises(NotFoundError):
        container.bookings.get_booking("stay", booking.id, "r1")


def test_approve_sets_terms_and_timestamps(tmp_path):
    container, clock, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    clock.advance(hours=3)
    approved = container.bookings.approve(
        "guide",
        booking.id,
        "prov",
        AgreedTerms(payment_type="cash", payment_amount=40, instructions="Meet at the gate"),
    )
    assert approved.approved_at == clock()
    assert approved.responded_at == clock()
    assert approved.agreed_payment_amount == 40
    assert approved.instructions == "Meet at the gate"

    profile = container.store.get_profile("guide", "prov")
    assert profile.response_rate == 100
    assert profile.average_response_latency_hours == 3


def test_discussion_then_approve(tmp_path):
    container, clock, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    discussing = container.bookings.open_discussion("guide", booking.id, "r1")
    assert discussing.status == "DISCUSSING"
    assert discussing.responded_at is None

    # A discussion holds the window.
    other = container.bookings.request("guide", _tour("r2", 13, 14))
    assert container.availability.check_conflict(
        "guide", "prov", discussing.window_start, discussing.window_end
    )[0].id == booking.id
    with pytest.raises(ConflictError):
        container.bookings.request("guide", _tour("r3"))

    clock.advance(minutes=30)
    approved = container.bookings.approve("guide", booking.id, "prov")
    assert approved.status == "APPROVED"
    assert approved.responded_at == clock()

    assert container.bookings.open_discussion("guide", other.id, "prov").status == "DISCUSSING"
    with pytest.raises(InvalidStateError):
        container.bookings.open_discussion("guide", other.id, "prov")


def test_reject_keeps_reason_and_counts_as_response(tmp_path):
    container, clock, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    container.bookings.request("guide", _tour("r2", 14, 15))
    clock.advance(hours=2)
    rejected = container.bookings.reject("guide", booking.id, "prov", "Fully booked")
    assert rejected.status == "REJECTED"
    assert rejected.rejection_reason == "Fully booked"
    assert rejected.responded_at == clock()
    assert rejected.cancelled_at is None

    with pytest.raises(InvalidStateError):
        container.bookings.approve("guide", booking.id, "prov")

    profile = container.store.get_profile("guide", "prov")
    assert profile.response_rate == 50
    assert profile.average_response_latency_hours == 2


def test_guide_session_lifecycle(tmp_path):
    container, clock, _ = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1", party_size=3))
    with pytest.raises(InvalidStateError):
        container.bookings.start("guide", booking.id, "prov")
    container.bookings.approve("guide", booking.id, "prov")

    clock.advance(days=9)
    started = container.bookings.start("guide", booking.id, "prov", "Met at station")
    assert started.status == "IN_PROGRESS"
    assert started.started_at == clock()
    with pytest.raises(InvalidStateError):
        container.bookings.start("guide", booking.id, "prov")
    with pytest.raises(InvalidStateError):
        container.bookings.cancel("guide", booking.id, "r1")

    clock.advance(minutes=125)
    completed = container.bookings.complete("guide", booking.id, "prov", "Great group")
    assert completed.status == "COMPLETED"
    assert completed.completed_at == clock()

    sessions = container.bookings.list_sessions("guide", booking.id, "r1")
    assert len(sessions) == 1
    assert sessions[0].duration_minutes == 125
    assert sessions[0].notes == "Great group"

    with pytest.raises(InvalidStateError):
        container.bookings.complete("guide", booking.id, "prov")
    with pytest.raises(InvalidStateError):
        container.bookings.cancel("guide", booking.id, "prov")

    profile = container.store.get_profile("guide", "prov")
    assert profile.completed_engagements == 1
    assert profile.total_party_served == 3

    history = container.bookings.status_history("guide", booking.id, "prov")
    assert [h["to_status"] for h in history] == ["PENDING", "APPROVED", "IN_PROGRESS", "COMPLETED"]


def test_stay_uses_check_in_status_and_dated_windows(tmp_path):
    container, clock, _ = _setup(tmp_path, vertical="stay")
    booking = container.bookings.request("stay", _stay("g1", date(2030, 6, 5), date(2030, 6, 8), party_size=2))
    assert booking.window_start == datetime(2030, 6, 5, tzinfo=timezone.utc)

    # Back-to-back stays share the changeover day without conflicting.
    follow_up = container.bookings.request("stay", _stay("g2", date(2030, 6, 8), date(2030, 6, 9)))
    container.bookings.approve("stay", booking.id, "prov")
    container.bookings.approve("stay", follow_up.id, "prov")

    checked_in = container.bookings.start("stay", booking.id, "prov")
    assert checked_in.status == "CHECKED_IN"
    checked_out = container.bookings.complete("stay", booking.id, "prov")
    assert checked_out.status == "COMPLETED"
    assert container.store.get_profile("stay", "prov").total_party_served == 2

    # Same-day check-in is not in the past for a dated vertical.
    clock.now = datetime(2030, 6, 20, 18, 0, tzinfo=timezone.utc)
    same_day = container.bookings.request("stay", _stay("g3", date(2030, 6, 20), date(2030, 6, 21)))
    assert same_day.status == "PENDING"


def test_stay_length_limits(tmp_path):
    container, _, _ = _setup(tmp_path, vertical="stay")
    with pytest.raises(BookingValidationError):
        container.bookings.request("stay", _stay("g1", date(2030, 6, 5), date(2030, 6, 15)))
    with pytest.raises(BookingValidationError):
        container.bookings.request("stay", _stay("g1", date(2030, 6, 5), date(2030, 6, 5)))


def test_guide_window_fields_required(tmp_path):
    container, _, _ = _setup(tmp_path)
    with pytest.raises(BookingValidationError):
        container.bookings.request("guide", BookingRequestCreate(requester_id="r1", provider_id="prov", tour_date=DAY1))


def test_write_once_timestamp_blocks_transition(tmp_path):
    container, clock, db_path = _setup(tmp_path)
    booking = container.bookings.request("guide", _tour("r1"))
    stamped = (clock() - timedelta(days=1)).isoformat(timespec="microseconds")
    with sqlite3.connect(db_path) as conn:
        conn.execute("UPDATE bookings SET approved_at = ? WHERE id = ?", (stamped, booking.id))
        conn.commit()

    with pytest.raises(InvalidStateError):
        container.bookings.approve("guide", booking.id, "prov")
    assert container.store.get_booking(booking.id).status == "PENDING"


def test_concurrent_approvals_only_one_wins(tmp_path):
    container, _, _ = _setup(tmp_path)
    ids = [container.bookings.request("guide", _tour(f"r{i}")).id for i in range(6)]

    results = []
    errors = []
    barrier = threading.Barrier(len(ids))

    def approve(booking_id: str) -> None:
        barrier.wait()
        try:
            results.append(container.bookings.approve("guide", booking_id, "prov").id)
        except ConflictError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=approve, args=(booking_id,)) for booking_id in ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 1
    assert len(errors) == len(ids) - 1
    approved = container.store.list_bookings("guide", user_id="prov", role="provider", statuses=["APPROVED"])
    assert [b.id for b in approved] == results


def test_dashboard(tmp_path):
    container, clock, _ = _setup(tmp_path)
    pending = container.bookings.request("guide", _tour("r1"))
    upcoming = container.bookings.request("guide", _tour("r2", 14, 16))
    container.bookings.approve("guide", upcoming.id, "prov")

    dashboard = container.bookings.dashboard("guide", "prov")
    assert [b.id for b in dashboard.pending_requests] == [pending.id]
    assert [b.id for b in dashboard.upcoming] == [upcoming.id]
    assert dashboard.can_enable is True
    assert dashboard.trust_requirement.meets_requirement is True
    assert dashboard.stats.total_bookings == 2

    empty = container.bookings.dashboard("guide", "someone_else")
    assert empty.profile is None
    assert empty.trust_requirement.meets_requirement is False
