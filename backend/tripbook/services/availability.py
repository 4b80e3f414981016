from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from tripbook.models import AvailabilityResult, Booking, BookingSummary
from tripbook.services.booking_store import BookingStore
from tripbook.services.clock import ensure_utc
from tripbook.services.policy import validate_window

# PENDING requests do not hold the window; anything the provider has engaged with does.
CONFLICT_STATUSES = ("DISCUSSING", "APPROVED", "IN_PROGRESS", "CHECKED_IN")


def _summarize(booking: Booking) -> BookingSummary:
    return BookingSummary(
        id=booking.id,
        provider_id=booking.provider_id,
        requester_id=booking.requester_id,
        window_start=booking.window_start,
        window_end=booking.window_end,
        party_size=booking.party_size,
        status=booking.status,
    )


@dataclass
class AvailabilityChecker:
    store: BookingStore

    def check_conflict(
        self,
        vertical: str,
        provider_id: str,
        window_start: datetime,
        window_end: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        window_start, window_end = ensure_utc(window_start), ensure_utc(window_end)
        validate_window(window_start, window_end)
        return self.store.find_overlapping(
            vertical,
            provider_id,
            CONFLICT_STATUSES,
            window_start,
            window_end,
            exclude_booking_id=exclude_booking_id,
        )

    def check_availability(
        self,
        vertical: str,
        provider_id: str,
        window_start: datetime,
        window_end: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> AvailabilityResult:
        conflicts = self.check_conflict(vertical, provider_id, window_start, window_end, exclude_booking_id)
        if not conflicts:
            return AvailabilityResult(available=True, conflicts=[], message="Available")
        noun = "booking" if len(conflicts) == 1 else "bookings"
        return AvailabilityResult(
            available=False,
            conflicts=[_summarize(b) for b in conflicts],
            message=f"Conflicts with {len(conflicts)} existing {noun}",
        )
