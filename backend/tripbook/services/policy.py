"""Per-vertical policy objects for the shared booking engine.

Guided tours and home stays run through the same state machine. The policy
carries everything that differs between them: the trust gate thresholds, how a
requested window is expressed, what the in-progress status is called, and the
wording used in validation messages.
"""

from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Dict, Literal, Optional, Tuple

from tripbook.config import Settings
from tripbook.models import BookingRequestCreate, ProviderProfile
from tripbook.services.clock import ensure_utc
from tripbook.services.errors import BookingValidationError, NotFoundError
from tripbook.services.trust_gate import TrustGate


@dataclass(frozen=True)
class VerticalPolicy:
    name: Literal["guide", "stay"]
    gate: TrustGate
    party_label: str
    window_kind: Literal["timed", "dated"]
    active_status: Literal["IN_PROGRESS", "CHECKED_IN"]
    start_verb: str
    complete_verb: str
    provider_label: str
    requires_payment_option_to_enable: bool = False

    def build_window(self, request: BookingRequestCreate) -> Tuple[datetime, datetime]:
        if request.window_start is not None or request.window_end is not None:
            if request.window_start is None or request.window_end is None:
                raise BookingValidationError("Both window_start and window_end are required")
            start, end = ensure_utc(request.window_start), ensure_utc(request.window_end)
        elif self.window_kind == "timed":
            if request.tour_date is None or request.start_time is None or request.end_time is None:
                raise BookingValidationError("tour_date, start_time and end_time are required")
            start = datetime.combine(request.tour_date, request.start_time, tzinfo=timezone.utc)
            end = datetime.combine(request.tour_date, request.end_time, tzinfo=timezone.utc)
        else:
            if request.check_in_date is None or request.check_out_date is None:
                raise BookingValidationError("check_in_date and check_out_date are required")
            start = datetime.combine(request.check_in_date, time.min, tzinfo=timezone.utc)
            end = datetime.combine(request.check_out_date, time.min, tzinfo=timezone.utc)
        validate_window(start, end)
        return start, end

    def is_past(self, window_start: datetime, now: datetime) -> bool:
        if self.window_kind == "dated":
            return window_start.date() < now.date()
        return window_start < now

    def validate_party_size(self, profile: ProviderProfile, party_size: int) -> None:
        if party_size < 1 or party_size > profile.max_capacity:
            raise BookingValidationError(f"{self.party_label} must be between 1 and {profile.max_capacity}")

    def validate_stay_length(self, profile: ProviderProfile, window_start: datetime, window_end: datetime) -> None:
        if self.window_kind != "dated":
            return
        nights = (window_end.date() - window_start.date()).days
        if profile.minimum_stay_nights is not None and nights < profile.minimum_stay_nights:
            raise BookingValidationError(f"Minimum stay is {profile.minimum_stay_nights} nights")
        if profile.maximum_stay_nights is not None and nights > profile.maximum_stay_nights:
            raise BookingValidationError(f"Maximum stay is {profile.maximum_stay_nights} nights")


def validate_window(window_start: datetime, window_end: datetime) -> None:
    if window_end <= window_start:
        raise BookingValidationError("Window end must be after window start")


def build_policies(settings: Settings) -> Dict[str, VerticalPolicy]:
    return {
        "guide": VerticalPolicy(
            name="guide",
            gate=TrustGate.from_thresholds(settings.guide_trust),
            party_label="Group size",
            window_kind="timed",
            active_status="IN_PROGRESS",
            start_verb="start",
            complete_verb="complete",
            provider_label="guide",
            requires_payment_option_to_enable=settings.guide_requires_payment_option,
        ),
        "stay": VerticalPolicy(
            name="stay",
            gate=TrustGate.from_thresholds(settings.stay_trust),
            party_label="Number of guests",
            window_kind="dated",
            active_status="CHECKED_IN",
            start_verb="check in",
            complete_verb="check out",
            provider_label="host",
        ),
    }


def resolve_policy(policies: Dict[str, VerticalPolicy], vertical: Optional[str]) -> VerticalPolicy:
    policy = policies.get(vertical or "")
    if policy is None:
        raise NotFoundError(f"Unknown vertical: {vertical}")
    return policy
