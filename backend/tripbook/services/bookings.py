"""Booking lifecycle shared by every vertical.

Each transition is one compare-and-swap write in ``BookingStore.apply_transition``.
Transitions that depend on the provider's other bookings (request, discussion
and approval) hold the provider lock from the conflict check through the write,
so two approvals for overlapping windows cannot both succeed.

Stats recompute and notifications run after the write has committed. A failed
notification never undoes a transition.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from uuid import uuid4

from tripbook.models import (
    AgreedTerms,
    Booking,
    BookingRequestCreate,
    BookingResponseRequest,
    EngagementSession,
    ProviderDashboard,
)
from tripbook.services.availability import AvailabilityChecker
from tripbook.services.booking_store import BookingStore
from tripbook.services.clock import Clock, utcnow
from tripbook.services.errors import (
    BookingValidationError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
)
from tripbook.services.notification_store import NotificationDispatcher
from tripbook.services.policy import VerticalPolicy, resolve_policy
from tripbook.services.reviews import ReviewAggregator
from tripbook.services.stats import StatsAggregator

logger = logging.getLogger(__name__)

OPEN_FOR_RESPONSE = ("PENDING", "DISCUSSING")
CANCELLABLE = ("PENDING", "DISCUSSING", "APPROVED")


def _conflict_message(conflicts: List[Booking]) -> str:
    ids = ", ".join(b.id for b in conflicts)
    return f"Requested window overlaps existing booking(s): {ids}"


@dataclass
class BookingStateMachine:
    store: BookingStore
    policies: Dict[str, VerticalPolicy]
    availability: AvailabilityChecker
    stats: StatsAggregator
    reviews: ReviewAggregator
    notifier: NotificationDispatcher
    clock: Clock = utcnow

    def _load(self, policy: VerticalPolicy, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if not booking or booking.vertical != policy.name:
            raise NotFoundError("Booking not found")
        return booking

    def _require_party(self, booking: Booking, actor_user_id: str) -> None:
        if actor_user_id not in {booking.provider_id, booking.requester_id}:
            raise UnauthorizedError("Only participants of the booking can do that")

    def _require_provider(self, policy: VerticalPolicy, booking: Booking, actor_user_id: str) -> None:
        self._require_party(booking, actor_user_id)
        if actor_user_id != booking.provider_id:
            raise UnauthorizedError(f"Only the {policy.provider_label} can do that")

    def _notify(self, user_id: str, event_kind: str, booking: Booking, **context) -> None:
        self.notifier.notify(
            user_id,
            event_kind,
            vertical=booking.vertical,
            booking_id=booking.id,
            window_start=booking.window_start.isoformat(),
            **context,
        )

    def _recompute_stats(self, booking: Booking) -> None:
        try:
            self.stats.recompute(booking.vertical, booking.provider_id)
        except Exception:
            # The transition already committed; the next recompute repairs the profile.
            logger.exception("Stats recompute failed for %s provider %s", booking.vertical, booking.provider_id)

    # ------------------------------------------------------------------
    # Transitions

    def request(self, vertical: str, request: BookingRequestCreate) -> Booking:
        policy = resolve_policy(self.policies, vertical)
        window_start, window_end = policy.build_window(request)
        if request.requester_id == request.provider_id:
            raise BookingValidationError("You cannot book yourself")
        # Delete and disable take the same lock, so the profile cannot go away
        # between this check and the insert.
        with self.store.provider_lock(policy.name, request.provider_id):
            profile = self.store.get_profile(policy.name, request.provider_id)
            if not profile:
                raise NotFoundError(f"{policy.provider_label.capitalize()} profile not found")
            if not profile.is_enabled:
                raise BookingValidationError(f"This {policy.provider_label} is not accepting requests")
            now = self.clock()
            if policy.is_past(window_start, now):
                raise BookingValidationError("Requested window is in the past")
            policy.validate_party_size(profile, request.party_size)
            policy.validate_stay_length(profile, window_start, window_end)
            if request.payment_option_id:
                option = self.store.get_payment_option(request.payment_option_id)
                if (
                    not option
                    or not option.is_active
                    or option.vertical != policy.name
                    or option.owner_id != request.provider_id
                ):
                    raise BookingValidationError("Invalid payment option")

            booking = Booking(
                id=f"bkg_{uuid4().hex[:12]}",
                vertical=policy.name,
                provider_id=request.provider_id,
                requester_id=request.requester_id,
                window_start=window_start,
                window_end=window_end,
                party_size=request.party_size,
                status="PENDING",
                note=request.note.strip(),
                payment_option_id=request.payment_option_id,
                requested_at=now,
            )
            conflicts = self.availability.check_conflict(policy.name, request.provider_id, window_start, window_end)
            if conflicts:
                raise ConflictError(_conflict_message(conflicts))
            self.store.insert_booking(booking)
        logger.info("Booking %s requested: %s provider=%s requester=%s", booking.id, policy.name, booking.provider_id, booking.requester_id)
        self._notify(booking.provider_id, "booking_requested", booking, requester_id=booking.requester_id, party_size=booking.party_size)
        return booking

    def open_discussion(self, vertical: str, booking_id: str, actor_user_id: str) -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_party(booking, actor_user_id)
        with self.store.provider_lock(policy.name, booking.provider_id):
            conflicts = self.availability.check_conflict(
                policy.name, booking.provider_id, booking.window_start, booking.window_end, exclude_booking_id=booking.id
            )
            if conflicts:
                raise ConflictError(_conflict_message(conflicts))
            updated = self.store.apply_transition(
                booking.id,
                actor_user_id=actor_user_id,
                from_statuses=("PENDING",),
                to_status="DISCUSSING",
                now=self.clock(),
                note="discussion opened",
            )
        logger.info("Booking %s moved to DISCUSSING by %s", booking.id, actor_user_id)
        counterpart = booking.requester_id if actor_user_id == booking.provider_id else booking.provider_id
        self._notify(counterpart, "booking_discussing", updated)
        return updated

    def approve(
        self,
        vertical: str,
        booking_id: str,
        actor_user_id: str,
        terms: Optional[AgreedTerms] = None,
    ) -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_provider(policy, booking, actor_user_id)
        terms = terms or AgreedTerms()
        fields = {
            "agreed_payment_type": terms.payment_type,
            "agreed_payment_amount": terms.payment_amount,
            "agreed_payment_details": terms.payment_details,
            "instructions": terms.instructions,
        }
        with self.store.provider_lock(policy.name, booking.provider_id):
            conflicts = self.availability.check_conflict(
                policy.name, booking.provider_id, booking.window_start, booking.window_end, exclude_booking_id=booking.id
            )
            if conflicts:
                raise ConflictError(_conflict_message(conflicts))
            updated = self.store.apply_transition(
                booking.id,
                actor_user_id=actor_user_id,
                from_statuses=OPEN_FOR_RESPONSE,
                to_status="APPROVED",
                now=self.clock(),
                write_once=("approved_at",),
                set_if_unset=("responded_at",),
                fields={k: v for k, v in fields.items() if v is not None},
                note="approved",
            )
        logger.info("Booking %s approved by %s", booking.id, actor_user_id)
        self._recompute_stats(updated)
        self._notify(updated.requester_id, "booking_approved", updated)
        return updated

    def reject(self, vertical: str, booking_id: str, actor_user_id: str, reason: str = "") -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_provider(policy, booking, actor_user_id)
        updated = self.store.apply_transition(
            booking.id,
            actor_user_id=actor_user_id,
            from_statuses=OPEN_FOR_RESPONSE,
            to_status="REJECTED",
            now=self.clock(),
            set_if_unset=("responded_at",),
            fields={"rejection_reason": reason.strip() or None},
            note=reason.strip() or "rejected",
        )
        logger.info("Booking %s rejected by %s", booking.id, actor_user_id)
        self._recompute_stats(updated)
        self._notify(updated.requester_id, "booking_rejected", updated, reason=reason.strip())
        return updated

    def respond(self, vertical: str, booking_id: str, response: BookingResponseRequest) -> Booking:
        if response.decision == "approve":
            return self.approve(vertical, booking_id, response.actor_user_id, response.terms)
        return self.reject(vertical, booking_id, response.actor_user_id, response.reason)

    def cancel(self, vertical: str, booking_id: str, actor_user_id: str, reason: str = "") -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_party(booking, actor_user_id)
        by_provider = actor_user_id == booking.provider_id
        updated = self.store.apply_transition(
            booking.id,
            actor_user_id=actor_user_id,
            from_statuses=CANCELLABLE,
            to_status="CANCELED_BY_PROVIDER" if by_provider else "CANCELED_BY_REQUESTER",
            now=self.clock(),
            write_once=("cancelled_at",),
            fields={"cancellation_reason": reason.strip() or None},
            note=reason.strip() or "canceled",
        )
        logger.info("Booking %s canceled by %s", booking.id, actor_user_id)
        counterpart = booking.requester_id if by_provider else booking.provider_id
        self._notify(counterpart, "booking_canceled", updated, reason=reason.strip())
        return updated

    def start(self, vertical: str, booking_id: str, actor_user_id: str, notes: str = "") -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_provider(policy, booking, actor_user_id)
        now = self.clock()
        session = EngagementSession(
            id=f"ses_{uuid4().hex[:10]}",
            booking_id=booking.id,
            started_at=now,
            notes=notes.strip(),
        )
        updated = self.store.apply_transition(
            booking.id,
            actor_user_id=actor_user_id,
            from_statuses=("APPROVED",),
            to_status=policy.active_status,
            now=now,
            write_once=("started_at",),
            note=policy.start_verb,
            open_session=session,
        )
        logger.info("Booking %s moved to %s by %s", booking.id, policy.active_status, actor_user_id)
        self._notify(updated.requester_id, "booking_started", updated)
        return updated

    def complete(self, vertical: str, booking_id: str, actor_user_id: str, notes: str = "") -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_provider(policy, booking, actor_user_id)
        updated = self.store.apply_transition(
            booking.id,
            actor_user_id=actor_user_id,
            from_statuses=(policy.active_status,),
            to_status="COMPLETED",
            now=self.clock(),
            write_once=("completed_at",),
            note=policy.complete_verb,
            close_session_notes=notes.strip(),
        )
        logger.info("Booking %s completed by %s", booking.id, actor_user_id)
        self._recompute_stats(updated)
        self._notify(updated.requester_id, "booking_completed", updated)
        return updated

    # ------------------------------------------------------------------
    # Reads

    def get_booking(self, vertical: str, booking_id: str, viewer_id: str) -> Booking:
        policy = resolve_policy(self.policies, vertical)
        booking = self._load(policy, booking_id)
        self._require_party(booking, viewer_id)
        return booking

    def list_bookings(
        self,
        vertical: str,
        user_id: str,
        role: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Booking]:
        policy = resolve_policy(self.policies, vertical)
        if role not in {None, "provider", "requester"}:
            raise BookingValidationError("role must be 'provider' or 'requester'")
        return self.store.list_bookings(
            policy.name,
            user_id=user_id,
            role=role,
            statuses=[status] if status else None,
        )

    def list_sessions(self, vertical: str, booking_id: str, viewer_id: str) -> List[EngagementSession]:
        booking = self.get_booking(vertical, booking_id, viewer_id)
        return self.store.list_sessions(booking.id)

    def status_history(self, vertical: str, booking_id: str, viewer_id: str) -> List[Dict[str, str]]:
        booking = self.get_booking(vertical, booking_id, viewer_id)
        return self.store.list_status_history(booking.id)

    def dashboard(self, vertical: str, owner_id: str) -> ProviderDashboard:
        policy = resolve_policy(self.policies, vertical)
        reputation = self.store.get_reputation(owner_id)
        requirement = policy.gate.requirement(reputation)
        profile = self.store.get_profile(policy.name, owner_id)
        if not profile:
            return ProviderDashboard(trust_requirement=requirement)

        now = self.clock()
        pending = self.store.list_bookings(policy.name, user_id=owner_id, role="provider", statuses=OPEN_FOR_RESPONSE)
        upcoming = [
            b
            for b in self.store.list_bookings(
                policy.name,
                user_id=owner_id,
                role="provider",
                statuses=("APPROVED", policy.active_status),
                order_by="window_start ASC",
            )
            if b.window_end > now
        ]
        rating = self.reviews.rating_for(policy.name, owner_id)
        can_enable = requirement.meets_requirement and (
            not policy.requires_payment_option_to_enable or bool(profile.payment_options)
        )
        return ProviderDashboard(
            profile=profile,
            pending_requests=pending,
            upcoming=upcoming,
            stats=self.stats.compute(policy.name, owner_id),
            rating=rating.rating,
            review_count=rating.review_count,
            can_enable=can_enable,
            trust_requirement=requirement,
        )
