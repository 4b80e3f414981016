import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from tripbook.models import ProfileDescriptor, ProfilePatch, ProviderProfile
from tripbook.services.availability import AvailabilityChecker
from tripbook.services.booking_store import BookingStore
from tripbook.services.clock import Clock, utcnow
from tripbook.services.errors import BookingValidationError, NotEligibleError, NotFoundError
from tripbook.services.policy import VerticalPolicy, resolve_policy

logger = logging.getLogger(__name__)


@dataclass
class ProfileRegistry:
    store: BookingStore
    policies: Dict[str, VerticalPolicy]
    availability: AvailabilityChecker
    clock: Clock = utcnow

    def _assert_eligible(self, policy: VerticalPolicy, owner_id: str) -> None:
        reputation = self.store.get_reputation(owner_id)
        if not policy.gate.can_operate(reputation.trust_score, reputation.trust_level):
            raise NotEligibleError(
                f"Trust score of {policy.gate.min_score} and level in "
                f"{', '.join(policy.gate.allowed_levels)} required to become a {policy.provider_label}"
            )

    def _require(self, vertical: str, owner_id: str) -> ProviderProfile:
        profile = self.store.get_profile(vertical, owner_id)
        if not profile:
            raise NotFoundError("Profile not found")
        return profile

    def create_profile(self, vertical: str, owner_id: str, descriptor: ProfileDescriptor) -> ProviderProfile:
        policy = resolve_policy(self.policies, vertical)
        self._assert_eligible(policy, owner_id)
        profile = self.store.create_profile(policy.name, owner_id, descriptor, now=self.clock())
        logger.info("Created %s profile for %s", policy.name, owner_id)
        return profile

    def update_profile(self, vertical: str, owner_id: str, patch: ProfilePatch) -> ProviderProfile:
        policy = resolve_policy(self.policies, vertical)
        current = self._require(policy.name, owner_id)
        changes = patch.model_dump(mode="json", exclude_unset=True)
        for key in ("title", "city"):
            if key in changes and changes[key] is None:
                raise BookingValidationError(f"{key} cannot be cleared")
        if "max_capacity" in changes and changes["max_capacity"] is None:
            raise BookingValidationError("max_capacity cannot be cleared")
        min_nights = changes.get("minimum_stay_nights", current.minimum_stay_nights)
        max_nights = changes.get("maximum_stay_nights", current.maximum_stay_nights)
        if min_nights is not None and max_nights is not None and min_nights > max_nights:
            raise BookingValidationError("minimum_stay_nights cannot exceed maximum_stay_nights")
        if not changes:
            return current
        return self.store.update_profile(policy.name, owner_id, changes, now=self.clock())

    def set_enabled(self, vertical: str, owner_id: str, enabled: bool) -> ProviderProfile:
        policy = resolve_policy(self.policies, vertical)
        # Serialized with in-flight requests for this provider.
        with self.store.provider_lock(policy.name, owner_id):
            profile = self._require(policy.name, owner_id)
            if enabled:
                self._assert_eligible(policy, owner_id)
                if policy.requires_payment_option_to_enable and not profile.payment_options:
                    raise BookingValidationError("Add at least one payment option before enabling your profile")
            updated = self.store.set_profile_enabled(policy.name, owner_id, enabled, now=self.clock())
        logger.info("%s profile %s enabled=%s", policy.name, owner_id, enabled)
        return updated

    def delete_profile(self, vertical: str, owner_id: str) -> None:
        policy = resolve_policy(self.policies, vertical)
        with self.store.provider_lock(policy.name, owner_id):
            self.store.delete_profile(policy.name, owner_id)
        logger.info("Deleted %s profile for %s", policy.name, owner_id)

    def get_profile(self, vertical: str, owner_id: str, viewer_id: Optional[str] = None) -> ProviderProfile:
        policy = resolve_policy(self.policies, vertical)
        profile = self._require(policy.name, owner_id)
        if viewer_id == owner_id:
            return profile
        return profile.model_copy(update={"address": None, "coordinates": None})

    def search_profiles(
        self,
        vertical: str,
        *,
        city: Optional[str] = None,
        party_size: Optional[int] = None,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[ProviderProfile]:
        policy = resolve_policy(self.policies, vertical)
        if (window_start is None) != (window_end is None):
            raise BookingValidationError("Both window_start and window_end are required to filter by dates")
        profiles = self.store.list_profiles(policy.name, enabled_only=True, city=city, min_capacity=party_size)
        if window_start is not None and window_end is not None:
            profiles = [
                p
                for p in profiles
                if not self.availability.check_conflict(policy.name, p.owner_id, window_start, window_end)
            ]
        return [p.model_copy(update={"address": None, "coordinates": None}) for p in profiles]
