from dataclasses import dataclass
from typing import Dict, List

from tripbook.models import PaymentOption
from tripbook.services.booking_store import BookingStore
from tripbook.services.clock import Clock, utcnow
from tripbook.services.errors import NotFoundError, UnauthorizedError
from tripbook.services.policy import VerticalPolicy, resolve_policy


@dataclass
class PaymentOptionStore:
    """Payment preferences a provider lists on their profile. No money moves here."""

    store: BookingStore
    policies: Dict[str, VerticalPolicy]
    clock: Clock = utcnow

    def add(self, vertical: str, owner_id: str, payment_type: str, details: str = "") -> PaymentOption:
        policy = resolve_policy(self.policies, vertical)
        if not self.store.get_profile(policy.name, owner_id):
            raise NotFoundError("Profile not found")
        return self.store.add_payment_option(policy.name, owner_id, payment_type, details, now=self.clock())

    def list(self, vertical: str, owner_id: str) -> List[PaymentOption]:
        policy = resolve_policy(self.policies, vertical)
        return self.store.list_payment_options(policy.name, owner_id)

    def remove(self, vertical: str, owner_id: str, option_id: str) -> None:
        policy = resolve_policy(self.policies, vertical)
        option = self.store.get_payment_option(option_id)
        if not option or option.vertical != policy.name or not option.is_active:
            raise NotFoundError("Payment option not found")
        if option.owner_id != owner_id:
            raise UnauthorizedError("Payment option belongs to another provider")
        self.store.deactivate_payment_option(option_id)
