import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List

from tripbook.models import Booking, ProviderStats
from tripbook.services.booking_store import BookingStore
from tripbook.services.policy import VerticalPolicy, resolve_policy

logger = logging.getLogger(__name__)


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_stats(vertical: str, provider_id: str, bookings: List[Booking]) -> ProviderStats:
    """Derive the provider's rolling stats from the full list of their bookings."""
    total = len(bookings)
    responded = [b for b in bookings if b.responded_at is not None]
    response_rate = round(len(responded) / total * 100, 2) if total else 0.0

    latency_hours = 0
    if responded:
        seconds = sum((b.responded_at - b.requested_at).total_seconds() for b in responded)
        latency_hours = _round_half_up(seconds / len(responded) / 3600)

    completed = [b for b in bookings if b.status == "COMPLETED"]
    return ProviderStats(
        vertical=vertical,
        provider_id=provider_id,
        total_bookings=total,
        responded_bookings=len(responded),
        response_rate=response_rate,
        average_response_latency_hours=max(0, latency_hours),
        completed_engagements=len(completed),
        total_party_served=sum(b.party_size for b in completed),
    )


@dataclass
class StatsAggregator:
    store: BookingStore
    policies: Dict[str, VerticalPolicy]

    def compute(self, vertical: str, provider_id: str) -> ProviderStats:
        policy = resolve_policy(self.policies, vertical)
        bookings = self.store.list_bookings(policy.name, user_id=provider_id, role="provider")
        return compute_stats(policy.name, provider_id, bookings)

    def recompute(self, vertical: str, provider_id: str) -> ProviderStats:
        stats = self.compute(vertical, provider_id)
        if not self.store.write_provider_stats(stats):
            logger.info("No %s profile for %s; stats not stored", stats.vertical, provider_id)
        return stats
