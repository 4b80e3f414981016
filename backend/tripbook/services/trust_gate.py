from dataclasses import dataclass
from typing import Iterable, Tuple

from tripbook.config import TrustThresholds
from tripbook.models import Reputation, TrustRequirement


@dataclass(frozen=True)
class TrustGate:
    """Decides whether a participant's reputation lets them act as a provider."""

    min_score: int
    allowed_levels: Tuple[str, ...]

    @classmethod
    def from_thresholds(cls, thresholds: TrustThresholds) -> "TrustGate":
        return cls(min_score=thresholds.min_score, allowed_levels=tuple(thresholds.allowed_levels))

    @classmethod
    def of(cls, min_score: int, allowed_levels: Iterable[str]) -> "TrustGate":
        return cls(min_score=min_score, allowed_levels=tuple(allowed_levels))

    def can_operate(self, score: int, level: str) -> bool:
        return score >= self.min_score and level in self.allowed_levels

    def requirement(self, reputation: Reputation) -> TrustRequirement:
        return TrustRequirement(
            min_score=self.min_score,
            allowed_levels=list(self.allowed_levels),
            current_score=reputation.trust_score,
            current_level=reputation.trust_level,
            meets_requirement=self.can_operate(reputation.trust_score, reputation.trust_level),
        )
