"""TAXOMETRICS — Confidence Scorer.

All confidences inside the service are floats in [0, 1].
``normalize_confidence`` is the only place a legacy 0–100 value is converted.
"""

from typing import Iterable, Optional

from taxometrics.config import settings
from taxometrics.models.match_models import MatchResult, MatchStrategy

DEFAULT_THRESHOLD = 0.7

# Lower rank = more specific strategy. Used only to break confidence ties.
STRATEGY_PRECEDENCE = {
    MatchStrategy.MANUAL: 0,
    MatchStrategy.EXACT_PATH: 0,
    MatchStrategy.GTIN_EXACT: 0,
    MatchStrategy.ALIAS_MATCH: 1,
    MatchStrategy.PARTIAL_PATH: 2,
    MatchStrategy.SKU_FALLBACK: 2,
    MatchStrategy.NAME_MATCH: 3,
}


def normalize_confidence(value: Optional[float]) -> Optional[float]:
    """Convert a legacy 0–100 score to [0, 1]; values already in range pass through."""
    if value is None:
        return None
    value = float(value)
    if value > 1.0:
        value = value / 100.0
    return max(0.0, min(value, 1.0))


class ConfidenceScorer:
    """Stateless acceptance and tie-break policy."""

    def __init__(self, threshold: Optional[float] = None):
        if threshold is None:
            threshold = settings.match_confidence_threshold
        self.threshold = threshold

    def meets_threshold(self, confidence: Optional[float]) -> bool:
        return confidence is not None and confidence >= self.threshold

    def accepts(self, match: Optional[MatchResult]) -> bool:
        return match is not None and self.meets_threshold(match.confidence)

    @staticmethod
    def precedence(strategy: MatchStrategy) -> int:
        return STRATEGY_PRECEDENCE.get(strategy, len(STRATEGY_PRECEDENCE))

    def compare(
        self, a: Optional[MatchResult], b: Optional[MatchResult]
    ) -> Optional[MatchResult]:
        """Return the preferred of two candidates for the same identifier.

        Higher confidence wins; equal confidence goes to the more specific
        strategy; a full tie keeps ``a``.
        """
        if a is None:
            return b
        if b is None:
            return a
        if a.confidence != b.confidence:
            return a if a.confidence > b.confidence else b
        if self.precedence(b.strategy) < self.precedence(a.strategy):
            return b
        return a

    def best(self, candidates: Iterable[Optional[MatchResult]]) -> Optional[MatchResult]:
        winner: Optional[MatchResult] = None
        for candidate in candidates:
            winner = self.compare(winner, candidate)
        return winner

    # ── Reporting helpers ──

    @staticmethod
    def confidence_level(score: float) -> str:
        if score >= 0.9:
            return "high"
        if score >= 0.7:
            return "medium"
        if score > 0:
            return "low"
        return "none"

    def recommended_action(self, score: float) -> dict:
        level = self.confidence_level(score)
        if level == "high":
            return {"action": "accept", "reason": "High confidence match"}
        if level == "medium":
            return {"action": "review", "reason": "Medium confidence, review recommended"}
        if level == "low":
            return {"action": "review", "reason": "Low confidence, manual verification needed"}
        return {"action": "reject", "reason": "No match, tracked as unmatched"}

    @staticmethod
    def combined_confidence(*confidences: Optional[float]) -> float:
        """Harmonic mean of the present, positive source confidences."""
        present = [c for c in confidences if c is not None and c > 0]
        if not present:
            return 0.0
        return len(present) / sum(1.0 / c for c in present)
