"""Mapping from qualitative confidence to a score and the review flag."""

from receipt_pipeline.extraction.schema import ConfidenceLevel

CONFIDENCE_SCORES: dict[str, float] = {
    "high": 0.9,
    "medium": 0.7,
    "low": 0.5,
}


def confidence_score(level: ConfidenceLevel) -> float:
    """Return the numeric score for a confidence level (unknown levels score as low)."""
    return CONFIDENCE_SCORES.get(level, CONFIDENCE_SCORES["low"])


def needs_review(score: float, threshold: float = 0.72) -> bool:
    return score < threshold
