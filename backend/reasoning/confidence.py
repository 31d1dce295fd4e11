"""
Confidence Aggregation.

Merges the per-stage confidences a model self-reports into one overall
confidence. Deterministic, no LLM calls.

Default is the arithmetic mean of the reported step confidences. When no
step carries a confidence the validation score is used instead, so an
answer without self-reported certainty is only as trusted as its structure.
"""
import logging
import math
import statistics
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

MODE_MEAN = "mean"
MODE_WEAKEST_LINK = "weakest_link"

# Floor used by the harmonic mean to avoid division by zero
MIN_STAGE_CONFIDENCE = 0.01


def clamp_confidence(value: Any) -> float:
    """Coerce to a float in [0, 1]; NaN and non-numbers become 0.0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    except OverflowError:
        # integer beyond float range
        return 1.0 if value > 0 else 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def aggregate_confidence(confidences: Iterable[float], fallback: float) -> float:
    """Arithmetic mean of `confidences`, or clamped `fallback` if there are none."""
    values = [clamp_confidence(c) for c in confidences]
    if not values:
        return clamp_confidence(fallback)
    return clamp_confidence(statistics.fmean(values))


def weakest_link_confidence(confidences: Iterable[float], fallback: float) -> float:
    """Harmonic mean, dominated by the least certain stage."""
    values = [max(clamp_confidence(c), MIN_STAGE_CONFIDENCE) for c in confidences]
    if not values:
        return clamp_confidence(fallback)
    return clamp_confidence(statistics.harmonic_mean(values))


class ConfidenceAggregator:
    """
    Computes overall confidence from reasoning steps.

    Usage:
        aggregator = ConfidenceAggregator()
        confidence = aggregator.aggregate(result_steps, fallback=outcome.score)
    """

    def __init__(self, mode: str = MODE_MEAN):
        if mode not in (MODE_MEAN, MODE_WEAKEST_LINK):
            raise ValueError(f"Unknown confidence mode: {mode}")
        self.mode = mode

    def aggregate(self, steps: Iterable[Any], fallback: float) -> float:
        """
        Merge step confidences into one value in [0, 1].

        Args:
            steps: Objects with an optional `confidence` attribute
            fallback: Used when no step reports a confidence

        Returns:
            Overall confidence
        """
        confidences = [
            step.confidence
            for step in steps
            if getattr(step, "confidence", None) is not None
        ]
        if self.mode == MODE_WEAKEST_LINK:
            overall = weakest_link_confidence(confidences, fallback)
        else:
            overall = aggregate_confidence(confidences, fallback)

        logger.debug(
            f"Aggregated {len(confidences)} stage confidences ({self.mode}) -> {overall:.3f}"
        )
        return overall

    def band(self, confidence: Optional[float]) -> str:
        """Coarse label for logs and callers: high / moderate / low."""
        value = clamp_confidence(confidence)
        if value >= 0.75:
            return "high"
        elif value >= 0.5:
            return "moderate"
        return "low"
