"""
Tests for confidence aggregation.
"""
import math

import pytest

from reasoning.confidence import (
    MODE_WEAKEST_LINK,
    ConfidenceAggregator,
    aggregate_confidence,
    clamp_confidence,
)
from reasoning.types import ReasoningStep


def steps(*confidences):
    return [ReasoningStep.from_raw({"stage": "input_gathering", "confidence": c}) for c in confidences]


class TestAggregation:
    """Tests for ConfidenceAggregator.aggregate()."""

    def test_mean_of_steps(self):
        """Scenario: 0.9 and 0.7 aggregate to 0.8."""
        assert ConfidenceAggregator().aggregate(steps(0.9, 0.7), fallback=0.0) == pytest.approx(0.8)

    def test_fallback_without_steps(self):
        assert ConfidenceAggregator().aggregate([], fallback=0.6) == pytest.approx(0.6)

    def test_steps_without_confidence_use_fallback(self):
        no_conf = [ReasoningStep.from_raw({"stage": "input_gathering"})]

        assert ConfidenceAggregator().aggregate(no_conf, fallback=0.5) == pytest.approx(0.5)

    def test_non_numeric_confidence_ignored(self):
        mixed = steps(0.9) + [ReasoningStep.from_raw({"stage": "output_formatting", "confidence": "high"})]

        assert ConfidenceAggregator().aggregate(mixed, fallback=0.0) == pytest.approx(0.9)

    def test_weakest_link_dominated_by_low_stage(self):
        aggregator = ConfidenceAggregator(mode=MODE_WEAKEST_LINK)

        assert aggregator.aggregate(steps(0.9, 0.9, 0.1), fallback=0.0) < 0.3

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            ConfidenceAggregator(mode="median")

    def test_result_always_in_range(self):
        assert 0.0 <= aggregate_confidence([1.5, 2.0], fallback=0.0) <= 1.0
        assert aggregate_confidence([], fallback=3.0) == 1.0


class TestClamp:
    """Tests for clamp_confidence()."""

    @pytest.mark.parametrize("value,expected", [
        (0.5, 0.5),
        (-1, 0.0),
        (7, 1.0),
        (math.nan, 0.0),
        ("n/a", 0.0),
        (None, 0.0),
        (10**400, 1.0),
        (-10**400, 0.0),
    ])
    def test_clamp(self, value, expected):
        assert clamp_confidence(value) == expected

    def test_step_confidence_clamped(self):
        assert ReasoningStep.from_raw({"confidence": 1.4}).confidence == 1.0

    def test_band(self):
        aggregator = ConfidenceAggregator()

        assert aggregator.band(0.9) == "high"
        assert aggregator.band(0.6) == "moderate"
        assert aggregator.band(0.2) == "low"
