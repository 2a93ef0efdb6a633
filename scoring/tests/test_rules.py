"""
Unit Tests for the Score Rule Engine

Tests cover:
1. The default rule table
2. Summing, clamping and rounding
3. Credit level boundaries
"""

import pytest
from decimal import Decimal

from scoring import (
    CounterField,
    ScoreRuleEngine,
    ScoringEvent,
    ScoringRule,
    classify_score,
    clamp_score,
)


class TestDefaultRules:
    """Tests for the built-in rule table."""

    @pytest.mark.parametrize("event, delta", [
        (ScoringEvent.ORDER_COMPLETED, Decimal("2")),
        (ScoringEvent.POSITIVE_REVIEW, Decimal("3")),
        (ScoringEvent.NEGATIVE_REVIEW, Decimal("-5")),
        (ScoringEvent.CANCEL_PENALTY, Decimal("-3")),
    ])
    def test_rule_deltas(self, event, delta):
        assert ScoreRuleEngine().get_rule(event).delta == delta

    def test_order_completed_counters(self):
        change = ScoreRuleEngine().apply(Decimal("80.0"), [ScoringEvent.ORDER_COMPLETED])
        assert change.counter_increments == {
            CounterField.TOTAL_ORDERS: 1,
            CounterField.COMPLETED_ORDERS: 1,
        }

    def test_cancel_penalty_has_no_counters(self):
        change = ScoreRuleEngine().apply(Decimal("80.0"), [ScoringEvent.CANCEL_PENALTY])
        assert change.counter_increments == {}
        assert change.new_score == Decimal("77.0")


class TestApply:
    """Tests for applying several events at once."""

    def test_deltas_summed_before_clamp(self):
        """99 + 3 - 5 is 97, not min(100, 102) - 5 = 95."""
        change = ScoreRuleEngine().apply(
            Decimal("99.0"), [ScoringEvent.POSITIVE_REVIEW, ScoringEvent.NEGATIVE_REVIEW]
        )
        assert change.new_score == Decimal("97.0")
        assert change.delta == Decimal("-2.0")

    def test_clamped_to_bounds(self):
        engine = ScoreRuleEngine()
        assert engine.apply(Decimal("99.5"), [ScoringEvent.POSITIVE_REVIEW]).new_score == Decimal("100.0")
        assert engine.apply(Decimal("1.0"), [ScoringEvent.NEGATIVE_REVIEW]).new_score == Decimal("0.0")

    def test_accepts_event_values(self):
        change = ScoreRuleEngine().apply(Decimal("80"), ["order_completed"])
        assert change.events == [ScoringEvent.ORDER_COMPLETED]

    def test_unknown_event_without_rule(self):
        engine = ScoreRuleEngine(rules=[])
        with pytest.raises(KeyError):
            engine.apply(Decimal("80"), [ScoringEvent.ORDER_COMPLETED])

    def test_custom_rule_overrides_default(self):
        engine = ScoreRuleEngine()
        engine.add_rule(ScoringRule(event=ScoringEvent.CANCEL_PENALTY, delta=Decimal("-10")))
        assert engine.apply(Decimal("80"), [ScoringEvent.CANCEL_PENALTY]).new_score == Decimal("70.0")


class TestClampAndClassify:
    """Tests for clamping and credit levels."""

    def test_rounds_half_up_to_one_decimal(self):
        assert clamp_score(Decimal("82.25")) == Decimal("82.3")
        assert clamp_score(Decimal("82.24")) == Decimal("82.2")

    @pytest.mark.parametrize("score, level", [
        ("100", "excellent"),
        ("90.0", "excellent"),
        ("89.9", "good"),
        ("80.0", "good"),
        ("79.9", "average"),
        ("70.0", "average"),
        ("69.9", "poor"),
        ("60.0", "poor"),
        ("59.9", "bad"),
        ("0", "bad"),
    ])
    def test_level_boundaries(self, score, level):
        assert classify_score(Decimal(score)).level == level

    def test_level_has_display_fields(self):
        band = classify_score(Decimal("95"))
        assert band.to_dict() == {"level": "excellent", "name": "Excellent", "color": "#52c41a"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
