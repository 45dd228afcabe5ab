"""
tests/test_funnel_engine.py — Step Normalisation & Conversion Math
===================================================================
"""

from __future__ import annotations

import pytest

from beacon.engine.funnel import (
    FunnelStepInput,
    NormalizedStep,
    compute_funnel_stats,
    normalize_steps,
)


def _steps(*keys: str) -> list[NormalizedStep]:
    return [NormalizedStep(key=k, name=k.title(), order=i) for i, k in enumerate(keys)]


class TestNormalizeSteps:

    def test_sorted_by_caller_order_and_renumbered(self):
        result = normalize_steps([
            FunnelStepInput(key="pay", name="Pay", order=30),
            FunnelStepInput(key="land", name="Land", order=10),
            FunnelStepInput(key="cart", name="Cart", order=20),
        ])
        assert [s.key for s in result] == ["land", "cart", "pay"]
        assert [s.order for s in result] == [0, 1, 2]

    def test_missing_order_uses_position(self):
        result = normalize_steps([
            FunnelStepInput(key="a", name="A"),
            FunnelStepInput(key="b", name="B"),
            FunnelStepInput(key="c", name="C", order=0),
        ])
        # c sorts with order 0, tying with a (position 0); ties keep input order
        assert [s.key for s in result] == ["a", "c", "b"]
        assert [s.order for s in result] == [0, 1, 2]

    def test_page_pattern_carried(self):
        result = normalize_steps([FunnelStepInput(key="a", name="A", page_pattern="/a*")])
        assert result[0].page_pattern == "/a*"

    def test_duplicate_key_rejected(self):
        with pytest.raises(ValueError, match="Duplicate step key detected: a"):
            normalize_steps([
                FunnelStepInput(key="a", name="A"),
                FunnelStepInput(key="a", name="Again"),
            ])


class TestComputeFunnelStats:

    def test_conversion_chain(self):
        stats = compute_funnel_stats("f1", _steps("a", "b", "c"), {"a": 10, "b": 6, "c": 6})
        assert stats.total_visitors == 10
        assert [s.visits for s in stats.steps] == [10, 6, 6]
        assert [s.conversions for s in stats.steps] == [6, 6, 6]
        assert [s.drop_off for s in stats.steps] == [4, 0, 0]
        assert [s.conversion_rate for s in stats.steps] == [60.0, 100.0, 100.0]

    def test_no_steps(self):
        stats = compute_funnel_stats("f1", [], {})
        assert stats.total_visitors == 0
        assert stats.steps == []

    def test_zero_visits_rate_is_zero(self):
        stats = compute_funnel_stats("f1", _steps("a", "b"), {})
        assert [s.conversion_rate for s in stats.steps] == [0.0, 0.0]
        assert [s.drop_off for s in stats.steps] == [0, 0]

    def test_rate_rounded_to_two_places(self):
        stats = compute_funnel_stats("f1", _steps("a", "b"), {"a": 3, "b": 1})
        assert stats.steps[0].conversion_rate == 33.33

    def test_later_step_larger_never_negative_drop_off(self):
        stats = compute_funnel_stats("f1", _steps("a", "b"), {"a": 2, "b": 5})
        assert stats.steps[0].drop_off == 0
        assert stats.steps[0].conversion_rate == 250.0

    def test_output_follows_step_order(self):
        stats = compute_funnel_stats("f1", _steps("x", "y"), {"y": 1, "x": 2})
        assert [(s.step_key, s.order) for s in stats.steps] == [("x", 0), ("y", 1)]

    def test_to_dict(self):
        data = compute_funnel_stats("f1", _steps("a"), {"a": 4}).to_dict()
        assert data["funnel_id"] == "f1"
        assert data["steps"][0]["conversions"] == 4
