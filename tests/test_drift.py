"""
Tests for drift evaluation and urgency classification.
"""

import math

import pytest

from core.drift import DriftEvaluator, UrgencyBands, calculate_deviations, classify_urgency
from core.exceptions import InvalidPortfolioInput
from core.models import AssetPosition, PortfolioSnapshot, Urgency
from tests.helpers import make_snapshot


TARGET = {"X": 0.5, "Y": 0.5}


@pytest.fixture
def evaluator():
    return DriftEvaluator()


class TestDeviationCalculation:
    """Signed deviations against the target"""

    def test_signed_deviation_per_target_asset(self):
        snap = make_snapshot({"X": 0.75, "Y": 0.25})
        devs = calculate_deviations(snap, TARGET)
        assert devs == {"X": 0.25, "Y": -0.25}

    def test_missing_asset_counts_as_zero_weight(self):
        snap = make_snapshot({"X": 1.0})
        devs = calculate_deviations(snap, TARGET)
        assert devs["Y"] == -0.5

    def test_assets_outside_target_ignored(self):
        snap = make_snapshot({"X": 0.5, "Y": 0.25, "Z": 0.25})
        devs = calculate_deviations(snap, TARGET)
        assert set(devs) == {"X", "Y"}


class TestEvaluate:
    """DriftEvaluator.evaluate"""

    def test_large_drift_returns_high_urgency_opportunity(self, evaluator):
        """Target 50/50, actual 65/35, threshold 5%"""
        snap = make_snapshot({"X": 0.65, "Y": 0.35})
        opp = evaluator.evaluate("p1", snap, TARGET, 0.05)

        assert opp is not None
        assert opp.portfolio_id == "p1"
        assert opp.max_deviation == pytest.approx(0.15)
        assert opp.urgency is Urgency.HIGH

    def test_small_drift_returns_none(self, evaluator):
        snap = make_snapshot({"X": 0.52, "Y": 0.48})
        assert evaluator.evaluate("p1", snap, TARGET, 0.05) is None

    def test_deviation_equal_to_threshold_is_not_an_opportunity(self, evaluator):
        """Strictly greater than the threshold is required"""
        snap = make_snapshot({"X": 0.75, "Y": 0.25})
        assert evaluator.evaluate("p1", snap, TARGET, 0.25) is None

    def test_just_over_threshold_is_an_opportunity(self, evaluator):
        snap = make_snapshot({"X": 0.75, "Y": 0.25})
        assert evaluator.evaluate("p1", snap, TARGET, 0.125) is not None

    def test_empty_target_returns_none(self, evaluator):
        snap = make_snapshot({"X": 1.0})
        assert evaluator.evaluate("p1", snap, {}, 0.05) is None

    def test_deterministic_for_same_input(self, evaluator):
        snap = make_snapshot({"X": 0.7, "Y": 0.3}, total_value=5_000)
        first = evaluator.evaluate("p1", snap, TARGET, 0.05)
        second = evaluator.evaluate("p1", snap, TARGET, 0.05)
        assert first == second

    def test_impact_follows_cost_model(self, evaluator):
        snap = make_snapshot({"X": 0.75, "Y": 0.25}, total_value=1_000)
        opp = evaluator.evaluate("p1", snap, TARGET, 0.05)

        # total |deviation| = 0.5
        assert opp.estimated_impact.trade_volume == pytest.approx(250.0)
        assert opp.estimated_impact.estimated_cost == pytest.approx(0.25)
        assert opp.estimated_impact.expected_improvement == pytest.approx(0.01)

    def test_volatility_carried_on_opportunity(self, evaluator):
        snap = make_snapshot({"X": 0.75, "Y": 0.25})
        opp = evaluator.evaluate("p1", snap, TARGET, 0.05, volatility=0.4)
        assert opp.volatility == 0.4


class TestUrgency:
    """Urgency bands and volatility promotion"""

    @pytest.mark.parametrize(
        "max_dev,expected",
        [(0.16, Urgency.HIGH), (0.15, Urgency.MEDIUM), (0.11, Urgency.MEDIUM), (0.10, Urgency.LOW), (0.06, Urgency.LOW)],
    )
    def test_bands(self, max_dev, expected):
        assert classify_urgency(max_dev, 0.0) is expected

    def test_high_volatility_promotes_low_to_medium(self):
        assert classify_urgency(0.06, 0.3) is Urgency.MEDIUM

    def test_volatility_at_boundary_does_not_promote(self):
        assert classify_urgency(0.06, 0.25) is Urgency.LOW

    def test_volatility_never_demotes_or_promotes_past_medium(self):
        assert classify_urgency(0.2, 0.9) is Urgency.HIGH
        assert classify_urgency(0.12, 0.9) is Urgency.MEDIUM

    def test_custom_bands(self):
        bands = UrgencyBands(high_deviation=0.3, medium_deviation=0.2, volatility_promotion=0.5)
        assert classify_urgency(0.25, 0.0, bands) is Urgency.MEDIUM
        assert classify_urgency(0.25, 0.0) is Urgency.HIGH


class TestInvalidInput:
    """Malformed input is rejected before evaluation"""

    def test_nan_weight_rejected(self, evaluator):
        snap = PortfolioSnapshot(total_value=100.0, assets={"X": AssetPosition(weight=math.nan)})
        with pytest.raises(InvalidPortfolioInput):
            evaluator.evaluate("p1", snap, TARGET, 0.05)

    def test_negative_total_value_rejected(self, evaluator):
        snap = PortfolioSnapshot(total_value=-1.0)
        with pytest.raises(InvalidPortfolioInput):
            evaluator.evaluate("p1", snap, TARGET, 0.05)

    def test_negative_target_weight_rejected(self, evaluator):
        with pytest.raises(InvalidPortfolioInput):
            evaluator.evaluate("p1", make_snapshot({"X": 1.0}), {"X": -0.1}, 0.05)

    def test_volatility_out_of_range_rejected(self, evaluator):
        with pytest.raises(InvalidPortfolioInput):
            evaluator.evaluate("p1", make_snapshot({"X": 1.0}), TARGET, 0.05, volatility=1.5)
