"""
Tests for the cost model and cost-benefit gate.
"""

import pytest

from core.cost_model import BENEFIT_COST_MARGIN, CostBenefitGate, CostConfig, CostModel
from core.models import RebalanceImpact, RebalanceOpportunity, Urgency


def _opportunity(cost: float, improvement: float) -> RebalanceOpportunity:
    return RebalanceOpportunity(
        portfolio_id="p1",
        deviations={"X": 0.2, "Y": -0.2},
        max_deviation=0.2,
        urgency=Urgency.HIGH,
        estimated_impact=RebalanceImpact(trade_volume=100.0, estimated_cost=cost, expected_improvement=improvement),
    )


class TestCostModel:
    def test_default_rates(self):
        impact = CostModel().estimate_impact({"X": 0.1, "Y": -0.1}, total_value=10.0)
        assert impact.trade_volume == pytest.approx(1.0)
        assert impact.estimated_cost == pytest.approx(0.001)
        assert impact.expected_improvement == pytest.approx(0.004)

    def test_custom_rates(self):
        model = CostModel(CostConfig(cost_rate=0.01, improvement_rate=0.1, volume_factor=1.0))
        impact = model.estimate_impact({"X": 0.25}, total_value=100.0)
        assert impact.trade_volume == pytest.approx(25.0)
        assert impact.estimated_cost == pytest.approx(0.25)
        assert impact.expected_improvement == pytest.approx(0.025)


class TestCostBenefitGate:
    """Execute only when improvement > margin x cost"""

    def test_default_margin_is_two(self):
        assert BENEFIT_COST_MARGIN == 2.0

    def test_benefit_above_margin_executes(self):
        gate = CostBenefitGate()
        assert gate.should_execute(_opportunity(cost=0.5, improvement=1.5)) is True

    def test_exact_margin_refused(self):
        """Equality is a refusal"""
        gate = CostBenefitGate()
        decision = gate.explain(_opportunity(cost=0.5, improvement=1.0))
        assert decision.approved is False
        assert decision.reason == "cost_exceeds_benefit"
        assert decision.required_improvement == 1.0

    def test_cost_exceeds_benefit_refused(self):
        gate = CostBenefitGate()
        assert gate.should_execute(_opportunity(cost=2.0, improvement=1.0)) is False

    def test_margin_override(self):
        gate = CostBenefitGate(CostConfig(benefit_cost_margin=1.0))
        assert gate.should_execute(_opportunity(cost=0.5, improvement=0.75)) is True

    def test_zero_cost_any_positive_improvement_passes(self):
        decision = CostBenefitGate().explain(_opportunity(cost=0.0, improvement=0.001))
        assert decision.approved is True
        assert decision.margin_ratio == float("inf")

    def test_small_portfolio_passes_large_portfolio_gated(self):
        """Cost scales with value; improvement does not"""
        model, gate = CostModel(), CostBenefitGate()
        deviations = {"X": 0.15, "Y": -0.15}

        def opp(value):
            return RebalanceOpportunity(
                portfolio_id="p1",
                deviations=deviations,
                max_deviation=0.15,
                urgency=Urgency.MEDIUM,
                estimated_impact=model.estimate_impact(deviations, value),
            )

        assert gate.should_execute(opp(10.0)) is True
        assert gate.should_execute(opp(100.0)) is False
