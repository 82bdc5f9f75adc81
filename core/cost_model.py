"""
Fleet Rebalancer Core: Cost Model & Cost-Benefit Gate

Single source of truth for the cost and benefit estimates of a rebalance and
for the decision whether a rebalance is worth executing.

Estimates:
1. Trade volume: half of the total absolute deviation, valued at portfolio NAV
2. Cost: trade volume times the cost rate (fees + gas, 10 bps default)
3. Improvement: total absolute deviation times the improvement rate
"""

from dataclasses import dataclass
from typing import Mapping, Optional
import logging

from core.models import RebalanceImpact, RebalanceOpportunity

logger = logging.getLogger(__name__)

# Improvement must exceed this multiple of the estimated cost
BENEFIT_COST_MARGIN = 2.0


@dataclass
class CostConfig:
    """Cost model configuration"""
    cost_rate: float = 0.001  # 10 bps of traded volume
    improvement_rate: float = 0.02  # 2% per unit of total deviation
    volume_factor: float = 0.5  # Each unit of drift moves half its value
    benefit_cost_margin: float = BENEFIT_COST_MARGIN


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    expected_improvement: float
    required_improvement: float
    reason: str

    @property
    def margin_ratio(self) -> float:
        if self.required_improvement <= 0:
            return float("inf")
        return self.expected_improvement / self.required_improvement


class CostModel:
    """Estimate the trade volume, cost and benefit of closing a drift."""

    def __init__(self, config: Optional[CostConfig] = None):
        self.config = config or CostConfig()

    def estimate_impact(self, deviations: Mapping[str, float], total_value: float) -> RebalanceImpact:
        total_deviation = sum(abs(d) for d in deviations.values())
        trade_volume = total_value * total_deviation * self.config.volume_factor
        return RebalanceImpact(
            trade_volume=trade_volume,
            estimated_cost=trade_volume * self.config.cost_rate,
            expected_improvement=total_deviation * self.config.improvement_rate,
        )


class CostBenefitGate:
    """
    Decide whether a rebalance opportunity pays for itself.

    A rebalance passes only when the expected improvement is strictly greater
    than ``benefit_cost_margin`` times the estimated cost. Equality is a
    refusal. A refusal is a normal outcome, not an error.
    """

    def __init__(self, config: Optional[CostConfig] = None):
        self.config = config or CostConfig()

    def explain(self, opportunity: RebalanceOpportunity) -> GateDecision:
        impact = opportunity.estimated_impact
        required = impact.estimated_cost * self.config.benefit_cost_margin
        approved = impact.expected_improvement > required

        if approved:
            reason = "benefit_exceeds_cost"
        else:
            reason = "cost_exceeds_benefit"

        return GateDecision(
            approved=approved,
            expected_improvement=impact.expected_improvement,
            required_improvement=required,
            reason=reason,
        )

    def should_execute(self, opportunity: RebalanceOpportunity) -> bool:
        return self.explain(opportunity).approved
