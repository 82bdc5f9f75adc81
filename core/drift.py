"""
Fleet Rebalancer Core: Drift Evaluator

Compares a portfolio snapshot against its target allocation and classifies
how urgent the drift is. Pure: no I/O, no clock, no randomness.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional
import logging

from core.cost_model import CostModel
from core.exceptions import InvalidPortfolioInput
from core.models import PortfolioSnapshot, RebalanceOpportunity, Urgency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UrgencyBands:
    high_deviation: float = 0.15
    medium_deviation: float = 0.10
    volatility_promotion: float = 0.25


def calculate_deviations(snapshot: PortfolioSnapshot, target: Mapping[str, float]) -> Dict[str, float]:
    """Signed current-minus-target weight for every asset in the target."""
    return {asset: snapshot.weight_of(asset) - weight for asset, weight in target.items()}


def classify_urgency(max_deviation: float, volatility: float, bands: UrgencyBands = UrgencyBands()) -> Urgency:
    if max_deviation > bands.high_deviation:
        urgency = Urgency.HIGH
    elif max_deviation > bands.medium_deviation:
        urgency = Urgency.MEDIUM
    else:
        urgency = Urgency.LOW

    # High volatility never leaves a drift at low urgency
    if volatility > bands.volatility_promotion and urgency is Urgency.LOW:
        urgency = Urgency.MEDIUM

    return urgency


class DriftEvaluator:
    def __init__(self, cost_model: Optional[CostModel] = None, bands: Optional[UrgencyBands] = None):
        self.cost_model = cost_model or CostModel()
        self.bands = bands or UrgencyBands()

    def evaluate(
        self,
        portfolio_id: str,
        snapshot: PortfolioSnapshot,
        target: Mapping[str, float],
        min_threshold: float,
        volatility: float = 0.0,
    ) -> Optional[RebalanceOpportunity]:
        """
        Return a rebalance opportunity, or None when every asset is in tolerance.

        Args:
            portfolio_id: Portfolio being evaluated (carried on the result)
            snapshot: Current weights and total value
            target: Target weight per asset
            min_threshold: Max absolute deviation must be strictly above this
            volatility: Ambient market volatility in [0, 1]
        """
        self._validate(snapshot, target, min_threshold, volatility)

        if not target:
            return None

        deviations = calculate_deviations(snapshot, target)
        max_deviation = max(abs(d) for d in deviations.values())

        if max_deviation <= min_threshold:
            return None

        return RebalanceOpportunity(
            portfolio_id=portfolio_id,
            deviations=deviations,
            max_deviation=max_deviation,
            urgency=classify_urgency(max_deviation, volatility, self.bands),
            estimated_impact=self.cost_model.estimate_impact(deviations, snapshot.total_value),
            total_value=snapshot.total_value,
            volatility=volatility,
        )

    @staticmethod
    def _validate(
        snapshot: PortfolioSnapshot,
        target: Mapping[str, float],
        min_threshold: float,
        volatility: float,
    ) -> None:
        if not math.isfinite(snapshot.total_value) or snapshot.total_value < 0:
            raise InvalidPortfolioInput(f"invalid snapshot total_value: {snapshot.total_value}")
        for asset, position in snapshot.assets.items():
            if not math.isfinite(position.weight):
                raise InvalidPortfolioInput(f"invalid snapshot weight for {asset}: {position.weight}")
        for asset, weight in target.items():
            if not math.isfinite(weight) or weight < 0:
                raise InvalidPortfolioInput(f"invalid target weight for {asset}: {weight}")
        if not math.isfinite(min_threshold) or min_threshold < 0:
            raise InvalidPortfolioInput(f"invalid deviation threshold: {min_threshold}")
        if not 0.0 <= volatility <= 1.0:
            raise InvalidPortfolioInput(f"volatility must be in [0, 1], got {volatility}")
