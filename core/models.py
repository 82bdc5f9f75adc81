"""
Fleet Rebalancer Core: Data Model

Dataclasses shared by the drift evaluator, cost gate, executor, scheduler and
metrics recorder. Timestamps named ``*_at`` / ``timestamp`` are monotonic
clock seconds; ``recorded_at`` is UTC wall clock for reporting.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from core.exceptions import ErrorKind, InvalidPortfolioInput

DEFAULT_MIN_DEVIATION_THRESHOLD = 0.05
DEFAULT_INTERVAL_SECONDS = 3600.0


class Urgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PortfolioPhase(Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    SKIPPED = "skipped"
    GATED_OUT = "gated_out"
    EXECUTING = "executing"


@dataclass(frozen=True)
class AssetPosition:
    weight: float
    value: float = 0.0


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Current state of a portfolio as reported by the chain client."""
    total_value: float
    assets: Dict[str, AssetPosition] = field(default_factory=dict)

    def weight_of(self, asset: str) -> float:
        position = self.assets.get(asset)
        return position.weight if position is not None else 0.0

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PortfolioSnapshot":
        """Build from ``{"totalValue"|"total_value": x, "assets": {sym: {"weight", "value"}}}``."""
        total = payload.get("total_value", payload.get("totalValue"))
        if total is None:
            raise InvalidPortfolioInput("snapshot is missing total_value")
        assets_raw = payload.get("assets") or {}
        if not isinstance(assets_raw, Mapping):
            raise InvalidPortfolioInput("snapshot assets must be a mapping")
        assets: Dict[str, AssetPosition] = {}
        for symbol, info in assets_raw.items():
            if isinstance(info, Mapping):
                assets[str(symbol)] = AssetPosition(
                    weight=float(info.get("weight", 0.0)),
                    value=float(info.get("value", 0.0)),
                )
            else:
                assets[str(symbol)] = AssetPosition(weight=float(info))
        return cls(total_value=float(total), assets=assets)


@dataclass(frozen=True)
class RebalanceImpact:
    trade_volume: float
    estimated_cost: float
    expected_improvement: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class RebalanceOpportunity:
    """Derived per evaluation; never persisted."""
    portfolio_id: str
    deviations: Dict[str, float]
    max_deviation: float
    urgency: Urgency
    estimated_impact: RebalanceImpact
    total_value: float = 0.0
    volatility: float = 0.0


@dataclass(frozen=True)
class SubmitResult:
    """Outcome reported by the chain client for a rebalance submission."""
    success: bool
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    duration_ms: float
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    attempts: int = 0
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["error_kind"] = self.error_kind.value if self.error_kind else None
        return d


@dataclass(frozen=True)
class RebalanceRecord:
    """One attempted rebalance. Immutable once appended to the history."""
    timestamp: float
    portfolio_id: str
    max_deviation: float
    urgency: Urgency
    impact: RebalanceImpact
    result: ExecutionResult
    success: bool
    strategy: Optional[str] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "recorded_at": self.recorded_at.isoformat(),
            "portfolio_id": self.portfolio_id,
            "strategy": self.strategy,
            "max_deviation": self.max_deviation,
            "urgency": self.urgency.value,
            "impact": self.impact.to_dict(),
            "result": self.result.to_dict(),
            "success": self.success,
        }


# Config keys accepted by PortfolioSchedule.from_config, including the
# camelCase names used by older bot configs.
_CONFIG_ALIASES = {
    "target_allocation": ("target_allocation", "targetAllocation"),
    "min_deviation_threshold": (
        "min_deviation_threshold", "minDeviationThreshold", "minRebalanceThreshold",
    ),
    "risk_tolerance": ("risk_tolerance", "riskTolerance"),
    "strategy": ("strategy",),
    "short_assets": ("short_assets", "shortAssets"),
    "start_delay_seconds": ("start_delay_seconds",),
}


def _lookup(config: Mapping[str, Any], key: str) -> Any:
    for alias in _CONFIG_ALIASES[key]:
        if alias in config and config[alias] is not None:
            return config[alias]
    return None


_INTERVAL_KEYS = ("interval_seconds", "intervalMillis", "interval")


def _interval_from_config(config: Mapping[str, Any]) -> Optional[float]:
    if config.get("interval_seconds") is not None:
        return float(config["interval_seconds"])
    for millis_key in _INTERVAL_KEYS[1:]:
        if config.get(millis_key) is not None:
            return float(config[millis_key]) / 1000.0
    return None


def _validate_allocation(target: Mapping[str, Any]) -> Dict[str, float]:
    allocation: Dict[str, float] = {}
    for asset, weight in target.items():
        try:
            value = float(weight)
        except (TypeError, ValueError) as exc:
            raise InvalidPortfolioInput(f"target weight for {asset} is not a number: {weight!r}") from exc
        if not math.isfinite(value) or value < 0:
            raise InvalidPortfolioInput(f"target weight for {asset} must be a finite non-negative number, got {value}")
        allocation[str(asset)] = value
    return allocation


@dataclass
class PortfolioSchedule:
    """
    Scheduling state for one managed portfolio.

    Only the scheduler mutates ``last_rebalance_at`` / ``next_eligible_at``.
    Target weights are not normalised here; the drift evaluator compares them
    against the snapshot as given.
    """
    portfolio_id: str
    target_allocation: Dict[str, float]
    min_deviation_threshold: float = DEFAULT_MIN_DEVIATION_THRESHOLD
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    risk_tolerance: str = "medium"
    strategy: Optional[str] = None
    short_assets: FrozenSet[str] = frozenset()
    last_rebalance_at: Optional[float] = None
    next_eligible_at: float = 0.0
    phase: PortfolioPhase = PortfolioPhase.IDLE

    def __post_init__(self) -> None:
        if not self.portfolio_id:
            raise InvalidPortfolioInput("portfolio_id must not be empty")
        self.target_allocation = _validate_allocation(self.target_allocation)
        if not 0 <= self.min_deviation_threshold < 1:
            raise InvalidPortfolioInput(
                f"min_deviation_threshold must be in [0, 1), got {self.min_deviation_threshold}"
            )
        if self.interval_seconds <= 0:
            raise InvalidPortfolioInput(f"interval_seconds must be positive, got {self.interval_seconds}")
        unknown_shorts = set(self.short_assets) - set(self.target_allocation)
        if unknown_shorts:
            raise InvalidPortfolioInput(
                f"short_assets not in target allocation: {sorted(unknown_shorts)}"
            )

    @classmethod
    def from_config(cls, portfolio_id: str, config: Mapping[str, Any], now: float) -> "PortfolioSchedule":
        """Build a schedule from a config mapping. Unrecognised keys are ignored."""
        config = config or {}
        target = _lookup(config, "target_allocation")
        if not isinstance(target, Mapping) or not target:
            raise InvalidPortfolioInput(f"{portfolio_id}: target_allocation is required")

        threshold = _lookup(config, "min_deviation_threshold")
        interval = _interval_from_config(config)
        start_delay = _lookup(config, "start_delay_seconds")
        shorts = _lookup(config, "short_assets") or ()

        return cls(
            portfolio_id=portfolio_id,
            target_allocation=dict(target),
            min_deviation_threshold=(
                float(threshold) if threshold is not None else DEFAULT_MIN_DEVIATION_THRESHOLD
            ),
            interval_seconds=interval if interval is not None else DEFAULT_INTERVAL_SECONDS,
            risk_tolerance=str(_lookup(config, "risk_tolerance") or "medium"),
            strategy=_lookup(config, "strategy"),
            short_assets=frozenset(str(s) for s in shorts),
            next_eligible_at=now + float(start_delay or 0.0),
        )

    def reconfigured(self, config: Mapping[str, Any], now: float) -> "PortfolioSchedule":
        """Copy with ``config`` applied on top; timing and phase carry over."""
        merged: Dict[str, Any] = {
            "target_allocation": self.target_allocation,
            "min_deviation_threshold": self.min_deviation_threshold,
            "interval_seconds": self.interval_seconds,
            "risk_tolerance": self.risk_tolerance,
            "strategy": self.strategy,
            "short_assets": sorted(self.short_assets),
        }
        config = config or {}
        for key, aliases in _CONFIG_ALIASES.items():
            if any(alias in config for alias in aliases):
                merged.pop(key, None)
        if any(key in config for key in _INTERVAL_KEYS):
            merged.pop("interval_seconds", None)
        merged.update(config)

        updated = PortfolioSchedule.from_config(self.portfolio_id, merged, now=now)
        updated.last_rebalance_at = self.last_rebalance_at
        updated.next_eligible_at = self.next_eligible_at
        updated.phase = self.phase
        return updated

    def rebalance_order(self) -> Dict[str, Any]:
        """Weights and short flags submitted to the chain client."""
        weights = dict(self.target_allocation)
        shorts = {asset: asset in self.short_assets for asset in weights}
        return {"new_weights": weights, "new_shorts": shorts}
