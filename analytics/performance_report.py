"""
Fleet Rebalancer Analytics: Rebalancing Performance Report

Summarises the rebalance history over a window:
1. Volume: attempts, successes, failures, success rate
2. Drift: average and worst max deviation, urgency breakdown
3. Cost: traded volume, estimated cost and gas of successful rebalances
4. Health: operations whose circuit breaker is not closed, recent errors

Outputs:
- Dict (machine-readable, served by the health endpoint)
- Plain text (logged on the reporting cadence)
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from core.models import RebalanceRecord
from infra.metrics import ErrorEntry

logger = logging.getLogger(__name__)


@dataclass
class RebalanceReport:
    """Rebalancing performance over one reporting window"""

    generated_at: datetime
    window_seconds: float

    # Volume
    total_rebalances: int
    successful: int
    failed: int
    success_rate: float

    # Fleet
    active_portfolios: int
    is_running: bool

    # Drift
    avg_max_deviation: float = 0.0
    worst_max_deviation: float = 0.0
    urgency_breakdown: Dict[str, int] = field(default_factory=dict)

    # Cost
    traded_volume: float = 0.0
    estimated_cost: float = 0.0
    gas_used: int = 0

    # Health
    gate_skips_total: int = 0
    unhealthy_operations: List[str] = field(default_factory=list)
    recent_errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["generated_at"] = self.generated_at.isoformat()
        return d

    def format_text(self) -> str:
        hours = self.window_seconds / 3600.0
        lines = ["REBALANCING PERFORMANCE REPORT"]
        lines.append("=" * 48)
        lines.append(f"Period: last {hours:g} hours")
        lines.append(f"Total rebalances: {self.total_rebalances}")
        lines.append(f"Success rate: {self.success_rate * 100:.1f}%")
        lines.append(f"Active portfolios: {self.active_portfolios}")
        lines.append(f"Scheduler status: {'Active' if self.is_running else 'Stopped'}")

        if self.total_rebalances:
            lines.append(f"Average max deviation: {self.avg_max_deviation * 100:.2f}%")
            lines.append(f"Worst max deviation: {self.worst_max_deviation * 100:.2f}%")
            breakdown = ", ".join(f"{k}={v}" for k, v in sorted(self.urgency_breakdown.items()))
            lines.append(f"Urgency breakdown: {breakdown}")
            lines.append(f"Traded volume: {self.traded_volume:,.2f} (est. cost {self.estimated_cost:,.2f})")
            lines.append(f"Gas used: {self.gas_used:,}")

        lines.append(f"Gate skips (lifetime): {self.gate_skips_total}")
        if self.unhealthy_operations:
            lines.append(f"Unhealthy operations: {', '.join(self.unhealthy_operations)}")
        for err in self.recent_errors:
            lines.append(f"  ! {err['operation']} [{err['error_type']}] {err['portfolio_id'] or '-'}: {err['message']}")
        lines.append("=" * 48)
        return "\n".join(lines)


def build_rebalance_report(
    records: List[RebalanceRecord],
    window_seconds: float,
    active_portfolios: int,
    is_running: bool,
    gate_skips_total: int = 0,
    unhealthy_operations: Optional[List[str]] = None,
    recent_errors: Optional[List[ErrorEntry]] = None,
    generated_at: Optional[datetime] = None,
) -> RebalanceReport:
    """
    Build a report from records already filtered to the window.

    Args:
        records: Rebalance records within the window (any order)
        window_seconds: Window length the records were selected with
        active_portfolios: Registry size at report time
        is_running: Whether the scheduler loop is active
        gate_skips_total: Lifetime count of gate refusals
        unhealthy_operations: Operation names whose breaker is not closed
        recent_errors: Newest errors from the metrics error log
    """
    successful = [r for r in records if r.success]
    total = len(records)

    report = RebalanceReport(
        generated_at=generated_at or datetime.now(timezone.utc),
        window_seconds=window_seconds,
        total_rebalances=total,
        successful=len(successful),
        failed=total - len(successful),
        success_rate=(len(successful) / total) if total else 0.0,
        active_portfolios=active_portfolios,
        is_running=is_running,
        gate_skips_total=gate_skips_total,
        unhealthy_operations=list(unhealthy_operations or []),
        recent_errors=[e.to_dict() for e in (recent_errors or [])],
    )

    if total:
        deviations = [r.max_deviation for r in records]
        report.avg_max_deviation = sum(deviations) / total
        report.worst_max_deviation = max(deviations)
        report.urgency_breakdown = dict(Counter(r.urgency.value for r in records))
        report.traded_volume = sum(r.impact.trade_volume for r in successful)
        report.estimated_cost = sum(r.impact.estimated_cost for r in successful)
        report.gas_used = sum(int(r.result.gas_used or 0) for r in successful)

    return report
