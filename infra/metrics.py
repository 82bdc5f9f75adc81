"""Rebalance history, aggregate counters and Prometheus collectors."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

from core.circuit_breaker import BreakerState
from core.models import RebalanceRecord

logger = logging.getLogger(__name__)

_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate_limit", "too many requests")

_BREAKER_STATE_VALUES = {
    BreakerState.CLOSED: 0,
    BreakerState.HALF_OPEN: 1,
    BreakerState.OPEN: 2,
}


@dataclass(frozen=True)
class ErrorEntry:
    timestamp: float
    portfolio_id: Optional[str]
    operation: str
    error_type: str
    message: str
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "recorded_at": self.recorded_at.isoformat(),
            "portfolio_id": self.portfolio_id,
            "operation": self.operation,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class RebalanceCounters:
    """Lifetime totals; unaffected by history pruning."""
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    gate_skips: int = 0
    in_tolerance: int = 0
    snapshot_failures: int = 0
    trade_volume: float = 0.0
    gas_used: int = 0

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0


class MetricsRecorder:
    """
    Append-only history of attempted rebalances plus aggregate counters.

    Records are never mutated. Retention drops only the oldest entries, by
    count (``max_records``) and optionally by age (``retention_seconds``).
    Prometheus collectors live on a per-instance registry so several recorders
    (tests, multiple fleets) can coexist in one process.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_records: int = 10_000,
        retention_seconds: Optional[float] = None,
        max_errors: int = 100,
        enabled: bool = False,
        port: int = 9100,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Deque[RebalanceRecord] = deque(maxlen=max_records)
        self._errors: Deque[ErrorEntry] = deque(maxlen=max_errors)
        self._retention_seconds = retention_seconds
        self._counters = RebalanceCounters()

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._rebalance_counter = Counter(
            "rebalancer_rebalances_total",
            "Rebalance attempts by outcome",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._gate_counter = Counter(
            "rebalancer_gate_skips_total",
            "Opportunities refused by the cost-benefit gate",
            registry=self.registry,
        )
        self._error_counter = Counter(
            "rebalancer_errors_total",
            "Errors by operation and normalized type",
            labelnames=("operation", "error_type"),
            registry=self.registry,
        )
        self._duration_summary = Summary(
            "rebalancer_execution_duration_seconds",
            "Duration of rebalance submissions including retries",
            registry=self.registry,
        )
        self._breaker_gauge = Gauge(
            "rebalancer_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            labelnames=("operation",),
            registry=self.registry,
        )
        self._tick_summary = Summary(
            "rebalancer_tick_duration_seconds",
            "Duration of a scheduler tick",
            registry=self.registry,
        )

    def start(self) -> None:
        """Start the Prometheus HTTP exporter when enabled."""
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, entry: RebalanceRecord) -> None:
        with self._lock:
            self._records.append(entry)
            self._counters.attempts += 1
            if entry.success:
                self._counters.successes += 1
                self._counters.trade_volume += entry.impact.trade_volume
            else:
                self._counters.failures += 1
            if entry.result.gas_used:
                self._counters.gas_used += int(entry.result.gas_used)
            self._prune_locked()

        self._rebalance_counter.labels(outcome="success" if entry.success else "failure").inc()
        self._duration_summary.observe(entry.result.duration_ms / 1000.0)

    def record_gate_skip(self) -> None:
        with self._lock:
            self._counters.gate_skips += 1
        self._gate_counter.inc()

    def record_in_tolerance(self) -> None:
        with self._lock:
            self._counters.in_tolerance += 1

    def record_error(
        self,
        operation: str,
        error: Union[BaseException, str],
        portfolio_id: Optional[str] = None,
    ) -> None:
        type_name = type(error).__name__ if isinstance(error, BaseException) else ""
        error_type = self._normalize_error_type(f"{type_name} {error}")
        entry = ErrorEntry(
            timestamp=self._clock(),
            portfolio_id=portfolio_id,
            operation=operation,
            error_type=error_type,
            message=str(error),
        )
        with self._lock:
            self._errors.append(entry)
            if operation == "get_snapshot":
                self._counters.snapshot_failures += 1
        self._error_counter.labels(operation=operation, error_type=error_type).inc()

    def record_breaker_state(self, operation: str, state: BreakerState) -> None:
        self._breaker_gauge.labels(operation=operation).set(_BREAKER_STATE_VALUES[state])

    def record_tick_duration(self, duration_seconds: float) -> None:
        self._tick_summary.observe(max(duration_seconds, 0.0))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent_since(self, window_seconds: float) -> List[RebalanceRecord]:
        """Records whose timestamp falls within the last ``window_seconds``."""
        cutoff = self._clock() - window_seconds
        with self._lock:
            return [r for r in self._records if r.timestamp >= cutoff]

    def success_rate(self, window_seconds: float) -> float:
        recent = self.recent_since(window_seconds)
        if not recent:
            return 0.0
        return sum(1 for r in recent if r.success) / len(recent)

    def history(self) -> List[RebalanceRecord]:
        with self._lock:
            return list(self._records)

    def total_rebalances(self) -> int:
        with self._lock:
            return self._counters.attempts

    def counters(self) -> RebalanceCounters:
        with self._lock:
            return RebalanceCounters(**vars(self._counters))

    def recent_errors(self, limit: int = 10) -> List[ErrorEntry]:
        """Newest first."""
        with self._lock:
            errors = list(self._errors)
        return errors[-limit:][::-1]

    def _prune_locked(self) -> None:
        if self._retention_seconds is None:
            return
        cutoff = self._clock() - self._retention_seconds
        while self._records and self._records[0].timestamp < cutoff:
            self._records.popleft()

    @staticmethod
    def _normalize_error_type(error_type: str) -> str:
        """Normalize error types to keep label cardinality bounded"""
        error_lower = error_type.lower()

        if "circuit" in error_lower:
            return "circuit_open"
        elif "timeout" in error_lower or "timed out" in error_lower:
            return "timeout"
        elif any(marker in error_lower for marker in _RATE_LIMIT_MARKERS):
            return "rate_limit"
        elif "nonce" in error_lower or "underpriced" in error_lower or "replacement" in error_lower:
            return "tx_conflict"
        elif "401" in error_lower or "403" in error_lower or "auth" in error_lower:
            return "auth_error"
        elif "500" in error_lower or "502" in error_lower or "503" in error_lower:
            return "server_error"
        elif "connection" in error_lower or "network" in error_lower:
            return "connection_error"
        elif "invalid" in error_lower or "mismatch" in error_lower:
            return "invalid_input"
        else:
            return "other"


__all__ = ["MetricsRecorder", "RebalanceCounters", "ErrorEntry"]
