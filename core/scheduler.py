"""
Fleet Rebalancer Core: Rebalancing Scheduler

Orchestrates the rebalancing cycle for every managed portfolio.

Flow per tick (portfolios whose next_eligible_at has passed):
1. Fetch the portfolio snapshot (through the ResilientExecutor)
2. Evaluate drift against the target allocation
3. Apply the cost-benefit gate
4. Submit the rebalance (through the ResilientExecutor)
5. Record the outcome and advance the portfolio's next eligible time

Portfolios are independent; within a tick they are processed concurrently
by a bounded worker pool. One portfolio's failure never aborts the tick.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional

from analytics.performance_report import RebalanceReport, build_rebalance_report
from core.chain_client import ChainClient, MarketConditionsProvider
from core.circuit_breaker import BreakerState
from core.cost_model import CostBenefitGate
from core.drift import DriftEvaluator
from core.exceptions import InvalidPortfolioInput, error_for_kind
from core.models import (
    ExecutionResult,
    PortfolioPhase,
    PortfolioSchedule,
    RebalanceOpportunity,
    RebalanceRecord,
    SubmitResult,
)
from core.resilient_executor import ResilientExecutor
from infra.events import EventDispatcher, EventType
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

SNAPSHOT_OPERATION = "get_snapshot"
SUBMIT_OPERATION = "submit_rebalance"
VOLATILITY_OPERATION = "get_volatility"

OUTCOME_IN_TOLERANCE = "in_tolerance"
OUTCOME_GATED_OUT = "gated_out"
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_ERROR = "error"
OUTCOME_REMOVED = "removed"


@dataclass(frozen=True)
class SchedulerConfig:
    scan_interval_seconds: float = 1800.0
    report_interval_seconds: float = 21600.0
    status_window_seconds: float = 86400.0
    max_concurrency: Optional[int] = None  # None: one worker per due portfolio


@dataclass(frozen=True)
class SchedulerStatus:
    is_running: bool
    active_portfolio_count: int
    total_rebalances: int
    recent_rebalances: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TickSummary:
    due: int = 0
    outcomes: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def opportunities(self) -> int:
        return self.due - self.count(OUTCOME_IN_TOLERANCE) - self.count(OUTCOME_ERROR) - self.count(OUTCOME_REMOVED)

    @property
    def executed(self) -> int:
        return self.succeeded + self.failed

    @property
    def succeeded(self) -> int:
        return self.count(OUTCOME_SUCCEEDED)

    @property
    def failed(self) -> int:
        return self.count(OUTCOME_FAILED)

    @property
    def gated_out(self) -> int:
        return self.count(OUTCOME_GATED_OUT)

    @property
    def skipped(self) -> int:
        return self.count(OUTCOME_IN_TOLERANCE)

    @property
    def errors(self) -> int:
        return self.count(OUTCOME_ERROR)


class RebalancingScheduler:
    """
    Owns the registry of portfolio schedules and runs the recurring scan.

    Dependencies are injected; nothing here is a module-level singleton.
    The registry lock is held only for lookups, inserts, deletes and the
    next-eligible update, never across a call to the chain client.
    """

    def __init__(
        self,
        client: ChainClient,
        executor: Optional[ResilientExecutor] = None,
        metrics: Optional[MetricsRecorder] = None,
        drift_evaluator: Optional[DriftEvaluator] = None,
        gate: Optional[CostBenefitGate] = None,
        market: Optional[MarketConditionsProvider] = None,
        events: Optional[EventDispatcher] = None,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.config = config or SchedulerConfig()
        self._clock = clock
        self.executor = executor or ResilientExecutor(clock=clock)
        self.metrics = metrics or MetricsRecorder(clock=clock)
        self.drift_evaluator = drift_evaluator or DriftEvaluator()
        self.gate = gate or CostBenefitGate()
        self.market = market
        self.events = events or EventDispatcher()

        self._schedules: Dict[str, PortfolioSchedule] = {}
        self._registry_lock = threading.Lock()

        self._state_lock = threading.Lock()
        self._running = False
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[BaseException] = None

        self.executor.add_breaker_listener(self._on_breaker_change)
        logger.info("Initialized RebalancingScheduler (scan=%ss, report=%ss, max_concurrency=%s)",
                    self.config.scan_interval_seconds, self.config.report_interval_seconds,
                    self.config.max_concurrency)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add_portfolio(self, portfolio_id: str, config: Mapping[str, Any]) -> PortfolioSchedule:
        """Register a portfolio. Re-adding an id replaces its schedule."""
        schedule = PortfolioSchedule.from_config(portfolio_id, config, now=self._clock())
        with self._registry_lock:
            replaced = portfolio_id in self._schedules
            self._schedules[portfolio_id] = schedule
        logger.info(
            "%s portfolio %s in rebalancing schedule (strategy=%s, threshold=%.2f%%, interval=%ss)",
            "Replaced" if replaced else "Added", portfolio_id, schedule.strategy,
            schedule.min_deviation_threshold * 100, schedule.interval_seconds,
        )
        return replace(schedule)

    def update_portfolio(self, portfolio_id: str, config: Mapping[str, Any]) -> PortfolioSchedule:
        """Reconfigure a portfolio, keeping its rebalance timestamps."""
        with self._registry_lock:
            current = self._schedules.get(portfolio_id)
            if current is None:
                raise InvalidPortfolioInput(f"unknown portfolio: {portfolio_id}")
            updated = current.reconfigured(config, now=self._clock())
            self._schedules[portfolio_id] = updated
        logger.info("Updated portfolio %s configuration", portfolio_id)
        return replace(updated)

    def remove_portfolio(self, portfolio_id: str) -> bool:
        with self._registry_lock:
            removed = self._schedules.pop(portfolio_id, None)
        if removed is not None:
            logger.info("Removed portfolio from rebalancing schedule: %s", portfolio_id)
        return removed is not None

    def get_portfolio(self, portfolio_id: str) -> Optional[PortfolioSchedule]:
        """Copy of the schedule, safe to inspect outside the lock."""
        with self._registry_lock:
            schedule = self._schedules.get(portfolio_id)
            return replace(schedule) if schedule is not None else None

    def portfolio_ids(self) -> List[str]:
        with self._registry_lock:
            return sorted(self._schedules)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._state_lock:
            return self._running

    def start(self, run_immediately: bool = False) -> None:
        """Start the scan and reporting cadence. No-op if already running."""
        with self._state_lock:
            if self._running:
                return
            self._running = True
            self.last_error = None
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop_event, run_immediately),
                name="RebalancingScheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info("Starting rebalancing scheduler")
        self.events.emit(EventType.SCHEDULER_STARTED)

    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Cancel future ticks and reports. In-flight executions are not
        interrupted; pass ``wait`` to block until the loop thread exits.
        """
        with self._state_lock:
            if not self._running:
                return
            self._running = False
            stop_event, thread = self._stop_event, self._thread
        if stop_event is not None:
            stop_event.set()
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("Stopped rebalancing scheduler")
        self.events.emit(EventType.SCHEDULER_STOPPED)

    def _run_loop(self, stop_event: threading.Event, run_immediately: bool) -> None:
        scan_interval = self.config.scan_interval_seconds
        report_interval = self.config.report_interval_seconds
        now = self._clock()
        next_tick = now if run_immediately else now + scan_interval
        next_report = now + report_interval

        try:
            while not stop_event.is_set():
                now = self._clock()
                if now >= next_tick:
                    self.tick()
                    next_tick += scan_interval
                    if next_tick <= self._clock():
                        next_tick = self._clock() + scan_interval
                if stop_event.is_set():
                    break
                if self._clock() >= next_report:
                    self.generate_report()
                    next_report += report_interval
                    if next_report <= self._clock():
                        next_report = self._clock() + report_interval
                wait_for = min(next_tick, next_report) - self._clock()
                stop_event.wait(max(wait_for, 0.0))
        except Exception as exc:
            # Not a per-portfolio failure: surface it to the thread's fault handler
            logger.critical("Rebalancing scheduler loop crashed: %s", exc, exc_info=True)
            self.last_error = exc
            with self._state_lock:
                self._running = False
            self.events.emit(EventType.SCHEDULER_STOPPED, error=str(exc))
            raise

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> TickSummary:
        """Evaluate every due portfolio once."""
        started = self._clock()
        with self._registry_lock:
            due = [pid for pid, s in self._schedules.items() if s.next_eligible_at <= started]

        summary = TickSummary(due=len(due))
        if not due:
            logger.debug("Rebalancing check: no portfolios due")
            return summary

        logger.info("Checking rebalancing opportunities across %d portfolio(s)", len(due))
        volatility = self._read_volatility()

        workers = min(self.config.max_concurrency or len(due), len(due))
        with ThreadPoolExecutor(max_workers=max(workers, 1), thread_name_prefix="rebalance") as pool:
            futures = {pool.submit(self._process_portfolio, pid, volatility): pid for pid in due}
            for future in as_completed(futures):
                summary.outcomes[futures[future]] = future.result()

        summary.duration_seconds = self._clock() - started
        self.metrics.record_tick_duration(summary.duration_seconds)
        logger.info(
            "Rebalancing check complete: %d due, %d opportunities, %d executed "
            "(%d ok, %d failed), %d gated out, %d errors",
            summary.due, summary.opportunities, summary.executed,
            summary.succeeded, summary.failed, summary.gated_out, summary.errors,
        )
        return summary

    def _read_volatility(self) -> float:
        if self.market is None:
            return 0.0
        try:
            volatility = float(self.market.get_volatility())
        except Exception as exc:
            logger.warning("Market volatility unavailable, assuming 0: %s", exc)
            self.metrics.record_error(VOLATILITY_OPERATION, exc)
            return 0.0
        if volatility != volatility:  # NaN
            return 0.0
        return min(max(volatility, 0.0), 1.0)

    def _process_portfolio(self, portfolio_id: str, volatility: float) -> str:
        schedule = self.get_portfolio(portfolio_id)
        if schedule is None:
            return OUTCOME_REMOVED

        self._set_phase(portfolio_id, PortfolioPhase.EVALUATING)
        try:
            return self._evaluate_and_execute(schedule, volatility)
        except Exception as exc:
            logger.error("Error evaluating portfolio %s: %s", portfolio_id, exc)
            self.metrics.record_error("evaluate", exc, portfolio_id)
            return OUTCOME_ERROR
        finally:
            self._set_phase(portfolio_id, PortfolioPhase.IDLE)

    def _evaluate_and_execute(self, schedule: PortfolioSchedule, volatility: float) -> str:
        portfolio_id = schedule.portfolio_id

        try:
            snapshot = self.executor.execute(
                SNAPSHOT_OPERATION, lambda: self.client.get_snapshot(portfolio_id)
            )
        except Exception as exc:
            logger.error("Snapshot fetch failed for %s: %s", portfolio_id, exc)
            self.metrics.record_error(SNAPSHOT_OPERATION, exc, portfolio_id)
            self.events.emit(EventType.SNAPSHOT_FAILED, portfolio_id, error=str(exc))
            return OUTCOME_ERROR

        opportunity = self.drift_evaluator.evaluate(
            portfolio_id,
            snapshot,
            schedule.target_allocation,
            schedule.min_deviation_threshold,
            volatility,
        )
        if opportunity is None:
            self._set_phase(portfolio_id, PortfolioPhase.SKIPPED)
            self.metrics.record_in_tolerance()
            logger.debug("Portfolio %s within tolerance", portfolio_id)
            return OUTCOME_IN_TOLERANCE

        decision = self.gate.explain(opportunity)
        if not decision.approved:
            self._set_phase(portfolio_id, PortfolioPhase.GATED_OUT)
            self.metrics.record_gate_skip()
            logger.info(
                "Rebalance skipped for %s: costs exceed benefits (improvement %.5f <= required %.5f)",
                portfolio_id, decision.expected_improvement, decision.required_improvement,
            )
            self.events.emit(
                EventType.REBALANCE_GATED_OUT, portfolio_id,
                max_deviation=opportunity.max_deviation,
                urgency=opportunity.urgency.value,
                expected_improvement=decision.expected_improvement,
                required_improvement=decision.required_improvement,
            )
            return OUTCOME_GATED_OUT

        self._set_phase(portfolio_id, PortfolioPhase.EXECUTING)
        logger.info(
            "Executing rebalance for portfolio %s (%s urgency, max deviation %.2f%%)",
            portfolio_id, opportunity.urgency.value, opportunity.max_deviation * 100,
        )
        result = self._submit(schedule)
        self._record_outcome(schedule, opportunity, result)
        return OUTCOME_SUCCEEDED if result.success else OUTCOME_FAILED

    def _submit(self, schedule: PortfolioSchedule) -> ExecutionResult:
        portfolio_id = schedule.portfolio_id
        order = schedule.rebalance_order()

        def submit() -> SubmitResult:
            outcome = self.client.submit_rebalance(portfolio_id, order["new_weights"], order["new_shorts"])
            if not outcome.success:
                raise error_for_kind(
                    outcome.error_kind,
                    outcome.error_message or f"rebalance rejected for {portfolio_id}",
                )
            return outcome

        submitted, result = self.executor.run(SUBMIT_OPERATION, submit)
        if submitted is not None:
            result = replace(result, tx_hash=submitted.tx_hash, gas_used=submitted.gas_used)
        return result

    def _record_outcome(
        self,
        schedule: PortfolioSchedule,
        opportunity: RebalanceOpportunity,
        result: ExecutionResult,
    ) -> None:
        portfolio_id = schedule.portfolio_id
        finished = self._clock()

        self.metrics.record(RebalanceRecord(
            timestamp=finished,
            portfolio_id=portfolio_id,
            strategy=schedule.strategy,
            max_deviation=opportunity.max_deviation,
            urgency=opportunity.urgency,
            impact=opportunity.estimated_impact,
            result=result,
            success=result.success,
        ))

        # Executed rebalances advance whether or not they succeeded
        with self._registry_lock:
            current = self._schedules.get(portfolio_id)
            if current is not None:
                previous = current.next_eligible_at
                next_at = finished + current.interval_seconds
                if next_at <= previous:
                    next_at = previous + current.interval_seconds
                current.next_eligible_at = next_at
                if result.success:
                    current.last_rebalance_at = finished

        if result.success:
            logger.info("Rebalance completed for %s in %.0fms", portfolio_id, result.duration_ms)
            self.events.emit(
                EventType.REBALANCE_COMPLETED, portfolio_id,
                urgency=opportunity.urgency.value,
                max_deviation=opportunity.max_deviation,
                tx_hash=result.tx_hash,
                duration_ms=result.duration_ms,
            )
        else:
            logger.error("Rebalance failed for %s: %s", portfolio_id, result.error)
            self.metrics.record_error(SUBMIT_OPERATION, result.error or "unknown error", portfolio_id)
            self.events.emit(
                EventType.REBALANCE_FAILED, portfolio_id,
                urgency=opportunity.urgency.value,
                error=result.error,
                error_kind=result.error_kind.value if result.error_kind else None,
                attempts=result.attempts,
            )

    def _set_phase(self, portfolio_id: str, phase: PortfolioPhase) -> None:
        with self._registry_lock:
            schedule = self._schedules.get(portfolio_id)
            if schedule is not None:
                schedule.phase = phase

    def _on_breaker_change(self, name: str, old: BreakerState, new: BreakerState) -> None:
        self.metrics.record_breaker_state(name, new)
        event_type = {
            BreakerState.OPEN: EventType.CIRCUIT_OPENED,
            BreakerState.HALF_OPEN: EventType.CIRCUIT_HALF_OPEN,
            BreakerState.CLOSED: EventType.CIRCUIT_CLOSED,
        }[new]
        self.events.emit(event_type, operation=name, previous_state=old.value)

    # ------------------------------------------------------------------
    # Status & reporting
    # ------------------------------------------------------------------

    def get_status(self, window_seconds: Optional[float] = None) -> SchedulerStatus:
        window = self.config.status_window_seconds if window_seconds is None else window_seconds
        with self._registry_lock:
            active = len(self._schedules)
        return SchedulerStatus(
            is_running=self.is_running,
            active_portfolio_count=active,
            total_rebalances=self.metrics.total_rebalances(),
            recent_rebalances=len(self.metrics.recent_since(window)),
        )

    def generate_report(self, window_seconds: Optional[float] = None) -> RebalanceReport:
        window = self.config.status_window_seconds if window_seconds is None else window_seconds
        with self._registry_lock:
            active = len(self._schedules)
        report = build_rebalance_report(
            self.metrics.recent_since(window),
            window_seconds=window,
            active_portfolios=active,
            is_running=self.is_running,
            gate_skips_total=self.metrics.counters().gate_skips,
            unhealthy_operations=self.executor.unhealthy_operations(),
            recent_errors=self.metrics.recent_errors(limit=5),
        )
        logger.info("\n%s", report.format_text())
        self.events.emit(EventType.REPORT_GENERATED, report=report.to_dict())
        return report
