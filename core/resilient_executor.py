"""
Fleet Rebalancer Core: Resilient Executor

Wraps calls to external collaborators (portfolio snapshot reads, rebalance
submissions) with:
- Bounded retries with exponential backoff and jitter
- A hard per-attempt timeout
- One circuit breaker per operation name, shared across all callers

Retries absorb transient per-call noise; the breaker stops hammering a
dependency that is down. The executor knows nothing about portfolios.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from core.circuit_breaker import (
    BreakerConfig,
    BreakerState,
    CircuitBreaker,
    CircuitBreakerSnapshot,
    StateListener,
)
from core.exceptions import (
    CircuitOpenError,
    ErrorKind,
    ExecutionTimeoutError,
    classify_error,
)
from core.models import ExecutionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3  # Total attempts, including the first
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_seconds: float = 1.0
    timeout_seconds: Optional[float] = 30.0

    def backoff_delay(self, attempt: int, rng: random.Random) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        # Jitter drawn from [0, jitter_seconds)
        return delay + rng.random() * self.jitter_seconds


@dataclass(frozen=True)
class ExecuteOptions:
    """Per-call overrides of the executor defaults."""
    max_retries: Optional[int] = None
    base_delay_seconds: Optional[float] = None
    max_delay_seconds: Optional[float] = None
    timeout_seconds: Optional[float] = None
    classifier: Optional[Callable[[BaseException], ErrorKind]] = None

    def apply(self, policy: RetryPolicy) -> RetryPolicy:
        overrides = {
            key: value
            for key, value in (
                ("max_retries", self.max_retries),
                ("base_delay_seconds", self.base_delay_seconds),
                ("max_delay_seconds", self.max_delay_seconds),
                ("timeout_seconds", self.timeout_seconds),
            )
            if value is not None
        }
        return replace(policy, **overrides) if overrides else policy


class _AttemptOutcome:
    __slots__ = ("value", "error", "done")

    def __init__(self) -> None:
        self.value: Any = None
        self.error: Optional[BaseException] = None
        self.done = False


class ResilientExecutor:
    """
    Execute callables against flaky dependencies.

    Usage:
        executor = ResilientExecutor()
        snapshot = executor.execute("get_snapshot", lambda: client.get_snapshot(pid))

    Clock, sleep and RNG are injectable so tests run without real waiting.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        breaker_config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        on_breaker_change: Optional[StateListener] = None,
    ):
        self.policy = policy or RetryPolicy()
        self.breaker_config = breaker_config or BreakerConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._breaker_listeners: List[StateListener] = []
        if on_breaker_change is not None:
            self._breaker_listeners.append(on_breaker_change)
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Breakers
    # ------------------------------------------------------------------

    def add_breaker_listener(self, listener: StateListener) -> None:
        with self._breakers_lock:
            self._breaker_listeners.append(listener)

    def _dispatch_breaker_change(self, name: str, old: BreakerState, new: BreakerState) -> None:
        with self._breakers_lock:
            listeners = list(self._breaker_listeners)
        for listener in listeners:
            listener(name, old, new)

    def breaker(self, operation_name: str) -> CircuitBreaker:
        with self._breakers_lock:
            breaker = self._breakers.get(operation_name)
            if breaker is None:
                breaker = CircuitBreaker(
                    operation_name,
                    config=self.breaker_config,
                    clock=self._clock,
                    on_state_change=self._dispatch_breaker_change,
                )
                self._breakers[operation_name] = breaker
            return breaker

    def breaker_snapshots(self) -> Dict[str, CircuitBreakerSnapshot]:
        with self._breakers_lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}

    def unhealthy_operations(self) -> List[str]:
        """Operations whose breaker is not closed."""
        return sorted(
            name for name, snap in self.breaker_snapshots().items()
            if snap.state is not BreakerState.CLOSED
        )

    def reset_breaker(self, operation_name: str) -> bool:
        with self._breakers_lock:
            breaker = self._breakers.get(operation_name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        operation_name: str,
        fn: Callable[[], T],
        options: Optional[ExecuteOptions] = None,
    ) -> T:
        """
        Run ``fn`` under the retry policy and the operation's circuit breaker.

        Returns:
            Whatever ``fn`` returns on the first successful attempt

        Raises:
            CircuitOpenError: breaker open (``fn`` not called for that attempt)
            The last retryable error once attempts are exhausted or the
            breaker opens, or the first fatal error immediately.
        """
        value, _ = self._run(operation_name, fn, options)
        return value

    def run(
        self,
        operation_name: str,
        fn: Callable[[], T],
        options: Optional[ExecuteOptions] = None,
    ) -> Tuple[Optional[T], ExecutionResult]:
        """
        Like ``execute`` but never raises for call failures; the outcome is
        reported as an ExecutionResult alongside the value (None on failure).
        """
        start = self._clock()
        try:
            return self._run(operation_name, fn, options)
        except CircuitOpenError as exc:
            return None, ExecutionResult(
                success=False,
                duration_ms=(self._clock() - start) * 1000.0,
                error_kind=ErrorKind.CIRCUIT_OPEN,
                error=str(exc),
                attempts=getattr(exc, "attempts", 0),
            )
        except Exception as exc:
            kind = getattr(exc, "_executor_kind", None) or classify_error(exc)
            return None, ExecutionResult(
                success=False,
                duration_ms=(self._clock() - start) * 1000.0,
                error_kind=kind,
                error=str(exc),
                attempts=getattr(exc, "attempts", 0),
            )

    def _run(
        self,
        operation_name: str,
        fn: Callable[[], T],
        options: Optional[ExecuteOptions],
    ) -> Tuple[T, ExecutionResult]:
        options = options or ExecuteOptions()
        policy = options.apply(self.policy)
        classifier = options.classifier or classify_error
        breaker = self.breaker(operation_name)
        max_attempts = max(1, int(policy.max_retries))
        start = self._clock()

        attempt = 0
        while True:
            attempt += 1
            try:
                breaker.before_call()
            except CircuitOpenError as exc:
                exc.attempts = attempt - 1  # type: ignore[attr-defined]
                logger.warning("%s rejected: %s", operation_name, exc)
                raise

            try:
                value = self._call_with_timeout(operation_name, fn, policy.timeout_seconds)
            except Exception as exc:
                kind = classifier(exc)
                if kind is not ErrorKind.RETRYABLE:
                    # Fatal errors are per call and never count against the breaker
                    breaker.release()
                    if kind is ErrorKind.CIRCUIT_OPEN:
                        exc.attempts = attempt  # type: ignore[attr-defined]
                        raise
                    logger.error(
                        "%s failed with non-retryable error on attempt %d: %s",
                        operation_name, attempt, exc,
                    )
                    self._tag(exc, ErrorKind.FATAL, attempt)
                    raise

                breaker.record_failure()
                logger.warning(
                    "%s failed (attempt %d/%d): %s", operation_name, attempt, max_attempts, exc,
                )
                if breaker.state is BreakerState.OPEN:
                    logger.error("%s circuit opened; abandoning remaining attempts", operation_name)
                    self._tag(exc, ErrorKind.RETRYABLE, attempt)
                    raise
                if attempt >= max_attempts:
                    logger.error("All %d attempts exhausted for %s", max_attempts, operation_name)
                    self._tag(exc, ErrorKind.RETRYABLE, attempt)
                    raise

                delay = policy.backoff_delay(attempt, self._rng)
                logger.info("Retrying %s in %.1fs...", operation_name, delay)
                self._sleep(delay)
                continue

            breaker.record_success()
            result = ExecutionResult(
                success=True,
                duration_ms=(self._clock() - start) * 1000.0,
                attempts=attempt,
            )
            return value, result

    @staticmethod
    def _tag(exc: BaseException, kind: ErrorKind, attempts: int) -> None:
        try:
            exc._executor_kind = kind  # type: ignore[attr-defined]
            exc.attempts = attempts  # type: ignore[attr-defined]
        except AttributeError:  # pragma: no cover - exceptions with __slots__
            pass

    @staticmethod
    def _call_with_timeout(operation_name: str, fn: Callable[[], T], timeout: Optional[float]) -> T:
        """
        Run one attempt. With a timeout the call runs in a daemon thread; if it
        does not finish in time the attempt fails and the thread is abandoned.
        """
        if timeout is None or timeout <= 0:
            return fn()

        outcome = _AttemptOutcome()

        def target() -> None:
            try:
                outcome.value = fn()
            except BaseException as exc:  # re-raised in the caller thread
                outcome.error = exc
            finally:
                outcome.done = True

        worker = threading.Thread(target=target, name=f"attempt-{operation_name}", daemon=True)
        worker.start()
        worker.join(timeout)

        if not outcome.done:
            raise ExecutionTimeoutError(operation_name, timeout)
        if outcome.error is not None:
            raise outcome.error
        return outcome.value
