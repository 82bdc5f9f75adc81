"""
Fleet Rebalancer Core: Circuit Breaker

Three-state breaker (CLOSED -> OPEN -> HALF_OPEN -> CLOSED/OPEN) guarding one
named outbound operation. One instance is shared by every portfolio calling
that operation, so every transition happens under the instance lock.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    cooldown_seconds: float = 60.0
    failure_window_seconds: Optional[float] = None  # None: count failures regardless of age
    half_open_max_calls: Optional[int] = None  # None: success_threshold

    @property
    def half_open_limit(self) -> int:
        limit = self.half_open_max_calls if self.half_open_max_calls is not None else self.success_threshold
        return max(1, int(limit))


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    """Read-only view of a breaker for diagnostics."""
    name: str
    state: BreakerState
    consecutive_failures: int
    consecutive_successes: int
    open_until: Optional[float]
    trips: int

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "open_until": self.open_until,
            "trips": self.trips,
        }


StateListener = Callable[[str, BreakerState, BreakerState], None]


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateListener] = None,
    ):
        self.name = name
        self.config = config or BreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()

        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._first_failure_at: Optional[float] = None
        self._open_until: Optional[float] = None
        self._half_open_in_flight = 0
        self._trips = 0

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        """
        Admit or reject a call. Every admitted call ends with
        ``record_success``, ``record_failure`` or ``release``.

        While HALF_OPEN at most ``half_open_limit`` calls are in flight; the
        rest are rejected until the trial calls report back.

        Raises:
            CircuitOpenError: breaker is open and its cooldown has not elapsed,
                or every half-open trial slot is taken
        """
        transition = None
        with self._lock:
            if self._state is BreakerState.OPEN:
                now = self._clock()
                if self._open_until is None or now < self._open_until:
                    retry_in = (self._open_until or now) - now
                    raise CircuitOpenError(self.name, retry_in)
                transition = self._transition(BreakerState.HALF_OPEN)
                self._consecutive_successes = 0
                self._half_open_in_flight = 0
            if self._state is BreakerState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.half_open_limit:
                    raise CircuitOpenError(self.name, 0.0)
                self._half_open_in_flight += 1
        self._notify(transition)

    def release(self) -> None:
        """End an admitted call whose outcome says nothing about the dependency."""
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._release_trial()

    def record_success(self) -> None:
        transition = None
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._release_trial()
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.config.success_threshold:
                    transition = self._transition(BreakerState.CLOSED)
                    self._reset_counters()
            elif self._state is BreakerState.CLOSED:
                self._consecutive_failures = 0
                self._first_failure_at = None
            # Late success from a call admitted before the breaker opened: keep OPEN
        self._notify(transition)

    def record_failure(self) -> None:
        transition = None
        with self._lock:
            now = self._clock()
            if self._state is BreakerState.HALF_OPEN:
                transition = self._trip(now)
            elif self._state is BreakerState.CLOSED:
                window = self.config.failure_window_seconds
                if (
                    window is not None
                    and self._first_failure_at is not None
                    and now - self._first_failure_at > window
                ):
                    self._consecutive_failures = 0
                if self._consecutive_failures == 0:
                    self._first_failure_at = now
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.config.failure_threshold:
                    transition = self._trip(now)
        self._notify(transition)

    def reset(self) -> None:
        """Force the breaker closed (operator recovery)."""
        transition = None
        with self._lock:
            if self._state is not BreakerState.CLOSED:
                transition = self._transition(BreakerState.CLOSED)
            self._reset_counters()
        self._notify(transition)

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            return CircuitBreakerSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
                open_until=self._open_until,
                trips=self._trips,
            )

    def _release_trial(self) -> None:
        self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def _trip(self, now: float):
        self._open_until = now + self.config.cooldown_seconds
        self._consecutive_successes = 0
        self._half_open_in_flight = 0
        self._trips += 1
        return self._transition(BreakerState.OPEN)

    def _reset_counters(self) -> None:
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._first_failure_at = None
        self._open_until = None
        self._half_open_in_flight = 0

    def _transition(self, new_state: BreakerState):
        old_state = self._state
        self._state = new_state
        return (old_state, new_state)

    def _notify(self, transition) -> None:
        # Listeners run outside the lock
        if transition is None:
            return
        old_state, new_state = transition
        if new_state is BreakerState.OPEN:
            logger.warning(
                "Circuit breaker %s: %s -> OPEN for %.0fs",
                self.name, old_state.value, self.config.cooldown_seconds,
            )
        else:
            logger.info("Circuit breaker %s: %s -> %s", self.name, old_state.value, new_state.value)
        if self._on_state_change is not None:
            try:
                self._on_state_change(self.name, old_state, new_state)
            except Exception as exc:
                logger.error("Circuit breaker listener failed for %s: %s", self.name, exc)
