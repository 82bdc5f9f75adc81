"""
Test doubles for the rebalancer's external collaborators.

Use these instead of patching internals: the scheduler and executor take
their clock, sleep, chain client and market provider by injection.
"""

import threading
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from core.chain_client import ChainClient, MarketConditionsProvider
from core.exceptions import ErrorKind
from core.models import AssetPosition, PortfolioSnapshot, SubmitResult


class ManualClock:
    """Monotonic clock advanced explicitly by the test."""

    def __init__(self, start: float = 1000.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


class RecordingSleep:
    """Records requested delays and optionally advances a ManualClock."""

    def __init__(self, clock: Optional[ManualClock] = None):
        self.calls: List[float] = []
        self._clock = clock

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


def make_snapshot(weights: Mapping[str, float], total_value: float = 10_000.0) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        total_value=total_value,
        assets={a: AssetPosition(weight=w, value=w * total_value) for a, w in weights.items()},
    )


SnapshotSource = Union[PortfolioSnapshot, BaseException, Callable[[], PortfolioSnapshot]]
SubmitSource = Union[SubmitResult, BaseException]


class FakeChainClient(ChainClient):
    """
    In-memory chain client.

    Snapshots are set per portfolio; submit outcomes are consumed from a
    per-portfolio queue (the last outcome repeats once the queue drains).
    """

    def __init__(self):
        self.snapshots: Dict[str, SnapshotSource] = {}
        self.submit_outcomes: Dict[str, List[SubmitSource]] = {}
        self.snapshot_calls: List[str] = []
        self.submissions: List[Tuple[str, Dict[str, float], Dict[str, bool]]] = []
        self._lock = threading.Lock()

    def set_snapshot(self, portfolio_id: str, snapshot: SnapshotSource) -> None:
        self.snapshots[portfolio_id] = snapshot

    def queue_submit(self, portfolio_id: str, *outcomes: SubmitSource) -> None:
        self.submit_outcomes.setdefault(portfolio_id, []).extend(outcomes)

    def submit_count(self, portfolio_id: str) -> int:
        with self._lock:
            return sum(1 for pid, _, _ in self.submissions if pid == portfolio_id)

    def get_snapshot(self, portfolio_id: str) -> PortfolioSnapshot:
        with self._lock:
            self.snapshot_calls.append(portfolio_id)
        source = self.snapshots.get(portfolio_id)
        if source is None:
            raise KeyError(f"no snapshot configured for {portfolio_id}")
        if isinstance(source, BaseException):
            raise source
        if callable(source):
            return source()
        return source

    def submit_rebalance(self, portfolio_id, new_weights, new_shorts) -> SubmitResult:
        with self._lock:
            self.submissions.append((portfolio_id, dict(new_weights), dict(new_shorts)))
            queue = self.submit_outcomes.get(portfolio_id) or [SubmitResult(success=True, tx_hash="0xabc", gas_used=21000)]
            outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def failed_submit(kind: ErrorKind = ErrorKind.FATAL, message: str = "execution reverted") -> SubmitResult:
    return SubmitResult(success=False, error_kind=kind, error_message=message)


class FakeMarket(MarketConditionsProvider):
    def __init__(self, volatility: Union[float, BaseException] = 0.0):
        self.volatility = volatility
        self.calls = 0

    def get_volatility(self) -> float:
        self.calls += 1
        if isinstance(self.volatility, BaseException):
            raise self.volatility
        return self.volatility
