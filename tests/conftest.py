"""
Pytest configuration and fixtures for the fleet rebalancer tests.

Everything time-dependent runs on a ManualClock; nothing here sleeps.
"""
import random

import pytest

from core.circuit_breaker import BreakerConfig
from core.resilient_executor import ResilientExecutor, RetryPolicy
from infra.events import EventDispatcher
from infra.metrics import MetricsRecorder
from tests.helpers import FakeChainClient, ManualClock, RecordingSleep


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)


@pytest.fixture
def executor(clock, sleeper):
    """Executor without per-attempt timeout threads, seeded jitter."""
    return ResilientExecutor(
        policy=RetryPolicy(max_retries=3, timeout_seconds=None),
        breaker_config=BreakerConfig(failure_threshold=5, success_threshold=2, cooldown_seconds=60),
        clock=clock,
        sleep=sleeper,
        rng=random.Random(7),
    )


@pytest.fixture
def metrics(clock):
    return MetricsRecorder(clock=clock)


@pytest.fixture
def events():
    dispatcher = EventDispatcher()
    dispatcher.received = []
    dispatcher.subscribe(dispatcher.received.append)
    return dispatcher


@pytest.fixture
def chain():
    return FakeChainClient()
