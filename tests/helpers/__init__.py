"""Test helpers for the fleet rebalancer test suite"""

from tests.helpers.fakes import (
    FakeChainClient,
    FakeMarket,
    ManualClock,
    RecordingSleep,
    failed_submit,
    make_snapshot,
)

__all__ = [
    "FakeChainClient",
    "FakeMarket",
    "ManualClock",
    "RecordingSleep",
    "failed_submit",
    "make_snapshot",
]
