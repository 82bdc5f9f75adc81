"""Outbound scheduler events for observability collaborators (alerts, dashboards)."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    REBALANCE_COMPLETED = "rebalance_completed"
    REBALANCE_FAILED = "rebalance_failed"
    REBALANCE_GATED_OUT = "rebalance_gated_out"
    SNAPSHOT_FAILED = "snapshot_failed"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    CIRCUIT_CLOSED = "circuit_closed"
    REPORT_GENERATED = "report_generated"
    SCHEDULER_STARTED = "scheduler_started"
    SCHEDULER_STOPPED = "scheduler_stopped"


@dataclass(frozen=True)
class SchedulerEvent:
    type: EventType
    portfolio_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[SchedulerEvent], None]


class EventDispatcher:
    """
    Synchronous publish/subscribe channel.

    Handlers run on the publishing thread. A failing handler is logged and
    skipped; it never propagates into the scheduler.
    """

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: SchedulerEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.error("Event handler %r failed for %s: %s", handler, event.type.value, exc)

    def emit(self, event_type: EventType, portfolio_id: Optional[str] = None, **payload: Any) -> None:
        self.publish(SchedulerEvent(type=event_type, portfolio_id=portfolio_id, payload=payload))


__all__ = ["EventDispatcher", "EventType", "SchedulerEvent"]
