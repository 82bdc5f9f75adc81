"""Webhook alerts for rebalancing failures and dependency outages."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from infra.events import EventDispatcher, EventType, SchedulerEvent

logger = logging.getLogger(__name__)

SERVICE_NAME = "fleet-rebalancer"


class AlertSeverity(Enum):
    INFO = 10
    WARNING = 20
    CRITICAL = 30

    @classmethod
    def parse(cls, value: Optional[str], default: Optional["AlertSeverity"] = None) -> "AlertSeverity":
        """Case-insensitive lookup by name; unknown or empty values give ``default``."""
        try:
            return cls[(value or "").strip().upper()]
        except KeyError:
            return default or cls.WARNING


@dataclass
class AlertConfig:
    enabled: bool
    webhook_url: Optional[str]
    min_severity: AlertSeverity = AlertSeverity.WARNING
    dry_run: bool = False
    timeout: float = 5.0
    dedupe_seconds: float = 300.0
    min_success_rate: float = 0.8  # Reports below this rate raise a warning


class AlertService:
    """
    Turn scheduler events into notifications.

    Mapping:
    - rebalance_failed      -> WARNING
    - snapshot_failed       -> WARNING
    - circuit_opened        -> CRITICAL
    - scheduler_stopped with an error -> CRITICAL
    - report_generated with success rate below ``min_success_rate`` -> WARNING

    Identical alerts (same severity, title and message) are sent once per
    ``dedupe_seconds`` window.
    """

    def __init__(self, config: AlertConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._enabled = bool(config.enabled and (config.webhook_url or config.dry_run))
        if config.enabled and not self._enabled:
            logger.warning("Alerting enabled but no webhook URL set; disabling alerts")
        self._last_sent: Dict[str, float] = {}
        self.sent_count = 0

    @classmethod
    def from_config(cls, raw_config: Optional[Dict[str, Any]]) -> "AlertService":
        raw_config = raw_config or {}

        webhook_url = raw_config.get("webhook_url")
        if webhook_url and "${" in webhook_url:
            webhook_url = os.path.expandvars(webhook_url)
        if not webhook_url:
            env_key = raw_config.get("webhook_env", "ALERT_WEBHOOK_URL")
            webhook_url = os.getenv(env_key, "")

        config = AlertConfig(
            enabled=bool(raw_config.get("enabled", False)),
            webhook_url=webhook_url or None,
            min_severity=AlertSeverity.parse(
                raw_config.get("min_severity", "warning"),
                default=AlertSeverity.WARNING,
            ),
            dry_run=bool(raw_config.get("dry_run", False)),
            timeout=float(raw_config.get("timeout_seconds", 5.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
            min_success_rate=float(raw_config.get("min_success_rate", 0.8)),
        )
        return cls(config)

    def is_enabled(self) -> bool:
        return self._enabled

    def attach(self, dispatcher: EventDispatcher) -> Callable[[], None]:
        """Subscribe to a dispatcher; returns the unsubscribe callable."""
        return dispatcher.subscribe(self.handle_event)

    def handle_event(self, event: SchedulerEvent) -> None:
        payload = event.payload
        pid = event.portfolio_id

        if event.type is EventType.REBALANCE_FAILED:
            self.notify(
                AlertSeverity.WARNING,
                "Rebalance failed",
                f"Portfolio {pid}: {payload.get('error')}",
                {"portfolio_id": pid, "error_kind": payload.get("error_kind"), "attempts": payload.get("attempts")},
            )
        elif event.type is EventType.SNAPSHOT_FAILED:
            self.notify(
                AlertSeverity.WARNING,
                "Portfolio snapshot unavailable",
                f"Portfolio {pid}: {payload.get('error')}",
                {"portfolio_id": pid},
            )
        elif event.type is EventType.CIRCUIT_OPENED:
            operation = payload.get("operation")
            self.notify(
                AlertSeverity.CRITICAL,
                "Circuit breaker opened",
                f"Calls to {operation} are suspended",
                {"operation": operation},
            )
        elif event.type is EventType.SCHEDULER_STOPPED and payload.get("error"):
            self.notify(
                AlertSeverity.CRITICAL,
                "Rebalancing scheduler crashed",
                str(payload["error"]),
            )
        elif event.type is EventType.REPORT_GENERATED:
            report = payload.get("report") or {}
            total = int(report.get("total_rebalances", 0))
            rate = float(report.get("success_rate", 0.0))
            if total and rate < self._config.min_success_rate:
                self.notify(
                    AlertSeverity.WARNING,
                    "Low rebalance success rate",
                    f"{rate * 100:.1f}% of {total} rebalances succeeded",
                    {"failed": report.get("failed"), "unhealthy_operations": report.get("unhealthy_operations")},
                )

    def notify(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an alert. Returns False if filtered or deduped."""
        if not self._enabled:
            return False
        if severity.value < self._config.min_severity.value:
            return False

        fingerprint = self._fingerprint(severity, title, message)
        now = self._clock()
        last = self._last_sent.get(fingerprint)
        if last is not None and now - last < self._config.dedupe_seconds:
            logger.debug("Alert deduped: %s (fingerprint=%s...)", title, fingerprint[:8])
            return False
        self._last_sent[fingerprint] = now
        self._prune(now)

        self._send(severity, title, message, context)
        self.sent_count += 1
        return True

    @staticmethod
    def _fingerprint(severity: AlertSeverity, title: str, message: str) -> str:
        content = f"{severity.name}|{title}|{message}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def _prune(self, now: float) -> None:
        horizon = self._config.dedupe_seconds
        stale = [fp for fp, ts in self._last_sent.items() if now - ts > horizon]
        for fp in stale:
            del self._last_sent[fp]

    def _send(
        self,
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]],
    ) -> None:
        payload = self.build_payload(severity, title, message, context)
        if self._config.dry_run:
            logger.info("[ALERT:%s] %s", severity.name, payload["text"])
            return

        try:
            response = requests.post(self._config.webhook_url, json=payload, timeout=self._config.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            # Delivery problems never reach the scheduler
            logger.error("Failed to deliver alert '%s': %s", title, exc)

    @staticmethod
    def build_payload(
        severity: AlertSeverity,
        title: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Webhook body: a one-line ``text`` for chat hooks plus the structured fields."""
        context = {key: value for key, value in (context or {}).items() if value is not None}
        summary = f"[{severity.name}] {title}: {message}" if message else f"[{severity.name}] {title}"
        if context:
            details = ", ".join(f"{key}={context[key]}" for key in sorted(context))
            summary = f"{summary} ({details})"
        return {
            "text": summary,
            "service": SERVICE_NAME,
            "severity": severity.name.lower(),
            "title": title,
            "message": message,
            "context": {key: str(value) for key, value in context.items()},
        }


__all__ = ["AlertConfig", "AlertService", "AlertSeverity"]
