"""
Tests for AlertService event mapping, severity filtering and dedupe.
"""

from unittest.mock import patch

import pytest
import requests

from infra.alerting import AlertConfig, AlertService, AlertSeverity
from infra.events import EventDispatcher, EventType, SchedulerEvent
from tests.helpers import ManualClock


@pytest.fixture
def alert_clock():
    return ManualClock()


@pytest.fixture
def service(alert_clock):
    config = AlertConfig(enabled=True, webhook_url=None, dry_run=True, dedupe_seconds=300)
    return AlertService(config, clock=alert_clock)


class TestEventMapping:
    def test_failed_rebalance_is_warning(self, service):
        dispatcher = EventDispatcher()
        service.attach(dispatcher)
        with patch.object(service, "_send") as send:
            dispatcher.emit(EventType.REBALANCE_FAILED, "p1", error="execution reverted", error_kind="fatal")
        severity, title, message, context = send.call_args.args
        assert severity is AlertSeverity.WARNING
        assert title == "Rebalance failed"
        assert "p1" in message
        assert context["error_kind"] == "fatal"

    def test_circuit_opened_is_critical(self, service):
        dispatcher = EventDispatcher()
        service.attach(dispatcher)
        with patch.object(service, "_send") as send:
            dispatcher.emit(EventType.CIRCUIT_OPENED, operation="submit_rebalance")
        assert send.call_args.args[0] is AlertSeverity.CRITICAL

    def test_low_success_rate_report(self, service):
        report = {"total_rebalances": 10, "success_rate": 0.5, "failed": 5, "unhealthy_operations": []}
        with patch.object(service, "_send") as send:
            service.handle_event(SchedulerEvent(EventType.REPORT_GENERATED, payload={"report": report}))
        assert send.call_args.args[1] == "Low rebalance success rate"

    def test_healthy_report_not_alerted(self, service):
        report = {"total_rebalances": 10, "success_rate": 0.9}
        with patch.object(service, "_send") as send:
            service.handle_event(SchedulerEvent(EventType.REPORT_GENERATED, payload={"report": report}))
        send.assert_not_called()

    def test_completed_rebalance_not_alerted(self, service):
        with patch.object(service, "_send") as send:
            service.handle_event(SchedulerEvent(EventType.REBALANCE_COMPLETED, "p1"))
        send.assert_not_called()


class TestFiltering:
    def test_dedupe_window(self, service, alert_clock):
        assert service.notify(AlertSeverity.WARNING, "t", "m") is True
        assert service.notify(AlertSeverity.WARNING, "t", "m") is False
        alert_clock.advance(301)
        assert service.notify(AlertSeverity.WARNING, "t", "m") is True
        assert service.sent_count == 2

    def test_min_severity(self, alert_clock):
        config = AlertConfig(enabled=True, webhook_url=None, dry_run=True, min_severity=AlertSeverity.CRITICAL)
        service = AlertService(config, clock=alert_clock)
        assert service.notify(AlertSeverity.WARNING, "t", "m") is False
        assert service.notify(AlertSeverity.CRITICAL, "t", "m") is True

    def test_disabled_without_webhook(self):
        service = AlertService(AlertConfig(enabled=True, webhook_url=None))
        assert service.is_enabled() is False
        assert service.notify(AlertSeverity.CRITICAL, "t", "m") is False


class TestDelivery:
    def test_webhook_payload(self, alert_clock):
        config = AlertConfig(enabled=True, webhook_url="https://hooks.test/x", timeout=2.0)
        service = AlertService(config, clock=alert_clock)
        with patch("infra.alerting.requests.post") as post:
            post.return_value.status_code = 200
            service.notify(AlertSeverity.CRITICAL, "Circuit breaker opened", "down", {"operation": "op"})

        post.assert_called_once()
        assert post.call_args.args[0] == "https://hooks.test/x"
        assert post.call_args.kwargs["timeout"] == 2.0
        body = post.call_args.kwargs["json"]
        assert body["text"] == "[CRITICAL] Circuit breaker opened: down (operation=op)"
        assert body["severity"] == "critical"
        assert body["context"] == {"operation": "op"}

    def test_delivery_failure_is_logged_not_raised(self, alert_clock, caplog):
        config = AlertConfig(enabled=True, webhook_url="https://hooks.test/x")
        service = AlertService(config, clock=alert_clock)
        with patch("infra.alerting.requests.post", side_effect=requests.ConnectionError("refused")):
            assert service.notify(AlertSeverity.WARNING, "Rebalance failed", "p1") is True
        assert "Failed to deliver alert" in caplog.text

    def test_payload_drops_empty_context(self):
        body = AlertService.build_payload(AlertSeverity.WARNING, "Rebalance failed", "p1", {"attempts": None})
        assert body["text"] == "[WARNING] Rebalance failed: p1"
        assert body["context"] == {}

    def test_from_config_env_fallback(self, monkeypatch):
        monkeypatch.setenv("ALERT_WEBHOOK_URL", "https://hooks.test/env")
        service = AlertService.from_config({"enabled": True, "min_severity": "critical"})
        assert service.is_enabled() is True
