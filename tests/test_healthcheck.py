"""
Tests for the JSON health server.
"""

import json
import urllib.error
import urllib.request

import pytest

from infra.healthcheck import HealthServer


def _get(port, path):
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}{path}", timeout=2) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        return exc.code, json.loads(exc.read())


@pytest.fixture
def server_factory():
    servers = []

    def make(**providers):
        server = HealthServer(0, host="127.0.0.1", **providers)
        server.start()
        servers.append(server)
        return server

    yield make
    for server in servers:
        server.stop()


class TestRoutes:
    def test_health_ok(self, server_factory):
        server = server_factory(health_provider=lambda: {"ok": True, "portfolios": 3})
        assert _get(server.port, "/health") == (200, {"ok": True, "portfolios": 3})

    def test_unhealthy_returns_503(self, server_factory):
        server = server_factory(health_provider=lambda: {"ok": False})
        status, _ = _get(server.port, "/healthz")
        assert status == 503

    def test_status_and_report_routes(self, server_factory):
        server = server_factory(
            health_provider=lambda: {"ok": True},
            status_provider=lambda: {"is_running": True},
            report_provider=lambda: {"total_rebalances": 2},
        )
        assert _get(server.port, "/status")[1] == {"is_running": True}
        assert _get(server.port, "/report?window=3600")[1] == {"total_rebalances": 2}

    def test_only_health_routes_map_not_ok_to_503(self, server_factory):
        server = server_factory(
            health_provider=lambda: {"ok": True},
            status_provider=lambda: {"ok": False, "is_running": False},
        )
        assert _get(server.port, "/status")[0] == 200

    def test_unknown_route(self, server_factory):
        server = server_factory(health_provider=lambda: {"ok": True})
        assert _get(server.port, "/report")[0] == 404

    def test_provider_error_returns_500(self, server_factory):
        def broken():
            raise RuntimeError("boom")

        server = server_factory(health_provider=broken)
        status, body = _get(server.port, "/health")
        assert status == 500
        assert body["error"] == "boom"

    def test_stop_is_idempotent(self):
        server = HealthServer(0, health_provider=lambda: {}, host="127.0.0.1")
        server.start()
        server.stop()
        server.stop()
        assert server.port is None
