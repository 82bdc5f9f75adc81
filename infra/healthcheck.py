"""JSON HTTP endpoints exposing scheduler health, status and the latest report."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, NamedTuple, Optional

logger = logging.getLogger(__name__)

Provider = Callable[[], Dict[str, Any]]

HEALTH_PATHS = ("/", "/health", "/healthz")


class Route(NamedTuple):
    provider: Provider
    # Health routes answer 503 when the payload says ok=false
    gates_on_ok: bool = False


class _RoutingServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, routes: Dict[str, Route]):
        super().__init__(address, _JsonHandler)
        self.routes = routes


class _JsonHandler(BaseHTTPRequestHandler):
    server: _RoutingServer

    def do_GET(self) -> None:  # noqa: N802
        path = self.path.split("?", 1)[0].rstrip("/") or "/"
        route = self.server.routes.get(path)
        if route is None:
            self._reply(404, {"error": "not found", "path": path})
            return

        try:
            payload = route.provider() or {}
        except Exception as exc:
            logger.error("Provider for %s failed: %s", path, exc)
            self._reply(500, {"ok": False, "error": str(exc)})
            return

        status = 503 if route.gates_on_ok and not payload.get("ok", True) else 200
        self._reply(status, payload)

    def _reply(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover
        logger.debug("health %s - %s", self.address_string(), format % args)


class HealthServer:
    """
    Read-only JSON view of the running scheduler, served from a daemon thread.

    Routes:
        /, /health, /healthz -> health provider (503 when payload["ok"] is false)
        /status              -> status provider
        /report              -> report provider
    """

    def __init__(
        self,
        port: int,
        health_provider: Provider,
        status_provider: Optional[Provider] = None,
        report_provider: Optional[Provider] = None,
        host: str = "0.0.0.0",
    ):
        self._address = (host, int(port))
        self._routes: Dict[str, Route] = {path: Route(health_provider, True) for path in HEALTH_PATHS}
        if status_provider is not None:
            self._routes["/status"] = Route(status_provider)
        if report_provider is not None:
            self._routes["/report"] = Route(report_provider)
        self._server: Optional[_RoutingServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        """Bound port once started (useful with port 0)."""
        return self._server.server_port if self._server is not None else None

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _RoutingServer(self._address, self._routes)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="rebalancer-health", daemon=True
        )
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._address[0], self._server.server_port)

    def stop(self, timeout: float = 3.0) -> None:
        server, thread = self._server, self._thread
        self._server = self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=timeout)
        logger.info("Health server stopped")


__all__ = ["HealthServer"]
