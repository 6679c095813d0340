from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

WatchStatusFn = Callable[[], dict[str, bool]]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness and Prometheus metrics endpoints.

    ``/readyz`` reports the initial-sync state of every watch so a stuck
    Secret or ConfigMap watch is visible from the probe output.
    """

    ready_event: threading.Event
    watch_status: WatchStatusFn | None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness_body(self, ready: bool) -> bytes:
        parts = [f"ready={'true' if ready else 'false'}"]
        if self.watch_status is not None:
            for kind, synced in sorted(self.watch_status().items()):
                parts.append(f"{kind}={'synced' if synced else 'pending'}")
        return " ".join(parts).encode()

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready = self.ready_event.is_set()
            self._respond(200 if ready else 503, self._readiness_body(ready))
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("controller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, watch_status: WatchStatusFn | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness state.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # staticmethod keeps the callable from being bound as a method.
    _BoundHealthHandler.watch_status = (
        staticmethod(watch_status) if watch_status is not None else None  # type: ignore[assignment]
    )
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, watch_status: WatchStatusFn | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, watch_status=watch_status)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
