from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event | None
    serve_probes: bool = True

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/metrics":
            from prometheus_client import generate_latest

            output = generate_latest()
            self._respond(200, output, "text/plain; version=0.0.4; charset=utf-8")
        elif self.serve_probes and self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.serve_probes and self.path == "/readyz":
            if self.ready_event is not None and self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("gsingress.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event | None, serve_probes: bool = True
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.serve_probes = serve_probes
    return _BoundHealthHandler


def _serve(
    handler_class: type[_HealthHandler], host: str, port: int, label: str
) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer((host, port), handler_class)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info(
        "%s server listening on %s:%d", label, host, server.server_address[1]
    )
    return server


def start_health_server(
    ready: threading.Event, port: int, host: str = "0.0.0.0"  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    return _serve(make_health_handler(ready), host, port, "Health")


def start_metrics_server(port: int, host: str = "0.0.0.0") -> ThreadingHTTPServer:  # noqa: S104
    """Start an HTTP server exposing only ``/metrics`` in a daemon thread."""
    return _serve(make_health_handler(None, serve_probes=False), host, port, "Metrics")
