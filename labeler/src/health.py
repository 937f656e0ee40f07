from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def readiness_report(ready: threading.Event, watches: Mapping[str, threading.Event]) -> str:
    """One-line readiness summary, e.g. ``ready=false customlabels=true namespaces=false``.

    ``ready`` is the controller's own verdict; it is cleared on a fatal RBAC
    error even though every watch may have listed before.
    """
    parts = [f"ready={_flag(ready.is_set())}"]
    parts.extend(f"{resource}={_flag(watches[resource].is_set())}" for resource in sorted(watches))
    return " ".join(parts)


class _LabelerHealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` (per-watch sync state) and ``/metrics``."""

    ready_event: threading.Event
    watch_events: Mapping[str, threading.Event]

    def _write(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._write(200, b"ok")
        elif path == "/readyz":
            report = readiness_report(self.ready_event, self.watch_events)
            self._write(200 if self.ready_event.is_set() else 503, report.encode())
        elif path == "/metrics":
            self._write(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._write(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("labeler.health").debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    watches: Mapping[str, threading.Event] | None = None,
) -> ThreadingHTTPServer:
    """Serve health endpoints from a daemon thread and return the server.

    *watches* maps a watched resource (``customlabels``, ``namespaces``) to
    the event set once its initial list completed; ``/readyz`` reports each.
    """
    handler = type(
        "_BoundLabelerHealthHandler",
        (_LabelerHealthHandler,),
        {"ready_event": ready, "watch_events": dict(watches or {})},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info(
        "Health server listening on :%d (watches: %s)", port, ", ".join(sorted(watches or {}))
    )
    return server
