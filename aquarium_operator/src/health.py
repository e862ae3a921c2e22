from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz`` (liveness), ``/readyz`` (Aquarium index synced) and ``/metrics``."""

    synced_event: threading.Event

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.synced_event.is_set():
                self._respond(200, b"synced=true")
            else:
                self._respond(503, b"synced=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(synced: threading.Event) -> type[_ProbeHandler]:
    """Return a handler class bound to *synced*; the stdlib server instantiates it per request."""

    class _BoundProbeHandler(_ProbeHandler):
        synced_event = synced

    return _BoundProbeHandler


def start_health_server(synced: threading.Event, port: int) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(synced))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
