from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from aquarium_operator.src.controller import build_controller_from_env, env_int
from aquarium_operator.src.health import start_health_server
from aquarium_operator.src.kube import build_clients, load_kube_configuration
from aquarium_operator.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|secret|client[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)
# Keys passed through ``extra=`` that are copied into the JSON line.
_CONTEXT_FIELDS = ("aquarium",)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects.

    Records logged with ``extra={"aquarium": "<namespace>/<name>"}`` carry
    that key so every line of a reconciliation pass can be correlated.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for context_field in _CONTEXT_FIELDS:
            value = getattr(record, context_field, None)
            if value is not None:
                log_entry[context_field] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Operator entrypoint: configure logging, build clients, serve probes and run the controller."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()
    controller = build_controller_from_env(clients)

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(synced=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    logging.getLogger(__name__).info("Operator stopped")


if __name__ == "__main__":
    main()
