from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from labeler.src.config import ConfigError, load_config
from labeler.src.controller import LabelController
from labeler.src.health import start_health_server
from labeler.src.kube import KubeLabelStore, build_clients, load_kube_configuration
from labeler.src.lifecycle import LabelReconciler
from labeler.src.metrics import METRICS
from labeler.src.workqueue import ReconcileQueue

RUNTIME_VERSION = "0.1.0"
_CONTEXT_FIELDS = ("customlabel", "namespace")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation.

    ``customlabel`` and ``namespace`` passed through ``extra=`` become
    top-level fields so a single object's history can be filtered out.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Install the JSON formatter on the root logger at ``LOG_LEVEL`` (default INFO)."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, wire the reconciler, and run until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    logger.info(
        "Starting CustomLabel controller (protected prefixes: %s)",
        ", ".join(config.protected_prefixes) or "<none>",
    )

    load_kube_configuration()
    core_api, custom_api = build_clients()
    store = KubeLabelStore(core_api=core_api, custom_api=custom_api)
    reconciler = LabelReconciler(
        store=store,
        protected_prefixes=config.protected_prefixes,
    )
    controller = LabelController(
        core_api=core_api,
        custom_api=custom_api,
        reconciler=reconciler,
        store=store,
        queue=ReconcileQueue(max_backoff_seconds=config.max_retry_backoff_seconds),
        watch_timeout_seconds=config.watch_timeout_seconds,
    )

    health_server = start_health_server(
        ready=controller.ready, port=config.health_port, watches=controller.watch_synced
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    if controller.fatal_error is not None:
        logger.error("Controller stopped: %s", controller.fatal_error)
        sys.exit(1)
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
