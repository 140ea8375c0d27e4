from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from stablesync.src.controller import build_controller_from_env, env_int
from stablesync.src.health import start_health_server
from stablesync.src.kube import build_clients, load_kube_configuration
from stablesync.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
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
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    # The kubernetes client logs every request body at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def main() -> None:
    """Controller entrypoint: configure logging, build clients, run until SIGTERM/SIGINT."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    load_kube_configuration()
    core_api, custom_api = build_clients()
    controller = build_controller_from_env(core_api=core_api, custom_api=custom_api)

    health_server = start_health_server(ready=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        clean = controller.run_forever(shutdown_event=shutdown_event)
    finally:
        health_server.shutdown()
    if not clean:
        logging.getLogger(__name__).error("Controller stopped on an error")
        raise SystemExit(1)
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
