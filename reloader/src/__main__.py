from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.config.config_exception import ConfigException

from reloader.src.config import ConfigError, load_config
from reloader.src.controller import SecretReloader
from reloader.src.health import start_health_server
from reloader.src.informer import WatchSubscriptionError
from reloader.src.kube import build_clients, load_kube_configuration
from reloader.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
EXIT_FATAL = 1
EXIT_CONFIG = 2

# Context passed through ``logger.x(..., extra={...})`` and copied into the JSON line.
_CONTEXT_FIELDS = ("secret", "target", "outcome")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|api[_-]?key|client[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
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
    """Emit logs as single-line JSON objects, including Secret/target context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    # The generated client logs request bodies at DEBUG, and those can hold Secret data.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main() -> int:
    """Entrypoint: configure logging, load config, start health server, run the reloader.

    Returns the process exit status: ``0`` on a clean shutdown, ``1`` when the
    initial watch subscription is denied or no cluster configuration can be
    loaded, ``2`` on invalid configuration.
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG

    try:
        load_kube_configuration()
    except ConfigException as exc:
        logger.error("Cannot load Kubernetes client configuration: %s", exc)
        return EXIT_FATAL

    core_api, apps_api = build_clients()
    controller = SecretReloader(core_api=core_api, apps_api=apps_api, config=config)

    health_server = None
    if config.health_enabled:
        health_server = start_health_server(
            ready=controller.ready,
            port=config.health_port,
            queue_depth=controller.work_queue.__len__,
        )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        controller.run_forever(shutdown_event=shutdown_event)
    except WatchSubscriptionError as exc:
        logger.error("Cannot establish watch subscription: %s", exc)
        exit_code = EXIT_FATAL
    finally:
        if health_server is not None:
            health_server.shutdown()

    logger.info("Reloader exited with status %d", exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
