from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading
from collections.abc import Sequence

from gsingress.src.config import ConfigError, load_config
from gsingress.src.handler import build_event_handler
from gsingress.src.health import start_health_server, start_metrics_server
from gsingress.src.kube import build_clients, load_kube_configuration
from gsingress.src.metrics import METRICS
from gsingress.src.watcher import GameServerWatcher

RUNTIME_VERSION = "0.3.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b"
            r"\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)
# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects, including any ``extra=`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for key, value in vars(record).items():
            if key in _STANDARD_RECORD_FIELDS or key in log_entry:
                continue
            log_entry[key] = value if isinstance(value, (bool, int, float)) else str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(verbose: bool = False) -> None:
    """Install the JSON handler on the root logger; ``verbose`` forces DEBUG."""
    log_level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    # The kubernetes client logs full request bodies at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.INFO)


def main(argv: Sequence[str] | None = None) -> None:
    """Controller entrypoint: load config, configure logging, and run the watch loop."""
    try:
        config = load_config(argv)
    except ConfigError as exc:
        print(f"octops-controller: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    configure_logging(verbose=config.verbose)
    logger = logging.getLogger(__name__)
    if config.config_file:
        logger.info("Using config file %s", config.config_file)

    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration(kubeconfig=config.kubeconfig, master=config.master)
    clients = build_clients()

    handler = build_event_handler(clients, config)
    watcher = GameServerWatcher(
        custom_api=clients.custom,
        sink=handler,
        namespace=config.namespace,
        resync_seconds=config.sync_period_seconds,
    )

    health_host, health_port = config.health_probe_address
    health_server = start_health_server(ready=watcher.ready, port=health_port, host=health_host)
    metrics_server = None
    if config.metrics_address != config.health_probe_address:
        metrics_host, metrics_port = config.metrics_address
        metrics_server = start_metrics_server(port=metrics_port, host=metrics_host)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        watcher.request_stop()
        handler.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Watching GameServers in %s (sync period %.1fs)",
        config.namespace or "all namespaces",
        config.sync_period_seconds,
    )
    try:
        watcher.run_forever(shutdown_event=shutdown_event)
    finally:
        handler.shutdown(wait=False)
        health_server.shutdown()
        if metrics_server is not None:
            metrics_server.shutdown()
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
