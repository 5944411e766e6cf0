from __future__ import annotations

import argparse
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from gsingress.src.annotations import DurationError, parse_duration

DEFAULT_CONFIG_FILE = Path.home() / ".gameserver-ingress-controller.yaml"


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration resolved at startup.

    Attributes:
        namespace:   Namespace to watch; ``None`` watches every namespace.
        sync_period_seconds: Interval at which every cached GameServer is
                     delivered again to the handler.
        health_probe_address / metrics_address: ``(host, port)`` bind pairs.
    """

    kubeconfig: str | None = None
    master: str | None = None
    namespace: str | None = None
    sync_period_seconds: float = 15.0
    health_probe_address: tuple[str, int] = ("0.0.0.0", 30235)  # noqa: S104
    metrics_address: tuple[str, int] = ("0.0.0.0", 9090)  # noqa: S104
    verbose: bool = False
    max_concurrent_reconciles: int = 16
    max_retries: int = 5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 30.0
    config_file: str | None = None


def parse_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(
    name: str,
    raw: Any,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def to_seconds(name: str, raw: Any) -> float:
    """Accept plain numbers (seconds) or duration strings such as ``15s``."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = float(raw)
    else:
        text = str(raw).strip()
        try:
            value = float(text)
        except ValueError:
            try:
                value = parse_duration(text)
            except DurationError as exc:
                raise ConfigError(f"{name} must be a duration such as '15s', got: {raw!r}") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got: {raw!r}")
    return value


def parse_bind_address(name: str, raw: Any) -> tuple[str, int]:
    """Parse ``host:port`` or ``:port`` into a ``(host, port)`` pair."""
    text = str(raw).strip()
    host, separator, port = text.rpartition(":")
    if not separator:
        raise ConfigError(f"{name} must look like 'host:port' or ':port', got: {raw!r}")
    return host or "0.0.0.0", to_int(name, port, minimum=0, maximum=65535)  # noqa: S104


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Load a YAML mapping of option names (as spelled on the command line) to values."""
    try:
        with open(path, encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in config file {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return {str(k): v for k, v in loaded.items()}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="octops-controller",
        description=(
            "Watches Agones game servers and creates the Service and Ingress "
            "resources that route traffic to them through an Ingress Controller."
        ),
    )
    parser.add_argument(
        "--config",
        help=f"YAML config file (default is {DEFAULT_CONFIG_FILE} when present)",
    )
    parser.add_argument(
        "--kubeconfig", help="Path to a kubeconfig file, or a KUBECONFIG-style path list"
    )
    parser.add_argument(
        "--master",
        help="Address of the Kubernetes API server; overrides any value in kubeconfig",
    )
    parser.add_argument("--namespace", help="Only watch game servers in this namespace")
    parser.add_argument(
        "--sync-period",
        help="Minimum frequency at which watched game servers are reconciled (default 15s)",
    )
    parser.add_argument(
        "--health-probe-addrs",
        help="Address the controller binds to for health probes (default :30235)",
    )
    parser.add_argument(
        "--metrics-addrs",
        help="Address the controller binds to for Prometheus metrics (default :9090)",
    )
    parser.add_argument(
        "--max-concurrent-reconciles",
        help="Maximum number of reconciliation pipelines running at once (default 16)",
    )
    parser.add_argument(
        "--max-retries",
        help="Attempts per failed reconciliation before giving up (default 5)",
    )
    parser.add_argument(
        "--verbose",
        action="store_const",
        const=True,
        default=None,
        help="Produce verbose log",
    )
    return parser


def _pick(
    flag_value: Any,
    env: Mapping[str, str],
    env_name: str,
    file_values: Mapping[str, Any],
    file_key: str,
) -> Any:
    """Resolve one option: flag, then environment, then config file."""
    if flag_value is not None:
        return flag_value
    if env.get(env_name) not in (None, ""):
        return env[env_name]
    return file_values.get(file_key)


def load_config(
    argv: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> ControllerConfig:
    """Resolve configuration from flags, environment and an optional YAML file.

    Precedence is flag > environment variable > config file > default.
    Raises :class:`ConfigError` on any invalid value.
    """
    values = env if env is not None else os.environ
    args = build_parser().parse_args(argv)
    defaults = ControllerConfig()

    config_file = args.config or values.get("CONTROLLER_CONFIG") or None
    if config_file:
        file_values = read_config_file(config_file)
    elif DEFAULT_CONFIG_FILE.is_file():
        config_file = str(DEFAULT_CONFIG_FILE)
        file_values = read_config_file(config_file)
    else:
        file_values = {}

    def pick(flag_value: Any, env_name: str, file_key: str) -> Any:
        return _pick(flag_value, values, env_name, file_values, file_key)

    kubeconfig = pick(args.kubeconfig, "KUBECONFIG", "kubeconfig")
    master = pick(args.master, "KUBE_MASTER", "master")
    namespace = pick(args.namespace, "WATCH_NAMESPACE", "namespace")
    if namespace is not None and not str(namespace).strip():
        namespace = None

    sync_period = pick(args.sync_period, "SYNC_PERIOD", "sync-period")
    health = pick(args.health_probe_addrs, "HEALTH_PROBE_ADDRS", "health-probe-addrs")
    metrics = pick(args.metrics_addrs, "METRICS_ADDRS", "metrics-addrs")
    workers = pick(
        args.max_concurrent_reconciles, "MAX_CONCURRENT_RECONCILES", "max-concurrent-reconciles"
    )
    retries = pick(args.max_retries, "MAX_RETRIES", "max-retries")
    verbose = pick(args.verbose, "VERBOSE", "verbose")

    retry_base = values.get("RETRY_BASE_SECONDS") or file_values.get("retry-base-seconds")
    retry_max = values.get("RETRY_MAX_SECONDS") or file_values.get("retry-max-seconds")

    config = ControllerConfig(
        kubeconfig=str(kubeconfig) if kubeconfig else None,
        master=str(master) if master else None,
        namespace=str(namespace).strip() if namespace else None,
        sync_period_seconds=(
            to_seconds("sync-period", sync_period)
            if sync_period is not None
            else defaults.sync_period_seconds
        ),
        health_probe_address=(
            parse_bind_address("health-probe-addrs", health)
            if health is not None
            else defaults.health_probe_address
        ),
        metrics_address=(
            parse_bind_address("metrics-addrs", metrics)
            if metrics is not None
            else defaults.metrics_address
        ),
        verbose=parse_bool(verbose),
        max_concurrent_reconciles=(
            to_int("max-concurrent-reconciles", workers, minimum=1)
            if workers is not None
            else defaults.max_concurrent_reconciles
        ),
        max_retries=(
            to_int("max-retries", retries, minimum=1)
            if retries is not None
            else defaults.max_retries
        ),
        retry_base_seconds=(
            to_seconds("RETRY_BASE_SECONDS", retry_base)
            if retry_base is not None
            else defaults.retry_base_seconds
        ),
        retry_max_seconds=(
            to_seconds("RETRY_MAX_SECONDS", retry_max)
            if retry_max is not None
            else defaults.retry_max_seconds
        ),
        config_file=str(config_file) if config_file else None,
    )

    if config.retry_max_seconds < config.retry_base_seconds:
        raise ConfigError("RETRY_MAX_SECONDS must be >= RETRY_BASE_SECONDS")
    return config
