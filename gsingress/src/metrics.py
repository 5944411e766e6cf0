from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_events_total",
            "Total GameServer notifications received",
            ["event"],
        )
    )
    skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_skipped_total",
            "Total GameServer notifications not reconciled",
            ["reason"],
        )
    )
    pipelines_dispatched_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_pipelines_dispatched_total",
            "Total reconciliation pipelines submitted",
        )
    )
    pipelines_coalesced_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_pipelines_coalesced_total",
            "Total parked pipelines replaced by a newer snapshot of the same GameServer",
        )
    )
    pipeline_results_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_pipeline_results_total",
            "Total finished reconciliation pipelines",
            ["result"],
        )
    )
    step_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_step_errors_total",
            "Total reconciliation step failures",
            ["step"],
        )
    )
    ingress_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_ingress_changes_total",
            "Total Ingress objects created or updated",
        )
    )
    pipeline_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "octops_pipeline_duration_seconds",
            "Seconds spent running one reconciliation pipeline, including delays",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")),
        )
    )
    inflight_pipelines: Gauge = field(
        default_factory=lambda: Gauge(
            "octops_inflight_pipelines",
            "Reconciliation pipelines currently running",
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_retries_total",
            "Total pipeline retries scheduled after a failure",
        )
    )
    dropped_pipelines_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_dropped_pipelines_total",
            "Total failed pipelines dropped after exhausting retries",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "octops_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "octops_build",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
