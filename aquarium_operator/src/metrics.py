from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    No metric carries per-Aquarium labels; per-object health lives on the
    Aquarium's status.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_reconcile_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_reconcile_errors_total",
            "Total reconciliation passes that ended in an error",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "aquarium_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    status_update_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_status_update_failures_total",
            "Total Aquarium status writes that failed and were skipped",
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "aquarium_workqueue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_workqueue_retries_total",
            "Total keys requeued with backoff after a failed pass",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    events_filtered_total: Counter = field(
        default_factory=lambda: Counter(
            "aquarium_events_filtered_total",
            "Total watch events dropped by event filters",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "aquarium_operator",
            "Build information for the operator",
        )
    )


METRICS = ControllerMetrics()
