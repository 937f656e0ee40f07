from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Label counters are split by outcome so operators can alert on a rising
    rate of conflict rejections without parsing ``CustomLabel`` status.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_reconciles_total",
            "Total CustomLabel reconciliations by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "customlabel_reconcile_duration_seconds",
            "Seconds spent in a single CustomLabel reconciliation",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    labels_applied_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_labels_applied_total",
            "Total namespace labels written by the controller",
        )
    )
    labels_removed_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_labels_removed_total",
            "Total namespace labels retracted by the controller",
        )
    )
    labels_rejected_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_labels_rejected_total",
            "Total desired labels rejected during reconciliation",
            ["reason"],
        )
    )
    finalizer_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_finalizer_transitions_total",
            "Total finalizer attach/remove operations",
            ["transition"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "customlabel_queue_depth",
            "Current number of CustomLabel keys waiting to be reconciled",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "customlabel_retry_total",
            "Total reconciliation retries scheduled after failures",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "customlabel_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
