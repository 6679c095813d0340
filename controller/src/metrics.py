from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Watch and event metrics carry a ``kind`` label (``app``, ``secret``,
    ``configmap``) so a misbehaving watch can be spotted per resource type.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_reconciles_total",
            "Total App reconciliations by result",
            ["result"],
        )
    )
    forced_reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_forced_reconciles_total",
            "Total App reconciliations forced by a referenced Secret or ConfigMap change",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "app_reconciler_reconcile_duration_seconds",
            "Seconds spent reconciling a single App",
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    ref_events_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_ref_events_total",
            "Total Secret/ConfigMap events processed",
            ["kind"],
        )
    )
    ref_enqueued_apps_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_ref_enqueued_apps_total",
            "Total Apps enqueued because a referenced resource changed",
            ["kind"],
        )
    )
    tracked_refs: Gauge = field(
        default_factory=lambda: Gauge(
            "app_reconciler_tracked_refs",
            "Number of Secrets/ConfigMaps referenced by at least one App",
        )
    )
    tracked_apps: Gauge = field(
        default_factory=lambda: Gauge(
            "app_reconciler_tracked_apps",
            "Number of Apps holding at least one tracked reference",
        )
    )
    pending_updates: Gauge = field(
        default_factory=lambda: Gauge(
            "app_reconciler_pending_updates",
            "Number of Apps with a pending forced update",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "app_reconciler_queue_depth",
            "Current number of App keys waiting in the work queue",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_retry_total",
            "Total rate-limited requeues after failed reconciliations",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "app_reconciler_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "app_reconciler",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
