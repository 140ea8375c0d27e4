from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue metrics carry a ``queue`` label (``pods`` or ``rollouts``) and watch
    metrics a ``resource`` label so both halves of the reconciliation loop can
    be observed independently.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_reconciles_total",
            "Total reconciliations by object kind and result",
            ["kind", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "stablesync_reconcile_duration_seconds",
            "Seconds spent reconciling a single key",
            ["kind"],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, float("inf")),
        )
    )
    label_patches_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_label_patches_total",
            "Total stable-version label patches issued against pods",
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_dropped_keys_total",
            "Total malformed work queue keys dropped without processing",
            ["queue"],
        )
    )
    feed_events_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_feed_events_total",
            "Total change notifications consumed from the watch caches",
            ["kind", "change"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_queue_adds_total",
            "Total keys made visible on a work queue",
            ["queue"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_queue_retries_total",
            "Total keys re-added with backoff after a failed reconciliation",
            ["queue"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "stablesync_queue_depth",
            "Current number of keys ready to be processed",
            ["queue"],
        )
    )
    cache_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "stablesync_cache_objects",
            "Current number of objects held in the watch cache",
            ["resource"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "stablesync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "stablesync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
