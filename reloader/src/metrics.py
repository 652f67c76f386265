from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    No metric carries a Secret or target name as a label.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "secret_reloader_reconciles_total",
            "Total reconcile passes by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "secret_reloader_reconcile_duration_seconds",
            "Wall-clock duration of a single reconcile pass",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    patches_total: Counter = field(
        default_factory=lambda: Counter(
            "secret_reloader_patches_total",
            "Total fingerprint annotation patches by target kind and outcome",
            ["kind", "outcome"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "secret_reloader_queue_depth",
            "Number of Secret keys waiting to be reconciled",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "secret_reloader_queue_retries_total",
            "Total rate-limited re-queues after a failed reconcile",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "secret_reloader_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "secret_reloader_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    malformed_declarations_total: Counter = field(
        default_factory=lambda: Counter(
            "secret_reloader_malformed_declarations_total",
            "Total target notifications carrying an unparseable dependency declaration",
        )
    )
    cached_objects: Gauge = field(
        default_factory=lambda: Gauge(
            "secret_reloader_cached_objects",
            "Objects currently held in the local cache",
            ["kind"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "secret_reloader",
            "Build information for the reloader",
        )
    )


METRICS = ReloaderMetrics()
