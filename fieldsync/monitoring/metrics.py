"""
Prometheus Metrics

Defines and exports metrics for monitoring the sync scheduler.
"""

import time

import structlog
from prometheus_client import Counter, Gauge, Histogram

from fieldsync.config import get_settings

logger = structlog.get_logger()

# Singleton metrics instance
_metrics: "Metrics | None" = None


class Metrics:
    """
    Prometheus metrics for the sync scheduler.

    Tracks:
    - Sync runs by kind and outcome
    - Retries and retry exhaustion
    - Stuck runs reaped by the sweeper
    - Fires skipped because a run was already in flight
    """

    def __init__(self, enabled: bool = True):
        """Initialize Prometheus metrics."""
        self._enabled = enabled
        if not enabled:
            logger.info("Prometheus metrics disabled")
            return

        self.sync_runs_total = Counter(
            "fieldsync_sync_runs_total",
            "Total sync runs",
            ["kind", "status"],
        )

        self.sync_run_duration_seconds = Histogram(
            "fieldsync_sync_run_duration_seconds",
            "Sync run duration in seconds",
            ["kind"],
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 600.0, 1800.0],
        )

        self.sync_retries_total = Counter(
            "fieldsync_sync_retries_total",
            "Total retries scheduled after a failed sync",
            ["kind"],
        )

        self.retry_exhausted_total = Counter(
            "fieldsync_retry_exhausted_total",
            "Total sources that exhausted their retry budget",
            ["kind"],
        )

        self.stuck_runs_reaped_total = Counter(
            "fieldsync_stuck_runs_reaped_total",
            "Total runs reaped by the cleanup sweeper",
            ["kind"],
        )

        self.skipped_fires_total = Counter(
            "fieldsync_skipped_fires_total",
            "Fires skipped without starting a run",
            ["reason"],
        )

        self.last_success_timestamp_seconds = Gauge(
            "fieldsync_last_success_timestamp_seconds",
            "Unix timestamp of the last successful sync",
            ["kind"],
        )

        logger.info("Prometheus metrics initialized")

    @property
    def enabled(self) -> bool:
        """Check if metrics are enabled."""
        return self._enabled

    def track_sync_run(self, kind: str, status: str, duration: float) -> None:
        """Track a finished sync run."""
        if not self._enabled:
            return

        self.sync_runs_total.labels(kind=kind, status=status).inc()
        self.sync_run_duration_seconds.labels(kind=kind).observe(max(duration, 0.0))
        if status == "success":
            self.last_success_timestamp_seconds.labels(kind=kind).set(time.time())

    def track_retry(self, kind: str) -> None:
        if self._enabled:
            self.sync_retries_total.labels(kind=kind).inc()

    def track_retry_exhausted(self, kind: str) -> None:
        if self._enabled:
            self.retry_exhausted_total.labels(kind=kind).inc()

    def track_stuck_reap(self, kind: str) -> None:
        if self._enabled:
            self.stuck_runs_reaped_total.labels(kind=kind).inc()

    def track_skipped_fire(self, reason: str) -> None:
        if self._enabled:
            self.skipped_fires_total.labels(reason=reason).inc()


def get_metrics() -> Metrics:
    """Get the process-wide metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics(enabled=get_settings().metrics_enabled)
    return _metrics
