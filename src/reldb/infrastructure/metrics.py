"""Prometheus metrics for the query engine."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
    REGISTRY,
    CollectorRegistry,
)


class MetricsRegistry:
    """Registry of all query engine metrics.

    Tests pass their own CollectorRegistry so instruments never collide
    with the process-wide default registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize metrics registry."""
        self._registry = registry or REGISTRY

        # Transaction metrics
        self.transactions_total = Counter(
            "reldb_transactions_total",
            "Total number of finished transactions",
            ["status"],  # committed, aborted
            registry=self._registry,
        )

        self.transactions_active = Gauge(
            "reldb_transactions_active",
            "Number of active transactions",
            registry=self._registry,
        )

        self.serialization_failures_total = Counter(
            "reldb_serialization_failures_total",
            "Transactions aborted by serialization conflicts",
            registry=self._registry,
        )

        # Statement metrics
        self.statements_total = Counter(
            "reldb_statements_total",
            "Total number of statements executed",
            ["statement_type", "status"],  # status: success, error
            registry=self._registry,
        )

        self.statement_latency_seconds = Histogram(
            "reldb_statement_latency_seconds",
            "Statement latency in seconds",
            ["statement_type"],
            buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

        self.constraint_violations_total = Counter(
            "reldb_constraint_violations_total",
            "Writes rejected by integrity constraints",
            ["constraint_type"],
            registry=self._registry,
        )

        # Storage metrics
        self.rows_scanned_total = Counter(
            "reldb_rows_scanned_total",
            "Visible rows produced by table and index scans",
            registry=self._registry,
        )

        self.index_lookups_total = Counter(
            "reldb_index_lookups_total",
            "Total index lookup operations",
            registry=self._registry,
        )

        self.commit_log_records_total = Counter(
            "reldb_commit_log_records_total",
            "Commit records appended to the commit log",
            registry=self._registry,
        )

        # Lock metrics
        self.lock_wait_seconds = Histogram(
            "reldb_lock_wait_seconds",
            "Time spent waiting for locks",
            buckets=(0.001, 0.01, 0.1, 0.5, 1.0, 5.0, 10.0),
            registry=self._registry,
        )

        self.lock_timeouts_total = Counter(
            "reldb_lock_timeouts_total",
            "Total number of lock waits that timed out",
            registry=self._registry,
        )

        self.deadlocks_total = Counter(
            "reldb_deadlocks_total",
            "Total number of deadlocks detected",
            registry=self._registry,
        )

        # Recovery metrics
        self.recovery_duration_seconds = Gauge(
            "reldb_recovery_duration_seconds",
            "Duration of last recovery in seconds",
            registry=self._registry,
        )

        self.recovery_records_replayed = Counter(
            "reldb_recovery_records_replayed_total",
            "Total commit records replayed during recovery",
            registry=self._registry,
        )

        # Server info
        self.info = Info(
            "reldb",
            "Query engine information",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry


# Global metrics registry
_metrics: MetricsRegistry | None = None


def setup_metrics(port: int = 8001, registry: CollectorRegistry | None = None) -> MetricsRegistry:
    """
    Set up Prometheus metrics server.

    Args:
        port: Port for the metrics HTTP server
        registry: Optional custom registry

    Returns:
        The metrics registry
    """
    global _metrics
    if _metrics is None or registry is not None:
        _metrics = MetricsRegistry(registry)

    from reldb import __version__
    _metrics.info.info({
        "version": __version__,
    })

    # Start HTTP server for Prometheus scraping
    start_http_server(port, registry=registry or REGISTRY)

    return _metrics


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsRegistry()
    return _metrics
