"""
Prometheus metrics for the shard sink.
Registered on the global REGISTRY at import time.
"""

from prometheus_client import Counter, Gauge, Histogram


SINK_RECORDS_TOTAL = Counter(
    "shard_sink_records_total",
    "Records accepted into a shard batch",
    ["shard"],
)

SINK_FLUSH_TOTAL = Counter(
    "shard_sink_flush_total",
    "Batch flushes by outcome",
    ["shard", "trigger", "outcome"],
)

SINK_FLUSH_LATENCY_MS = Histogram(
    "shard_sink_flush_latency_ms",
    "Batch flush latency in milliseconds",
    ["shard"],
    buckets=[1, 2.5, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
)

SINK_PENDING_ROWS = Gauge(
    "shard_sink_pending_rows",
    "Records added since the last successful flush",
    ["shard"],
)


class MetricsRegistry:
    """Groups the sink metrics so callers do not import module globals."""

    records_total = SINK_RECORDS_TOTAL
    flush_total = SINK_FLUSH_TOTAL
    flush_latency_ms = SINK_FLUSH_LATENCY_MS
    pending_rows = SINK_PENDING_ROWS


# Singleton instance
metrics_registry = MetricsRegistry()
