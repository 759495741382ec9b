"""
Prometheus metrics for the producer, accumulators, gate and consumer pipeline.
Metrics register in the global REGISTRY on import; ``GET /metrics`` exposes them.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Consumer pipeline ---

PIPELINE_MESSAGES_TOTAL = Counter(
    "adflow_pipeline_messages_total",
    "Messages processed by the dual-sink pipeline",
    ["outcome"],
)

PIPELINE_ERRORS_TOTAL = Counter(
    "adflow_pipeline_errors_total",
    "Pipeline failures by stage and error kind",
    ["stage", "kind"],
)

PIPELINE_RECONCILIATION_TOTAL = Counter(
    "adflow_pipeline_reconciliation_total",
    "Messages with a raw record but no normalized row",
    ["source"],
)

PIPELINE_LATENCY_MS = Histogram(
    "adflow_pipeline_latency_ms",
    "End-to-end per-message pipeline latency in milliseconds",
    ["outcome"],
    buckets=[1, 2.5, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 25000],
)

# --- Batch accumulators / gate ---

ACCUMULATOR_FLUSH_TOTAL = Counter(
    "adflow_accumulator_flush_total",
    "Batch flushes by accumulator and status",
    ["accumulator", "status"],
)

ACCUMULATOR_FLUSH_LATENCY = Histogram(
    "adflow_accumulator_flush_latency_seconds",
    "Batch flush latency",
    ["accumulator"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5],
)

ACCUMULATOR_REQUEUED_TOTAL = Counter(
    "adflow_accumulator_requeued_total",
    "Items placed back in the buffer after a failed flush",
    ["accumulator"],
)

GATE_IN_FLIGHT = Gauge(
    "adflow_gate_in_flight",
    "Batch operations currently admitted by the concurrency gate",
    ["gate"],
)

# --- Queue ---

QUEUE_OPERATIONS_TOTAL = Counter(
    "adflow_queue_operations_total",
    "Queue operations by operation and status",
    ["operation", "status"],
)

POLLER_WORKERS_ALIVE = Gauge(
    "adflow_poller_workers_alive",
    "Running consumer worker loops",
    ["poller"],
)

# --- Producer ---

PRODUCER_EVENTS_TOTAL = Counter(
    "adflow_producer_events_total",
    "Events accepted or rejected by the publisher",
    ["status"],
)


class MetricsRegistry:
    """Centralized access to adflow metrics."""

    pipeline_messages_total = PIPELINE_MESSAGES_TOTAL
    pipeline_errors_total = PIPELINE_ERRORS_TOTAL
    pipeline_reconciliation_total = PIPELINE_RECONCILIATION_TOTAL
    pipeline_latency_ms = PIPELINE_LATENCY_MS
    accumulator_flush_total = ACCUMULATOR_FLUSH_TOTAL
    accumulator_flush_latency = ACCUMULATOR_FLUSH_LATENCY
    accumulator_requeued_total = ACCUMULATOR_REQUEUED_TOTAL
    gate_in_flight = GATE_IN_FLIGHT
    queue_operations_total = QUEUE_OPERATIONS_TOTAL
    poller_workers_alive = POLLER_WORKERS_ALIVE
    producer_events_total = PRODUCER_EVENTS_TOTAL


metrics_registry = MetricsRegistry()
