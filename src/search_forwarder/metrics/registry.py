"""
Prometheus metrics for the forwarder.

All collectors register with the global prometheus_client REGISTRY on import;
expose them with ``prometheus_client.start_http_server`` (see the CLI).
"""

from prometheus_client import Counter, Gauge, Histogram


# --- Ingestion / buffering ---

RECORDS_INGESTED_TOTAL = Counter(
    "forwarder_records_ingested_total",
    "Records accepted into the open batch",
    ["pipeline"],
)

INGEST_REJECTED_TOTAL = Counter(
    "forwarder_ingest_rejected_total",
    "Ingest calls rejected (records left unacknowledged upstream)",
    ["pipeline", "reason"],
)

BATCHES_SEALED_TOTAL = Counter(
    "forwarder_batches_sealed_total",
    "Batches sealed, by seal reason",
    ["pipeline", "reason"],
)

BUFFERED_BYTES = Gauge(
    "forwarder_buffered_bytes",
    "Bytes held in the open batch",
    ["pipeline"],
)

PENDING_BATCHES = Gauge(
    "forwarder_pending_batches",
    "Sealed batches waiting for a delivery worker",
    ["pipeline"],
)

# --- Sink ---

SINK_WRITES_TOTAL = Counter(
    "forwarder_sink_writes_total",
    "Sink write attempts, by outcome",
    ["sink", "status"],
)

SINK_WRITE_LATENCY = Histogram(
    "forwarder_sink_write_latency_seconds",
    "Sink write latency in seconds",
    ["sink"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

# --- Delivery outcome ---

DELIVERY_RETRIES_TOTAL = Counter(
    "forwarder_delivery_retries_total",
    "Sink write retries scheduled",
    ["pipeline"],
)

BATCHES_DELIVERED_TOTAL = Counter(
    "forwarder_batches_delivered_total",
    "Batches written to the sink",
    ["pipeline"],
)

BATCHES_BACKED_UP_TOTAL = Counter(
    "forwarder_batches_backed_up_total",
    "Batches routed to the backup store, by reason",
    ["pipeline", "reason"],
)

BACKUP_WRITE_FAILURES_TOTAL = Counter(
    "forwarder_backup_write_failures_total",
    "Failed backup store writes (each is retried)",
    ["pipeline"],
)

# --- Queue consumer ---

QUEUE_RECORDS_POLLED_TOTAL = Counter(
    "forwarder_queue_records_polled_total",
    "Records received from the record queue",
    ["consumer"],
)

QUEUE_RECORDS_ACKED_TOTAL = Counter(
    "forwarder_queue_records_acked_total",
    "Records acknowledged (deleted) on the record queue",
    ["consumer"],
)

QUEUE_POLL_ERRORS_TOTAL = Counter(
    "forwarder_queue_poll_errors_total",
    "Record queue poll failures",
    ["consumer"],
)

QUEUE_ACK_ERRORS_TOTAL = Counter(
    "forwarder_queue_ack_errors_total",
    "Record queue acknowledgment failures",
    ["consumer"],
)


class MetricsRegistry:
    """Centralized access to forwarder metrics."""

    records_ingested_total = RECORDS_INGESTED_TOTAL
    ingest_rejected_total = INGEST_REJECTED_TOTAL
    batches_sealed_total = BATCHES_SEALED_TOTAL
    buffered_bytes = BUFFERED_BYTES
    pending_batches = PENDING_BATCHES
    sink_writes_total = SINK_WRITES_TOTAL
    sink_write_latency = SINK_WRITE_LATENCY
    delivery_retries_total = DELIVERY_RETRIES_TOTAL
    batches_delivered_total = BATCHES_DELIVERED_TOTAL
    batches_backed_up_total = BATCHES_BACKED_UP_TOTAL
    backup_write_failures_total = BACKUP_WRITE_FAILURES_TOTAL
    queue_records_polled_total = QUEUE_RECORDS_POLLED_TOTAL
    queue_records_acked_total = QUEUE_RECORDS_ACKED_TOTAL
    queue_poll_errors_total = QUEUE_POLL_ERRORS_TOTAL
    queue_ack_errors_total = QUEUE_ACK_ERRORS_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
