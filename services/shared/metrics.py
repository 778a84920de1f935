"""
Shared Prometheus metrics registry.

The analysis consumer increments these counters/gauges; its /metrics
handler serves prometheus_client.generate_latest().
"""

from prometheus_client import Counter, Gauge, Histogram

# Consumer
consumer_messages_total = Counter(
    "agro_consumer_messages_total",
    "Sensor messages resolved by the consumer",
    ["result"],  # acked | rejected | requeued
)

consumer_fetch_errors_total = Counter(
    "agro_consumer_fetch_errors_total",
    "Errors while pulling messages from the queue",
)

consumer_inflight_messages = Gauge(
    "agro_consumer_inflight_messages",
    "Messages currently being processed (0 or 1 per instance)",
)

# Readings
readings_persisted_total = Counter(
    "agro_readings_persisted_total",
    "Sensor readings written to the reading store",
    ["sensor_type"],
)

# Rules
rule_evaluations_total = Counter(
    "agro_rule_evaluations_total",
    "Rule engine evaluations",
    ["sensor_type", "outcome"],  # triggered | clear
)

# Alerts
alerts_total = Counter(
    "agro_alerts_total",
    "Alert candidates handled by the deduplicator",
    ["alert_type", "result"],  # created | suppressed
)

alert_constraint_violations_total = Counter(
    "agro_alert_constraint_violations_total",
    "Concurrent duplicate alert inserts caught by the unique index",
)

processing_duration_seconds = Histogram(
    "agro_processing_duration_seconds",
    "Duration of one message from fetch to ack/nak in seconds",
    ["result"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# Database pool
db_pool_size = Gauge(
    "agro_db_pool_size",
    "Current total size of the database connection pool",
)

db_pool_free = Gauge(
    "agro_db_pool_free",
    "Current number of free (idle) connections in the pool",
)
