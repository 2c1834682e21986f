"""
Prometheus metrics: lifecycle transitions and rejections (API), deliveries and dead letters (worker), queue depth.
"""
from prometheus_client import Counter, Gauge, Histogram, generate_latest

# Lifecycle: state changes applied (by entity and resulting status)
order_transitions_total = Counter(
    "order_transitions_total",
    "Total lifecycle state changes committed",
    ["entity", "status"],
)
lifecycle_rejections_total = Counter(
    "lifecycle_rejections_total",
    "Total lifecycle operations rejected",
    ["error"],
)
events_published_total = Counter(
    "events_published_total",
    "Total lifecycle events published on the bus",
    ["event"],
)

# Worker: delivery outcomes
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total webhook delivery attempts",
    ["event", "outcome"],
)
webhook_dead_letters_total = Counter(
    "webhook_dead_letters_total",
    "Total deliveries moved to the dead-letter queue after max attempts",
)
webhook_delivery_seconds = Histogram(
    "webhook_delivery_seconds",
    "Duration of a single webhook delivery attempt",
)

# Queue depth - backpressure / consumer lag
webhook_queue_depth = Gauge(
    "webhook_queue_depth",
    "Approximate number of delivery jobs waiting",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
