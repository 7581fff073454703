"""
Prometheus Metrics

Process-wide collectors shared by the engines, the webhook gate and the API.
Exposed through GET /metrics.
"""

from prometheus_client import Counter, Histogram


# =============================================================================
# RESERVATIONS
# =============================================================================

RESERVATION_OUTCOMES = Counter(
    "checkout_reservations_total",
    "Cart reservation attempts by operation and outcome",
    ["operation", "outcome"],
)

RESERVATION_LATENCY = Histogram(
    "checkout_reservation_seconds",
    "Time spent applying a cart reservation change",
    ["operation"],
)

STORAGE_RETRIES = Counter(
    "checkout_storage_retries_total",
    "Retried storage operations after a transient failure or version conflict",
    ["operation"],
)


# =============================================================================
# ORDERS & INVENTORY
# =============================================================================

ORDERS_PLACED = Counter(
    "checkout_orders_placed_total",
    "Orders created from carts",
    ["payment_method"],
)

INVENTORY_FINALIZATIONS = Counter(
    "checkout_inventory_finalizations_total",
    "Order-level commits and releases by outcome",
    ["action", "outcome"],
)

SWEEP_RELEASES = Counter(
    "checkout_sweep_releases_total",
    "Holds released by the expiry sweep",
    ["kind"],
)


# =============================================================================
# WEBHOOKS
# =============================================================================

WEBHOOK_DELIVERIES = Counter(
    "checkout_webhook_deliveries_total",
    "Payment webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)

WEBHOOK_PROCESSING_TIME = Histogram(
    "checkout_webhook_processing_seconds",
    "Time spent applying a new webhook event",
    ["provider"],
)

DOUBLE_PROCESSING = Counter(
    "checkout_double_processing_total",
    "Payment confirmations that found the order already finalized",
    ["provider"],
)


# =============================================================================
# EVENTS
# =============================================================================

EVENTS_PUBLISHED = Counter(
    "checkout_events_published_total",
    "Outbound events handed to the event channel",
    ["event_type", "status"],
)
