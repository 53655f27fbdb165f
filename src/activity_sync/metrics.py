"""Prometheus metrics for the coordinators."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

# Registry for isolated metric collection
REGISTRY = CollectorRegistry()

ROOMS_CREATED = Counter(
    "chat_rooms_created_total", "Chat rooms created by kind", ["kind"], registry=REGISTRY
)
MESSAGES_SENT = Counter(
    "chat_messages_sent_total", "Chat messages sent by kind", ["kind"], registry=REGISTRY
)
NOTIFICATIONS_CREATED = Counter(
    "notifications_created_total", "Notifications created by type", ["type"], registry=REGISTRY
)
NOTIFICATIONS_SUPPRESSED = Counter(
    "notifications_suppressed_total",
    "Event notifications skipped by the self-suppression policy",
    ["type"],
    registry=REGISTRY,
)
NOTIFICATIONS_DELETED = Counter(
    "notifications_deleted_total", "Notifications deleted by reason", ["reason"], registry=REGISTRY
)
STORE_ERRORS = Counter(
    "store_errors_total", "Failed store calls by coordinator operation", ["operation"], registry=REGISTRY
)
LIVE_SUBSCRIPTIONS = Gauge(
    "live_subscriptions", "Currently registered live subscriptions", registry=REGISTRY
)


def render_metrics() -> bytes:
    """Prometheus exposition text for all coordinator metrics."""
    return generate_latest(REGISTRY)
