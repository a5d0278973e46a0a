"""Prometheus metrics for the Keycloak sync."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

FETCH_TASK_FAILURES = Counter(
    "keycloak_fetch_task_failure_count",
    "Failed Keycloak full sync tasks. Each increment means no data reached the "
    "catalog for that run; later runs may still succeed.",
    ["provider"],
)

FETCH_BATCH_FAILURES = Counter(
    "keycloak_fetch_data_batch_failure_count",
    "Failed Keycloak page fetches. Each increment means one batch of users or "
    "groups was skipped during a full sync.",
    ["provider"],
)

EVENTS_PROCESSED = Counter(
    "keycloak_events_processed_total",
    "Keycloak admin events handled by the reconciler",
    ["provider", "type", "result"],
)

LAST_SYNC_ENTITIES = Gauge(
    "keycloak_last_sync_entities",
    "Entities committed by the most recent full sync",
    ["provider", "kind"],
)


def render_latest() -> tuple[bytes, str]:
    """Current metrics in the Prometheus exposition format."""
    return generate_latest(), CONTENT_TYPE_LATEST
