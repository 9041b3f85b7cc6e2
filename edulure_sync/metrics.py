"""
Prometheus metrics for the delivery and sync engine.

All collectors live on a dedicated registry so the app factory can be
called repeatedly (tests) without duplicate registration errors.
"""
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

from edulure_sync.logging_config import get_logger

logger = get_logger(__name__)

REGISTRY = CollectorRegistry(auto_describe=True)

# ============================================
# Webhook event bus
# ============================================

webhook_events_published = Counter(
    'edulure_webhook_events_published_total',
    'Webhook events accepted by the bus',
    ['event_type', 'source'],
    registry=REGISTRY,
)

webhook_delivery_duration = Histogram(
    'edulure_webhook_delivery_duration_seconds',
    'Webhook delivery attempt duration in seconds',
    ['event_type', 'result'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

webhook_delivery_failures = Counter(
    'edulure_webhook_delivery_failures_total',
    'Failed webhook delivery attempts',
    ['event_type', 'target', 'terminal'],
    registry=REGISTRY,
)

webhook_delivery_success = Counter(
    'edulure_webhook_delivery_success_total',
    'Successful webhook deliveries',
    ['event_type', 'target'],
    registry=REGISTRY,
)

webhook_delivery_batch_size = Gauge(
    'edulure_webhook_delivery_batch_size',
    'Deliveries claimed by the most recent bus tick',
    ['result'],
    registry=REGISTRY,
)

# ============================================
# Domain event dispatcher
# ============================================

dispatch_attempts = Counter(
    'edulure_domain_event_dispatch_attempts_total',
    'Domain event dispatch attempts',
    ['event_type', 'outcome'],
    registry=REGISTRY,
)

dispatch_duration = Histogram(
    'edulure_domain_event_dispatch_duration_seconds',
    'Domain event dispatch duration in seconds',
    ['event_type', 'outcome'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=REGISTRY,
)

dispatch_failures = Counter(
    'edulure_domain_event_dispatch_failures_total',
    'Failed domain event dispatch attempts',
    ['event_type', 'terminal'],
    registry=REGISTRY,
)

dispatch_queue_depth = Gauge(
    'edulure_domain_event_dispatch_queue_depth',
    'Domain event dispatch rows by status',
    ['status'],
    registry=REGISTRY,
)

dispatch_dead_letters = Gauge(
    'edulure_domain_event_dead_letters',
    'Domain event dispatches parked in the dead-letter table',
    ['status'],
    registry=REGISTRY,
)

# ============================================
# CRM integrations
# ============================================

integration_sync_runs = Counter(
    'edulure_integration_sync_runs_total',
    'Integration sync runs by outcome',
    ['integration', 'status', 'trigger'],
    registry=REGISTRY,
)

integration_records = Counter(
    'edulure_integration_records_total',
    'Records pushed to or observed from an integration',
    ['integration', 'direction', 'outcome'],
    registry=REGISTRY,
)

integration_sync_duration = Histogram(
    'edulure_integration_sync_duration_seconds',
    'Integration sync run duration in seconds',
    ['integration', 'sync_type', 'status'],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600],
    registry=REGISTRY,
)

integration_mismatches = Counter(
    'edulure_integration_mismatches_total',
    'Reconciliation mismatches detected',
    ['integration', 'direction'],
    registry=REGISTRY,
)

integration_request_attempts = Counter(
    'edulure_integration_request_attempts_total',
    'Outbound CRM API request attempts',
    ['provider', 'operation', 'outcome', 'retry'],
    registry=REGISTRY,
)


def safe_metric(action, *args, **kwargs):
    """Run a metric update; a broken collector must never fail the caller."""
    try:
        action(*args, **kwargs)
    except Exception as exc:
        logger.warning("Metric update failed", error=str(exc), error_type=type(exc).__name__)


def record_request_attempt(provider, operation, outcome, is_retry):
    safe_metric(
        lambda: integration_request_attempts.labels(
            provider=provider,
            operation=operation,
            outcome=outcome,
            retry="true" if is_retry else "false",
        ).inc()
    )


def render_latest():
    """Return (body, content_type) for the /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
