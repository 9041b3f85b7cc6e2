import uuid
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

from edulure_sync.datetime_utils import utcnow, isoformat_utc

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


class DispatchStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


class WebhookEventStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    PARTIAL = "partial"
    FAILED = "failed"


class DeliveryStatus(Enum):
    PENDING = "pending"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    FAILED = "failed"


class SyncRunStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------------

class DomainEvent(db.Model):
    """Append-only record of something that happened to a platform entity."""
    __tablename__ = "domain_events"

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(120), nullable=False, index=True)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.String(120), nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    performed_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<DomainEvent {self.id} - {self.event_type} - {self.entity_type}:{self.entity_id}>"


class DomainEventDispatch(db.Model):
    """Delivery bookkeeping for one domain event. Only the dispatcher mutates it."""
    __tablename__ = "domain_event_dispatch_queue"

    id = db.Column(db.Integer, primary_key=True)
    # Weak reference: the event row may disappear without cascading here
    event_id = db.Column(db.Integer, nullable=False, index=True)
    event_type = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default=DispatchStatus.PENDING.value, index=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    next_available_at = db.Column(db.DateTime, nullable=True, default=utcnow, index=True)
    worker_id = db.Column(db.String(120), nullable=True)
    locked_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<DomainEventDispatch {self.id} - event {self.event_id} - {self.status}>"


class DomainEventDeadLetter(db.Model):
    """Terminal dispatcher failure kept for manual follow-up."""
    __tablename__ = "domain_event_dead_letters"

    id = db.Column(db.Integer, primary_key=True)
    dispatch_id = db.Column(db.Integer, nullable=False, index=True)
    event_id = db.Column(db.Integer, nullable=False, index=True)
    event_type = db.Column(db.String(120), nullable=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    failure_reason = db.Column(db.String(120), nullable=True)
    failure_message = db.Column(db.Text, nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<DomainEventDeadLetter {self.id} - dispatch {self.dispatch_id}>"


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

class WebhookSubscription(db.Model):
    """An external endpoint that receives signed event deliveries."""
    __tablename__ = "integration_webhook_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(36), unique=True, nullable=False, default=_uuid)
    name = db.Column(db.String(120), nullable=True)
    target_url = db.Column(db.Text, nullable=False)
    signing_secret = db.Column(db.String(255), nullable=False)
    event_types = db.Column(db.JSON, nullable=False, default=list)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    static_headers = db.Column(db.JSON, nullable=True)
    delivery_timeout_ms = db.Column(db.Integer, nullable=True)
    max_attempts = db.Column(db.Integer, nullable=True)
    retry_backoff_seconds = db.Column(db.Integer, nullable=True)
    circuit_breaker_threshold = db.Column(db.Integer, nullable=False, default=5)
    circuit_breaker_duration_seconds = db.Column(db.Integer, nullable=False, default=900)

    # Health state, written by the bus after every attempt
    consecutive_failures = db.Column(db.Integer, nullable=False, default=0)
    circuit_open_until = db.Column(db.DateTime, nullable=True)
    last_success_at = db.Column(db.DateTime, nullable=True)
    last_failure_at = db.Column(db.DateTime, nullable=True)
    last_error_code = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def matches(self, event_type):
        types = self.event_types or []
        return "*" in types or event_type in types

    def __repr__(self):
        return f"<WebhookSubscription {self.id} - {self.target_url}>"


class WebhookEvent(db.Model):
    """One published event; its status is rolled up from its deliveries."""
    __tablename__ = "integration_webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    event_uuid = db.Column(db.String(36), unique=True, nullable=False, default=_uuid)
    event_type = db.Column(db.String(120), nullable=False, index=True)
    source = db.Column(db.String(120), nullable=False, default="unknown")
    correlation_id = db.Column(db.String(120), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=True)
    meta = db.Column("metadata", db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=WebhookEventStatus.QUEUED.value, index=True)
    delivery_count = db.Column(db.Integer, nullable=False, default=0)
    first_queued_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_attempt_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    deliveries = db.relationship("WebhookDelivery", back_populates="event", lazy="select")

    def __repr__(self):
        return f"<WebhookEvent {self.id} - {self.event_type} - {self.status}>"


class WebhookDelivery(db.Model):
    """One attempt stream of one event to one subscription."""
    __tablename__ = "integration_webhook_deliveries"

    id = db.Column(db.Integer, primary_key=True)
    delivery_uuid = db.Column(db.String(36), unique=True, nullable=False, default=_uuid)
    event_id = db.Column(db.Integer, db.ForeignKey("integration_webhook_events.id"), nullable=False, index=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("integration_webhook_subscriptions.id"), nullable=False, index=True
    )
    status = db.Column(db.String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=6)
    next_attempt_at = db.Column(db.DateTime, nullable=True, index=True)
    last_attempt_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    response_code = db.Column(db.Integer, nullable=True)
    response_body = db.Column(db.Text, nullable=True)
    error_code = db.Column(db.String(120), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    request_headers = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    event = db.relationship("WebhookEvent", back_populates="deliveries")
    subscription = db.relationship("WebhookSubscription")

    def __repr__(self):
        return f"<WebhookDelivery {self.delivery_uuid} - {self.status} ({self.attempt_count}/{self.max_attempts})>"


# ---------------------------------------------------------------------------
# CRM synchronisation
# ---------------------------------------------------------------------------

class IntegrationSyncRun(db.Model):
    """Track one delta sync run against an external CRM."""
    __tablename__ = "integration_sync_runs"

    id = db.Column(db.Integer, primary_key=True)
    integration = db.Column(db.String(40), nullable=False, index=True)
    sync_type = db.Column(db.String(40), nullable=False, default="delta")
    status = db.Column(db.String(20), nullable=False, default=SyncRunStatus.QUEUED.value, index=True)
    triggered_by = db.Column(db.String(40), nullable=False, default="manual")
    correlation_id = db.Column(db.String(64), nullable=False, default=_uuid)
    window_start_at = db.Column(db.DateTime, nullable=True)
    window_end_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)
    records_pushed = db.Column(db.Integer, nullable=False, default=0)
    records_pulled = db.Column(db.Integer, nullable=False, default=0)
    records_failed = db.Column(db.Integer, nullable=False, default=0)
    records_skipped = db.Column(db.Integer, nullable=False, default=0)
    meta = db.Column("metadata", db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    results = db.relationship("IntegrationSyncResult", back_populates="sync_run", lazy="dynamic")

    @property
    def duration_seconds(self):
        if not self.started_at or not self.finished_at:
            return None
        return max(0, round((self.finished_at - self.started_at).total_seconds()))

    def __repr__(self):
        return f"<IntegrationSyncRun {self.id} - {self.integration} - {self.status}>"

    def to_dict(self):
        return {
            'id': self.id,
            'integration': self.integration,
            'sync_type': self.sync_type,
            'status': self.status,
            'triggered_by': self.triggered_by,
            'correlation_id': self.correlation_id,
            'window_start_at': isoformat_utc(self.window_start_at),
            'window_end_at': isoformat_utc(self.window_end_at),
            'started_at': isoformat_utc(self.started_at),
            'finished_at': isoformat_utc(self.finished_at),
            'duration_seconds': self.duration_seconds,
            'records_pushed': self.records_pushed,
            'records_pulled': self.records_pulled,
            'records_failed': self.records_failed,
            'records_skipped': self.records_skipped,
            'metadata': self.meta or {},
        }


class IntegrationSyncResult(db.Model):
    """Per-record outcome of a sync run."""
    __tablename__ = "integration_sync_results"

    id = db.Column(db.Integer, primary_key=True)
    sync_run_id = db.Column(db.Integer, db.ForeignKey("integration_sync_runs.id"), nullable=False, index=True)
    integration = db.Column(db.String(40), nullable=False)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(255), nullable=True)
    external_id = db.Column(db.String(255), nullable=True)
    direction = db.Column(db.String(20), nullable=False)  # 'outbound' or 'inbound'
    operation = db.Column(db.String(20), nullable=False)  # 'upsert' or 'read'
    status = db.Column(db.String(20), nullable=False)     # 'succeeded', 'failed', 'observed'
    message = db.Column(db.Text, nullable=True)
    payload_hash = db.Column(db.String(64), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    sync_run = db.relationship("IntegrationSyncRun", back_populates="results")

    def __repr__(self):
        return f"<IntegrationSyncResult {self.id} - {self.direction} {self.entity_id} - {self.status}>"


class IntegrationCallAudit(db.Model):
    """One HTTP attempt against a CRM API."""
    __tablename__ = "integration_call_audits"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(40), nullable=False, index=True)
    request_method = db.Column(db.String(10), nullable=False)
    request_path = db.Column(db.String(500), nullable=False)
    status_code = db.Column(db.Integer, nullable=True)
    outcome = db.Column(db.String(20), nullable=False)  # 'success', 'retry', 'failure'
    duration_ms = db.Column(db.Integer, nullable=True)
    attempt = db.Column(db.Integer, nullable=False, default=1)
    meta = db.Column("metadata", db.JSON, nullable=True)
    error_code = db.Column(db.String(120), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self):
        return f"<IntegrationCallAudit {self.provider} {self.request_method} {self.request_path} - {self.outcome}>"


class ReconciliationReport(db.Model):
    """Drift between platform records and a CRM for one reconciliation cycle."""
    __tablename__ = "integration_reconciliation_reports"

    id = db.Column(db.Integer, primary_key=True)
    integration = db.Column(db.String(40), nullable=False, index=True)
    report_date = db.Column(db.String(10), nullable=False)
    correlation_id = db.Column(db.String(64), nullable=True)
    mismatch_count = db.Column(db.Integer, nullable=False, default=0)
    missing_in_platform = db.Column(db.JSON, nullable=False, default=list)
    missing_in_integration = db.Column(db.JSON, nullable=False, default=list)
    extra_context = db.Column(db.JSON, nullable=True)
    generated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<ReconciliationReport {self.integration} {self.report_date} - {self.mismatch_count}>"

    def to_dict(self):
        return {
            'id': self.id,
            'integration': self.integration,
            'report_date': self.report_date,
            'correlation_id': self.correlation_id,
            'mismatch_count': self.mismatch_count,
            'missing_in_platform': self.missing_in_platform or [],
            'missing_in_integration': self.missing_in_integration or [],
            'extra_context': self.extra_context or {},
            'generated_at': isoformat_utc(self.generated_at),
        }


# ---------------------------------------------------------------------------
# Platform tables read by the CRM record sources. Owned by the main
# application; mapped here read-only.
# ---------------------------------------------------------------------------

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    first_name = db.Column(db.String(120), nullable=True)
    last_name = db.Column(db.String(120), nullable=True)
    role = db.Column(db.String(40), nullable=True)
    last_login_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)


class Community(db.Model):
    __tablename__ = "communities"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)


class CommunityMember(db.Model):
    __tablename__ = "community_members"

    id = db.Column(db.Integer, primary_key=True)
    community_id = db.Column(db.Integer, db.ForeignKey("communities.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class CreationProject(db.Model):
    __tablename__ = "creation_projects"

    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(36), nullable=True, unique=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    summary = db.Column(db.Text, nullable=True)
    type = db.Column(db.String(40), nullable=True)
    status = db.Column(db.String(40), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    owner = db.relationship("User")
