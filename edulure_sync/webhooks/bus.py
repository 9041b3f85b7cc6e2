"""
Webhook event bus.

`publish` fans an event out to every matching subscription as independent
delivery rows; `tick` claims due deliveries, attempts them over HTTP and
resolves each one with retry and circuit breaker bookkeeping.
"""
import random
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import requests

from edulure_sync import metrics
from edulure_sync.datetime_utils import isoformat_utc, utcnow
from edulure_sync.engine import DeliveryEngine
from edulure_sync.logging_config import get_logger
from edulure_sync.models import DeliveryStatus, WebhookEventStatus
from edulure_sync.webhooks.signing import build_body, build_headers
from edulure_sync.webhooks.store import WebhookStore

RESPONSE_BODY_LIMIT = 4000
JOB_ID = "webhook-event-bus"


@dataclass
class WebhookBusSettings:
    enabled: bool = True
    poll_interval_ms: int = 2000
    batch_size: int = 25
    max_attempts: int = 6
    initial_backoff_seconds: int = 60
    max_backoff_seconds: int = 1800
    delivery_timeout_ms: int = 5000
    recover_after_ms: int = 300000
    max_workers: int = 8

    @classmethod
    def from_config(cls, config):
        return cls(
            enabled=config["WEBHOOK_BUS_ENABLED"],
            poll_interval_ms=config["WEBHOOK_BUS_POLL_INTERVAL_MS"],
            batch_size=config["WEBHOOK_BUS_BATCH_SIZE"],
            max_attempts=config["WEBHOOK_BUS_MAX_ATTEMPTS"],
            initial_backoff_seconds=config["WEBHOOK_BUS_INITIAL_BACKOFF_SECONDS"],
            max_backoff_seconds=config["WEBHOOK_BUS_MAX_BACKOFF_SECONDS"],
            delivery_timeout_ms=config["WEBHOOK_BUS_DELIVERY_TIMEOUT_MS"],
            recover_after_ms=config["WEBHOOK_BUS_RECOVER_AFTER_MS"],
            max_workers=config["WEBHOOK_BUS_MAX_WORKERS"],
        )


@dataclass
class DeliveryRequest:
    """Everything an HTTP worker needs; holds no ORM state."""
    delivery_id: int
    delivery_uuid: str
    event_id: int
    event_type: str
    target_url: str
    body: str
    headers: Dict[str, str]
    timeout_seconds: float


@dataclass
class DeliveryOutcome:
    success: bool
    duration_seconds: float
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


def _target_label(url):
    return urlparse(url).netloc or "unknown"


class WebhookEventBus:
    """Fans events out to webhook subscriptions and delivers them at least once."""

    def __init__(self, settings: WebhookBusSettings, store: Optional[WebhookStore] = None,
                 http_session: Optional[requests.Session] = None,
                 clock: Callable = utcnow, rng: Callable[[], float] = random.random):
        self.settings = settings
        self.store = store or WebhookStore()
        self.http = http_session or requests.Session()
        self.clock = clock
        self.rng = rng
        self.logger = get_logger(__name__, service="webhook-event-bus")
        self._executor: Optional[ThreadPoolExecutor] = None
        self._started = False

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix="webhook-delivery-"
            )
        return self._executor

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self, scheduler):
        if not self.settings.enabled:
            self.logger.warning("Webhook event bus disabled; not scheduling dispatch loop")
            return
        if self._started:
            return
        self._ensure_executor()
        scheduler.add_interval(JOB_ID, self.tick, self.settings.poll_interval_ms / 1000)
        self._started = True
        self.logger.info(
            "Webhook event bus started",
            poll_interval_ms=self.settings.poll_interval_ms,
            batch_size=self.settings.batch_size,
        )

    def stop(self, scheduler=None):
        """Stop scheduling ticks. In-flight attempts finish or time out on their own."""
        if scheduler is not None:
            scheduler.remove(JOB_ID)
        # A later start() or tick() builds a fresh pool
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
        self._started = False
        self.logger.info("Webhook event bus stopped")

    # -------------------------
    # Publishing
    # -------------------------
    def publish(self, event_type: str, payload, source: Optional[str] = None,
                correlation_id: Optional[str] = None, metadata: Optional[dict] = None,
                deliver_after=None):
        """
        Queue an event for every subscription listening to `event_type`.

        Returns:
            The created WebhookEvent, or None when nothing subscribes to it
        """
        if not event_type:
            raise ValueError("event_type is required to publish a webhook event")
        if not self.settings.enabled:
            self.logger.debug("Webhook event bus disabled; dropping publish", event_type=event_type)
            return None

        subscriptions = self.store.matching_subscriptions(event_type)
        if not subscriptions:
            return None

        now = self.clock()
        source = source or "unknown"
        correlation_id = correlation_id or str(uuid.uuid4())
        deliveries = [
            (
                subscription,
                subscription.max_attempts or self.settings.max_attempts,
                DeliveryEngine.initial_attempt_at(now, deliver_after, subscription.circuit_open_until),
            )
            for subscription in subscriptions
        ]

        try:
            event = self.store.create_event(
                event_type, payload, source, correlation_id, metadata, now, deliveries
            )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise

        metrics.safe_metric(lambda: metrics.webhook_events_published.labels(event_type=event_type, source=source).inc())
        self.logger.info(
            "Webhook event queued",
            event_id=event.id,
            event_uuid=event.event_uuid,
            event_type=event_type,
            deliveries=len(deliveries),
        )
        return event

    # -------------------------
    # Dispatch loop
    # -------------------------
    def tick(self) -> int:
        """Run one dispatch cycle. Returns the number of claimed deliveries."""
        now = self.clock()
        recovered = self.store.recover_stuck(now - timedelta(milliseconds=self.settings.recover_after_ms), now)
        if recovered:
            self.logger.warning("Recovered stuck webhook deliveries", count=recovered)

        claimed = self.store.claim_due(now, self.settings.batch_size)
        if not claimed:
            metrics.safe_metric(lambda: metrics.webhook_delivery_batch_size.labels(result="empty").set(0))
            return 0
        metrics.safe_metric(lambda: metrics.webhook_delivery_batch_size.labels(result="claimed").set(len(claimed)))

        prepared = []
        for delivery in claimed:
            request = self._prepare(delivery, now)
            if request is not None:
                prepared.append((delivery, request))
        self.store.commit()

        outcomes = list(self._ensure_executor().map(self._send, [request for _, request in prepared]))

        for (delivery, request), outcome in zip(prepared, outcomes):
            try:
                self._resolve(delivery, request, outcome)
            except Exception as exc:
                self.store.rollback()
                self.logger.error(
                    "Failed to record webhook delivery outcome",
                    delivery_id=request.delivery_id,
                    error=str(exc),
                    exc_info=True,
                )
        return len(claimed)

    def _prepare(self, delivery, now) -> Optional[DeliveryRequest]:
        event = delivery.event
        subscription = delivery.subscription
        if event is None or subscription is None:
            self.logger.warning(
                "Skipping webhook delivery with missing event or subscription",
                delivery_id=delivery.id,
                event_id=delivery.event_id,
                subscription_id=delivery.subscription_id,
            )
            return None

        if event.status in (WebhookEventStatus.QUEUED.value, WebhookEventStatus.PROCESSING.value):
            event.status = WebhookEventStatus.PROCESSING.value
        event.last_attempt_at = now

        attempt = delivery.attempt_count + 1
        body = build_body(
            event.event_uuid,
            event.event_type,
            event.source,
            event.correlation_id,
            event.payload,
            event.meta,
            isoformat_utc(event.first_queued_at),
            attempt,
        )
        headers = build_headers(
            subscription.signing_secret,
            event.event_type,
            delivery.delivery_uuid,
            event.correlation_id,
            isoformat_utc(now),
            attempt,
            body,
            static_headers=subscription.static_headers,
        )
        timeout_ms = subscription.delivery_timeout_ms or self.settings.delivery_timeout_ms
        return DeliveryRequest(
            delivery_id=delivery.id,
            delivery_uuid=delivery.delivery_uuid,
            event_id=event.id,
            event_type=event.event_type,
            target_url=subscription.target_url,
            body=body,
            headers=headers,
            timeout_seconds=timeout_ms / 1000,
        )

    def _send(self, request: DeliveryRequest) -> DeliveryOutcome:
        """HTTP POST for one delivery. Runs on the worker pool; touches no database state."""
        started = time.monotonic()
        try:
            response = self.http.post(
                request.target_url,
                data=request.body.encode("utf-8"),
                headers=request.headers,
                timeout=request.timeout_seconds,
            )
        except requests.RequestException as exc:
            return DeliveryOutcome(
                success=False,
                duration_seconds=time.monotonic() - started,
                error_code=type(exc).__name__,
                error_message=str(exc),
            )

        duration = time.monotonic() - started
        text = (response.text or "")[:RESPONSE_BODY_LIMIT]
        if 200 <= response.status_code < 300:
            return DeliveryOutcome(True, duration, status_code=response.status_code, response_body=text)

        return DeliveryOutcome(
            success=False,
            duration_seconds=duration,
            status_code=response.status_code,
            response_body=text,
            error_code="DeliveryError",
            error_message=f"Webhook responded with status {response.status_code}",
        )

    def _resolve(self, delivery, request: DeliveryRequest, outcome: DeliveryOutcome):
        now = self.clock()
        subscription = delivery.subscription
        target = _target_label(request.target_url)

        delivery.request_headers = request.headers
        delivery.response_code = outcome.status_code
        delivery.response_body = outcome.response_body

        if outcome.success:
            delivery.status = DeliveryStatus.DELIVERED.value
            delivery.attempt_count = delivery.attempt_count + 1
            delivery.delivered_at = now
            delivery.next_attempt_at = None
            delivery.error_code = None
            delivery.error_message = None

            subscription.consecutive_failures = 0
            subscription.last_success_at = now
            subscription.circuit_open_until = None
            self.store.commit()

            metrics.safe_metric(lambda: metrics.webhook_delivery_success.labels(
                event_type=request.event_type, target=target).inc())
            metrics.safe_metric(lambda: metrics.webhook_delivery_duration.labels(
                event_type=request.event_type, result="success").observe(outcome.duration_seconds))
            self.logger.info(
                "Webhook delivered",
                delivery_uuid=request.delivery_uuid,
                event_type=request.event_type,
                status_code=outcome.status_code,
                attempt=delivery.attempt_count,
            )
        else:
            decision = DeliveryEngine.resolve_failure(
                now=now,
                attempt_count=delivery.attempt_count,
                max_attempts=delivery.max_attempts,
                consecutive_failures=subscription.consecutive_failures or 0,
                breaker_threshold=subscription.circuit_breaker_threshold,
                breaker_duration_seconds=subscription.circuit_breaker_duration_seconds,
                backoff_base_seconds=DeliveryEngine.backoff_base(
                    subscription.retry_backoff_seconds, self.settings.initial_backoff_seconds
                ),
                max_backoff_seconds=self.settings.max_backoff_seconds,
                random_value=self.rng(),
                current_circuit_open_until=subscription.circuit_open_until,
            )

            delivery.attempt_count = decision.attempt_count
            delivery.error_code = outcome.error_code
            delivery.error_message = outcome.error_message
            delivery.next_attempt_at = decision.next_attempt_at
            if decision.terminal:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.failed_at = now
            else:
                delivery.status = DeliveryStatus.PENDING.value

            opened = decision.circuit_open_until != subscription.circuit_open_until
            subscription.consecutive_failures = decision.consecutive_failures
            subscription.last_failure_at = now
            subscription.last_error_code = outcome.error_code
            subscription.circuit_open_until = decision.circuit_open_until
            self.store.commit()

            metrics.safe_metric(lambda: metrics.webhook_delivery_failures.labels(
                event_type=request.event_type, target=target,
                terminal="true" if decision.terminal else "false").inc())
            metrics.safe_metric(lambda: metrics.webhook_delivery_duration.labels(
                event_type=request.event_type, result="failure").observe(outcome.duration_seconds))
            self.logger.warning(
                "Webhook delivery failed",
                delivery_uuid=request.delivery_uuid,
                event_type=request.event_type,
                status_code=outcome.status_code,
                error_code=outcome.error_code,
                attempt=decision.attempt_count,
                max_attempts=delivery.max_attempts,
                terminal=decision.terminal,
                next_attempt_at=isoformat_utc(decision.next_attempt_at),
            )
            if opened and decision.circuit_open_until is not None:
                self.logger.warning(
                    "Webhook circuit opened",
                    subscription_id=subscription.id,
                    target=target,
                    consecutive_failures=decision.consecutive_failures,
                    circuit_open_until=isoformat_utc(decision.circuit_open_until),
                )

        self.store.refresh_event_status(request.event_id, now)

    def delivery_snapshot(self) -> Dict[str, int]:
        return self.store.queue_depth()
