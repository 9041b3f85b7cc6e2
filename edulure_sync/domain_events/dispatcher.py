"""
Domain event dispatcher.

Polls the dispatch queue, forwards each domain event to the webhook bus and
keeps its own attempt, backoff and dead-letter bookkeeping, independent of
the bus's per-delivery retries.
"""
import random
import time
import traceback
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from edulure_sync import metrics
from edulure_sync.datetime_utils import isoformat_utc, utcnow
from edulure_sync.domain_events.store import DomainEventStore
from edulure_sync.engine import DispatchEngine
from edulure_sync.logging_config import get_logger

TICK_JOB_ID = "domain-event-dispatch"
RECOVER_JOB_ID = "domain-event-dispatch-recover"
EVENT_LOAD_RETRY_SECONDS = 60
STACK_LIMIT = 4000
EVENT_SOURCE = "domain-events"


@dataclass
class DispatcherSettings:
    enabled: bool = True
    poll_interval_ms: int = 2000
    batch_size: int = 50
    max_attempts: int = 8
    initial_backoff_seconds: float = 30
    max_backoff_seconds: float = 900
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.15
    recover_interval_ms: int = 60000
    recover_timeout_minutes: int = 10
    worker_id: str = "domain-dispatcher"

    @classmethod
    def from_config(cls, config):
        return cls(
            enabled=config["DOMAIN_EVENTS_DISPATCH_ENABLED"],
            poll_interval_ms=config["DOMAIN_EVENTS_DISPATCH_POLL_INTERVAL_MS"],
            batch_size=config["DOMAIN_EVENTS_DISPATCH_BATCH_SIZE"],
            max_attempts=config["DOMAIN_EVENTS_DISPATCH_MAX_ATTEMPTS"],
            initial_backoff_seconds=config["DOMAIN_EVENTS_DISPATCH_INITIAL_BACKOFF_SECONDS"],
            max_backoff_seconds=config["DOMAIN_EVENTS_DISPATCH_MAX_BACKOFF_SECONDS"],
            backoff_multiplier=config["DOMAIN_EVENTS_DISPATCH_BACKOFF_MULTIPLIER"],
            jitter_ratio=config["DOMAIN_EVENTS_DISPATCH_JITTER_RATIO"],
            recover_interval_ms=config["DOMAIN_EVENTS_DISPATCH_RECOVER_INTERVAL_MS"],
            recover_timeout_minutes=config["DOMAIN_EVENTS_DISPATCH_RECOVER_TIMEOUT_MINUTES"],
            worker_id=config["DOMAIN_EVENTS_DISPATCH_WORKER_ID"],
        )


class DomainEventDispatcher:
    """Forwards recorded domain events to the webhook bus, at least once."""

    def __init__(self, settings: DispatcherSettings, bus, store: Optional[DomainEventStore] = None,
                 clock: Callable = utcnow, rng: Callable[[], float] = random.random):
        self.settings = settings
        self.bus = bus
        self.store = store or DomainEventStore()
        self.clock = clock
        self.rng = rng
        self.logger = get_logger(__name__, service="domain-event-dispatcher", worker_id=settings.worker_id)
        self._started = False

    def start(self, scheduler):
        if not self.settings.enabled:
            self.logger.warning("Domain event dispatcher disabled")
            return
        if self._started:
            return
        scheduler.add_interval(TICK_JOB_ID, self.tick, self.settings.poll_interval_ms / 1000)
        scheduler.add_interval(RECOVER_JOB_ID, self.recover, self.settings.recover_interval_ms / 1000)
        self._started = True
        self.logger.info(
            "Domain event dispatcher started",
            poll_interval_ms=self.settings.poll_interval_ms,
            batch_size=self.settings.batch_size,
            max_attempts=self.settings.max_attempts,
        )

    def stop(self, scheduler=None):
        if scheduler is not None:
            scheduler.remove(TICK_JOB_ID)
            scheduler.remove(RECOVER_JOB_ID)
        self._started = False
        self.logger.info("Domain event dispatcher stopped")

    def tick(self) -> int:
        """Claim one batch of due dispatches and process them in order."""
        self._report_queue_depth()

        claimed = self.store.claim_pending(self.settings.worker_id, self.clock(), self.settings.batch_size)
        for dispatch in claimed:
            try:
                self.process_dispatch(dispatch)
            except Exception as exc:
                self.store.rollback()
                # The row stays `processing` until the recovery sweep returns it
                self.logger.error(
                    "Failed to record dispatch outcome",
                    dispatch_id=dispatch.id,
                    error=str(exc),
                    exc_info=True,
                )
        return len(claimed)

    def recover(self) -> int:
        now = self.clock()
        stale_before = now - timedelta(minutes=self.settings.recover_timeout_minutes)
        recovered = self.store.reset_stuck(stale_before, now)
        if recovered:
            self.logger.warning("Recovered stuck domain event dispatches", count=recovered)
        return recovered

    def process_dispatch(self, dispatch):
        attempt_number = dispatch.attempt_count + 1
        started = time.monotonic()

        try:
            event = self.store.find_event(dispatch.event_id)
        except Exception as exc:
            self.store.rollback()
            retry_at = self.clock() + timedelta(seconds=EVENT_LOAD_RETRY_SECONDS)
            self.store.mark_failed(
                dispatch, attempt_number, str(exc), retry_at, terminal=False,
                backoff_seconds=EVENT_LOAD_RETRY_SECONDS,
            )
            self.logger.error("Failed to load domain event", dispatch_id=dispatch.id,
                              event_id=dispatch.event_id, exc_info=True)
            self._observe(dispatch.event_type or "unknown", "error", started)
            return "retry"

        if event is None:
            self.store.mark_delivered(dispatch, self.clock(), attempt_number, {"reason": "missing_event"})
            self.logger.warning("Domain event missing; acknowledging dispatch",
                                dispatch_id=dispatch.id, event_id=dispatch.event_id)
            self._observe(dispatch.event_type or "unknown", "missing", started)
            return "missing"

        try:
            webhook_event = self.bus.publish(
                event.event_type,
                event.payload,
                source=EVENT_SOURCE,
                correlation_id=f"domain-event-{event.id}",
                metadata={
                    "entityType": event.entity_type,
                    "entityId": event.entity_id,
                    "performedBy": event.performed_by,
                },
            )
        except Exception as exc:
            self.store.rollback()
            return self._handle_failure(dispatch, event, exc, started)

        self.store.mark_delivered(
            dispatch,
            self.clock(),
            attempt_number,
            {"attempts": attempt_number, "webhookEventId": webhook_event.id if webhook_event is not None else None},
        )
        self._observe(event.event_type, "delivered", started)
        self.logger.info(
            "Domain event dispatched",
            dispatch_id=dispatch.id,
            event_id=event.id,
            event_type=event.event_type,
            attempt=attempt_number,
        )
        return "delivered"

    def _handle_failure(self, dispatch, event, error, started):
        now = self.clock()
        decision = DispatchEngine.resolve_failure(
            now=now,
            attempt_count=dispatch.attempt_count,
            max_attempts=self.settings.max_attempts,
            initial_backoff_seconds=self.settings.initial_backoff_seconds,
            backoff_multiplier=self.settings.backoff_multiplier,
            max_backoff_seconds=self.settings.max_backoff_seconds,
            jitter_ratio=self.settings.jitter_ratio,
            random_value=self.rng(),
        )
        self.store.mark_failed(
            dispatch,
            decision.attempt_number,
            str(error),
            decision.next_available_at,
            terminal=decision.terminal,
            backoff_seconds=decision.backoff_seconds,
        )

        metrics.safe_metric(lambda: metrics.dispatch_failures.labels(
            event_type=event.event_type, terminal="true" if decision.terminal else "false").inc())
        self._observe(event.event_type, "failed", started)

        if decision.terminal:
            self.logger.error(
                "Domain event dispatch failed permanently",
                dispatch_id=dispatch.id,
                event_id=event.id,
                event_type=event.event_type,
                attempts=decision.attempt_number,
                error=str(error),
            )
            self._dead_letter(dispatch, event, error, decision.attempt_number)
            return "failed"

        self.logger.warning(
            "Domain event dispatch failed; retry scheduled",
            dispatch_id=dispatch.id,
            event_id=event.id,
            event_type=event.event_type,
            attempt=decision.attempt_number,
            backoff_seconds=round(decision.backoff_seconds, 3),
            next_available_at=isoformat_utc(decision.next_available_at),
            error=str(error),
        )
        return "retry"

    def _dead_letter(self, dispatch, event, error, attempt_count):
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        try:
            self.store.record_dead_letter(
                dispatch,
                event,
                attempt_count,
                failure_reason=type(error).__name__,
                failure_message=str(error),
                metadata={
                    "entityType": event.entity_type,
                    "entityId": event.entity_id,
                    "performedBy": event.performed_by,
                    "workerId": self.settings.worker_id,
                    "stack": stack[:STACK_LIMIT],
                },
            )
        except Exception as exc:
            self.store.rollback()
            self.logger.error("Failed to record dead letter", dispatch_id=dispatch.id,
                              error=str(exc), exc_info=True)

    def _observe(self, event_type, outcome, started):
        duration = time.monotonic() - started
        metrics.safe_metric(lambda: metrics.dispatch_attempts.labels(event_type=event_type, outcome=outcome).inc())
        metrics.safe_metric(lambda: metrics.dispatch_duration.labels(
            event_type=event_type, outcome=outcome).observe(duration))

    def _report_queue_depth(self):
        try:
            depth = self.store.queue_depth()
            for status in ("pending", "processing", "delivered", "failed"):
                metrics.dispatch_queue_depth.labels(status=status).set(depth.get(status, 0))
            metrics.dispatch_dead_letters.labels(status="open").set(self.store.dead_letter_count())
        except Exception as exc:
            self.store.rollback()
            self.logger.warning("Failed to report dispatch queue depth", error=str(exc))
