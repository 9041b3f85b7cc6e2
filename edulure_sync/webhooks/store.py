"""Persistence for webhook subscriptions, events and deliveries."""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update

from edulure_sync.engine import DeliveryEngine
from edulure_sync.models import (
    db,
    DeliveryStatus,
    WebhookDelivery,
    WebhookEvent,
    WebhookEventStatus,
    WebhookSubscription,
)


class WebhookStore:
    """Queries and state transitions used by the webhook event bus."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()

    def matching_subscriptions(self, event_type: str) -> List[WebhookSubscription]:
        subscriptions = (
            self.session.execute(
                select(WebhookSubscription)
                .where(WebhookSubscription.enabled.is_(True))
                .order_by(WebhookSubscription.id.asc())
            )
            .scalars()
            .all()
        )
        return [subscription for subscription in subscriptions if subscription.matches(event_type)]

    def create_event(self, event_type, payload, source, correlation_id, metadata, now,
                     deliveries) -> WebhookEvent:
        """
        Insert one event and its deliveries in the current transaction.

        Args:
            deliveries: list of (subscription, max_attempts, next_attempt_at)
        """
        event = WebhookEvent(
            event_type=event_type,
            source=source,
            correlation_id=correlation_id,
            payload=payload,
            meta=metadata,
            status=WebhookEventStatus.QUEUED.value,
            delivery_count=len(deliveries),
            first_queued_at=now,
        )
        self.session.add(event)
        self.session.flush()

        for subscription, max_attempts, next_attempt_at in deliveries:
            self.session.add(
                WebhookDelivery(
                    event_id=event.id,
                    subscription_id=subscription.id,
                    status=DeliveryStatus.PENDING.value,
                    attempt_count=0,
                    max_attempts=max_attempts,
                    next_attempt_at=next_attempt_at,
                )
            )
        self.session.flush()
        return event

    def recover_stuck(self, stale_before: datetime, now: datetime) -> int:
        """Return `delivering` rows abandoned by a crashed tick to the pending queue."""
        result = self.session.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.DELIVERING.value,
                or_(
                    WebhookDelivery.last_attempt_at.is_(None),
                    WebhookDelivery.last_attempt_at < stale_before,
                ),
            )
            .values(status=DeliveryStatus.PENDING.value, next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount or 0

    def claim_due(self, now: datetime, limit: int) -> List[WebhookDelivery]:
        """
        Claim up to `limit` due deliveries whose subscription is enabled and
        whose circuit is closed, stamping them `delivering` in one transaction.
        """
        deliveries = (
            self.session.execute(
                select(WebhookDelivery)
                .join(WebhookSubscription, WebhookDelivery.subscription_id == WebhookSubscription.id)
                .where(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    WebhookDelivery.next_attempt_at <= now,
                    WebhookSubscription.enabled.is_(True),
                    or_(
                        WebhookSubscription.circuit_open_until.is_(None),
                        WebhookSubscription.circuit_open_until <= now,
                    ),
                )
                .order_by(WebhookDelivery.next_attempt_at.asc(), WebhookDelivery.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True, of=WebhookDelivery)
            )
            .scalars()
            .all()
        )

        for delivery in deliveries:
            delivery.status = DeliveryStatus.DELIVERING.value
            delivery.last_attempt_at = now
        self.session.commit()
        return deliveries

    def status_counts(self, event_id: int) -> Dict[str, int]:
        rows = self.session.execute(
            select(WebhookDelivery.status, func.count(WebhookDelivery.id))
            .where(WebhookDelivery.event_id == event_id)
            .group_by(WebhookDelivery.status)
        ).all()
        return {status: count for status, count in rows}

    def refresh_event_status(self, event_id: int, now: datetime) -> Optional[WebhookEvent]:
        event = self.session.get(WebhookEvent, event_id)
        if event is None:
            return None

        status = DeliveryEngine.aggregate_event_status(self.status_counts(event_id))
        event.status = status
        if status == WebhookEventStatus.DELIVERED.value:
            event.delivered_at = now
            event.failed_at = None
        elif status == WebhookEventStatus.FAILED.value:
            event.failed_at = now
        elif status == WebhookEventStatus.PARTIAL.value:
            event.failed_at = now
        self.session.commit()
        return event

    def queue_depth(self) -> Dict[str, int]:
        rows = self.session.execute(
            select(WebhookDelivery.status, func.count(WebhookDelivery.id)).group_by(WebhookDelivery.status)
        ).all()
        return {status: count for status, count in rows}
