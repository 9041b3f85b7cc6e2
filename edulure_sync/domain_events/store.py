"""Persistence for domain events, their dispatch queue and dead letters."""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update

from edulure_sync.models import (
    db,
    DispatchStatus,
    DomainEvent,
    DomainEventDeadLetter,
    DomainEventDispatch,
)


class DomainEventStore:
    """Queries and state transitions used by the domain event dispatcher."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()

    def record(self, event_type, entity_type, entity_id, payload=None, performed_by=None, available_at=None):
        """
        Write a domain event and its pending dispatch row in one transaction.

        Returns:
            tuple: (DomainEvent, DomainEventDispatch)
        """
        if not event_type:
            raise ValueError("event_type is required")

        event = DomainEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload=payload,
            performed_by=performed_by,
        )
        try:
            self.session.add(event)
            self.session.flush()
            dispatch = DomainEventDispatch(
                event_id=event.id,
                event_type=event_type,
                status=DispatchStatus.PENDING.value,
                attempt_count=0,
                next_available_at=available_at or event.created_at,
            )
            self.session.add(dispatch)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return event, dispatch

    def find_event(self, event_id) -> Optional[DomainEvent]:
        return self.session.get(DomainEvent, event_id)

    def claim_pending(self, worker_id: str, now: datetime, limit: int) -> List[DomainEventDispatch]:
        dispatches = (
            self.session.execute(
                select(DomainEventDispatch)
                .where(
                    DomainEventDispatch.status == DispatchStatus.PENDING.value,
                    or_(
                        DomainEventDispatch.next_available_at.is_(None),
                        DomainEventDispatch.next_available_at <= now,
                    ),
                )
                .order_by(DomainEventDispatch.next_available_at.asc(), DomainEventDispatch.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            .scalars()
            .all()
        )
        for dispatch in dispatches:
            dispatch.status = DispatchStatus.PROCESSING.value
            dispatch.worker_id = worker_id
            dispatch.locked_at = now
        self.session.commit()
        return dispatches

    def mark_delivered(self, dispatch, now: datetime, attempt_count: int, metadata: Optional[dict] = None):
        dispatch.status = DispatchStatus.DELIVERED.value
        dispatch.attempt_count = attempt_count
        dispatch.delivered_at = now
        dispatch.next_available_at = None
        dispatch.worker_id = None
        dispatch.locked_at = None
        dispatch.last_error = None
        dispatch.meta = {**(dispatch.meta or {}), **(metadata or {})}
        self.session.commit()

    def mark_failed(self, dispatch, attempt_count: int, error_message: str,
                    next_available_at: Optional[datetime], terminal: bool, backoff_seconds=None):
        dispatch.status = DispatchStatus.FAILED.value if terminal else DispatchStatus.PENDING.value
        dispatch.attempt_count = attempt_count
        dispatch.last_error = (error_message or "")[:2000]
        dispatch.next_available_at = None if terminal else next_available_at
        dispatch.worker_id = None
        dispatch.locked_at = None
        dispatch.meta = {
            **(dispatch.meta or {}),
            "backoffSeconds": None if backoff_seconds is None else round(backoff_seconds, 3),
        }
        self.session.commit()

    def reset_stuck(self, stale_before: datetime, now: datetime) -> int:
        """Hand `processing` rows whose worker went quiet back to the queue."""
        result = self.session.execute(
            update(DomainEventDispatch)
            .where(
                DomainEventDispatch.status == DispatchStatus.PROCESSING.value,
                or_(
                    DomainEventDispatch.locked_at.is_(None),
                    DomainEventDispatch.locked_at < stale_before,
                ),
            )
            .values(
                status=DispatchStatus.PENDING.value,
                worker_id=None,
                locked_at=None,
                next_available_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount or 0

    def queue_depth(self) -> Dict[str, int]:
        rows = self.session.execute(
            select(DomainEventDispatch.status, func.count(DomainEventDispatch.id))
            .group_by(DomainEventDispatch.status)
        ).all()
        return {status: count for status, count in rows}

    def record_dead_letter(self, dispatch, event, attempt_count, failure_reason, failure_message, metadata):
        entry = DomainEventDeadLetter(
            dispatch_id=dispatch.id,
            event_id=dispatch.event_id,
            event_type=event.event_type if event is not None else dispatch.event_type,
            attempt_count=attempt_count,
            failure_reason=failure_reason,
            failure_message=(failure_message or "")[:4000],
            payload=event.payload if event is not None else None,
            meta=metadata,
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def dead_letter_count(self) -> int:
        return self.session.execute(select(func.count(DomainEventDeadLetter.id))).scalar_one()
