from edulure_sync.domain_events.dispatcher import DispatcherSettings, DomainEventDispatcher
from edulure_sync.domain_events.store import DomainEventStore

__all__ = ["DispatcherSettings", "DomainEventDispatcher", "DomainEventStore"]
