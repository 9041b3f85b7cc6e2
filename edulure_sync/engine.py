"""
Pure decision logic for the delivery and sync services.
Contains no database or network dependencies - works with plain values,
so every retry, circuit and diff decision can be tested with a fixed
clock and a fixed random value.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from edulure_sync.models import DeliveryStatus, WebhookEventStatus


@dataclass
class DeliveryFailureDecision:
    """Value object describing how a failed webhook attempt is resolved."""
    attempt_count: int
    terminal: bool
    next_attempt_at: Optional[datetime]
    backoff_seconds: Optional[int]
    consecutive_failures: int
    circuit_open_until: Optional[datetime]


@dataclass
class DispatchFailureDecision:
    """Value object describing how a failed dispatch attempt is resolved."""
    attempt_number: int
    terminal: bool
    backoff_seconds: float
    next_available_at: Optional[datetime]


@dataclass
class SyncWindow:
    start: datetime
    end: datetime

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


@dataclass
class IdentityDiff:
    """Result of diffing a local identity set against a remote one."""
    missing_in_integration: List[str] = field(default_factory=list)
    missing_in_platform: List[str] = field(default_factory=list)
    missing_in_integration_total: int = 0
    missing_in_platform_total: int = 0

    @property
    def mismatch_count(self) -> int:
        """
        Every missing identity in both directions.

        Counts the full sets, so it can exceed the length of the stored
        samples, which hold at most `sample_size` entries per direction.
        """
        return self.missing_in_integration_total + self.missing_in_platform_total


class DeliveryEngine:
    """Retry, circuit breaker and roll-up rules for webhook deliveries."""

    MIN_BACKOFF_SECONDS = 5
    BACKOFF_EXPONENT_CAP = 5
    JITTER_MIN = 0.75
    JITTER_SPREAD = 0.5

    @staticmethod
    def is_terminal(attempt_count: int, max_attempts: int) -> bool:
        """A failure is terminal when the attempt just made reaches the ceiling."""
        return attempt_count + 1 >= max_attempts

    @staticmethod
    def backoff_base(retry_backoff_seconds: Optional[int], initial_backoff_seconds: int) -> int:
        return max(retry_backoff_seconds or initial_backoff_seconds, DeliveryEngine.MIN_BACKOFF_SECONDS)

    @staticmethod
    def compute_backoff_seconds(attempt: int, base_seconds: int, max_backoff_seconds: int,
                                random_value: float) -> int:
        """
        Exponential backoff with +/-25% jitter.

        Args:
            attempt: 1-based number of the attempt that just failed
            base_seconds: Backoff for the first retry
            max_backoff_seconds: Cap applied before jitter
            random_value: Value in [0, 1) from the injected RNG

        Returns:
            Whole seconds to wait, never below MIN_BACKOFF_SECONDS
        """
        exponent = min(max(attempt, 1) - 1, DeliveryEngine.BACKOFF_EXPONENT_CAP)
        capped = min(base_seconds * (2 ** exponent), max_backoff_seconds)
        jitter = DeliveryEngine.JITTER_MIN + random_value * DeliveryEngine.JITTER_SPREAD
        return max(int(round(capped * jitter)), DeliveryEngine.MIN_BACKOFF_SECONDS)

    @staticmethod
    def initial_attempt_at(now: datetime, deliver_after: Optional[datetime],
                           circuit_open_until: Optional[datetime]) -> datetime:
        """Publishing into an open circuit is accepted but deferred until it closes."""
        return max(deliver_after or now, circuit_open_until or now)

    @staticmethod
    def resolve_failure(now: datetime, attempt_count: int, max_attempts: int,
                        consecutive_failures: int, breaker_threshold: int,
                        breaker_duration_seconds: int, backoff_base_seconds: int,
                        max_backoff_seconds: int, random_value: float,
                        current_circuit_open_until: Optional[datetime] = None) -> DeliveryFailureDecision:
        terminal = DeliveryEngine.is_terminal(attempt_count, max_attempts)

        backoff_seconds = None
        next_attempt_at = None
        if not terminal:
            backoff_seconds = DeliveryEngine.compute_backoff_seconds(
                attempt_count + 1, backoff_base_seconds, max_backoff_seconds, random_value
            )
            next_attempt_at = now + timedelta(seconds=backoff_seconds)

        circuit_open_until = current_circuit_open_until
        threshold = max(breaker_threshold or 1, 1)
        if consecutive_failures + 1 >= threshold:
            circuit_open_until = now + timedelta(seconds=max(breaker_duration_seconds or 0, 0))

        return DeliveryFailureDecision(
            attempt_count=attempt_count + 1,
            terminal=terminal,
            next_attempt_at=next_attempt_at,
            backoff_seconds=backoff_seconds,
            consecutive_failures=consecutive_failures + 1,
            circuit_open_until=circuit_open_until,
        )

    @staticmethod
    def aggregate_event_status(status_counts: Dict[str, int]) -> str:
        """
        Roll delivery statuses up into the parent event status.

        Args:
            status_counts: Mapping of delivery status value -> count

        Returns:
            WebhookEventStatus value
        """
        pending = status_counts.get(DeliveryStatus.PENDING.value, 0)
        delivering = status_counts.get(DeliveryStatus.DELIVERING.value, 0)
        delivered = status_counts.get(DeliveryStatus.DELIVERED.value, 0)
        failed = status_counts.get(DeliveryStatus.FAILED.value, 0)

        if pending or delivering:
            return WebhookEventStatus.PROCESSING.value
        if failed and not delivered:
            return WebhookEventStatus.FAILED.value
        if failed:
            return WebhookEventStatus.PARTIAL.value
        return WebhookEventStatus.DELIVERED.value


class DispatchEngine:
    """Retry rules for the domain event dispatcher."""

    MAX_JITTER_RATIO = 0.5

    @staticmethod
    def is_terminal(attempt_number: int, max_attempts: int) -> bool:
        return attempt_number >= max_attempts

    @staticmethod
    def compute_backoff_seconds(attempt_number: int, initial_backoff_seconds: float,
                                backoff_multiplier: float, max_backoff_seconds: float,
                                jitter_ratio: float, random_value: float) -> float:
        exponent = max(attempt_number - 1, 0)
        base = initial_backoff_seconds * (backoff_multiplier ** exponent)
        capped = min(base, max_backoff_seconds)
        ratio = min(max(jitter_ratio, 0.0), DispatchEngine.MAX_JITTER_RATIO)
        jittered = capped + capped * ratio * random_value
        return max(jittered, initial_backoff_seconds)

    @staticmethod
    def resolve_failure(now: datetime, attempt_count: int, max_attempts: int,
                        initial_backoff_seconds: float, backoff_multiplier: float,
                        max_backoff_seconds: float, jitter_ratio: float,
                        random_value: float) -> DispatchFailureDecision:
        attempt_number = attempt_count + 1
        terminal = DispatchEngine.is_terminal(attempt_number, max_attempts)
        backoff = DispatchEngine.compute_backoff_seconds(
            attempt_number, initial_backoff_seconds, backoff_multiplier,
            max_backoff_seconds, jitter_ratio, random_value,
        )
        return DispatchFailureDecision(
            attempt_number=attempt_number,
            terminal=terminal,
            backoff_seconds=backoff,
            next_available_at=None if terminal else now + timedelta(seconds=backoff),
        )


class SyncEngine:
    """Window and diff rules for CRM synchronisation."""

    RECONCILIATION_SAMPLE_SIZE = 50

    @staticmethod
    def resolve_window(now: datetime, window_minutes: int,
                       last_finished_at: Optional[datetime] = None,
                       explicit_start: Optional[datetime] = None,
                       explicit_end: Optional[datetime] = None) -> SyncWindow:
        """Delta window: since the last successful run, or a trailing fallback window."""
        start = explicit_start or last_finished_at or (now - timedelta(minutes=window_minutes))
        end = explicit_end or now
        return SyncWindow(start=start, end=end)

    @staticmethod
    def diff_identities(local: Iterable[str], remote: Iterable[str],
                        sample_size: int = RECONCILIATION_SAMPLE_SIZE) -> IdentityDiff:
        local_ids = _ordered_unique(local)
        remote_ids = _ordered_unique(remote)
        local_set = set(local_ids)
        remote_set = set(remote_ids)

        missing_remote = [value for value in local_ids if value not in remote_set]
        missing_local = [value for value in remote_ids if value not in local_set]

        return IdentityDiff(
            missing_in_integration=missing_remote[:sample_size],
            missing_in_platform=missing_local[:sample_size],
            missing_in_integration_total=len(missing_remote),
            missing_in_platform_total=len(missing_local),
        )

    @staticmethod
    def run_status(failed: int) -> str:
        return "partial" if failed > 0 else "succeeded"


def _ordered_unique(values: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def chunked(items: List, size: int) -> List[Tuple[int, List]]:
    """Split a list into (offset, slice) pairs of at most `size` items."""
    return [(index, items[index:index + size]) for index in range(0, len(items), size)]
