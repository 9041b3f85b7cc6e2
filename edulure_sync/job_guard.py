import threading
from contextlib import contextmanager
from typing import Dict
from datetime import datetime

from edulure_sync.datetime_utils import utcnow
from edulure_sync.logging_config import get_logger

logger = get_logger(__name__)


class JobRejected(RuntimeError):
    """Raised when a job cannot start because of the concurrency limits."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Job '{key}' rejected: {reason}")
        self.key = key
        self.reason = reason


class JobGuard:
    """
    In-process guard for integration jobs.

    Enforces a global limit on concurrently running jobs and refuses to start
    a job whose key is already running. It does not coordinate between
    processes; only one process is expected to run the scheduler.
    """

    def __init__(self, max_concurrent_jobs: int = 1):
        self._lock = threading.Lock()
        self._active: Dict[str, datetime] = {}
        self.max_concurrent_jobs = max(int(max_concurrent_jobs or 1), 1)

    @property
    def concurrent_jobs(self) -> int:
        with self._lock:
            return len(self._active)

    @contextmanager
    def hold(self, key: str):
        """
        Context manager that marks `key` as running for the duration of the block.

        Raises:
            JobRejected: If the limit is reached or `key` is already running
        """
        with self._lock:
            if len(self._active) >= self.max_concurrent_jobs:
                raise JobRejected(key, "max_concurrency")
            if key in self._active:
                raise JobRejected(key, "already_running")
            self._active[key] = utcnow()
        logger.info("Job slot acquired", key=key)

        try:
            yield
        finally:
            with self._lock:
                self._active.pop(key, None)
            logger.info("Job slot released", key=key)

    def get_status(self) -> dict:
        now = utcnow()
        with self._lock:
            active = {key: (now - started).total_seconds() for key, started in self._active.items()}
        return {
            "concurrent_jobs": len(active),
            "max_concurrent_jobs": self.max_concurrent_jobs,
            "running_jobs": active,
        }
