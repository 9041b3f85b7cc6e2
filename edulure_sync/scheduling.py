"""
Scheduling surface for the polling loops and cron jobs.

JobScheduler runs jobs on APScheduler; ManualTicker exposes the same
interface but only runs a job when told to, so tests drive ticks
deterministically.
"""
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from edulure_sync.errors import ConfigurationError
from edulure_sync.logging_config import get_logger

logger = get_logger(__name__)


def validate_cron(expression, timezone="UTC"):
    """
    Parse a five-field crontab expression.

    Returns:
        CronTrigger for the expression

    Raises:
        ConfigurationError: If the expression or timezone is invalid
    """
    if not expression or not str(expression).strip():
        raise ConfigurationError("Cron expression is empty")
    try:
        return CronTrigger.from_crontab(str(expression).strip(), timezone=timezone)
    except (ValueError, KeyError, TypeError) as exc:
        raise ConfigurationError(f"Invalid cron expression '{expression}' ({timezone}): {exc}") from exc


def guarded(job_id, func, app=None):
    """Wrap a job so one failed run is logged and the next run still happens."""

    def runner():
        try:
            if app is not None:
                with app.app_context():
                    return func()
            return func()
        except Exception as exc:
            logger.error("Scheduled job failed", job_id=job_id, error=str(exc), exc_info=True)
            return None

    runner.__name__ = f"guarded_{job_id}"
    return runner


class JobScheduler:
    """Thin wrapper over an APScheduler BackgroundScheduler."""

    def __init__(self, app=None, max_workers=4, timezone="UTC"):
        self.app = app
        executors = {"default": ThreadPoolExecutor(max_workers)}
        self._scheduler = BackgroundScheduler(executors=executors, timezone=timezone)

    @property
    def running(self):
        return self._scheduler.running

    def add_interval(self, job_id, func, seconds):
        self._scheduler.add_job(
            func=guarded(job_id, func, self.app),
            trigger="interval",
            seconds=seconds,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Interval job scheduled", job_id=job_id, seconds=seconds)

    def add_cron(self, job_id, func, expression, timezone="UTC"):
        trigger = validate_cron(expression, timezone)
        self._scheduler.add_job(
            func=guarded(job_id, func, self.app),
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Cron job scheduled", job_id=job_id, cron=expression, timezone=timezone)

    def remove(self, job_id):
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)

    def job_ids(self):
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self):
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self, wait=False):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)


class ManualTicker:
    """Scheduler double: records jobs and runs them only on demand."""

    def __init__(self, app=None):
        self.app = app
        self.jobs = {}
        self.running = False

    def add_interval(self, job_id, func, seconds):
        self.jobs[job_id] = {"func": guarded(job_id, func, self.app), "seconds": seconds}

    def add_cron(self, job_id, func, expression, timezone="UTC"):
        validate_cron(expression, timezone)
        self.jobs[job_id] = {"func": guarded(job_id, func, self.app), "cron": expression, "timezone": timezone}

    def remove(self, job_id):
        self.jobs.pop(job_id, None)

    def job_ids(self):
        return list(self.jobs)

    def run(self, job_id):
        return self.jobs[job_id]["func"]()

    def start(self):
        self.running = True

    def shutdown(self, wait=False):
        self.running = False
