import logging
import logging.config
import structlog
import time
import uuid
from typing import Optional
import sys

# Third-party loggers that are noisy at INFO
QUIET_LOGGERS = ("apscheduler", "urllib3")


def _logger_config(level, handlers):
    return {"level": level, "handlers": list(handlers), "propagate": False}


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structured logging for the engine.

    Every record is rendered as JSON. Context bound with
    structlog.contextvars (the job key and job id inside JobContext) is
    merged into each line logged while it is bound.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path. If None, logs to stdout only.
    """
    log_level = (log_level or "INFO").upper()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "plain",
            "stream": sys.stdout,
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "plain",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
        }

    loggers = {
        "": _logger_config(log_level, handlers),
        "edulure_sync": _logger_config(log_level, handlers),
    }
    for name in QUIET_LOGGERS:
        loggers[name] = _logger_config("WARNING", handlers)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        # Records arrive already rendered as JSON by structlog
        "formatters": {"plain": {"format": "%(message)s"}},
        "handlers": handlers,
        "loggers": loggers,
    })

    logger = structlog.get_logger("edulure_sync")
    logger.info("Logging configured", level=log_level, file=log_file)

    return logger


def get_logger(name: str, **bindings) -> structlog.BoundLogger:
    """Get a structured logger instance, optionally pre-bound with context."""
    logger = structlog.get_logger(name)
    if bindings:
        logger = logger.bind(**bindings)
    return logger


class JobContext:
    """
    Context manager that logs the lifecycle of one scheduled or manual job.

    While active, `job_key` and `job_id` are bound into structlog's context
    variables, so every line logged by the job's code carries them.
    """

    def __init__(self, job_key: str, trigger: str = "schedule", job_id: Optional[str] = None):
        self.job_key = job_key
        self.trigger = trigger
        self.job_id = job_id or str(uuid.uuid4())[:8]
        self.logger = get_logger("edulure_sync.jobs")
        self._started = None
        self._tokens = None

    @property
    def elapsed_seconds(self) -> float:
        if self._started is None:
            return 0.0
        return time.monotonic() - self._started

    def __enter__(self):
        self._started = time.monotonic()
        self._tokens = structlog.contextvars.bind_contextvars(job_key=self.job_key, job_id=self.job_id)
        self.logger.info("Job started", trigger=self.trigger)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = round(self.elapsed_seconds, 3)
        try:
            if exc_type is None:
                self.logger.info("Job completed", duration_seconds=duration, status="success")
            else:
                self.logger.error(
                    "Job failed",
                    duration_seconds=duration,
                    status="error",
                    error_type=exc_type.__name__,
                    error_message=str(exc_val),
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._tokens)

        return False  # Don't suppress exceptions
