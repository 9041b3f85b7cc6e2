import atexit

from flask import Flask

from edulure_sync.logging_config import configure_logging, get_logger
from edulure_sync.models import db

logger = get_logger(__name__)


def init_scheduler(app, scheduler=None):
    """
    Start the bus loop, the dispatcher timers and the CRM cron jobs on one scheduler.

    Only one process should run this; it is gated by SCHEDULER_ENABLED.
    Invalid cron expressions raise ConfigurationError before anything runs.
    """
    from edulure_sync.scheduling import JobScheduler
    from edulure_sync.services import get_services

    services = get_services(app)
    if scheduler is None:
        scheduler = JobScheduler(
            app,
            max_workers=max(4, app.config["CRM_MAX_CONCURRENT_JOBS"] + 3),
            timezone=app.config["CRM_TIMEZONE"],
        )

    services.orchestrator.start(scheduler)
    services.bus.start(scheduler)
    services.dispatcher.start(scheduler)

    scheduler.start()
    services.scheduler = scheduler
    atexit.register(lambda: scheduler.shutdown(wait=False))

    logger.info("Scheduler started; expected to run in exactly one process", jobs=scheduler.job_ids())
    return scheduler


def create_app(config_class=None, start_scheduler=True):
    from edulure_sync.config import get_config
    from edulure_sync.db_config import configure_database
    from edulure_sync.routes import ops_bp
    from edulure_sync.services import build_services

    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_logging(log_level=app.config["LOG_LEVEL"], log_file=app.config.get("LOG_FILE"))

    configure_database(app)
    logger.info("Starting application", environment=config_class.ENV)

    db.init_app(app)
    if app.config.get("TESTING") or config_class.ENV == "local":
        with app.app_context():
            db.create_all()

    app.register_blueprint(ops_bp)
    build_services(app)

    if start_scheduler and app.config.get("SCHEDULER_ENABLED"):
        init_scheduler(app)
    else:
        logger.info("Scheduler disabled for this process")

    return app
