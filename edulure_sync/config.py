import os
import uuid
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name, default, minimum=None, maximum=None):
    """Read an integer setting, falling back to the default on garbage input."""
    raw = os.environ.get(name)
    try:
        value = int(float(raw)) if raw not in (None, "") else default
    except (TypeError, ValueError):
        value = default
    if minimum is not None:
        value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value


def _env_float(name, default):
    raw = os.environ.get(name)
    try:
        return float(raw) if raw not in (None, "") else default
    except (TypeError, ValueError):
        return default


def _window_minutes(name, default):
    # Sync windows must be positive and at most one day
    value = _env_int(name, default)
    if value <= 0:
        return default
    return min(value, 1440)


def _default_worker_id():
    return f"domain-dispatcher-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class Config:
    """Base configuration class with common settings."""
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", False)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")

    # Webhook event bus
    WEBHOOK_BUS_ENABLED = _env_bool("WEBHOOK_BUS_ENABLED", True)
    WEBHOOK_BUS_POLL_INTERVAL_MS = _env_int("WEBHOOK_BUS_POLL_INTERVAL_MS", 2000, minimum=100)
    WEBHOOK_BUS_BATCH_SIZE = _env_int("WEBHOOK_BUS_BATCH_SIZE", 25, minimum=1)
    WEBHOOK_BUS_MAX_ATTEMPTS = _env_int("WEBHOOK_BUS_MAX_ATTEMPTS", 6, minimum=1)
    WEBHOOK_BUS_INITIAL_BACKOFF_SECONDS = _env_int("WEBHOOK_BUS_INITIAL_BACKOFF_SECONDS", 60, minimum=5)
    WEBHOOK_BUS_MAX_BACKOFF_SECONDS = _env_int("WEBHOOK_BUS_MAX_BACKOFF_SECONDS", 1800, minimum=5)
    WEBHOOK_BUS_DELIVERY_TIMEOUT_MS = _env_int("WEBHOOK_BUS_DELIVERY_TIMEOUT_MS", 5000, minimum=1000)
    WEBHOOK_BUS_RECOVER_AFTER_MS = _env_int("WEBHOOK_BUS_RECOVER_AFTER_MS", 300000, minimum=60000)
    WEBHOOK_BUS_MAX_WORKERS = _env_int("WEBHOOK_BUS_MAX_WORKERS", 8, minimum=1)

    # Domain event dispatcher
    DOMAIN_EVENTS_DISPATCH_ENABLED = _env_bool("DOMAIN_EVENTS_DISPATCH_ENABLED", True)
    DOMAIN_EVENTS_DISPATCH_POLL_INTERVAL_MS = _env_int("DOMAIN_EVENTS_DISPATCH_POLL_INTERVAL_MS", 2000, minimum=200)
    DOMAIN_EVENTS_DISPATCH_BATCH_SIZE = _env_int("DOMAIN_EVENTS_DISPATCH_BATCH_SIZE", 50, minimum=1)
    DOMAIN_EVENTS_DISPATCH_MAX_ATTEMPTS = _env_int("DOMAIN_EVENTS_DISPATCH_MAX_ATTEMPTS", 8, minimum=1)
    DOMAIN_EVENTS_DISPATCH_INITIAL_BACKOFF_SECONDS = _env_int(
        "DOMAIN_EVENTS_DISPATCH_INITIAL_BACKOFF_SECONDS", 30, minimum=5
    )
    DOMAIN_EVENTS_DISPATCH_MAX_BACKOFF_SECONDS = _env_int("DOMAIN_EVENTS_DISPATCH_MAX_BACKOFF_SECONDS", 900, minimum=5)
    DOMAIN_EVENTS_DISPATCH_BACKOFF_MULTIPLIER = max(_env_float("DOMAIN_EVENTS_DISPATCH_BACKOFF_MULTIPLIER", 2.0), 1.0)
    DOMAIN_EVENTS_DISPATCH_JITTER_RATIO = min(max(_env_float("DOMAIN_EVENTS_DISPATCH_JITTER_RATIO", 0.15), 0.0), 0.5)
    DOMAIN_EVENTS_DISPATCH_RECOVER_INTERVAL_MS = _env_int(
        "DOMAIN_EVENTS_DISPATCH_RECOVER_INTERVAL_MS", 60000, minimum=5000
    )
    DOMAIN_EVENTS_DISPATCH_RECOVER_TIMEOUT_MINUTES = _env_int(
        "DOMAIN_EVENTS_DISPATCH_RECOVER_TIMEOUT_MINUTES", 10, minimum=1
    )
    DOMAIN_EVENTS_DISPATCH_WORKER_ID = os.environ.get("DOMAIN_EVENTS_DISPATCH_WORKER_ID") or _default_worker_id()

    # HubSpot
    HUBSPOT_ENABLED = _env_bool("HUBSPOT_ENABLED", False)
    HUBSPOT_PRIVATE_APP_TOKEN = os.environ.get("HUBSPOT_PRIVATE_APP_TOKEN")
    HUBSPOT_BASE_URL = os.environ.get("HUBSPOT_BASE_URL", "https://api.hubapi.com")
    HUBSPOT_TIMEOUT_MS = _env_int("HUBSPOT_TIMEOUT_MS", 12000, minimum=1000)
    HUBSPOT_MAX_RETRIES = _env_int("HUBSPOT_MAX_RETRIES", 3, minimum=0)
    HUBSPOT_SYNC_WINDOW_MINUTES = _window_minutes("HUBSPOT_SYNC_WINDOW_MINUTES", 90)
    HUBSPOT_ENVIRONMENT = os.environ.get("HUBSPOT_ENVIRONMENT", "production")

    # Salesforce
    SALESFORCE_ENABLED = _env_bool("SALESFORCE_ENABLED", False)
    SALESFORCE_LOGIN_URL = os.environ.get("SALESFORCE_LOGIN_URL", "https://login.salesforce.com")
    SALESFORCE_CLIENT_ID = os.environ.get("SALESFORCE_CLIENT_ID")
    SALESFORCE_CLIENT_SECRET = os.environ.get("SALESFORCE_CLIENT_SECRET")
    SALESFORCE_USERNAME = os.environ.get("SALESFORCE_USERNAME")
    SALESFORCE_PASSWORD = os.environ.get("SALESFORCE_PASSWORD")
    SALESFORCE_SECURITY_TOKEN = os.environ.get("SALESFORCE_SECURITY_TOKEN", "")
    SALESFORCE_TIMEOUT_MS = _env_int("SALESFORCE_TIMEOUT_MS", 12000, minimum=1000)
    SALESFORCE_MAX_RETRIES = _env_int("SALESFORCE_MAX_RETRIES", 3, minimum=0)
    SALESFORCE_EXTERNAL_ID_FIELD = os.environ.get("SALESFORCE_EXTERNAL_ID_FIELD", "Edulure_Project_Id__c")
    SALESFORCE_API_VERSION = os.environ.get("SALESFORCE_API_VERSION", "v59.0")
    SALESFORCE_SYNC_WINDOW_MINUTES = _window_minutes("SALESFORCE_SYNC_WINDOW_MINUTES", 120)
    SALESFORCE_ENVIRONMENT = os.environ.get("SALESFORCE_ENVIRONMENT", "production")

    # CRM orchestration
    CRM_HUBSPOT_SYNC_CRON = os.environ.get("CRM_HUBSPOT_SYNC_CRON", "*/15 * * * *")
    CRM_SALESFORCE_SYNC_CRON = os.environ.get("CRM_SALESFORCE_SYNC_CRON", "*/20 * * * *")
    CRM_RECONCILIATION_CRON = os.environ.get("CRM_RECONCILIATION_CRON", "15 3 * * *")
    CRM_TIMEZONE = os.environ.get("CRM_TIMEZONE", "UTC")
    CRM_RECONCILIATION_WINDOW_DAYS = _env_int("CRM_RECONCILIATION_WINDOW_DAYS", 7, minimum=1, maximum=90)
    CRM_MAX_CONCURRENT_JOBS = _env_int("CRM_MAX_CONCURRENT_JOBS", 1, minimum=1)


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration used by the test suite."""
    ENV = "testing"
    DEBUG = False
    TESTING = True
    SCHEDULER_ENABLED = False
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    DOMAIN_EVENTS_DISPATCH_WORKER_ID = "domain-dispatcher-test"
    HUBSPOT_ENABLED = False
    SALESFORCE_ENABLED = False


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'testing' or 'test' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["testing", "test"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig
