"""Builds the bus, dispatcher and orchestrator from app config."""
from dataclasses import dataclass
from typing import Callable, Optional

from flask import Flask

from edulure_sync.domain_events import DispatcherSettings, DomainEventDispatcher
from edulure_sync.integrations.hubspot import HubSpotClient
from edulure_sync.integrations.orchestrator import IntegrationOrchestrator, OrchestratorSettings
from edulure_sync.integrations.salesforce import SalesforceClient
from edulure_sync.integrations.store import IntegrationStore
from edulure_sync.logging_config import get_logger
from edulure_sync.webhooks import WebhookBusSettings, WebhookEventBus

logger = get_logger(__name__)
audit_logger = get_logger("edulure_sync.integrations.audit")

EXTENSION_KEY = "edulure_sync"


@dataclass
class SyncServices:
    bus: WebhookEventBus
    dispatcher: DomainEventDispatcher
    orchestrator: IntegrationOrchestrator
    scheduler: Optional[object] = None


def build_hubspot_client(config, auditor: Optional[Callable[[dict], None]] = None) -> Optional[HubSpotClient]:
    if not config["HUBSPOT_ENABLED"]:
        return None
    return HubSpotClient(
        access_token=config["HUBSPOT_PRIVATE_APP_TOKEN"],
        base_url=config["HUBSPOT_BASE_URL"],
        timeout_ms=config["HUBSPOT_TIMEOUT_MS"],
        max_retries=config["HUBSPOT_MAX_RETRIES"],
        audit_logger=auditor,
    )


def build_salesforce_client(config, auditor: Optional[Callable[[dict], None]] = None) -> Optional[SalesforceClient]:
    if not config["SALESFORCE_ENABLED"]:
        return None
    return SalesforceClient(
        login_url=config["SALESFORCE_LOGIN_URL"],
        client_id=config["SALESFORCE_CLIENT_ID"],
        client_secret=config["SALESFORCE_CLIENT_SECRET"],
        username=config["SALESFORCE_USERNAME"],
        password=config["SALESFORCE_PASSWORD"],
        security_token=config["SALESFORCE_SECURITY_TOKEN"],
        api_version=config["SALESFORCE_API_VERSION"],
        external_id_field=config["SALESFORCE_EXTERNAL_ID_FIELD"],
        timeout_ms=config["SALESFORCE_TIMEOUT_MS"],
        max_retries=config["SALESFORCE_MAX_RETRIES"],
        audit_logger=auditor,
    )


def build_call_auditor(app: Flask, store: Optional[IntegrationStore] = None) -> Callable[[dict], None]:
    """
    Build the audit callback handed to the CRM clients.

    Each attempt is logged and stored as an IntegrationCallAudit row. Clients
    call it from worker threads too, so every write runs in its own app
    context with its own session.
    """
    store = store or IntegrationStore()

    def audit_request_attempt(entry):
        audit_logger.info("Integration request attempt", **entry)
        with app.app_context():
            store.record_call_audit(entry)

    return audit_request_attempt


def build_services(app) -> SyncServices:
    """
    Wire the engine for `app` and store it on `app.extensions`.

    Raises:
        ConfigurationError: If an enabled integration is missing credentials
    """
    config = app.config
    auditor = build_call_auditor(app)
    bus = WebhookEventBus(WebhookBusSettings.from_config(config))
    dispatcher = DomainEventDispatcher(DispatcherSettings.from_config(config), bus)
    orchestrator = IntegrationOrchestrator(
        OrchestratorSettings.from_config(config),
        hubspot_client=build_hubspot_client(config, auditor),
        salesforce_client=build_salesforce_client(config, auditor),
    )

    services = SyncServices(bus=bus, dispatcher=dispatcher, orchestrator=orchestrator)
    app.extensions[EXTENSION_KEY] = services
    logger.info(
        "Sync services built",
        webhook_bus_enabled=bus.settings.enabled,
        dispatcher_enabled=dispatcher.settings.enabled,
        hubspot_enabled=orchestrator.hubspot_enabled,
        salesforce_enabled=orchestrator.salesforce_enabled,
    )
    return services


def get_services(app) -> SyncServices:
    return app.extensions[EXTENSION_KEY]
