from edulure_sync.integrations.hubspot import HubSpotClient
from edulure_sync.integrations.orchestrator import (
    IntegrationOrchestrator,
    IntegrationSettings,
    OrchestratorSettings,
)
from edulure_sync.integrations.salesforce import SalesforceClient

__all__ = [
    "HubSpotClient",
    "IntegrationOrchestrator",
    "IntegrationSettings",
    "OrchestratorSettings",
    "SalesforceClient",
]
