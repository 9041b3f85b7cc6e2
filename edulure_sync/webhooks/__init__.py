from edulure_sync.webhooks.bus import WebhookBusSettings, WebhookEventBus
from edulure_sync.webhooks.signing import compute_signature, verify_signature
from edulure_sync.webhooks.store import WebhookStore

__all__ = [
    "WebhookBusSettings",
    "WebhookEventBus",
    "WebhookStore",
    "compute_signature",
    "verify_signature",
]
