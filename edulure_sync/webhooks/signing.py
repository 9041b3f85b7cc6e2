"""Request signing for outbound webhook deliveries."""
import hashlib
import hmac
import json

USER_AGENT = "Edulure-WebhookDispatcher/1.0"
SIGNATURE_HEADER = "x-edulure-signature"


def compute_signature(secret: str, timestamp: str, delivery_uuid: str, body: str) -> str:
    """HMAC-SHA256 hex digest over `timestamp.deliveryUuid.body`."""
    message = f"{timestamp}.{delivery_uuid}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, timestamp: str, delivery_uuid: str, body: str, signature: str) -> bool:
    """Check a received signature in constant time. Meant for webhook consumers."""
    if not signature:
        return False
    expected = compute_signature(secret, timestamp, delivery_uuid, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def build_body(event_uuid, event_type, source, correlation_id, payload, metadata, queued_at_iso, attempt) -> str:
    return json.dumps(
        {
            "eventId": event_uuid,
            "eventType": event_type,
            "source": source,
            "correlationId": correlation_id,
            "payload": payload,
            "metadata": metadata or {},
            "queuedAt": queued_at_iso,
            "attempt": attempt,
        },
        default=str,
    )


def build_headers(secret, event_type, delivery_uuid, correlation_id, sent_at_iso, attempt, body,
                  static_headers=None) -> dict:
    """
    Headers for one delivery attempt.

    Subscriber static headers are lower-cased and cannot override the
    signature, which is always computed over the exact body being sent.
    """
    headers = {
        "content-type": "application/json",
        "user-agent": USER_AGENT,
        "x-edulure-event": event_type,
        "x-edulure-delivery": delivery_uuid,
        "x-edulure-correlation": correlation_id or "",
        "x-edulure-sent-at": sent_at_iso,
        "x-edulure-attempt": str(attempt),
    }
    for key, value in (static_headers or {}).items():
        if value is None:
            continue
        headers[str(key).lower()] = str(value)

    headers[SIGNATURE_HEADER] = compute_signature(secret, sent_at_iso, delivery_uuid, body)
    return headers
