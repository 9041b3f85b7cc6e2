"""HubSpot CRM client (private app token)."""
from typing import Iterable, List, Optional
from urllib.parse import urljoin

from edulure_sync.datetime_utils import to_epoch_ms
from edulure_sync.engine import chunked
from edulure_sync.errors import ConfigurationError
from edulure_sync.integrations.http import CrmHttpClient
from edulure_sync.integrations.records import OutboundRecord, PushResult, PushSummary

DEFAULT_BASE_URL = "https://api.hubapi.com/"
BATCH_LIMIT = 100
DEFAULT_SEARCH_PROPERTIES = ["email", "firstname", "lastname"]


class HubSpotClient(CrmHttpClient):
    """Contact upsert and search against the HubSpot CRM v3 API."""

    provider = "hubspot"

    def __init__(self, access_token: str, base_url: Optional[str] = None, **kwargs):
        if not access_token:
            raise ConfigurationError("HubSpotClient requires a private app access token")
        super().__init__(**kwargs)
        self.access_token = access_token
        base_url = base_url or DEFAULT_BASE_URL
        self.base_url = base_url if base_url.endswith("/") else f"{base_url}/"

    def _auth_headers(self):
        return {"Authorization": f"Bearer {self.access_token}"}

    def request(self, path: str, method: str = "GET", body=None, params=None, idempotency_key=None):
        return self._request(method, urljoin(self.base_url, path), json_body=body, params=params,
                             idempotency_key=idempotency_key)

    def upsert_contacts(self, contacts: Iterable[OutboundRecord]) -> PushSummary:
        """
        Batch-upsert contacts keyed by email, 100 per request.

        A failed request marks every contact of its batch as failed; the
        remaining batches are still attempted.
        """
        contacts = list(contacts)
        summary = PushSummary()

        for _, batch in chunked(contacts, BATCH_LIMIT):
            body = {
                "inputs": [
                    {"idProperty": "email", "id": contact.entity_id, "properties": contact.payload}
                    for contact in batch
                ]
            }
            try:
                response = self.request(
                    "crm/v3/objects/contacts/batch/upsert",
                    method="POST",
                    body=body,
                    idempotency_key=batch[0].idempotency_key,
                )
            except Exception as exc:
                self.logger.error("HubSpot batch upsert failed", batch_size=len(batch), error=str(exc))
                for contact in batch:
                    summary.add(PushResult(record=contact, succeeded=False, message=str(exc)))
                continue

            processed = response.get("results") if isinstance(response, dict) else None
            processed = processed if isinstance(processed, list) else []
            for index, contact in enumerate(batch):
                if index >= len(processed):
                    summary.add(PushResult(record=contact, succeeded=False, message="No result returned for contact"))
                    continue
                item = processed[index] or {}
                failed = str(item.get("status", "")).upper() == "FAILED"
                summary.add(
                    PushResult(
                        record=contact,
                        succeeded=not failed,
                        external_id=item.get("id"),
                        message=item.get("reason"),
                    )
                )
        return summary

    def search_contacts(self, updated_since=None, properties: Optional[List[str]] = None,
                        limit: int = 100, after: Optional[str] = None) -> dict:
        """
        One page of contacts modified since `updated_since`.

        Returns:
            dict: {"results": [...], "paging": {"next": {"after": ...}} or None}
        """
        filters = []
        if updated_since is not None:
            filters.append({
                "propertyName": "hs_lastmodifieddate",
                "operator": "GTE",
                "value": to_epoch_ms(updated_since),
            })
        body = {
            "filterGroups": [{"filters": filters}] if filters else [],
            "properties": properties or DEFAULT_SEARCH_PROPERTIES,
            "limit": limit,
        }
        if after:
            body["after"] = after

        response = self.request("crm/v3/objects/contacts/search", method="POST", body=body) or {}
        results = response.get("results")
        return {
            "results": results if isinstance(results, list) else [],
            "paging": response.get("paging"),
        }
