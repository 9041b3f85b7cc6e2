"""Salesforce CRM client (OAuth password grant)."""
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional
from urllib.parse import quote, urljoin

import requests

from edulure_sync.datetime_utils import isoformat_utc
from edulure_sync.engine import chunked
from edulure_sync.errors import ConfigurationError, IntegrationAuthError
from edulure_sync.integrations.http import CrmHttpClient
from edulure_sync.integrations.records import OutboundRecord, PushResult, PushSummary

BATCH_LIMIT = 25
MAX_QUERY_PAGES = 5


class SalesforceClient(CrmHttpClient):
    """Lead upsert and query against the Salesforce REST API."""

    provider = "salesforce"

    def __init__(self, login_url: str, client_id: str, client_secret: str, username: str, password: str,
                 security_token: str = "", api_version: str = "v59.0",
                 external_id_field: str = "Edulure_Project_Id__c", max_workers: int = 5, **kwargs):
        if not all([client_id, client_secret, username, password]):
            raise ConfigurationError("Missing Salesforce OAuth configuration")
        super().__init__(**kwargs)
        self.login_url = (login_url or "https://login.salesforce.com").rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.security_token = security_token or ""
        self.api_version = api_version
        self.external_id_field = external_id_field
        self.max_workers = max(int(max_workers), 1)

        self._token_lock = threading.Lock()
        self.access_token: Optional[str] = None
        self.instance_url: Optional[str] = None

    # -------------------------
    # Auth
    # -------------------------
    def authenticate(self) -> str:
        """Exchange the configured credentials for an access token."""
        try:
            response = self.session.post(
                f"{self.login_url}/services/oauth2/token",
                data={
                    "grant_type": "password",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "username": self.username,
                    "password": f"{self.password}{self.security_token}",
                },
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise IntegrationAuthError(f"Salesforce token request failed: {exc}", retryable=True) from exc

        payload = self._safe_json(response)
        if not response.ok or not payload.get("access_token"):
            raise IntegrationAuthError(
                f"Salesforce token request failed with status {response.status_code}",
                status_code=response.status_code,
                details=payload,
            )

        with self._token_lock:
            self.access_token = payload["access_token"]
            self.instance_url = payload.get("instance_url") or self.instance_url
        self.logger.info("Salesforce access token refreshed", instance_url=self.instance_url)
        return self.access_token

    def _ensure_token(self):
        if self.access_token is None or self.instance_url is None:
            self.authenticate()

    def _auth_headers(self):
        return {"Authorization": f"Bearer {self.access_token}"}

    def _refresh_credentials(self) -> bool:
        self.authenticate()
        return True

    def _api_url(self, path: str) -> str:
        base = self.instance_url if self.instance_url.endswith("/") else f"{self.instance_url}/"
        return urljoin(base, path.lstrip("/"))

    def request(self, path: str, method: str = "GET", body=None, params=None, idempotency_key=None):
        self._ensure_token()
        return self._request(method, self._api_url(path), json_body=body, params=params,
                             idempotency_key=idempotency_key)

    # -------------------------
    # Leads
    # -------------------------
    def upsert_leads(self, leads: Iterable[OutboundRecord]) -> PushSummary:
        """Upsert leads by external id, 25 per batch with each batch sent concurrently."""
        leads = list(leads)
        summary = PushSummary()
        if not leads:
            return summary

        self._ensure_token()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="salesforce-") as executor:
            for _, batch in chunked(leads, BATCH_LIMIT):
                for result in executor.map(self._upsert_lead, batch):
                    summary.add(result)
        return summary

    def _upsert_lead(self, lead: OutboundRecord) -> PushResult:
        path = (
            f"services/data/{self.api_version}/sobjects/Lead/"
            f"{self.external_id_field}/{quote(str(lead.entity_id), safe='')}"
        )
        try:
            response = self.request(path, method="PATCH", body=lead.payload, idempotency_key=lead.idempotency_key)
        except Exception as exc:
            self.logger.warning("Salesforce lead upsert failed", external_id=lead.entity_id, error=str(exc))
            return PushResult(record=lead, succeeded=False, message=str(exc))
        return PushResult(record=lead, succeeded=True, external_id=(response or {}).get("id") or lead.entity_id)

    def query_leads_updated_since(self, since, max_pages: int = MAX_QUERY_PAGES) -> List[dict]:
        """Leads carrying our external id that changed since `since`, bounded to `max_pages` pages."""
        soql = (
            f"SELECT Id, Email, Status, LastModifiedDate, {self.external_id_field} FROM Lead "
            f"WHERE LastModifiedDate >= {isoformat_utc(since)} AND {self.external_id_field} != null "
            f"ORDER BY LastModifiedDate DESC"
        )
        response = self.request(f"services/data/{self.api_version}/query", params={"q": soql}) or {}
        records = list(response.get("records") or [])

        pages = 1
        next_url = response.get("nextRecordsUrl")
        while next_url and pages < max_pages:
            response = self.request(next_url) or {}
            records.extend(response.get("records") or [])
            next_url = response.get("nextRecordsUrl")
            pages += 1
        return records
