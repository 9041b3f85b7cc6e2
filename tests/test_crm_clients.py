"""
Tests for the HubSpot and Salesforce API clients.
External HTTP is replaced by a mocked requests session.
"""
from datetime import datetime
from unittest.mock import Mock

import threading

import pytest
import requests

from edulure_sync.errors import ConfigurationError, IntegrationAuthError, IntegrationRequestError
from edulure_sync.integrations.hubspot import HubSpotClient
from edulure_sync.integrations.records import OutboundRecord
from edulure_sync.integrations.salesforce import SalesforceClient
from edulure_sync.models import IntegrationCallAudit
from edulure_sync.services import build_call_auditor


def contact(email):
    return OutboundRecord(
        entity_type="contact",
        entity_id=email,
        payload={"email": email},
        idempotency_key=f"key-{email}",
    )


def lead(public_id):
    return OutboundRecord(
        entity_type="lead",
        entity_id=public_id,
        payload={"Email": f"{public_id}@example.com", "LastName": "Creator"},
        idempotency_key=f"key-{public_id}",
    )


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def hubspot(session, sleep):
    return HubSpotClient("pat-token", session=session, sleep=sleep, rng=lambda: 0.5, max_retries=2)


# ==============================================================================
# SHARED RETRY POLICY
# ==============================================================================

class TestRetryDelay:

    def test_exponential_with_cap(self, hubspot):
        assert hubspot.compute_retry_delay_ms(1) == 500
        assert hubspot.compute_retry_delay_ms(2) == 1000
        assert hubspot.compute_retry_delay_ms(3) == 2000
        assert hubspot.compute_retry_delay_ms(10) == 5000

    def test_retry_after_is_honoured_up_to_max(self, hubspot):
        assert hubspot.compute_retry_delay_ms(1, retry_after_ms=3000) == 3000
        assert hubspot.compute_retry_delay_ms(1, retry_after_ms=60000) == 5000

    def test_jitter_and_floor(self, session, sleep):
        client = HubSpotClient("t", session=session, sleep=sleep, rng=lambda: 0.0, retry_base_delay_ms=100)
        assert client.compute_retry_delay_ms(1) == 100


# ==============================================================================
# HUBSPOT
# ==============================================================================

class TestHubSpotClient:

    def test_requires_token(self):
        with pytest.raises(ConfigurationError):
            HubSpotClient("")

    def test_sends_bearer_token_and_idempotency_key(self, hubspot, session, make_response):
        session.request.return_value = make_response(200, {"ok": True})

        assert hubspot.request("crm/v3/objects/contacts", idempotency_key="abc") == {"ok": True}

        args, kwargs = session.request.call_args
        assert args == ("GET", "https://api.hubapi.com/crm/v3/objects/contacts")
        assert kwargs["headers"]["Authorization"] == "Bearer pat-token"
        assert kwargs["headers"]["Idempotency-Key"] == "abc"
        assert kwargs["headers"]["User-Agent"] == "Edulure-Platform-Integration/1.0"
        assert kwargs["timeout"] == 12

    def test_retries_429_using_retry_after(self, hubspot, session, sleep, make_response):
        session.request.side_effect = [
            make_response(429, headers={"Retry-After": "2"}),
            make_response(200, {"ok": True}),
        ]

        assert hubspot.request("crm/v3/objects/contacts") == {"ok": True}
        sleep.assert_called_once_with(2.0)

    def test_gives_up_after_max_retries(self, hubspot, session, sleep, make_response):
        session.request.return_value = make_response(503, {"message": "unavailable"})

        with pytest.raises(IntegrationRequestError) as excinfo:
            hubspot.request("crm/v3/objects/contacts")

        assert excinfo.value.status_code == 503
        assert excinfo.value.retryable is True
        assert session.request.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_retries_transport_errors(self, hubspot, session, sleep, make_response):
        session.request.side_effect = [requests.Timeout("slow"), make_response(200, {"ok": True})]
        assert hubspot.request("crm/v3/objects/contacts") == {"ok": True}
        assert sleep.call_count == 1

    def test_client_errors_are_not_retried(self, hubspot, session, sleep, make_response):
        session.request.return_value = make_response(400, {"message": "bad property"})

        with pytest.raises(IntegrationRequestError) as excinfo:
            hubspot.request("crm/v3/objects/contacts", method="POST", body={})

        assert excinfo.value.retryable is False
        assert excinfo.value.details == {"message": "bad property"}
        assert session.request.call_count == 1
        sleep.assert_not_called()

    def test_upsert_contacts_maps_results(self, hubspot, session, make_response):
        session.request.return_value = make_response(200, {"results": [
            {"id": "101", "status": "COMPLETE"},
            {"id": "102", "status": "FAILED", "reason": "invalid email"},
        ]})

        summary = hubspot.upsert_contacts([contact("a@x.com"), contact("b@x.com"), contact("c@x.com")])

        assert (summary.succeeded, summary.failed) == (1, 2)
        assert summary.results[0].external_id == "101"
        assert summary.results[1].message == "invalid email"
        assert summary.results[2].message == "No result returned for contact"

        kwargs = session.request.call_args.kwargs
        assert kwargs["json"]["inputs"][0] == {"idProperty": "email", "id": "a@x.com",
                                               "properties": {"email": "a@x.com"}}
        assert kwargs["headers"]["Idempotency-Key"] == "key-a@x.com"

    def test_upsert_contacts_batches_by_hundred(self, hubspot, session, make_response):
        def respond(method, url, json=None, **kwargs):
            return make_response(200, {"results": [{"id": str(i)} for i, _ in enumerate(json["inputs"])]})

        session.request.side_effect = respond

        summary = hubspot.upsert_contacts([contact(f"user{i}@x.com") for i in range(150)])

        assert session.request.call_count == 2
        assert [len(c.kwargs["json"]["inputs"]) for c in session.request.call_args_list] == [100, 50]
        assert summary.succeeded == 150

    def test_failed_batch_marks_every_contact_failed(self, hubspot, session, make_response):
        session.request.return_value = make_response(403, {"message": "forbidden"})

        summary = hubspot.upsert_contacts([contact("a@x.com"), contact("b@x.com")])

        assert (summary.succeeded, summary.failed) == (0, 2)

    def test_search_contacts_filters_by_last_modified(self, hubspot, session, make_response):
        session.request.return_value = make_response(200, {
            "results": [{"id": "1", "properties": {"email": "a@x.com"}}],
            "paging": {"next": {"after": "cursor-2"}},
        })

        page = hubspot.search_contacts(updated_since=datetime(2024, 5, 1), limit=200, after="cursor-1")

        body = session.request.call_args.kwargs["json"]
        assert body["filterGroups"][0]["filters"][0] == {
            "propertyName": "hs_lastmodifieddate", "operator": "GTE", "value": 1714521600000,
        }
        assert body["limit"] == 200
        assert body["after"] == "cursor-1"
        assert page["paging"]["next"]["after"] == "cursor-2"
        assert len(page["results"]) == 1

    def test_audit_callback_receives_attempts_and_failures_are_swallowed(self, session, sleep, make_response):
        entries = []
        client = HubSpotClient("t", session=session, sleep=sleep, audit_logger=entries.append)
        session.request.return_value = make_response(200, {})
        client.request("crm/v3/objects/contacts")

        assert entries[0]["provider"] == "hubspot"
        assert entries[0]["outcome"] == "success"
        assert entries[0]["request_path"] == "/crm/v3/objects/contacts"

        broken = HubSpotClient("t", session=session, sleep=sleep, audit_logger=Mock(side_effect=RuntimeError("x")))
        assert broken.request("crm/v3/objects/contacts") == {}


# ==============================================================================
# SALESFORCE
# ==============================================================================

@pytest.fixture
def salesforce(session, sleep):
    return SalesforceClient(
        login_url="https://login.example.com",
        client_id="cid",
        client_secret="secret",
        username="sync@edulure.com",
        password="pw",
        security_token="tok",
        session=session,
        sleep=sleep,
        rng=lambda: 0.5,
        max_workers=2,
    )


def token_response(make_response, token):
    return make_response(200, {"access_token": token, "instance_url": "https://edulure.my.salesforce.com"})


class TestSalesforceClient:

    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            SalesforceClient("https://login.example.com", "", "secret", "user", "pw")

    def test_authenticate_uses_password_grant(self, salesforce, session, make_response):
        session.post.return_value = token_response(make_response, "t1")

        assert salesforce.authenticate() == "t1"

        args, kwargs = session.post.call_args
        assert args[0] == "https://login.example.com/services/oauth2/token"
        assert kwargs["data"]["grant_type"] == "password"
        assert kwargs["data"]["password"] == "pwtok"
        assert salesforce.instance_url == "https://edulure.my.salesforce.com"

    def test_authenticate_failure_raises(self, salesforce, session, make_response):
        session.post.return_value = make_response(400, {"error": "invalid_grant"})

        with pytest.raises(IntegrationAuthError) as excinfo:
            salesforce.authenticate()
        assert excinfo.value.status_code == 400

    def test_refreshes_token_once_on_401(self, salesforce, session, make_response):
        session.post.side_effect = [token_response(make_response, "t1"), token_response(make_response, "t2")]
        session.request.side_effect = [make_response(401), make_response(200, {"records": []})]

        salesforce.request("services/data/v59.0/query", params={"q": "SELECT Id FROM Lead"})

        assert session.post.call_count == 2
        first, second = session.request.call_args_list
        assert first.kwargs["headers"]["Authorization"] == "Bearer t1"
        assert second.kwargs["headers"]["Authorization"] == "Bearer t2"
        assert second.args[1] == "https://edulure.my.salesforce.com/services/data/v59.0/query"

    def test_second_401_is_raised(self, salesforce, session, make_response):
        session.post.side_effect = [token_response(make_response, "t1"), token_response(make_response, "t2")]
        session.request.return_value = make_response(401, [{"errorCode": "INVALID_SESSION_ID"}])

        with pytest.raises(IntegrationRequestError) as excinfo:
            salesforce.request("services/data/v59.0/query")
        assert excinfo.value.status_code == 401
        assert session.request.call_count == 2

    def test_upsert_leads_patches_by_external_id(self, salesforce, session, make_response):
        session.post.return_value = token_response(make_response, "t1")

        def respond(method, url, **kwargs):
            if url.endswith("proj-2"):
                return make_response(400, [{"message": "bad field"}])
            return make_response(201, {"id": "00Q1", "success": True})

        session.request.side_effect = respond

        summary = salesforce.upsert_leads([lead("proj-1"), lead("proj-2")])

        assert (summary.succeeded, summary.failed) == (1, 1)
        assert summary.results[0].external_id == "00Q1"
        urls = sorted(c.args[1] for c in session.request.call_args_list)
        assert urls[0] == (
            "https://edulure.my.salesforce.com/services/data/v59.0/sobjects/Lead/Edulure_Project_Id__c/proj-1"
        )
        assert all(c.args[0] == "PATCH" for c in session.request.call_args_list)

    def test_upsert_leads_with_nothing_to_send(self, salesforce, session):
        summary = salesforce.upsert_leads([])
        assert summary.results == []
        session.post.assert_not_called()

    def test_query_follows_next_records_url(self, salesforce, session, make_response):
        session.post.return_value = token_response(make_response, "t1")
        session.request.side_effect = [
            make_response(200, {"records": [{"Id": "1"}], "nextRecordsUrl": "/services/data/v59.0/query/01g-2000"}),
            make_response(200, {"records": [{"Id": "2"}]}),
        ]

        records = salesforce.query_leads_updated_since(datetime(2024, 5, 1))

        assert [r["Id"] for r in records] == ["1", "2"]
        soql = session.request.call_args_list[0].kwargs["params"]["q"]
        assert "LastModifiedDate >= 2024-05-01T00:00:00.000Z" in soql
        assert session.request.call_args_list[1].args[1] == (
            "https://edulure.my.salesforce.com/services/data/v59.0/query/01g-2000"
        )


# ==============================================================================
# CALL AUDIT PERSISTENCE
# ==============================================================================

class TestCallAuditor:

    def test_each_attempt_is_stored(self, app, session, sleep, make_response):
        client = HubSpotClient("t", session=session, sleep=sleep, rng=lambda: 0.5, max_retries=2,
                               audit_logger=build_call_auditor(app))
        session.request.side_effect = [make_response(503), make_response(200, {})]

        client.request("crm/v3/objects/contacts")

        audits = IntegrationCallAudit.query.order_by(IntegrationCallAudit.id).all()
        assert [(a.outcome, a.status_code, a.attempt) for a in audits] == [("retry", 503, 1), ("success", 200, 2)]
        assert all(a.provider == "hubspot" and a.request_method == "GET" for a in audits)
        assert audits[0].request_path == "/crm/v3/objects/contacts"
        assert audits[0].meta["backoff_ms"] > 0
        assert audits[1].error_code is None

    def test_transport_failure_records_error(self, app, session, sleep):
        client = HubSpotClient("t", session=session, sleep=sleep, max_retries=0,
                               audit_logger=build_call_auditor(app))
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(IntegrationRequestError):
            client.request("crm/v3/objects/contacts")

        audit = IntegrationCallAudit.query.one()
        assert audit.outcome == "failure"
        assert audit.status_code is None
        assert audit.error_code == "ConnectionError"
        assert audit.error_message == "refused"

    def test_works_from_threads_without_app_context(self, app):
        auditor = build_call_auditor(app)
        entry = {
            "provider": "salesforce",
            "request_method": "PATCH",
            "request_path": "/services/data/v59.0/sobjects/Lead/Edulure_Project_Id__c/proj-1",
            "status_code": 204,
            "outcome": "success",
            "duration_ms": 12,
            "attempt": 1,
            "metadata": {},
            "error_code": None,
            "error_message": None,
        }
        errors = []

        def worker():
            try:
                auditor(entry)
            except Exception as exc:
                errors.append(exc)

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

        assert errors == []
        assert IntegrationCallAudit.query.filter_by(provider="salesforce").count() == 1
