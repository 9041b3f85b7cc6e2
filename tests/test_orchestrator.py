"""
Tests for the integration orchestrator: delta sync runs, reconciliation,
the job guard and cron scheduling.
"""
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from edulure_sync.errors import ConfigurationError, IntegrationRequestError
from edulure_sync.integrations.orchestrator import (
    IntegrationOrchestrator,
    IntegrationSettings,
    OrchestratorSettings,
)
from edulure_sync.integrations.records import PushResult, PushSummary
from edulure_sync.job_guard import JobGuard
from edulure_sync.models import (
    db,
    Community,
    CommunityMember,
    CreationProject,
    IntegrationSyncResult,
    IntegrationSyncRun,
    ReconciliationReport,
    User,
)
from edulure_sync.scheduling import ManualTicker


def push_all(records, failing=()):
    summary = PushSummary()
    for index, record in enumerate(records):
        ok = record.entity_id not in failing
        summary.add(PushResult(record=record, succeeded=ok, external_id=f"ext-{index}" if ok else None,
                               message=None if ok else "rejected"))
    return summary


@pytest.fixture
def hubspot_client():
    client = Mock()
    client.upsert_contacts.side_effect = push_all
    client.search_contacts.return_value = {
        "results": [{"id": "501", "properties": {"email": "remote@example.com"}}],
        "paging": None,
    }
    return client


@pytest.fixture
def salesforce_client():
    client = Mock()
    client.external_id_field = "Edulure_Project_Id__c"
    client.upsert_leads.side_effect = push_all
    client.query_leads_updated_since.return_value = [
        {"Id": "00Q1", "Edulure_Project_Id__c": "proj-1", "attributes": {"type": "Lead"}},
    ]
    return client


def make_settings(hubspot=True, salesforce=False, **overrides):
    return OrchestratorSettings(
        hubspot=IntegrationSettings(enabled=hubspot, window_minutes=90),
        salesforce=IntegrationSettings(enabled=salesforce, window_minutes=120, cron="*/20 * * * *"),
        **overrides,
    )


@pytest.fixture
def orchestrator(app, hubspot_client, salesforce_client, clock):
    return IntegrationOrchestrator(
        make_settings(hubspot=True, salesforce=True),
        hubspot_client=hubspot_client,
        salesforce_client=salesforce_client,
        clock=clock,
    )


def add_users(clock, count=3):
    users = []
    for i in range(count):
        user = User(
            email=f"learner{i}@example.com",
            first_name=f"Learner{i}",
            last_name="Test",
            role="learner",
            created_at=clock.now - timedelta(days=30),
            updated_at=clock.now - timedelta(minutes=10),
        )
        db.session.add(user)
        users.append(user)
    db.session.commit()
    return users


# ==============================================================================
# HUBSPOT DELTA SYNC
# ==============================================================================

class TestHubSpotSync:

    def test_pushes_changed_contacts(self, orchestrator, hubspot_client, clock):
        add_users(clock)

        run = orchestrator.run_hubspot_sync(trigger="manual")

        assert run.status == "succeeded"
        assert run.records_pushed == 3
        assert run.records_failed == 0
        assert run.records_pulled == 1
        assert run.window_start_at == clock.now - timedelta(minutes=90)
        assert run.window_end_at == clock.now
        assert run.started_at == clock.now
        assert run.finished_at == clock.now
        assert run.meta["trigger"] == "manual"
        assert run.meta["previous_run_id"] is None

        pushed = hubspot_client.upsert_contacts.call_args.args[0]
        assert [r.entity_id for r in pushed] == [f"learner{i}@example.com" for i in range(3)]
        assert pushed[0].payload["edulure_role"] == "learner"
        assert pushed[0].payload["edulure_community_count"] == 0

        outbound = IntegrationSyncResult.query.filter_by(sync_run_id=run.id, direction="outbound").all()
        assert len(outbound) == 3
        assert all(r.status == "succeeded" and r.operation == "upsert" for r in outbound)
        assert all(len(r.payload_hash) == 40 for r in outbound)
        inbound = IntegrationSyncResult.query.filter_by(sync_run_id=run.id, direction="inbound").one()
        assert inbound.status == "observed"
        assert inbound.entity_id == "remote@example.com"

    def test_community_membership_counts_and_names(self, orchestrator, hubspot_client, clock):
        user = add_users(clock, count=1)[0]
        user.updated_at = clock.now - timedelta(days=2)
        guild = Community(name="Design Guild")
        db.session.add(guild)
        db.session.flush()
        db.session.add(CommunityMember(community_id=guild.id, user_id=user.id,
                                       updated_at=clock.now - timedelta(minutes=5)))
        db.session.commit()

        orchestrator.run_hubspot_sync(window_end_at=clock.now + timedelta(days=1))

        payload = hubspot_client.upsert_contacts.call_args.args[0][0].payload
        assert payload["edulure_communities"] == "Design Guild"
        assert payload["edulure_community_count"] == 1

    def test_partial_when_some_contacts_fail(self, orchestrator, hubspot_client, clock):
        add_users(clock)
        hubspot_client.upsert_contacts.side_effect = lambda records: push_all(records, {"learner1@example.com"})

        run = orchestrator.run_hubspot_sync()

        assert run.status == "partial"
        assert run.records_pushed == 2
        assert run.records_failed == 1

    def test_next_window_starts_at_last_successful_run(self, orchestrator, clock):
        first = orchestrator.run_hubspot_sync()
        first_finished = first.finished_at

        clock.advance(minutes=15)
        second = orchestrator.run_hubspot_sync()

        assert second.window_start_at == first_finished
        assert second.meta["previous_run_id"] == first.id

    def test_failed_runs_do_not_advance_the_window(self, orchestrator, hubspot_client, clock):
        hubspot_client.search_contacts.side_effect = IntegrationRequestError("boom")
        with pytest.raises(IntegrationRequestError):
            orchestrator.run_hubspot_sync()

        hubspot_client.search_contacts.side_effect = None
        clock.advance(minutes=15)
        run = orchestrator.run_hubspot_sync()
        assert run.window_start_at == clock.now - timedelta(minutes=90)

    def test_explicit_window_overrides(self, orchestrator):
        run = orchestrator.run_hubspot_sync(window_start_at="2024-05-01T00:00:00Z",
                                            window_end_at="2024-05-02T00:00:00Z")
        assert run.window_start_at == datetime(2024, 5, 1)
        assert run.window_end_at == datetime(2024, 5, 2)

    def test_failure_marks_run_failed_and_keeps_counters(self, orchestrator, hubspot_client, clock):
        add_users(clock)
        hubspot_client.search_contacts.side_effect = IntegrationRequestError("hubspot down", status_code=503)

        with pytest.raises(IntegrationRequestError):
            orchestrator.run_hubspot_sync()

        run = IntegrationSyncRun.query.one()
        assert run.status == "failed"
        assert run.finished_at == clock.now
        assert run.records_pushed == 3
        assert run.meta["error"] == {"name": "IntegrationRequestError", "message": "hubspot down"}

    def test_disabled_integration_returns_none(self, app, hubspot_client, clock):
        orchestrator = IntegrationOrchestrator(make_settings(hubspot=False), hubspot_client=hubspot_client,
                                               clock=clock)
        assert orchestrator.run_hubspot_sync() is None
        assert IntegrationSyncRun.query.count() == 0

    def test_inbound_sample_pages_are_bounded(self, orchestrator, hubspot_client):
        hubspot_client.search_contacts.return_value = {
            "results": [{"id": "1", "properties": {"email": "a@example.com"}}],
            "paging": {"next": {"after": "more"}},
        }

        run = orchestrator.run_hubspot_sync()

        assert hubspot_client.search_contacts.call_count == 5
        assert run.records_pulled == 5


# ==============================================================================
# SALESFORCE DELTA SYNC
# ==============================================================================

class TestSalesforceSync:

    def test_pushes_changed_projects_as_leads(self, orchestrator, salesforce_client, clock):
        owner = User(email="creator@example.com", first_name="Ada", last_name="Lovelace")
        db.session.add(owner)
        db.session.flush()
        db.session.add_all([
            CreationProject(public_id="proj-1", owner_id=owner.id, title="Course", status="approved",
                            type="course", updated_at=clock.now - timedelta(minutes=5)),
            CreationProject(public_id="proj-old", owner_id=owner.id, title="Old", status="draft",
                            updated_at=clock.now - timedelta(days=3)),
        ])
        db.session.commit()

        run = orchestrator.run_salesforce_sync()

        assert run.status == "succeeded"
        assert run.records_pushed == 1
        assert run.records_pulled == 1
        lead = salesforce_client.upsert_leads.call_args.args[0][0]
        assert lead.entity_id == "proj-1"
        assert lead.payload["Status"] == "Working - Qualified"
        assert lead.payload["Email"] == "creator@example.com"
        inbound = IntegrationSyncResult.query.filter_by(direction="inbound").one()
        assert inbound.entity_id == "proj-1"
        assert "attributes" not in inbound.payload


# ==============================================================================
# RECONCILIATION
# ==============================================================================

class TestReconciliation:

    def test_reports_missing_records_both_ways(self, app, hubspot_client, clock):
        source = Mock()
        source.hubspot_identities_since.return_value = ["a", "b", "c"]
        hubspot_client.search_contacts.return_value = {
            "results": [{"id": str(i), "properties": {"email": e}} for i, e in enumerate(["b", "c", "d"])],
            "paging": None,
        }
        orchestrator = IntegrationOrchestrator(make_settings(reconciliation_window_days=7),
                                               hubspot_client=hubspot_client, source=source, clock=clock)

        reports = orchestrator.run_reconciliation(trigger="schedule")

        assert len(reports) == 1
        report = ReconciliationReport.query.one()
        assert report.integration == "hubspot"
        assert report.missing_in_integration == ["a"]
        assert report.missing_in_platform == ["d"]
        assert report.mismatch_count == 2
        assert report.report_date == clock.now.date().isoformat()
        assert report.extra_context == {"trigger": "schedule", "window_days": 7,
                                        "sampled_remote": 3, "sampled_local": 3}
        source.hubspot_identities_since.assert_called_once_with(clock.now - timedelta(days=7))

    def test_mismatch_count_covers_identities_beyond_sample(self, app, hubspot_client, clock):
        source = Mock()
        source.hubspot_identities_since.return_value = [f"user-{i}@example.com" for i in range(60)]
        hubspot_client.search_contacts.return_value = {"results": [], "paging": None}
        orchestrator = IntegrationOrchestrator(make_settings(), hubspot_client=hubspot_client,
                                               source=source, clock=clock)

        orchestrator.run_reconciliation()

        report = ReconciliationReport.query.one()
        assert len(report.missing_in_integration) == 50
        assert report.mismatch_count == 60

    def test_one_failing_integration_does_not_stop_the_other(self, orchestrator, salesforce_client, clock):
        salesforce_client.query_leads_updated_since.side_effect = IntegrationRequestError("down")

        reports = orchestrator.run_reconciliation()

        assert [r.integration for r in reports] == ["hubspot"]
        assert ReconciliationReport.query.count() == 1

    def test_reports_share_a_correlation_id(self, orchestrator):
        reports = orchestrator.run_reconciliation()
        assert len(reports) == 2
        assert reports[0].correlation_id == reports[1].correlation_id


# ==============================================================================
# JOB GUARD
# ==============================================================================

class TestExecuteJob:

    def test_returns_handler_result(self, orchestrator):
        assert orchestrator.execute_job("hubspot-sync", lambda: "done") == "done"
        assert orchestrator.guard.concurrent_jobs == 0

    def test_refuses_when_at_max_concurrency(self, orchestrator):
        inner = orchestrator.execute_job(
            "hubspot-sync", lambda: orchestrator.execute_job("salesforce-sync", lambda: "ran")
        )
        assert inner is None

    def test_refuses_same_key_while_running(self, app, clock):
        orchestrator = IntegrationOrchestrator(make_settings(hubspot=False), guard=JobGuard(2), clock=clock)
        inner = orchestrator.execute_job(
            "hubspot-sync", lambda: orchestrator.execute_job("hubspot-sync", lambda: "ran")
        )
        assert inner is None

        other = orchestrator.execute_job(
            "hubspot-sync", lambda: orchestrator.execute_job("salesforce-sync", lambda: "ran")
        )
        assert other == "ran"

    def test_handler_errors_propagate_and_release_the_slot(self, orchestrator):
        def boom():
            raise RuntimeError("sync exploded")

        with pytest.raises(RuntimeError):
            orchestrator.execute_job("hubspot-sync", boom)
        assert orchestrator.guard.concurrent_jobs == 0


# ==============================================================================
# SCHEDULING AND STATUS
# ==============================================================================

class TestStart:

    def test_schedules_enabled_jobs_and_reconciliation(self, app, orchestrator):
        ticker = ManualTicker(app)
        orchestrator.start(ticker)
        assert sorted(ticker.job_ids()) == ["crm-reconciliation", "hubspot-sync", "salesforce-sync"]

    def test_skips_disabled_integrations(self, app, hubspot_client, clock):
        ticker = ManualTicker(app)
        orchestrator = IntegrationOrchestrator(make_settings(hubspot=True, salesforce=False),
                                               hubspot_client=hubspot_client, clock=clock)
        orchestrator.start(ticker)
        assert sorted(ticker.job_ids()) == ["crm-reconciliation", "hubspot-sync"]

    def test_nothing_enabled_schedules_nothing(self, app, clock):
        ticker = ManualTicker(app)
        IntegrationOrchestrator(make_settings(hubspot=False), clock=clock).start(ticker)
        assert ticker.job_ids() == []

    def test_invalid_cron_is_fatal_before_scheduling(self, app, hubspot_client, salesforce_client, clock):
        settings = make_settings(hubspot=True, salesforce=True)
        settings.salesforce.cron = "every tuesday"
        orchestrator = IntegrationOrchestrator(settings, hubspot_client=hubspot_client,
                                               salesforce_client=salesforce_client, clock=clock)
        ticker = ManualTicker(app)

        with pytest.raises(ConfigurationError):
            orchestrator.start(ticker)
        assert ticker.job_ids() == []

    def test_enabled_without_client_is_fatal(self, app, clock):
        with pytest.raises(ConfigurationError):
            IntegrationOrchestrator(make_settings(hubspot=True), clock=clock).start(ManualTicker(app))

    def test_scheduled_job_runs_through_guard(self, app, orchestrator, hubspot_client):
        ticker = ManualTicker(app)
        orchestrator.start(ticker)

        assert ticker.run("hubspot-sync") is not None

        assert IntegrationSyncRun.query.one().triggered_by == "schedule"
        assert hubspot_client.upsert_contacts.called

    def test_stop_removes_jobs(self, app, orchestrator):
        ticker = ManualTicker(app)
        orchestrator.start(ticker)
        orchestrator.stop(ticker)
        assert ticker.job_ids() == []


def test_status_snapshot(orchestrator):
    orchestrator.run_hubspot_sync()
    orchestrator.run_reconciliation()

    snapshot = orchestrator.status_snapshot()

    assert snapshot["hubspot"]["enabled"] is True
    assert snapshot["hubspot"]["environment"] == "production"
    assert snapshot["hubspot"]["recent_runs"][0]["status"] == "succeeded"
    assert snapshot["salesforce"]["recent_runs"] == []
    assert len(snapshot["reconciliation"]) == 2
    assert snapshot["concurrent_jobs"] == 0
    assert snapshot["max_concurrent_jobs"] == 1
    assert snapshot["running_jobs"] == {}
