"""
Integration orchestrator.

Owns the HubSpot and Salesforce delta sync jobs and the nightly
reconciliation job, each on its own cron schedule, behind an in-process
concurrency guard.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional

from edulure_sync import metrics
from edulure_sync.datetime_utils import isoformat_utc, to_naive_utc, utcnow
from edulure_sync.engine import SyncEngine
from edulure_sync.errors import ConfigurationError
from edulure_sync.integrations.records import HUBSPOT, SALESFORCE, InboundRecord
from edulure_sync.integrations.sources import PlatformRecordSource
from edulure_sync.integrations.store import IntegrationStore
from edulure_sync.job_guard import JobGuard, JobRejected
from edulure_sync.logging_config import JobContext, get_logger
from edulure_sync.scheduling import validate_cron

MAX_INBOUND_PAGES = 5
INBOUND_PAGE_LIMIT = 200
RECENT_RUNS_LIMIT = 5
RECENT_REPORTS_LIMIT = 3

HUBSPOT_SYNC_JOB = "hubspot-sync"
SALESFORCE_SYNC_JOB = "salesforce-sync"
RECONCILIATION_JOB = "crm-reconciliation"


@dataclass
class IntegrationSettings:
    enabled: bool = False
    environment: str = "production"
    window_minutes: int = 90
    cron: str = "*/15 * * * *"


@dataclass
class OrchestratorSettings:
    hubspot: IntegrationSettings = field(default_factory=IntegrationSettings)
    salesforce: IntegrationSettings = field(
        default_factory=lambda: IntegrationSettings(window_minutes=120, cron="*/20 * * * *")
    )
    reconciliation_cron: str = "15 3 * * *"
    timezone: str = "UTC"
    reconciliation_window_days: int = 7
    max_concurrent_jobs: int = 1

    @classmethod
    def from_config(cls, config):
        return cls(
            hubspot=IntegrationSettings(
                enabled=config["HUBSPOT_ENABLED"],
                environment=config["HUBSPOT_ENVIRONMENT"],
                window_minutes=config["HUBSPOT_SYNC_WINDOW_MINUTES"],
                cron=config["CRM_HUBSPOT_SYNC_CRON"],
            ),
            salesforce=IntegrationSettings(
                enabled=config["SALESFORCE_ENABLED"],
                environment=config["SALESFORCE_ENVIRONMENT"],
                window_minutes=config["SALESFORCE_SYNC_WINDOW_MINUTES"],
                cron=config["CRM_SALESFORCE_SYNC_CRON"],
            ),
            reconciliation_cron=config["CRM_RECONCILIATION_CRON"],
            timezone=config["CRM_TIMEZONE"],
            reconciliation_window_days=config["CRM_RECONCILIATION_WINDOW_DAYS"],
            max_concurrent_jobs=config["CRM_MAX_CONCURRENT_JOBS"],
        )


class IntegrationOrchestrator:
    """Schedules and runs CRM delta syncs and reconciliation."""

    def __init__(self, settings: OrchestratorSettings, hubspot_client=None, salesforce_client=None,
                 store: Optional[IntegrationStore] = None, source: Optional[PlatformRecordSource] = None,
                 guard: Optional[JobGuard] = None, clock: Callable = utcnow):
        self.settings = settings
        self.hubspot_client = hubspot_client
        self.salesforce_client = salesforce_client
        self.store = store or IntegrationStore()
        self.source = source or PlatformRecordSource()
        self.guard = guard or JobGuard(settings.max_concurrent_jobs)
        self.clock = clock
        self.logger = get_logger(__name__, service="integration-orchestrator")

    @property
    def hubspot_enabled(self):
        return self.settings.hubspot.enabled and self.hubspot_client is not None

    @property
    def salesforce_enabled(self):
        return self.settings.salesforce.enabled and self.salesforce_client is not None

    # -------------------------
    # Lifecycle
    # -------------------------
    def start(self, scheduler):
        """
        Validate every cron expression, then schedule the jobs.

        Raises:
            ConfigurationError: If an enabled integration lacks a client or a cron is invalid
        """
        tz = self.settings.timezone
        jobs = []
        for name, integration, client, job_id, runner in (
            (HUBSPOT, self.settings.hubspot, self.hubspot_client, HUBSPOT_SYNC_JOB, self.run_hubspot_sync),
            (SALESFORCE, self.settings.salesforce, self.salesforce_client, SALESFORCE_SYNC_JOB,
             self.run_salesforce_sync),
        ):
            if not integration.enabled:
                self.logger.warning("Integration disabled; sync not scheduled", integration=name)
                continue
            if client is None:
                raise ConfigurationError(f"{name} is enabled but no client is configured")
            validate_cron(integration.cron, tz)
            jobs.append((job_id, runner, integration.cron))

        if jobs:
            validate_cron(self.settings.reconciliation_cron, tz)
            jobs.append((RECONCILIATION_JOB, self.run_reconciliation, self.settings.reconciliation_cron))

        for job_id, runner, cron in jobs:
            scheduler.add_cron(job_id, self._scheduled(job_id, runner), cron, tz)

        self.logger.info(
            "Integration orchestrator started",
            jobs=[job_id for job_id, _, _ in jobs],
            timezone=tz,
            max_concurrent_jobs=self.guard.max_concurrent_jobs,
        )

    def stop(self, scheduler):
        for job_id in (HUBSPOT_SYNC_JOB, SALESFORCE_SYNC_JOB, RECONCILIATION_JOB):
            scheduler.remove(job_id)
        self.logger.info("Integration orchestrator stopped")

    def _scheduled(self, job_id, runner):
        def job():
            return self.execute_job(job_id, lambda: runner(trigger="schedule"), trigger="schedule")
        return job

    def execute_job(self, key: str, handler: Callable, trigger: str = "manual"):
        """
        Run `handler` unless the concurrency limit is reached or `key` is already running.

        Returns:
            The handler's result, or None when the job was refused
        """
        try:
            with self.guard.hold(key):
                with JobContext(key, trigger=trigger):
                    return handler()
        except JobRejected as exc:
            self.logger.warning("Integration job skipped", key=key, reason=exc.reason,
                                concurrent_jobs=self.guard.concurrent_jobs)
            return None

    # -------------------------
    # Delta syncs
    # -------------------------
    def run_hubspot_sync(self, trigger="manual", window_start_at=None, window_end_at=None):
        if not self.hubspot_enabled:
            self.logger.warning("HubSpot sync invoked while integration disabled")
            return None
        return self._run_delta_sync(
            HUBSPOT,
            self.settings.hubspot.window_minutes,
            trigger,
            window_start_at,
            window_end_at,
            collect=self.source.hubspot_contacts,
            push=self.hubspot_client.upsert_contacts,
            pull=self._pull_hubspot,
        )

    def run_salesforce_sync(self, trigger="manual", window_start_at=None, window_end_at=None):
        if not self.salesforce_enabled:
            self.logger.warning("Salesforce sync invoked while integration disabled")
            return None
        return self._run_delta_sync(
            SALESFORCE,
            self.settings.salesforce.window_minutes,
            trigger,
            window_start_at,
            window_end_at,
            collect=self.source.salesforce_leads,
            push=self.salesforce_client.upsert_leads,
            pull=self._pull_salesforce,
        )

    def _run_delta_sync(self, integration, window_minutes, trigger, window_start_at, window_end_at,
                        collect, push, pull):
        last_run = self.store.latest_successful_run(integration)
        window = SyncEngine.resolve_window(
            self.clock(),
            window_minutes,
            last_finished_at=last_run.finished_at if last_run else None,
            explicit_start=to_naive_utc(window_start_at),
            explicit_end=to_naive_utc(window_end_at),
        )

        # The run row exists before any work so a crash mid-run stays visible
        run = self.store.create_run(
            integration,
            "delta",
            trigger,
            str(uuid.uuid4()),
            window.start,
            window.end,
            metadata={
                "window_minutes": window_minutes,
                "trigger": trigger,
                "previous_run_id": last_run.id if last_run else None,
            },
        )
        self.store.mark_started(run, self.clock())
        started = time.monotonic()

        try:
            collected = collect(window.start, window.end)
            pushed = push(collected.records)
            self.store.add_results(run, [
                {
                    "entity_type": result.record.entity_type,
                    "entity_id": result.record.entity_id,
                    "external_id": result.external_id,
                    "direction": "outbound",
                    "operation": "upsert",
                    "status": "succeeded" if result.succeeded else "failed",
                    "message": result.message,
                    "payload_hash": result.record.idempotency_key,
                    "payload": result.record.payload,
                }
                for result in pushed.results
            ])
            self._count_records(integration, "outbound", "succeeded", pushed.succeeded)
            self._count_records(integration, "outbound", "failed", pushed.failed)
            self.store.increment_counters(
                run,
                pushed=pushed.succeeded,
                failed=pushed.failed,
                skipped=collected.skipped,
                metadata_patch={
                    "outbound_candidates": len(collected.records),
                    "outbound_skipped": collected.skipped,
                },
            )

            observed = pull(window.start)
            self.store.add_results(run, [
                {
                    "entity_type": record.entity_type,
                    "entity_id": record.entity_id,
                    "external_id": record.external_id,
                    "direction": "inbound",
                    "operation": "read",
                    "status": "observed",
                    "payload": record.payload,
                }
                for record in observed
            ])
            self._count_records(integration, "inbound", "observed", len(observed))
            self.store.increment_counters(run, pulled=len(observed), metadata_patch={"inbound_sample": len(observed)})

            status = SyncEngine.run_status(pushed.failed)
            run = self.store.mark_completed(
                run,
                status,
                self.clock(),
                metadata={
                    "outbound": collected.summary,
                    "inbound": {"sampled": len(observed), "window_start_at": isoformat_utc(window.start)},
                },
            )
        except Exception as exc:
            self.store.rollback()
            failed_run = self.store.record_error(run, exc, self.clock())
            self._observe_run(integration, "failed", trigger, started)
            self.logger.error(
                "Integration sync failed",
                integration=integration,
                run_id=failed_run.id,
                records_pushed=failed_run.records_pushed,
                records_failed=failed_run.records_failed,
                error=str(exc),
                exc_info=True,
            )
            raise

        self._observe_run(integration, status, trigger, started)
        self.logger.info(
            "Integration sync completed",
            integration=integration,
            run_id=run.id,
            status=status,
            outbound_succeeded=pushed.succeeded,
            outbound_failed=pushed.failed,
            inbound_sample=len(observed),
            window_start_at=isoformat_utc(window.start),
            window_end_at=isoformat_utc(window.end),
        )
        return run

    def _pull_hubspot(self, since) -> List[InboundRecord]:
        observed = []
        after = None
        for _ in range(MAX_INBOUND_PAGES):
            page = self.hubspot_client.search_contacts(updated_since=since, limit=INBOUND_PAGE_LIMIT, after=after)
            results = page.get("results") or []
            if not results:
                break
            for result in results:
                properties = result.get("properties") or {}
                observed.append(InboundRecord(
                    entity_type="contact",
                    entity_id=properties.get("email") or result.get("id"),
                    external_id=result.get("id"),
                    payload=properties,
                ))
            after = _next_after(page)
            if not after:
                break
        return observed

    def _pull_salesforce(self, since) -> List[InboundRecord]:
        field_name = self.salesforce_client.external_id_field
        return [
            InboundRecord(
                entity_type="lead",
                entity_id=lead.get(field_name) or lead.get("Id"),
                external_id=lead.get("Id"),
                payload={key: value for key, value in lead.items() if key != "attributes"},
            )
            for lead in self.salesforce_client.query_leads_updated_since(since)
        ]

    # -------------------------
    # Reconciliation
    # -------------------------
    def run_reconciliation(self, trigger="manual"):
        """Diff platform and CRM identities for every enabled integration. Detection only."""
        correlation_id = str(uuid.uuid4())
        reports = []
        for name, enabled, reconcile in (
            (HUBSPOT, self.hubspot_enabled, self.reconcile_hubspot),
            (SALESFORCE, self.salesforce_enabled, self.reconcile_salesforce),
        ):
            if not enabled:
                continue
            try:
                reports.append(reconcile(trigger=trigger, correlation_id=correlation_id))
            except Exception as exc:
                self.store.rollback()
                self.logger.error("Reconciliation failed", integration=name, error=str(exc), exc_info=True)
        return reports

    def reconcile_hubspot(self, trigger="manual", correlation_id=None):
        since = self._reconciliation_since()
        local = self.source.hubspot_identities_since(since)
        remote = []
        after = None
        for _ in range(MAX_INBOUND_PAGES):
            page = self.hubspot_client.search_contacts(updated_since=since, limit=INBOUND_PAGE_LIMIT, after=after)
            for result in page.get("results") or []:
                remote.append((result.get("properties") or {}).get("email") or result.get("id"))
            after = _next_after(page)
            if not after:
                break
        return self._write_report(HUBSPOT, local, [value for value in remote if value], trigger, correlation_id)

    def reconcile_salesforce(self, trigger="manual", correlation_id=None):
        since = self._reconciliation_since()
        local = self.source.salesforce_identities_since(since)
        field_name = self.salesforce_client.external_id_field
        leads = self.salesforce_client.query_leads_updated_since(since)
        remote = [lead.get(field_name) for lead in leads if lead.get(field_name)]
        return self._write_report(SALESFORCE, local, remote, trigger, correlation_id)

    @property
    def reconciliation_window_days(self) -> int:
        return max(1, int(self.settings.reconciliation_window_days or 7))

    def _reconciliation_since(self):
        return self.clock() - timedelta(days=self.reconciliation_window_days)

    def _write_report(self, integration, local, remote, trigger, correlation_id):
        diff = SyncEngine.diff_identities(local, remote)
        if diff.missing_in_integration_total:
            metrics.safe_metric(lambda: metrics.integration_mismatches.labels(
                integration=integration, direction="outbound").inc(diff.missing_in_integration_total))
        if diff.missing_in_platform_total:
            metrics.safe_metric(lambda: metrics.integration_mismatches.labels(
                integration=integration, direction="inbound").inc(diff.missing_in_platform_total))

        report = self.store.create_report(
            integration,
            self.clock().date().isoformat(),
            diff.mismatch_count,
            diff.missing_in_platform,
            diff.missing_in_integration,
            extra_context={
                "trigger": trigger,
                "window_days": self.reconciliation_window_days,
                "sampled_remote": len(remote),
                "sampled_local": len(local),
            },
            correlation_id=correlation_id,
        )
        self.logger.info(
            "Reconciliation report written",
            integration=integration,
            mismatch_count=diff.mismatch_count,
            missing_in_integration=diff.missing_in_integration_total,
            missing_in_platform=diff.missing_in_platform_total,
        )
        return report

    # -------------------------
    # Status
    # -------------------------
    def status_snapshot(self) -> dict:
        return {
            HUBSPOT: {
                "enabled": self.hubspot_enabled,
                "environment": self.settings.hubspot.environment,
                "recent_runs": [run.to_dict() for run in self.store.recent_runs(HUBSPOT, RECENT_RUNS_LIMIT)],
            },
            SALESFORCE: {
                "enabled": self.salesforce_enabled,
                "environment": self.settings.salesforce.environment,
                "recent_runs": [run.to_dict() for run in self.store.recent_runs(SALESFORCE, RECENT_RUNS_LIMIT)],
            },
            "reconciliation": [report.to_dict() for report in self.store.recent_reports(RECENT_REPORTS_LIMIT)],
            **self.guard.get_status(),
        }

    # -------------------------
    # Metrics
    # -------------------------
    @staticmethod
    def _count_records(integration, direction, outcome, count):
        if count:
            metrics.safe_metric(lambda: metrics.integration_records.labels(
                integration=integration, direction=direction, outcome=outcome).inc(count))

    @staticmethod
    def _observe_run(integration, status, trigger, started):
        duration = time.monotonic() - started
        metrics.safe_metric(lambda: metrics.integration_sync_runs.labels(
            integration=integration, status=status, trigger=trigger).inc())
        metrics.safe_metric(lambda: metrics.integration_sync_duration.labels(
            integration=integration, sync_type="delta", status=status).observe(duration))


def _next_after(page):
    paging = page.get("paging") or {}
    return (paging.get("next") or {}).get("after")
