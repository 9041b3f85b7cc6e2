"""Persistence for sync runs, per-record results, CRM call audits and reconciliation reports."""
from typing import Iterable, List, Optional

from sqlalchemy import select

from edulure_sync.models import (
    db,
    IntegrationCallAudit,
    IntegrationSyncResult,
    IntegrationSyncRun,
    ReconciliationReport,
    SyncRunStatus,
)


class IntegrationStore:
    """Run lifecycle writes for the integration orchestrator."""

    def __init__(self, session=None):
        self._session = session

    @property
    def session(self):
        return self._session or db.session

    def rollback(self):
        self.session.rollback()

    def latest_successful_run(self, integration: str, sync_type: str = "delta") -> Optional[IntegrationSyncRun]:
        return self.session.execute(
            select(IntegrationSyncRun)
            .where(
                IntegrationSyncRun.integration == integration,
                IntegrationSyncRun.sync_type == sync_type,
                IntegrationSyncRun.status == SyncRunStatus.SUCCEEDED.value,
                IntegrationSyncRun.finished_at.isnot(None),
            )
            .order_by(IntegrationSyncRun.finished_at.desc(), IntegrationSyncRun.id.desc())
            .limit(1)
        ).scalars().first()

    def create_run(self, integration, sync_type, triggered_by, correlation_id, window_start_at,
                   window_end_at, metadata=None) -> IntegrationSyncRun:
        run = IntegrationSyncRun(
            integration=integration,
            sync_type=sync_type,
            triggered_by=triggered_by,
            correlation_id=correlation_id,
            window_start_at=window_start_at,
            window_end_at=window_end_at,
            status=SyncRunStatus.QUEUED.value,
            meta=metadata or {},
        )
        self.session.add(run)
        self.session.commit()
        return run

    def mark_started(self, run, started_at):
        run.status = SyncRunStatus.RUNNING.value
        run.started_at = started_at
        self.session.commit()
        return run

    def increment_counters(self, run, pushed=0, pulled=0, failed=0, skipped=0, metadata_patch=None):
        run.records_pushed = (run.records_pushed or 0) + pushed
        run.records_pulled = (run.records_pulled or 0) + pulled
        run.records_failed = (run.records_failed or 0) + failed
        run.records_skipped = (run.records_skipped or 0) + skipped
        if metadata_patch:
            run.meta = {**(run.meta or {}), **metadata_patch}
        self.session.commit()
        return run

    def mark_completed(self, run, status, finished_at, metadata=None):
        run.status = status
        run.finished_at = finished_at
        if metadata:
            run.meta = {**(run.meta or {}), **metadata}
        self.session.commit()
        return run

    def record_error(self, run, error, finished_at):
        """Mark a run failed, keeping whatever counters it reached."""
        run.status = SyncRunStatus.FAILED.value
        run.finished_at = finished_at
        run.meta = {
            **(run.meta or {}),
            "error": {"name": type(error).__name__, "message": str(error)},
        }
        self.session.commit()
        return run

    def add_results(self, run, rows: Iterable[dict]) -> int:
        results = [IntegrationSyncResult(sync_run_id=run.id, integration=run.integration, **row) for row in rows]
        if not results:
            return 0
        self.session.add_all(results)
        self.session.commit()
        return len(results)

    def record_call_audit(self, entry: dict) -> IntegrationCallAudit:
        audit = IntegrationCallAudit(
            provider=entry["provider"],
            request_method=entry["request_method"],
            request_path=(entry["request_path"] or "")[:500],
            status_code=entry.get("status_code"),
            outcome=entry["outcome"],
            duration_ms=entry.get("duration_ms"),
            attempt=entry.get("attempt") or 1,
            meta=entry.get("metadata") or {},
            error_code=entry.get("error_code"),
            error_message=entry.get("error_message"),
        )
        try:
            self.session.add(audit)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return audit

    def create_report(self, integration, report_date, mismatch_count, missing_in_platform,
                      missing_in_integration, extra_context=None, correlation_id=None) -> ReconciliationReport:
        report = ReconciliationReport(
            integration=integration,
            report_date=report_date,
            correlation_id=correlation_id,
            mismatch_count=mismatch_count,
            missing_in_platform=list(missing_in_platform),
            missing_in_integration=list(missing_in_integration),
            extra_context=extra_context or {},
        )
        self.session.add(report)
        self.session.commit()
        return report

    def recent_runs(self, integration: str, limit: int = 5) -> List[IntegrationSyncRun]:
        return self.session.execute(
            select(IntegrationSyncRun)
            .where(IntegrationSyncRun.integration == integration)
            .order_by(IntegrationSyncRun.created_at.desc(), IntegrationSyncRun.id.desc())
            .limit(limit)
        ).scalars().all()

    def recent_reports(self, limit: int = 3) -> List[ReconciliationReport]:
        return self.session.execute(
            select(ReconciliationReport)
            .order_by(ReconciliationReport.generated_at.desc(), ReconciliationReport.id.desc())
            .limit(limit)
        ).scalars().all()
