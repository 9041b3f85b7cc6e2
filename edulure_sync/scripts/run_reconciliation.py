"""
Run CRM reconciliation by hand.

Usage:
    python -m edulure_sync.scripts.run_reconciliation
"""

import argparse
import sys

from edulure_sync import create_app
from edulure_sync.integrations.orchestrator import RECONCILIATION_JOB
from edulure_sync.services import get_services


def main(argv=None):
    parser = argparse.ArgumentParser(description="Diff platform and CRM identities and write mismatch reports")
    parser.parse_args(argv)

    app = create_app(start_scheduler=False)
    with app.app_context():
        orchestrator = get_services(app).orchestrator
        reports = orchestrator.execute_job(
            RECONCILIATION_JOB,
            lambda: orchestrator.run_reconciliation(trigger="manual"),
            trigger="manual",
        )
        if not reports:
            print("No reconciliation reports written.")
            return 0

        for report in reports:
            print(f"{report.integration} ({report.report_date}): {report.mismatch_count} mismatch(es)")
            print(f"  missing in integration: {len(report.missing_in_integration or [])} sampled")
            print(f"  missing in platform:    {len(report.missing_in_platform or [])} sampled")
        return 0


if __name__ == "__main__":
    sys.exit(main())
