"""
Run one CRM delta sync by hand.

Usage:
    python -m edulure_sync.scripts.run_sync --integration hubspot
    python -m edulure_sync.scripts.run_sync --integration salesforce --window-start 2024-05-01T00:00:00Z

Runs through the orchestrator's job guard, so it records a sync run exactly
like the scheduled job does.
"""

import argparse
import sys

from edulure_sync import create_app
from edulure_sync.integrations.orchestrator import HUBSPOT_SYNC_JOB, SALESFORCE_SYNC_JOB
from edulure_sync.services import get_services



def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Run a HubSpot or Salesforce delta sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sync since the last successful run
  python -m edulure_sync.scripts.run_sync --integration hubspot

  # Sync an explicit window
  python -m edulure_sync.scripts.run_sync --integration salesforce \\
      --window-start 2024-05-01T00:00:00Z --window-end 2024-05-02T00:00:00Z
        """
    )
    parser.add_argument(
        "--integration",
        choices=["hubspot", "salesforce"],
        required=True,
        help="Integration to sync"
    )
    parser.add_argument("--window-start", type=str, help="ISO timestamp overriding the window start")
    parser.add_argument("--window-end", type=str, help="ISO timestamp overriding the window end")

    args = parser.parse_args(argv)

    app = create_app(start_scheduler=False)
    with app.app_context():
        orchestrator = get_services(app).orchestrator
        if args.integration == "hubspot":
            key, runner = HUBSPOT_SYNC_JOB, orchestrator.run_hubspot_sync
        else:
            key, runner = SALESFORCE_SYNC_JOB, orchestrator.run_salesforce_sync

        run = orchestrator.execute_job(
            key,
            lambda: runner(trigger="manual", window_start_at=args.window_start, window_end_at=args.window_end),
            trigger="manual",
        )

        if run is None:
            print(f"{args.integration} sync did not run (disabled or already running).")
            return 1

        print(f"Run {run.id}: {run.status}")
        print(f"  pushed:  {run.records_pushed}")
        print(f"  pulled:  {run.records_pulled}")
        print(f"  failed:  {run.records_failed}")
        print(f"  skipped: {run.records_skipped}")
        return 0


if __name__ == "__main__":
    sys.exit(main())
