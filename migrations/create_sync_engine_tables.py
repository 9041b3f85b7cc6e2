"""
Migration script to create the delivery and CRM sync tables.

Creates the domain event dispatch queue and dead letters, webhook
subscriptions, events and deliveries, integration sync runs and results,
CRM call audits and reconciliation reports. Platform tables (users, communities,
creation_projects) belong to the main application and are never created here.

Run this script with:
    python migrations/create_sync_engine_tables.py

The script is idempotent and safe to run multiple times.
"""

import argparse
import sys

from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError, ProgrammingError

from edulure_sync import create_app
from edulure_sync.models import (
    db,
    DomainEvent,
    DomainEventDeadLetter,
    DomainEventDispatch,
    IntegrationCallAudit,
    IntegrationSyncResult,
    IntegrationSyncRun,
    ReconciliationReport,
    WebhookDelivery,
    WebhookEvent,
    WebhookSubscription,
)

# Creation order respects the foreign keys between webhook and sync tables
ENGINE_MODELS = [
    DomainEvent,
    DomainEventDispatch,
    DomainEventDeadLetter,
    WebhookSubscription,
    WebhookEvent,
    WebhookDelivery,
    IntegrationSyncRun,
    IntegrationSyncResult,
    IntegrationCallAudit,
    ReconciliationReport,
]


def table_exists(table_name):
    """Check if a table exists in the database."""
    inspector = inspect(db.engine)
    return table_name in inspector.get_table_names()


def migrate(dry_run=False) -> bool:
    """Create every missing engine table."""
    app = create_app(start_scheduler=False)

    with app.app_context():
        try:
            for model in ENGINE_MODELS:
                table_name = model.__tablename__
                if table_exists(table_name):
                    print(f"✓ Table '{table_name}' already exists.")
                    continue

                if dry_run:
                    print(f"- Would create table '{table_name}'")
                    continue

                print(f"Creating '{table_name}' table...")
                model.__table__.create(db.engine, checkfirst=True)
                if not table_exists(table_name):
                    print(f"✗ Table '{table_name}' was not created. Please verify manually.")
                    return False
                columns = inspect(db.engine).get_columns(table_name)
                print(f"✓ Created '{table_name}' ({len(columns)} columns)")

            print("✓ Migration completed successfully.")
            return True

        except (OperationalError, ProgrammingError) as exc:
            print(f"✗ Database error: {exc}")
            db.session.rollback()
            return False


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Create the delivery and CRM sync tables."
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List the tables that would be created without creating them.",
    )
    args = parser.parse_args()

    success = migrate(dry_run=args.dry_run)
    sys.exit(0 if success else 1)
