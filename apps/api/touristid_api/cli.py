"""CLI commands for the Digital Tourist ID service."""

import click

from touristid_api.db.session import SessionLocal, engine
from touristid_api.settings import get_settings


@click.group()
def cli():
    """Digital Tourist ID CLI."""
    pass


@cli.command("init-db")
def init_db():
    """Create tables directly (development only; use alembic elsewhere)."""
    from touristid_api.db.base import Base
    from touristid_api import models  # noqa: F401

    click.echo("Creating tables...")
    Base.metadata.create_all(bind=engine)
    click.echo("✓ Tables created.")


@cli.command("auto-expire")
def auto_expire():
    """Run one auto-expiration sweep."""
    from touristid_api.credentials.manager import CredentialLifecycleManager
    from touristid_api.ledger import get_ledger_facade
    from touristid_api.reconciliation.outbox import LocalWriteOutbox
    from touristid_api.security.encryption import get_encryption_service

    db = SessionLocal()
    try:
        manager = CredentialLifecycleManager(
            db,
            get_ledger_facade(),
            get_encryption_service(),
            LocalWriteOutbox(SessionLocal),
            settings=get_settings(),
        )
        result = manager.auto_expire()
        click.echo(
            f"✓ Processed {result.processed_count}, expired {result.expired_count}, "
            f"{len(result.errors)} errors, {len(result.pending_reconciliation)} pending reconciliation."
        )
        for error in result.errors:
            click.echo(f"✗ {error.blockchain_id}: {error.error}", err=True)
    finally:
        db.close()


@cli.command("replay-outbox")
@click.option("--limit", default=100, show_default=True, help="Maximum entries to replay.")
def replay_outbox(limit):
    """Apply pending outbox entries in-process."""
    from touristid_api.credentials.errors import LocalPersistenceFailure
    from touristid_api.ledger import get_ledger_facade
    from touristid_api.reconciliation.replayer import ReconciliationService

    db = SessionLocal()
    try:
        service = ReconciliationService(
            db, max_attempts=get_settings().outbox_max_attempts, ledger=get_ledger_facade()
        )
        entry_ids = service.pending_ids(limit)
        applied = 0
        for entry_id in entry_ids:
            try:
                if service.replay(entry_id) == "applied":
                    applied += 1
            except LocalPersistenceFailure as e:
                click.echo(f"✗ Entry {entry_id}: {e}", err=True)
        click.echo(f"✓ Applied {applied} of {len(entry_ids)} pending entries.")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
