"""Celery tasks for reconciliation and scheduled lifecycle sweeps."""

import logging
from typing import Optional

from celery import Task
from sqlalchemy.orm import Session

from touristid_api.credentials.errors import LocalPersistenceFailure
from touristid_api.ledger import get_ledger_facade
from touristid_api.reconciliation.replayer import ReconciliationService
from touristid_worker.celery_app import celery_app, settings
from touristid_worker.db import SessionLocal, get_db

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Task with database session."""

    _db: Optional[Session] = None

    @property
    def db(self) -> Session:
        """Get database session."""
        if self._db is None:
            self._db = next(get_db())
        return self._db

    def after_return(self, *args, **kwargs):
        """Close database session after task."""
        if self._db:
            self._db.close()
            self._db = None


@celery_app.task(
    base=DatabaseTask,
    bind=True,
    max_retries=settings.outbox_max_attempts,
    autoretry_for=(LocalPersistenceFailure,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
)
def replay_pending_write(self, entry_id: int):
    """Apply one outbox entry; retried with backoff until it lands or gives up."""
    service = ReconciliationService(
        self.db, max_attempts=settings.outbox_max_attempts, ledger=get_ledger_facade()
    )
    status = service.replay(entry_id)
    logger.info(
        f"Outbox entry {entry_id} is {status}",
        extra={"task": "replay_pending_write", "entry_id": entry_id},
    )
    return status


@celery_app.task(base=DatabaseTask, bind=True, max_retries=settings.outbox_max_attempts)
def apply_local_write(self, operation: str, payload: dict):
    """Apply a ledger-confirmed write that could not be stored in the outbox."""
    service = ReconciliationService(
        self.db, max_attempts=settings.outbox_max_attempts, ledger=get_ledger_facade()
    )
    try:
        service.apply(operation, payload)
    except LocalPersistenceFailure as e:
        if self.request.retries >= self.max_retries:
            logger.critical(
                f"Giving up on ledger-confirmed {operation} write: {e}",
                extra={"task": "apply_local_write", "operation": operation, "payload": payload},
            )
            raise
        raise self.retry(exc=e, countdown=min(600, 2 ** self.request.retries))
    return "applied"


@celery_app.task(base=DatabaseTask, bind=True)
def sweep_pending_writes(self):
    """Re-dispatch outbox entries that are still pending."""
    service = ReconciliationService(self.db, max_attempts=settings.outbox_max_attempts)
    entry_ids = service.pending_ids(settings.outbox_sweep_batch_size)
    for entry_id in entry_ids:
        replay_pending_write.delay(entry_id)
    if entry_ids:
        logger.info(
            f"Re-dispatched {len(entry_ids)} pending outbox entries",
            extra={"task": "sweep_pending_writes"},
        )
    return len(entry_ids)


@celery_app.task(base=DatabaseTask, bind=True)
def run_auto_expiration(self):
    """Scheduled auto-expiration sweep."""
    from touristid_api.credentials.manager import CredentialLifecycleManager
    from touristid_api.credentials.results import Actor
    from touristid_api.reconciliation.outbox import CeleryDispatcher, LocalWriteOutbox
    from touristid_api.security.encryption import get_encryption_service

    manager = CredentialLifecycleManager(
        self.db,
        get_ledger_facade(),
        get_encryption_service(),
        LocalWriteOutbox(SessionLocal, dispatcher=CeleryDispatcher(celery_app)),
    )
    result = manager.auto_expire(executor=Actor(actor_id="scheduler", role="system"))
    logger.info(
        f"Scheduled auto-expiration: {result.expired_count}/{result.processed_count} expired",
        extra={"task": "run_auto_expiration", "errors": len(result.errors)},
    )
    return {
        "processedCount": result.processed_count,
        "expiredCount": result.expired_count,
        "errors": [error.to_dict() for error in result.errors],
        "pendingReconciliation": result.pending_reconciliation,
    }
