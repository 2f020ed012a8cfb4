"""Outbox for local writes that failed after the ledger confirmed them."""

import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from touristid_api.models import PendingLocalWrite
from touristid_api.utils.metrics import local_writes_queued

logger = logging.getLogger(__name__)

REPLAY_TASK = "touristid_worker.tasks.replay_pending_write"
APPLY_TASK = "touristid_worker.tasks.apply_local_write"


class CeleryDispatcher:
    """Hands outbox work to the reconciliation worker."""

    def __init__(self, celery_app=None):
        self._celery_app = celery_app

    @property
    def celery_app(self):
        if self._celery_app is None:
            from touristid_api.celery_client import get_celery_app

            self._celery_app = get_celery_app()
        return self._celery_app

    def replay(self, entry_id: int) -> None:
        self.celery_app.signature(REPLAY_TASK, args=[entry_id]).apply_async()

    def apply(self, operation: str, payload: dict) -> None:
        self.celery_app.signature(APPLY_TASK, args=[operation, payload]).apply_async()


class LocalWriteOutbox:
    """Records a pending local write and schedules its replay.

    The row is written in its own session so it survives the rollback of
    the request's transaction. If the row cannot be written the payload
    travels to the worker through the broker instead.
    """

    def __init__(self, session_factory: Callable[[], Session], dispatcher=None):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or CeleryDispatcher()

    def enqueue(self, operation: str, payload: dict, error: Optional[BaseException] = None) -> Optional[int]:
        """Queue ``payload`` for replay; returns the outbox row id if stored."""
        local_writes_queued.labels(operation=operation).inc()
        log_extra = {
            "operation": operation,
            "blockchain_id": payload.get("blockchain_id") or payload.get("original_id"),
            "transaction_hash": payload.get("transaction_hash"),
        }

        entry_id = None
        db = self.session_factory()
        try:
            entry = PendingLocalWrite(
                operation=operation,
                blockchain_id=log_extra["blockchain_id"],
                tourist_id=payload.get("tourist_id"),
                transaction_hash=payload.get("transaction_hash"),
                payload_json=payload,
                status="pending",
                attempts=0,
                last_error=str(error)[:1000] if error else None,
            )
            db.add(entry)
            db.commit()
            entry_id = entry.id
            logger.warning(f"Queued local write {operation} for reconciliation", extra=log_extra)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not store outbox entry for {operation}: {e}", extra=log_extra)
        finally:
            db.close()

        try:
            if entry_id is not None:
                self.dispatcher.replay(entry_id)
            else:
                self.dispatcher.apply(operation, payload)
        except Exception as e:
            if entry_id is not None:
                logger.warning(
                    f"Could not dispatch outbox entry {entry_id}; the sweep will retry it: {e}",
                    extra=log_extra,
                )
            else:
                logger.critical(
                    f"Ledger-confirmed {operation} could not be queued anywhere: {e}",
                    extra={**log_extra, "payload": payload},
                )
        return entry_id
