"""Replay of queued local writes, run by the reconciliation worker."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from touristid_api.credentials.errors import LocalPersistenceFailure
from touristid_api.credentials.repository import CredentialRepository, LifecycleEventRepository
from touristid_api.credentials.state import EventType
from touristid_api.credentials.writes import LocalWriter
from touristid_api.ledger.facade import LedgerConnectionError, LedgerFacade, LedgerRejection
from touristid_api.models import PendingLocalWrite
from touristid_api.utils.metrics import local_writes_replayed

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Applies outbox entries until the local store matches the ledger.

    ``ledger`` is used to revoke a credential whose queued issue lost to
    another ACTIVE credential for the same tourist. Without it such an
    entry is retried until it gives up.
    """

    def __init__(self, db: Session, max_attempts: int = 10, ledger: Optional[LedgerFacade] = None):
        self.db = db
        self.max_attempts = max_attempts
        self.ledger = ledger

    def pending_ids(self, limit: int = 100) -> list[int]:
        rows = (
            self.db.query(PendingLocalWrite.id)
            .filter(PendingLocalWrite.status == "pending")
            .order_by(PendingLocalWrite.id.asc())
            .limit(limit)
            .all()
        )
        return [row.id for row in rows]

    def replay(self, entry_id: int) -> str:
        """Apply one outbox entry.

        Returns the entry's resulting status. Raises LocalPersistenceFailure
        while the entry should be retried.
        """
        entry = (
            self.db.query(PendingLocalWrite)
            .filter(PendingLocalWrite.id == entry_id)
            .with_for_update()
            .first()
        )
        if entry is None:
            logger.error(f"Outbox entry {entry_id} not found")
            return "missing"
        if entry.status != "pending":
            return entry.status

        operation = entry.operation
        payload = entry.payload_json
        try:
            LocalWriter(self.db).apply(operation, payload)
            entry.status = "applied"
            entry.attempts += 1
            entry.applied_at = datetime.utcnow()
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if not self._superseded_issue(operation, payload):
                return self._failed(entry_id, operation, e)
            try:
                self._revoke_duplicate(payload, entry_id)
            except LocalPersistenceFailure as retry:
                return self._failed(entry_id, operation, retry)
            entry = self.db.get(PendingLocalWrite, entry_id)
            entry.status = "conflict"
            entry.attempts += 1
            entry.last_error = str(e)[:1000]
            self.db.commit()
            return "conflict"
        except (SQLAlchemyError, LocalPersistenceFailure) as e:
            self.db.rollback()
            return self._failed(entry_id, operation, e)

        local_writes_replayed.labels(operation=operation, outcome="applied").inc()
        logger.info(f"Applied outbox entry {entry_id} ({operation})", extra={"entry_id": entry_id})
        return "applied"

    def _failed(self, entry_id: int, operation: str, error: BaseException) -> str:
        local_writes_replayed.labels(operation=operation, outcome="failed").inc()
        status = self._record_failure(entry_id, error)
        if status == "failed":
            logger.error(
                f"Outbox entry {entry_id} ({operation}) gave up after {self.max_attempts} attempts: {error}",
                extra={"operation": operation, "entry_id": entry_id},
            )
            return status
        raise LocalPersistenceFailure(operation, str(error)) from error

    def _record_failure(self, entry_id: int, error: BaseException) -> str:
        entry = self.db.get(PendingLocalWrite, entry_id)
        entry.attempts += 1
        entry.last_error = str(error)[:1000]
        if entry.attempts >= self.max_attempts:
            entry.status = "failed"
        self.db.commit()
        return entry.status

    def _superseded_issue(self, operation: str, payload: dict) -> bool:
        """True if ``payload`` is an issue for a tourist who already holds another ACTIVE credential."""
        if operation != "issue" or self.ledger is None:
            return False
        active = CredentialRepository(self.db).active_for_subject(payload["tourist_id"])
        return active is not None and active.blockchain_id != payload["blockchain_id"]

    def _revoke_duplicate(self, payload: dict, entry_id: Optional[int] = None) -> None:
        """Revoke the superseded credential on the ledger and log it locally.

        Raises LocalPersistenceFailure if the ledger could not be reached.
        """
        blockchain_id = payload["blockchain_id"]
        log_extra = {"blockchain_id": blockchain_id, "entry_id": entry_id}
        revoke_tx = None
        try:
            revoke_tx = self.ledger.revoke(blockchain_id, "duplicate issuance").transaction_hash
        except LedgerConnectionError as e:
            logger.warning(f"Ledger unavailable while revoking duplicate {blockchain_id}: {e}", extra=log_extra)
            raise LocalPersistenceFailure("issue", f"duplicate {blockchain_id} not yet revoked: {e}") from e
        except LedgerRejection as e:
            # Already revoked or otherwise no longer ACTIVE on the ledger
            logger.warning(f"Ledger declined to revoke duplicate {blockchain_id}: {e}", extra=log_extra)

        LifecycleEventRepository(self.db).append(
            EventType.DUPLICATE_ISSUE_REVOKED.value,
            blockchain_id=blockchain_id,
            tourist_id=payload["tourist_id"],
            transaction_hash=revoke_tx,
            metadata={
                "reason": "duplicate issuance",
                "mintTransactionHash": payload.get("transaction_hash"),
                "outboxEntryId": entry_id,
            },
        )
        local_writes_replayed.labels(operation="issue", outcome="conflict").inc()
        logger.error(
            f"Queued issue {blockchain_id} for tourist {payload['tourist_id']} lost to another "
            f"active credential; revoked on the ledger",
            extra=log_extra,
        )

    def apply(self, operation: str, payload: dict) -> None:
        """Apply a write that never made it into the outbox table."""
        try:
            LocalWriter(self.db).apply(operation, payload)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if not self._superseded_issue(operation, payload):
                local_writes_replayed.labels(operation=operation, outcome="failed").inc()
                raise LocalPersistenceFailure(operation, str(e)) from e
            self._revoke_duplicate(payload)
            self.db.commit()
            return
        except (SQLAlchemyError, LocalPersistenceFailure) as e:
            self.db.rollback()
            local_writes_replayed.labels(operation=operation, outcome="failed").inc()
            raise LocalPersistenceFailure(operation, str(e)) from e
        local_writes_replayed.labels(operation=operation, outcome="applied").inc()
