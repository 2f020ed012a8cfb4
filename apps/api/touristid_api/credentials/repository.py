"""Data access for credentials, the access log and the lifecycle event log.

Only the lifecycle manager (and reconciliation replay, which runs the same
local writes) calls the mutating methods here.
"""

import hashlib
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists, func, or_, update
from sqlalchemy.orm import Session

from touristid_api.credentials.state import CredentialStatus, can_transition
from touristid_api.models import AccessLogEntry, DigitalTouristId, LifecycleEvent, PendingLocalWrite
from touristid_api.security.hashing import canonical_json


class CredentialRepository:
    """Reads and guarded writes for ``digital_tourist_ids``."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, blockchain_id: str) -> Optional[DigitalTouristId]:
        return (
            self.db.query(DigitalTouristId)
            .filter(DigitalTouristId.blockchain_id == blockchain_id)
            .first()
        )

    def get_for_update(self, blockchain_id: str) -> Optional[DigitalTouristId]:
        """Fetch with a row lock (no-op on SQLite)."""
        return (
            self.db.query(DigitalTouristId)
            .filter(DigitalTouristId.blockchain_id == blockchain_id)
            .with_for_update()
            .first()
        )

    def active_for_subject(self, tourist_id: str, for_update: bool = False) -> Optional[DigitalTouristId]:
        query = self.db.query(DigitalTouristId).filter(
            DigitalTouristId.tourist_id == tourist_id,
            DigitalTouristId.status == CredentialStatus.ACTIVE.value,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def issue_pending_for_subject(self, tourist_id: str) -> bool:
        """True if a ledger-confirmed issue for ``tourist_id`` is still queued."""
        return (
            self.db.query(PendingLocalWrite.id)
            .filter(
                PendingLocalWrite.tourist_id == tourist_id,
                PendingLocalWrite.operation == "issue",
                PendingLocalWrite.status == "pending",
            )
            .first()
            is not None
        )

    def add(self, credential: DigitalTouristId) -> DigitalTouristId:
        self.db.add(credential)
        self.db.flush()
        return credential

    def due_for_expiry(self, now: datetime, after_id: int = 0, limit: int = 100) -> list[DigitalTouristId]:
        """ACTIVE credentials past expiry or checkout, keyset-paged by primary key.

        Credentials whose ledger expiry is already confirmed and only the
        local write is queued are left out.
        """
        expire_queued = exists().where(
            PendingLocalWrite.blockchain_id == DigitalTouristId.blockchain_id,
            PendingLocalWrite.operation == "expire",
            PendingLocalWrite.status == "pending",
        )
        return (
            self.db.query(DigitalTouristId)
            .filter(
                DigitalTouristId.status == CredentialStatus.ACTIVE.value,
                DigitalTouristId.id > after_id,
                ~expire_queued,
                or_(
                    DigitalTouristId.expires_at <= now,
                    and_(
                        DigitalTouristId.checkout_at.isnot(None),
                        DigitalTouristId.checkout_at <= now,
                    ),
                ),
            )
            .order_by(DigitalTouristId.id.asc())
            .limit(limit)
            .all()
        )

    def record_access(self, credential_pk: int, accessed_at: datetime, emergency: bool) -> None:
        """Atomically bump access_count and stamp last access.

        ``emergency_override`` is only ever set, never cleared.
        """
        values = {
            "access_count": DigitalTouristId.access_count + 1,
            "last_accessed_at": accessed_at,
            "updated_at": accessed_at,
        }
        if emergency:
            values["emergency_override"] = True
        self.db.execute(
            update(DigitalTouristId)
            .where(DigitalTouristId.id == credential_pk)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )

    def transition(self, blockchain_id: str, target: CredentialStatus, at: datetime) -> bool:
        """Move an ACTIVE credential to ``target``.

        Conditional on the row still being ACTIVE, so repeating it is a
        no-op. Returns True if a row changed.
        """
        if not can_transition(CredentialStatus.ACTIVE.value, target):
            raise ValueError(f"ACTIVE -> {target.value} is not a lifecycle edge")
        result = self.db.execute(
            update(DigitalTouristId)
            .where(
                DigitalTouristId.blockchain_id == blockchain_id,
                DigitalTouristId.status == CredentialStatus.ACTIVE.value,
            )
            .values(status=target.value, updated_at=at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    def mark_consent_configured(self, blockchain_id: str) -> None:
        self.db.execute(
            update(DigitalTouristId)
            .where(DigitalTouristId.blockchain_id == blockchain_id)
            .values(consent_configured=True)
            .execution_options(synchronize_session="fetch")
        )

    def count_by_status(self) -> dict[str, int]:
        rows = (
            self.db.query(DigitalTouristId.status, func.count(DigitalTouristId.id))
            .group_by(DigitalTouristId.status)
            .all()
        )
        counts = {status.value: 0 for status in CredentialStatus}
        counts.update({status: count for status, count in rows})
        return counts

    def count(self, *criteria) -> int:
        return self.db.query(func.count(DigitalTouristId.id)).filter(*criteria).scalar() or 0

    def most_accessed(self, limit: int = 10) -> list[DigitalTouristId]:
        return (
            self.db.query(DigitalTouristId)
            .order_by(DigitalTouristId.access_count.desc(), DigitalTouristId.id.asc())
            .limit(limit)
            .all()
        )


class AccessLogRepository:
    """Append-only access log with per-credential hash chaining."""

    def __init__(self, db: Session):
        self.db = db

    def _hash_entry(self, entry_data: dict) -> str:
        """Compute hash of entry data."""
        return hashlib.sha256(canonical_json(entry_data).encode()).hexdigest()

    def _entry_data(self, entry: AccessLogEntry) -> dict:
        return {
            "blockchain_id": entry.blockchain_id,
            "accessor_id": entry.accessor_id,
            "accessor_role": entry.accessor_role,
            "accessor_wallet": entry.accessor_wallet,
            "access_reason": entry.access_reason,
            "emergency_access": bool(entry.emergency_access),
            "transaction_hash": entry.transaction_hash,
            "data_accessed": entry.data_accessed,
            "access_metadata": entry.access_metadata,
            "accessed_at": entry.accessed_at.isoformat(),
            "previous_hash": entry.previous_entry_hash,
        }

    def _last_entry_hash(self, credential_pk: int) -> Optional[str]:
        last_entry = (
            self.db.query(AccessLogEntry)
            .filter(AccessLogEntry.credential_id == credential_pk)
            .order_by(AccessLogEntry.id.desc())
            .first()
        )
        return last_entry.entry_hash if last_entry else None

    def append(
        self,
        credential: DigitalTouristId,
        accessor_id: str,
        accessor_role: str,
        accessor_wallet: Optional[str],
        access_reason: str,
        emergency_access: bool,
        transaction_hash: str,
        data_accessed: list[str],
        accessed_at: datetime,
        access_metadata: Optional[dict] = None,
    ) -> AccessLogEntry:
        """Append an entry chained to the credential's previous entry."""
        entry = AccessLogEntry(
            credential_id=credential.id,
            blockchain_id=credential.blockchain_id,
            accessor_id=accessor_id,
            accessor_role=accessor_role,
            accessor_wallet=accessor_wallet,
            access_reason=access_reason,
            emergency_access=emergency_access,
            transaction_hash=transaction_hash,
            data_accessed=list(data_accessed),
            access_metadata=access_metadata,
            accessed_at=accessed_at,
            previous_entry_hash=self._last_entry_hash(credential.id),
        )
        entry.entry_hash = self._hash_entry(self._entry_data(entry))
        self.db.add(entry)
        self.db.flush()
        return entry

    def exists(self, transaction_hash: str) -> bool:
        return (
            self.db.query(AccessLogEntry.id)
            .filter(AccessLogEntry.transaction_hash == transaction_hash)
            .first()
            is not None
        )

    def count(self, credential_pk: Optional[int] = None, emergency_only: bool = False) -> int:
        query = self.db.query(func.count(AccessLogEntry.id))
        if credential_pk is not None:
            query = query.filter(AccessLogEntry.credential_id == credential_pk)
        if emergency_only:
            query = query.filter(AccessLogEntry.emergency_access == True)  # noqa: E712
        return query.scalar() or 0

    def page(self, credential_pk: int, limit: int = 50, offset: int = 0) -> tuple[list[AccessLogEntry], int]:
        """Newest-first page of entries plus the total count."""
        entries = (
            self.db.query(AccessLogEntry)
            .filter(AccessLogEntry.credential_id == credential_pk)
            .order_by(AccessLogEntry.accessed_at.desc(), AccessLogEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return entries, self.count(credential_pk)

    def verify_chain(self, credential_pk: int) -> tuple[bool, Optional[str]]:
        """Verify hash chain integrity for one credential."""
        entries = (
            self.db.query(AccessLogEntry)
            .filter(AccessLogEntry.credential_id == credential_pk)
            .order_by(AccessLogEntry.id.asc())
            .all()
        )

        previous_hash = None
        for entry in entries:
            if entry.previous_entry_hash != previous_hash:
                return False, f"entry {entry.id}: previous hash does not match"
            if self._hash_entry(self._entry_data(entry)) != entry.entry_hash:
                return False, f"entry {entry.id}: content hash mismatch"
            previous_hash = entry.entry_hash

        return True, None


class LifecycleEventRepository:
    """Append-only lifecycle event log."""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        event_type: str,
        blockchain_id: Optional[str] = None,
        tourist_id: Optional[str] = None,
        transaction_hash: Optional[str] = None,
        metadata: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> LifecycleEvent:
        event = LifecycleEvent(
            event_type=event_type,
            blockchain_id=blockchain_id,
            tourist_id=tourist_id,
            transaction_hash=transaction_hash,
            metadata_json=metadata or {},
            timestamp=timestamp or datetime.utcnow(),
        )
        self.db.add(event)
        self.db.flush()
        return event

    def exists(self, event_type: str, transaction_hash: str) -> bool:
        return (
            self.db.query(LifecycleEvent.id)
            .filter(
                LifecycleEvent.event_type == event_type,
                LifecycleEvent.transaction_hash == transaction_hash,
            )
            .first()
            is not None
        )

    def recent(self, limit: int = 10, blockchain_id: Optional[str] = None) -> list[LifecycleEvent]:
        query = self.db.query(LifecycleEvent)
        if blockchain_id is not None:
            query = query.filter(LifecycleEvent.blockchain_id == blockchain_id)
        return query.order_by(LifecycleEvent.timestamp.desc(), LifecycleEvent.id.desc()).limit(limit).all()
