"""Credential lifecycle manager.

Every mutating operation follows the same order: check preconditions
against the local store, call the ledger, and only if the ledger call
succeeds apply the local write. The ledger is authoritative, so a local
write that fails after the ledger succeeded is queued for reconciliation
and the caller still gets a success.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from touristid_api.credentials.errors import (
    AccessDenied,
    CredentialError,
    InvalidInput,
    LedgerUnavailable,
    LocalPersistenceFailure,
    NotFound,
    PermissionDenied,
    SubjectAlreadyCredentialed,
)
from touristid_api.credentials.repository import CredentialRepository
from touristid_api.credentials.results import (
    AccessResult,
    Actor,
    AutoExpireResult,
    ConsentUpdateResult,
    CredentialSummary,
    EmergencyAccessResult,
    ExpirationError,
    IssueResult,
    LostReportResult,
    RevokeResult,
)
from touristid_api.credentials.state import CredentialStatus, EventType, ensure_transition
from touristid_api.credentials.writes import LocalWriter, isoformat
from touristid_api.ledger.facade import (
    ConsentSettings,
    LedgerConnectionError,
    LedgerError,
    LedgerFacade,
    LedgerRejection,
    LedgerSubject,
)
from touristid_api.models import DigitalTouristId
from touristid_api.security.hashing import hash_personal_data
from touristid_api.settings import Settings, get_settings
from touristid_api.utils.metrics import credential_accesses, credentials_expired, credentials_issued

logger = logging.getLogger(__name__)


def _epoch_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _require_text(value, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field_name} is required")
    return value


class CredentialLifecycleManager:
    """Issues, discloses, and retires Digital Tourist IDs."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerFacade,
        encryption_service,
        outbox,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.encryption_service = encryption_service
        self.outbox = outbox
        self.settings = settings or get_settings()
        self.clock = clock
        self.credentials = CredentialRepository(db)

    # ------------------------------------------------------------------
    # Plumbing

    def _ledger_call(self, operation: str, rejected: type, blockchain_id: Optional[str], fn, *args, **kwargs):
        """Run one ledger call, translating facade errors for the caller."""
        try:
            return fn(*args, **kwargs)
        except LedgerConnectionError as e:
            logger.warning(
                f"Ledger unavailable during {operation}: {e}",
                extra={"operation": operation, "blockchain_id": blockchain_id},
            )
            raise LedgerUnavailable(
                f"Ledger unavailable during {operation}; no changes were made",
                blockchain_id=blockchain_id,
            ) from e
        except LedgerRejection as e:
            logger.info(
                f"Ledger rejected {operation}: {e}",
                extra={"operation": operation, "blockchain_id": blockchain_id},
            )
            raise rejected(str(e), blockchain_id=blockchain_id) from e

    def _persist(self, operation: str, payload: dict, on_conflict: Optional[Callable] = None) -> bool:
        """Apply a ledger-confirmed local write in one transaction.

        Returns False if the write was queued for reconciliation instead.
        ``on_conflict`` may turn an IntegrityError into a caller error.
        """
        try:
            LocalWriter(self.db).apply(operation, payload)
            self.db.commit()
            return True
        except IntegrityError as e:
            self.db.rollback()
            if on_conflict is not None:
                on_conflict(e)
            error = e
        except (SQLAlchemyError, LocalPersistenceFailure) as e:
            self.db.rollback()
            error = e

        logger.error(
            f"Local {operation} write failed after ledger success; queued for reconciliation: {error}",
            extra={
                "operation": operation,
                "blockchain_id": payload.get("blockchain_id") or payload.get("original_id"),
                "transaction_hash": payload.get("transaction_hash"),
            },
        )
        self.outbox.enqueue(operation, payload, error=error)
        return False

    def _get(self, blockchain_id: str) -> DigitalTouristId:
        _require_text(blockchain_id, "blockchainId")
        credential = self.credentials.get(blockchain_id)
        if credential is None:
            raise NotFound(f"Digital ID {blockchain_id} not found", blockchain_id=blockchain_id)
        return credential

    # ------------------------------------------------------------------
    # Issue

    def _validate_issue(
        self,
        tourist_id,
        wallet_address,
        personal_data,
        emergency_contacts,
        validity_days,
        checkout_at: Optional[datetime],
        now: datetime,
    ):
        _require_text(tourist_id, "touristId")
        _require_text(wallet_address, "touristWallet")
        if not isinstance(personal_data, dict):
            raise InvalidInput("personalData is required")
        _require_text(personal_data.get("name"), "personalData.name")
        _require_text(personal_data.get("nationality"), "personalData.nationality")
        if not isinstance(emergency_contacts, dict):
            raise InvalidInput("emergencyContacts is required")
        _require_text(emergency_contacts.get("primary"), "emergencyContacts.primary")
        if isinstance(validity_days, bool) or not isinstance(validity_days, int):
            raise InvalidInput("validityDays must be an integer")
        low, high = self.settings.min_validity_days, self.settings.max_validity_days
        if not low <= validity_days <= high:
            raise InvalidInput(f"validityDays must be between {low} and {high}")
        if checkout_at is not None and checkout_at <= now:
            raise InvalidInput("checkoutTimestamp must be in the future")

    def issue(
        self,
        tourist_id: str,
        wallet_address: str,
        personal_data: dict,
        booking_data: Optional[dict],
        emergency_contacts: dict,
        validity_days: int,
        issuer: Actor,
        initial_consent: Optional[ConsentSettings] = None,
        checkout_at: Optional[datetime] = None,
        biometric_data: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> IssueResult:
        """Mint a credential on the ledger and record it locally."""
        now = self.clock()
        self._validate_issue(
            tourist_id, wallet_address, personal_data, emergency_contacts, validity_days, checkout_at, now
        )
        logger.info(f"Issuing Digital Tourist ID for tourist {tourist_id}", extra={"correlation_id": correlation_id})

        if self.credentials.active_for_subject(tourist_id, for_update=True) is not None:
            raise SubjectAlreadyCredentialed(f"Tourist {tourist_id} already has an active Digital ID")
        if self.credentials.issue_pending_for_subject(tourist_id):
            raise SubjectAlreadyCredentialed(
                f"Tourist {tourist_id} has an issued Digital ID awaiting reconciliation"
            )

        expires_at = now + timedelta(days=validity_days)
        personal_data_hash = hash_personal_data(personal_data)
        encrypted = self.encryption_service.encrypt(
            json.dumps(
                {
                    "personalData": personal_data,
                    "bookingData": booking_data,
                    "emergencyContacts": emergency_contacts,
                    "biometricData": biometric_data,
                },
                sort_keys=True,
            ),
            encryption_context={"touristId": tourist_id},
        )

        subject = LedgerSubject(
            tourist_id=tourist_id,
            wallet_address=wallet_address,
            validity_days=validity_days,
            expires_at=_epoch_millis(expires_at),
            checkout_at=_epoch_millis(checkout_at),
            issuer_id=issuer.actor_id,
        )
        receipt = self._ledger_call("mint", InvalidInput, None, self.ledger.mint, subject, encrypted)

        payload = {
            "blockchain_id": receipt.credential_id,
            "tourist_id": tourist_id,
            "tourist_name": personal_data["name"],
            "tourist_wallet": wallet_address,
            "personal_data_hash": personal_data_hash,
            "encryption_key_ref": encrypted["key_id"],
            "issuer_id": issuer.actor_id,
            "issuer_role": issuer.role,
            "validity_days": validity_days,
            "issued_at": isoformat(now),
            "expires_at": isoformat(expires_at),
            "checkout_at": isoformat(checkout_at),
            "transaction_hash": receipt.transaction_hash,
            "correlation_id": correlation_id,
        }

        def lost_race(error: IntegrityError):
            if self.credentials.active_for_subject(tourist_id) is None:
                return
            self._compensate_duplicate_mint(receipt.credential_id)
            raise SubjectAlreadyCredentialed(
                f"Tourist {tourist_id} already has an active Digital ID"
            ) from error

        persisted = self._persist("issue", payload, on_conflict=lost_race)
        credentials_issued.labels(kind="new").inc()

        consent_tx = None
        if initial_consent is not None:
            try:
                consent_tx = self._apply_consent(
                    receipt.credential_id, tourist_id, initial_consent, issuer, correlation_id
                ).transaction_hash
            except CredentialError as e:
                logger.warning(
                    f"Initial consent not applied to {receipt.credential_id}: {e}",
                    extra={"blockchain_id": receipt.credential_id},
                )

        logger.info(
            f"Digital Tourist ID issued: {receipt.credential_id}",
            extra={"blockchain_id": receipt.credential_id, "correlation_id": correlation_id},
        )
        return IssueResult(
            blockchain_id=receipt.credential_id,
            transaction_hash=receipt.transaction_hash,
            issued_at=now,
            expires_at=expires_at,
            access_levels=receipt.access_levels,
            consent_transaction_hash=consent_tx,
            persisted=persisted,
        )

    def _compensate_duplicate_mint(self, blockchain_id: str):
        """Revoke a credential minted by the loser of a concurrent issue."""
        try:
            self.ledger.revoke(blockchain_id, "duplicate issuance")
        except LedgerError as e:
            logger.error(
                f"Could not revoke duplicate ledger credential {blockchain_id}: {e}",
                extra={"blockchain_id": blockchain_id},
            )

    # ------------------------------------------------------------------
    # Access

    def _disclose(
        self,
        blockchain_id: str,
        accessor: Actor,
        reason: str,
        emergency: bool,
        event_type: EventType,
        correlation_id: Optional[str],
    ):
        _require_text(reason, "accessReason")
        credential = self._get(blockchain_id)
        if credential.status != CredentialStatus.ACTIVE.value and not emergency:
            raise AccessDenied(
                f"Digital ID is {credential.status.lower()}", blockchain_id=blockchain_id
            )
        snapshot = CredentialSummary.from_model(credential)

        grant = self._ledger_call(
            "authorize_access",
            AccessDenied,
            blockchain_id,
            self.ledger.authorize_access,
            blockchain_id,
            accessor.role,
            reason,
            emergency=emergency,
            accessor_id=accessor.actor_id,
            accessor_address=accessor.wallet,
        )

        accessed_at = self.clock()
        data_accessed = grant.bundle.categories()
        persisted = self._persist(
            "access",
            {
                "blockchain_id": blockchain_id,
                "accessor_id": accessor.actor_id,
                "accessor_role": accessor.role,
                "accessor_wallet": accessor.wallet,
                "reason": reason,
                "emergency": emergency,
                "transaction_hash": grant.transaction_hash,
                "data_accessed": data_accessed,
                "accessed_at": isoformat(accessed_at),
                "event_type": event_type.value,
                "correlation_id": correlation_id,
            },
        )
        if persisted:
            summary = CredentialSummary.from_model(self.credentials.get(blockchain_id))
        else:
            summary = snapshot.after_access(emergency)

        credential_accesses.labels(path="emergency" if emergency else "routine").inc()
        logger.info(
            f"Digital Tourist ID accessed: {blockchain_id}",
            extra={
                "blockchain_id": blockchain_id,
                "accessor_role": accessor.role,
                "emergency_access": emergency,
                "correlation_id": correlation_id,
            },
        )
        return grant, summary, accessed_at, data_accessed, persisted

    def access(
        self,
        blockchain_id: str,
        accessor: Actor,
        reason: str,
        emergency_access: bool = False,
        correlation_id: Optional[str] = None,
    ) -> AccessResult:
        """Disclose protected data to ``accessor`` if the ledger consents."""
        grant, summary, accessed_at, data_accessed, persisted = self._disclose(
            blockchain_id,
            accessor,
            reason,
            emergency=emergency_access,
            event_type=EventType.DIGITAL_ID_ACCESSED,
            correlation_id=correlation_id,
        )
        return AccessResult(
            digital_id=summary,
            transaction_hash=grant.transaction_hash,
            accessed_at=accessed_at,
            data_accessed=data_accessed,
            personal_data=grant.bundle.personal_data,
            booking_data=grant.bundle.booking_data,
            emergency_contacts=grant.bundle.emergency_contacts,
            emergency_data=grant.bundle.emergency_data,
            access_levels=grant.access_levels,
            emergency_access=emergency_access,
            persisted=persisted,
        )

    def trigger_emergency_access(
        self,
        blockchain_id: str,
        reason: str,
        responder: Actor,
        correlation_id: Optional[str] = None,
    ) -> EmergencyAccessResult:
        """Emergency disclosure; ignores credential state and consent."""
        _require_text(reason, "reason")
        _require_text(responder.wallet, "emergencyResponderAddress")
        grant, summary, _, _, persisted = self._disclose(
            blockchain_id,
            responder,
            f"EMERGENCY: {reason}",
            emergency=True,
            event_type=EventType.EMERGENCY_ACCESS_TRIGGERED,
            correlation_id=correlation_id,
        )
        return EmergencyAccessResult(
            digital_id=summary,
            transaction_hash=grant.transaction_hash,
            emergency_data=grant.bundle.emergency_data,
            personal_data=grant.bundle.personal_data,
            emergency_contacts=grant.bundle.emergency_contacts,
            override_active=True,
            persisted=persisted,
        )

    # ------------------------------------------------------------------
    # Consent

    def _apply_consent(
        self,
        blockchain_id: str,
        tourist_id: Optional[str],
        consent_settings: ConsentSettings,
        updater: Actor,
        correlation_id: Optional[str],
    ) -> ConsentUpdateResult:
        receipt = self._ledger_call(
            "set_consent",
            PermissionDenied,
            blockchain_id,
            self.ledger.set_consent,
            blockchain_id,
            consent_settings,
            updater_id=updater.actor_id,
            updater_role=updater.role,
        )
        persisted = self._persist(
            "consent",
            {
                "blockchain_id": blockchain_id,
                "tourist_id": tourist_id,
                "transaction_hash": receipt.transaction_hash,
                "updated_consent": consent_settings.to_dict(),
                "previous_consent": receipt.previous.to_dict() if receipt.previous else None,
                "updater_id": updater.actor_id,
                "updater_role": updater.role,
                "at": isoformat(self.clock()),
                "correlation_id": correlation_id,
            },
        )
        logger.info(f"Consent updated for Digital Tourist ID {blockchain_id}", extra={"blockchain_id": blockchain_id})
        return ConsentUpdateResult(
            blockchain_id=blockchain_id,
            transaction_hash=receipt.transaction_hash,
            updated_consent=consent_settings,
            previous_consent=receipt.previous,
            persisted=persisted,
        )

    def update_consent(
        self,
        blockchain_id: str,
        consent_settings: ConsentSettings,
        updater: Actor,
        correlation_id: Optional[str] = None,
    ) -> ConsentUpdateResult:
        """Replace consent on the ledger; the ledger decides who may do so."""
        credential = self._get(blockchain_id)
        return self._apply_consent(
            blockchain_id, credential.tourist_id, consent_settings, updater, correlation_id
        )

    # ------------------------------------------------------------------
    # Loss and revocation

    def report_lost(
        self,
        blockchain_id: str,
        reason: str,
        reporter: Actor,
        new_wallet_address: Optional[str] = None,
        kiosk_location: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> LostReportResult:
        """Mark a credential LOST and record its ACTIVE replacement."""
        _require_text(reason, "reason")
        credential = self._get(blockchain_id)
        ensure_transition(blockchain_id, credential.status, CredentialStatus.LOST)
        logger.info(f"Reporting lost Digital Tourist ID {blockchain_id}", extra={"correlation_id": correlation_id})

        receipt = self._ledger_call(
            "report_lost",
            InvalidInput,
            blockchain_id,
            self.ledger.report_lost,
            blockchain_id,
            reason,
            new_wallet_address or credential.tourist_wallet,
            kiosk_location=kiosk_location,
        )
        persisted = self._persist(
            "report_lost",
            {
                "original_id": blockchain_id,
                "replacement_id": receipt.replacement_id,
                "transaction_hash": receipt.transaction_hash,
                "reason": reason,
                "reporter_id": reporter.actor_id,
                "reporter_role": reporter.role,
                "new_wallet": new_wallet_address,
                "kiosk_location": kiosk_location,
                "at": isoformat(self.clock()),
                "correlation_id": correlation_id,
            },
        )
        credentials_issued.labels(kind="replacement").inc()
        logger.info(
            f"Lost Digital Tourist ID {blockchain_id} replaced by {receipt.replacement_id}",
            extra={"blockchain_id": blockchain_id, "correlation_id": correlation_id},
        )
        return LostReportResult(
            original_id=blockchain_id,
            replacement_id=receipt.replacement_id,
            transaction_hash=receipt.transaction_hash,
            persisted=persisted,
        )

    def revoke(
        self,
        blockchain_id: str,
        reason: str,
        revoker: Actor,
        correlation_id: Optional[str] = None,
    ) -> RevokeResult:
        """Administratively revoke an ACTIVE credential."""
        _require_text(reason, "reason")
        credential = self._get(blockchain_id)
        ensure_transition(blockchain_id, credential.status, CredentialStatus.REVOKED)

        receipt = self._ledger_call(
            "revoke", PermissionDenied, blockchain_id, self.ledger.revoke, blockchain_id, reason
        )
        persisted = self._persist(
            "revoke",
            {
                "blockchain_id": blockchain_id,
                "transaction_hash": receipt.transaction_hash,
                "reason": reason,
                "revoker_id": revoker.actor_id,
                "revoker_role": revoker.role,
                "at": isoformat(self.clock()),
                "correlation_id": correlation_id,
            },
        )
        logger.info(f"Digital Tourist ID revoked: {blockchain_id}", extra={"blockchain_id": blockchain_id})
        return RevokeResult(
            blockchain_id=blockchain_id,
            transaction_hash=receipt.transaction_hash,
            persisted=persisted,
        )

    # ------------------------------------------------------------------
    # Expiration

    def auto_expire(self, now: Optional[datetime] = None, executor: Optional[Actor] = None) -> AutoExpireResult:
        """Expire every ACTIVE credential past its expiry or checkout.

        Records are processed in keyset-paged batches, each ledger call and
        local write on its own, so one failure never aborts the sweep.
        """
        now = now or self.clock()
        batch_size = self.settings.auto_expire_batch_size
        logger.info("Running auto-expiration for Digital Tourist IDs")

        processed = 0
        expired = 0
        errors: list[ExpirationError] = []
        pending: list[str] = []
        cursor = 0

        while True:
            batch = [(c.id, c.blockchain_id) for c in self.credentials.due_for_expiry(now, cursor, batch_size)]
            self.db.commit()  # release the read before the ledger calls
            if not batch:
                break

            for pk, blockchain_id in batch:
                cursor = pk
                processed += 1
                try:
                    receipt = self.ledger.expire(blockchain_id)
                except Exception as e:
                    errors.append(ExpirationError(blockchain_id, str(e)))
                    logger.warning(
                        f"Ledger expire failed for {blockchain_id}: {e}",
                        extra={"blockchain_id": blockchain_id},
                    )
                    continue

                persisted = self._persist(
                    "expire",
                    {
                        "blockchain_id": blockchain_id,
                        "transaction_hash": receipt.transaction_hash,
                        "at": isoformat(now),
                    },
                )
                expired += 1
                credentials_expired.inc()
                if not persisted:
                    pending.append(blockchain_id)

        self._persist(
            "event",
            {
                "event_type": EventType.AUTO_EXPIRATION_RUN.value,
                "metadata": {
                    "executor": executor.actor_id if executor else "system",
                    "processedCount": processed,
                    "expiredCount": expired,
                    "errors": [error.to_dict() for error in errors],
                    "pendingReconciliation": pending,
                },
                "timestamp": isoformat(self.clock()),
            },
        )
        logger.info(f"Auto-expiration completed: {expired} expired, {len(errors)} errors")
        return AutoExpireResult(
            processed_count=processed,
            expired_count=expired,
            errors=errors,
            pending_reconciliation=pending,
        )

    # ------------------------------------------------------------------
    # Externally observed ledger events

    def record_ledger_event(
        self,
        event_type: str,
        blockchain_id: Optional[str] = None,
        tourist_id: Optional[str] = None,
        transaction_hash: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Mirror an event observed on the ledger into the event log."""
        _require_text(event_type, "eventType")
        return self._persist(
            "event",
            {
                "event_type": event_type,
                "blockchain_id": blockchain_id,
                "tourist_id": tourist_id,
                "transaction_hash": transaction_hash,
                "metadata": metadata or {},
                "timestamp": isoformat(self.clock()),
            },
        )
