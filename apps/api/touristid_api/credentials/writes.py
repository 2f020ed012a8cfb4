"""Local writes that follow a successful ledger call.

Each write is described by an operation name and a JSON-serializable
payload, so the same code path serves the request that produced it and
the reconciliation worker replaying it later. Every write is idempotent:
replaying an already-applied payload changes nothing.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from touristid_api.credentials.errors import LocalPersistenceFailure
from touristid_api.credentials.repository import (
    AccessLogRepository,
    CredentialRepository,
    LifecycleEventRepository,
)
from touristid_api.credentials.state import CredentialStatus, EventType
from touristid_api.models import DigitalTouristId

logger = logging.getLogger(__name__)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class LocalWriter:
    """Applies ledger-confirmed facts to the local store."""

    def __init__(self, db: Session):
        self.db = db
        self.credentials = CredentialRepository(db)
        self.access_logs = AccessLogRepository(db)
        self.events = LifecycleEventRepository(db)

    def apply(self, operation: str, payload: dict):
        """Dispatch ``operation``; the caller owns commit/rollback."""
        handler = getattr(self, f"_apply_{operation}", None)
        if handler is None:
            raise ValueError(f"Unknown local write operation: {operation}")
        return handler(payload)

    def _require(self, blockchain_id: str, operation: str) -> DigitalTouristId:
        credential = self.credentials.get_for_update(blockchain_id)
        if credential is None:
            # Usually the issue write for this credential is itself still pending
            raise LocalPersistenceFailure(operation, f"credential {blockchain_id} not present locally")
        return credential

    def _apply_issue(self, payload: dict) -> DigitalTouristId:
        existing = self.credentials.get(payload["blockchain_id"])
        if existing is not None:
            return existing

        credential = self.credentials.add(
            DigitalTouristId(
                blockchain_id=payload["blockchain_id"],
                tourist_id=payload["tourist_id"],
                tourist_name=payload["tourist_name"],
                tourist_wallet=payload["tourist_wallet"],
                personal_data_hash=payload["personal_data_hash"],
                encryption_key_ref=payload["encryption_key_ref"],
                status=CredentialStatus.ACTIVE.value,
                issuer_id=payload["issuer_id"],
                issuer_role=payload["issuer_role"],
                validity_days=payload["validity_days"],
                issued_at=parse_datetime(payload["issued_at"]),
                expires_at=parse_datetime(payload["expires_at"]),
                checkout_at=parse_datetime(payload.get("checkout_at")),
                emergency_override=False,
                access_count=0,
                transaction_hash=payload["transaction_hash"],
                replaces_id=payload.get("replaces_id"),
                metadata_json=payload.get("metadata"),
            )
        )
        self.events.append(
            EventType.DIGITAL_ID_ISSUED.value,
            blockchain_id=credential.blockchain_id,
            tourist_id=credential.tourist_id,
            transaction_hash=credential.transaction_hash,
            metadata={
                "issuerId": credential.issuer_id,
                "issuerRole": credential.issuer_role,
                "validityDays": credential.validity_days,
                "correlationId": payload.get("correlation_id"),
            },
            timestamp=credential.issued_at,
        )
        return credential

    def _apply_access(self, payload: dict) -> Optional[DigitalTouristId]:
        if self.access_logs.exists(payload["transaction_hash"]):
            return None

        credential = self._require(payload["blockchain_id"], "access")
        accessed_at = parse_datetime(payload["accessed_at"])
        emergency = bool(payload["emergency"])

        self.access_logs.append(
            credential,
            accessor_id=payload["accessor_id"],
            accessor_role=payload["accessor_role"],
            accessor_wallet=payload.get("accessor_wallet"),
            access_reason=payload["reason"],
            emergency_access=emergency,
            transaction_hash=payload["transaction_hash"],
            data_accessed=payload["data_accessed"],
            accessed_at=accessed_at,
            access_metadata={"correlationId": payload.get("correlation_id")},
        )
        self.credentials.record_access(credential.id, accessed_at, emergency)
        self.events.append(
            payload.get("event_type", EventType.DIGITAL_ID_ACCESSED.value),
            blockchain_id=credential.blockchain_id,
            tourist_id=credential.tourist_id,
            transaction_hash=payload["transaction_hash"],
            metadata={
                "accessorId": payload["accessor_id"],
                "accessorRole": payload["accessor_role"],
                "accessReason": payload["reason"],
                "emergencyAccess": emergency,
                "dataAccessed": payload["data_accessed"],
                "correlationId": payload.get("correlation_id"),
            },
            timestamp=accessed_at,
        )
        return credential

    def _apply_consent(self, payload: dict) -> None:
        if self.events.exists(EventType.CONSENT_UPDATED.value, payload["transaction_hash"]):
            return
        self._require(payload["blockchain_id"], "consent")
        self.credentials.mark_consent_configured(payload["blockchain_id"])
        self.events.append(
            EventType.CONSENT_UPDATED.value,
            blockchain_id=payload["blockchain_id"],
            tourist_id=payload.get("tourist_id"),
            transaction_hash=payload["transaction_hash"],
            metadata={
                "updaterId": payload.get("updater_id"),
                "updaterRole": payload.get("updater_role"),
                "updatedConsent": payload.get("updated_consent"),
                "previousConsent": payload.get("previous_consent"),
                "correlationId": payload.get("correlation_id"),
            },
            timestamp=parse_datetime(payload.get("at")),
        )

    def _apply_report_lost(self, payload: dict) -> DigitalTouristId:
        existing = self.credentials.get(payload["replacement_id"])
        if existing is not None:
            return existing

        original = self._require(payload["original_id"], "report_lost")
        at = parse_datetime(payload["at"])
        self._transition(original.blockchain_id, CredentialStatus.LOST, at)

        replacement = self.credentials.add(
            DigitalTouristId(
                blockchain_id=payload["replacement_id"],
                tourist_id=original.tourist_id,
                tourist_name=original.tourist_name,
                tourist_wallet=payload.get("new_wallet") or original.tourist_wallet,
                personal_data_hash=original.personal_data_hash,
                encryption_key_ref=original.encryption_key_ref,
                status=CredentialStatus.ACTIVE.value,
                issuer_id=payload["reporter_id"],
                issuer_role=payload["reporter_role"],
                validity_days=original.validity_days,
                issued_at=at,
                expires_at=original.expires_at,
                checkout_at=original.checkout_at,
                emergency_override=False,
                access_count=0,
                consent_configured=original.consent_configured,
                transaction_hash=payload["transaction_hash"],
                replaces_id=original.blockchain_id,
            )
        )
        self.events.append(
            EventType.DIGITAL_ID_LOST_REPORTED.value,
            blockchain_id=original.blockchain_id,
            tourist_id=original.tourist_id,
            transaction_hash=payload["transaction_hash"],
            metadata={
                "replacementId": replacement.blockchain_id,
                "reason": payload["reason"],
                "reporterId": payload["reporter_id"],
                "reporterRole": payload["reporter_role"],
                "kioskLocation": payload.get("kiosk_location"),
                "correlationId": payload.get("correlation_id"),
            },
            timestamp=at,
        )
        return replacement

    def _apply_expire(self, payload: dict) -> bool:
        self._require(payload["blockchain_id"], "expire")
        return self._transition(
            payload["blockchain_id"], CredentialStatus.EXPIRED, parse_datetime(payload["at"])
        )

    def _apply_revoke(self, payload: dict) -> bool:
        credential = self._require(payload["blockchain_id"], "revoke")
        changed = self._transition(
            payload["blockchain_id"], CredentialStatus.REVOKED, parse_datetime(payload["at"])
        )
        if changed:
            self.events.append(
                EventType.DIGITAL_ID_REVOKED.value,
                blockchain_id=credential.blockchain_id,
                tourist_id=credential.tourist_id,
                transaction_hash=payload["transaction_hash"],
                metadata={
                    "reason": payload["reason"],
                    "revokerId": payload["revoker_id"],
                    "revokerRole": payload["revoker_role"],
                    "correlationId": payload.get("correlation_id"),
                },
                timestamp=parse_datetime(payload["at"]),
            )
        return changed

    def _apply_event(self, payload: dict) -> None:
        transaction_hash = payload.get("transaction_hash")
        if transaction_hash and self.events.exists(payload["event_type"], transaction_hash):
            return
        self.events.append(
            payload["event_type"],
            blockchain_id=payload.get("blockchain_id"),
            tourist_id=payload.get("tourist_id"),
            transaction_hash=transaction_hash,
            metadata=payload.get("metadata"),
            timestamp=parse_datetime(payload.get("timestamp")),
        )

    def _transition(self, blockchain_id: str, target: CredentialStatus, at: datetime) -> bool:
        changed = self.credentials.transition(blockchain_id, target, at)
        if not changed:
            current = self.credentials.get(blockchain_id)
            if current is not None and current.status != target.value:
                logger.warning(
                    f"Ledger moved {blockchain_id} to {target.value} but local state is {current.status}",
                    extra={"blockchain_id": blockchain_id},
                )
        return changed
