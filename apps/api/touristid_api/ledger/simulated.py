"""In-process ledger used in development and tests."""

import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from touristid_api.ledger.facade import (
    AccessGrant,
    ConsentReceipt,
    ConsentSettings,
    DisclosedBundle,
    LedgerConnectionError,
    LedgerFacade,
    LedgerReceipt,
    LedgerRejection,
    LedgerStatus,
    LedgerSubject,
    LossReceipt,
    MintReceipt,
)
from touristid_api.utils.metrics import ledger_calls

logger = logging.getLogger(__name__)

# Accessor role -> consent category that must be granted for routine access
ROLE_CATEGORIES = {
    "police": "POLICE_ACCESS",
    "hotel_staff": "HOTEL_ACCESS",
    "family_member": "FAMILY_ACCESS",
    "tourism_officer": "TOURISM_DEPT_ACCESS",
}

# Data released to each role once its category is granted
ROLE_DISCLOSURE = {
    "police": ("personal_data", "booking_data", "emergency_contacts"),
    "hotel_staff": ("personal_data", "booking_data"),
    "family_member": ("personal_data", "emergency_contacts"),
    "tourism_officer": ("personal_data", "booking_data"),
}

FULL_DISCLOSURE = ("personal_data", "booking_data", "emergency_contacts")
UNRESTRICTED_ROLES = frozenset({"admin"})
CONSENT_ROLES = frozenset({"admin", "family_member"})


@dataclass
class _LedgerRecord:
    tourist_id: str
    wallet_address: str
    payload: dict
    issuer_id: Optional[str]
    status: str = "ACTIVE"
    consent: ConsentSettings = field(default_factory=ConsentSettings)


def _tx_hash() -> str:
    return f"0x{secrets.token_hex(32)}"


def _credential_id() -> str:
    return f"DID_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class SimulatedLedgerFacade(LedgerFacade):
    """Keeps credentials, consent and status in memory.

    Enforces the same consent rules the ledger contract does, so the
    lifecycle manager behaves identically against either backend.
    """

    provider = "simulated"

    def __init__(self, encryption_service):
        self.encryption_service = encryption_service
        self.available = True
        self._records: dict[str, _LedgerRecord] = {}
        self._lock = threading.Lock()

    def set_available(self, available: bool):
        """Simulate a ledger outage."""
        self.available = available

    def _check_available(self, operation: str):
        if not self.available:
            ledger_calls.labels(operation=operation, outcome="unavailable").inc()
            raise LedgerConnectionError(f"Simulated ledger unavailable for {operation}")

    def _get(self, operation: str, credential_id: str) -> _LedgerRecord:
        record = self._records.get(credential_id)
        if record is None:
            ledger_calls.labels(operation=operation, outcome="rejected").inc()
            raise LedgerRejection(f"Unknown credential {credential_id}", reason="unknown_credential")
        return record

    def _reject(self, operation: str, message: str, reason: str):
        ledger_calls.labels(operation=operation, outcome="rejected").inc()
        raise LedgerRejection(message, reason=reason)

    def _ok(self, operation: str):
        ledger_calls.labels(operation=operation, outcome="ok").inc()

    def mint(self, subject: LedgerSubject, encrypted_payload: dict) -> MintReceipt:
        self._check_available("mint")
        payload = json.loads(self.encryption_service.decrypt(encrypted_payload))
        credential_id = _credential_id()
        with self._lock:
            self._records[credential_id] = _LedgerRecord(
                tourist_id=subject.tourist_id,
                wallet_address=subject.wallet_address,
                payload=payload,
                issuer_id=subject.issuer_id,
            )
        self._ok("mint")
        return MintReceipt(
            credential_id=credential_id,
            transaction_hash=_tx_hash(),
            access_levels=dict(ROLE_CATEGORIES),
        )

    def _allowed_categories(self, record: _LedgerRecord, role: str, accessor_id: Optional[str]):
        if role in UNRESTRICTED_ROLES:
            return FULL_DISCLOSURE
        if role == "tourist" and accessor_id == record.tourist_id:
            return FULL_DISCLOSURE
        category = ROLE_CATEGORIES.get(role)
        if category and record.consent.grants(category):
            return ROLE_DISCLOSURE[role]
        return None

    def _bundle(self, record: _LedgerRecord, categories) -> DisclosedBundle:
        source = {
            "personal_data": record.payload.get("personalData"),
            "booking_data": record.payload.get("bookingData"),
            "emergency_contacts": record.payload.get("emergencyContacts"),
        }
        return DisclosedBundle(**{name: source[name] for name in categories})

    def _emergency_bundle(self, record: _LedgerRecord) -> DisclosedBundle:
        personal = record.payload.get("personalData") or {}
        contacts = record.payload.get("emergencyContacts") or {}
        return DisclosedBundle(
            personal_data=personal,
            emergency_contacts=contacts,
            emergency_data={
                "name": personal.get("name"),
                "nationality": personal.get("nationality"),
                "phoneNumber": personal.get("phoneNumber"),
                "primaryContact": contacts.get("primary"),
                "secondaryContact": contacts.get("secondary"),
                "medicalInfo": record.payload.get("medicalInfo"),
            },
        )

    def authorize_access(
        self,
        credential_id: str,
        accessor_role: str,
        reason: str,
        emergency: bool = False,
        accessor_id: Optional[str] = None,
        accessor_address: Optional[str] = None,
    ) -> AccessGrant:
        self._check_available("authorize_access")
        record = self._get("authorize_access", credential_id)

        if emergency:
            # Emergency disclosure ignores consent and status
            self._ok("authorize_access")
            return AccessGrant(
                bundle=self._emergency_bundle(record),
                transaction_hash=_tx_hash(),
                access_levels={"emergency": True},
            )

        if record.status != "ACTIVE":
            self._reject(
                "authorize_access",
                f"Credential {credential_id} is {record.status.lower()}",
                "inactive_credential",
            )
        categories = self._allowed_categories(record, accessor_role, accessor_id)
        if categories is None:
            self._reject(
                "authorize_access",
                f"access denied: role {accessor_role} has no granted consent",
                "consent_missing",
            )

        self._ok("authorize_access")
        return AccessGrant(
            bundle=self._bundle(record, categories),
            transaction_hash=_tx_hash(),
            access_levels=record.consent.to_dict(),
        )

    def set_consent(
        self,
        credential_id: str,
        settings: ConsentSettings,
        updater_id: Optional[str] = None,
        updater_role: Optional[str] = None,
    ) -> ConsentReceipt:
        self._check_available("set_consent")
        with self._lock:
            record = self._get("set_consent", credential_id)
            allowed = (
                updater_role in CONSENT_ROLES
                or (updater_role == "tourist" and updater_id == record.tourist_id)
                or (updater_id is not None and updater_id == record.issuer_id)
            )
            if not allowed:
                self._reject(
                    "set_consent",
                    f"permission denied: {updater_role} may not change consent",
                    "not_authorized",
                )
            previous = record.consent
            record.consent = settings
        self._ok("set_consent")
        return ConsentReceipt(previous=previous, transaction_hash=_tx_hash())

    def report_lost(
        self,
        credential_id: str,
        reason: str,
        new_address: str,
        kiosk_location: Optional[str] = None,
    ) -> LossReceipt:
        self._check_available("report_lost")
        with self._lock:
            record = self._get("report_lost", credential_id)
            if record.status != "ACTIVE":
                self._reject(
                    "report_lost",
                    f"Credential {credential_id} is {record.status.lower()}",
                    "inactive_credential",
                )
            record.status = "LOST"
            replacement_id = _credential_id()
            self._records[replacement_id] = _LedgerRecord(
                tourist_id=record.tourist_id,
                wallet_address=new_address,
                payload=record.payload,
                issuer_id=record.issuer_id,
                consent=record.consent,
            )
        self._ok("report_lost")
        return LossReceipt(replacement_id=replacement_id, transaction_hash=_tx_hash())

    def expire(self, credential_id: str) -> LedgerReceipt:
        self._check_available("expire")
        with self._lock:
            record = self._get("expire", credential_id)
            if record.status not in ("ACTIVE", "EXPIRED"):
                self._reject(
                    "expire",
                    f"Credential {credential_id} is {record.status.lower()}",
                    "inactive_credential",
                )
            record.status = "EXPIRED"
        self._ok("expire")
        return LedgerReceipt(transaction_hash=_tx_hash())

    def revoke(self, credential_id: str, reason: str) -> LedgerReceipt:
        self._check_available("revoke")
        with self._lock:
            record = self._get("revoke", credential_id)
            if record.status not in ("ACTIVE", "REVOKED"):
                self._reject(
                    "revoke",
                    f"Credential {credential_id} is {record.status.lower()}",
                    "inactive_credential",
                )
            record.status = "REVOKED"
        self._ok("revoke")
        return LedgerReceipt(transaction_hash=_tx_hash())

    def status(self) -> LedgerStatus:
        return LedgerStatus(
            connected=self.available,
            provider=self.provider,
            network="simulated",
            detail=f"{len(self._records)} credentials",
        )
