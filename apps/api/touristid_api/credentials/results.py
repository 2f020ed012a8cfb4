"""Typed inputs and results of lifecycle operations."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from touristid_api.ledger.facade import ConsentSettings


@dataclass(frozen=True)
class Actor:
    """The authenticated caller of an operation."""

    actor_id: str
    role: str
    wallet: Optional[str] = None


@dataclass(frozen=True)
class CredentialSummary:
    blockchain_id: str
    tourist_id: str
    tourist_name: str
    status: str
    issued_at: datetime
    expires_at: datetime
    access_count: int
    emergency_override: bool

    @classmethod
    def from_model(cls, credential) -> "CredentialSummary":
        return cls(
            blockchain_id=credential.blockchain_id,
            tourist_id=credential.tourist_id,
            tourist_name=credential.tourist_name,
            status=credential.status,
            issued_at=credential.issued_at,
            expires_at=credential.expires_at,
            access_count=credential.access_count,
            emergency_override=credential.emergency_override,
        )

    def after_access(self, emergency: bool) -> "CredentialSummary":
        """The summary as it will read once a queued access write lands."""
        return replace(
            self,
            access_count=self.access_count + 1,
            emergency_override=self.emergency_override or emergency,
        )


@dataclass(frozen=True)
class IssueResult:
    blockchain_id: str
    transaction_hash: str
    issued_at: datetime
    expires_at: datetime
    access_levels: dict = field(default_factory=dict)
    consent_transaction_hash: Optional[str] = None
    persisted: bool = True


@dataclass(frozen=True)
class AccessResult:
    digital_id: CredentialSummary
    transaction_hash: str
    accessed_at: datetime
    data_accessed: list
    personal_data: Optional[dict] = None
    booking_data: Optional[dict] = None
    emergency_contacts: Optional[dict] = None
    emergency_data: Optional[dict] = None
    access_levels: dict = field(default_factory=dict)
    emergency_access: bool = False
    persisted: bool = True

    @property
    def access_count(self) -> int:
        return self.digital_id.access_count


@dataclass(frozen=True)
class ConsentUpdateResult:
    blockchain_id: str
    transaction_hash: str
    updated_consent: ConsentSettings
    previous_consent: Optional[ConsentSettings] = None
    persisted: bool = True


@dataclass(frozen=True)
class LostReportResult:
    original_id: str
    replacement_id: str
    transaction_hash: str
    persisted: bool = True


@dataclass(frozen=True)
class EmergencyAccessResult:
    digital_id: CredentialSummary
    transaction_hash: str
    emergency_data: Optional[dict] = None
    personal_data: Optional[dict] = None
    emergency_contacts: Optional[dict] = None
    override_active: bool = True
    persisted: bool = True


@dataclass(frozen=True)
class RevokeResult:
    blockchain_id: str
    transaction_hash: str
    persisted: bool = True


@dataclass(frozen=True)
class ExpirationError:
    blockchain_id: str
    error: str

    def to_dict(self) -> dict:
        return {"id": self.blockchain_id, "error": self.error}


@dataclass(frozen=True)
class AutoExpireResult:
    processed_count: int
    expired_count: int
    errors: list = field(default_factory=list)
    pending_reconciliation: list = field(default_factory=list)
