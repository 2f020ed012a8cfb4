"""Ledger facade: the settlement ledger as seen by the lifecycle manager.

The ledger is the source of truth for credential existence, consent and
access authorization. Implementations must distinguish "could not reach
the ledger" (``LedgerConnectionError``) from "the ledger said no"
(``LedgerRejection``); the manager maps them to different caller errors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional


class LedgerError(Exception):
    """Base class for ledger facade failures."""


class LedgerConnectionError(LedgerError):
    """Ledger unreachable, timed out, or failed internally. Safe to retry."""


class LedgerRejection(LedgerError):
    """Ledger refused the operation (missing consent, unknown id, bad state)."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


CONSENT_CATEGORIES = ("POLICE_ACCESS", "HOTEL_ACCESS", "FAMILY_ACCESS", "TOURISM_DEPT_ACCESS")


@dataclass(frozen=True)
class ConsentSettings:
    """Per-category grants controlling routine access."""

    police_access: bool = False
    hotel_access: bool = False
    family_access: bool = False
    tourism_dept_access: bool = False

    def to_dict(self) -> dict:
        return {
            "POLICE_ACCESS": self.police_access,
            "HOTEL_ACCESS": self.hotel_access,
            "FAMILY_ACCESS": self.family_access,
            "TOURISM_DEPT_ACCESS": self.tourism_dept_access,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConsentSettings":
        return cls(
            police_access=bool(data.get("POLICE_ACCESS", False)),
            hotel_access=bool(data.get("HOTEL_ACCESS", False)),
            family_access=bool(data.get("FAMILY_ACCESS", False)),
            tourism_dept_access=bool(data.get("TOURISM_DEPT_ACCESS", False)),
        )

    def grants(self, category: str) -> bool:
        return bool(self.to_dict().get(category, False))


@dataclass(frozen=True)
class LedgerSubject:
    """The tourist a credential is minted for."""

    tourist_id: str
    wallet_address: str
    validity_days: int
    expires_at: int  # epoch millis
    checkout_at: Optional[int] = None  # epoch millis
    issuer_id: Optional[str] = None


@dataclass(frozen=True)
class DisclosedBundle:
    """Decrypted data the ledger released for one access."""

    personal_data: Optional[dict] = None
    booking_data: Optional[dict] = None
    emergency_contacts: Optional[dict] = None
    emergency_data: Optional[dict] = None

    def categories(self) -> list[str]:
        """Names of the data categories actually disclosed."""
        disclosed = []
        for name in ("personal_data", "booking_data", "emergency_contacts", "emergency_data"):
            if getattr(self, name) is not None:
                disclosed.append(name)
        return disclosed


@dataclass(frozen=True)
class MintReceipt:
    credential_id: str
    transaction_hash: str
    access_levels: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AccessGrant:
    bundle: DisclosedBundle
    transaction_hash: str
    access_levels: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ConsentReceipt:
    previous: Optional[ConsentSettings]
    transaction_hash: str


@dataclass(frozen=True)
class LossReceipt:
    replacement_id: str
    transaction_hash: str


@dataclass(frozen=True)
class LedgerReceipt:
    transaction_hash: str


@dataclass(frozen=True)
class LedgerStatus:
    connected: bool
    provider: str
    network: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "provider": self.provider,
            "network": self.network,
            "detail": self.detail,
        }


class LedgerFacade(ABC):
    """Credential operations against the settlement ledger."""

    provider = "abstract"

    @abstractmethod
    def mint(self, subject: LedgerSubject, encrypted_payload: dict) -> MintReceipt:
        """Mint a credential for ``subject`` holding ``encrypted_payload``."""

    @abstractmethod
    def authorize_access(
        self,
        credential_id: str,
        accessor_role: str,
        reason: str,
        emergency: bool = False,
        accessor_id: Optional[str] = None,
        accessor_address: Optional[str] = None,
    ) -> AccessGrant:
        """Check consent for ``accessor_role`` and return the decrypted bundle."""

    @abstractmethod
    def set_consent(
        self,
        credential_id: str,
        settings: ConsentSettings,
        updater_id: Optional[str] = None,
        updater_role: Optional[str] = None,
    ) -> ConsentReceipt:
        """Replace the consent settings; returns the previous ones."""

    @abstractmethod
    def report_lost(
        self,
        credential_id: str,
        reason: str,
        new_address: str,
        kiosk_location: Optional[str] = None,
    ) -> LossReceipt:
        """Mark a credential lost and mint its replacement."""

    @abstractmethod
    def expire(self, credential_id: str) -> LedgerReceipt:
        """Mark a credential expired."""

    @abstractmethod
    def revoke(self, credential_id: str, reason: str) -> LedgerReceipt:
        """Revoke a credential administratively."""

    @abstractmethod
    def status(self) -> LedgerStatus:
        """Connectivity report, used by readiness checks."""

    def close(self) -> None:
        """Release any connections the facade holds."""
