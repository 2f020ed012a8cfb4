"""Digital Tourist ID endpoints."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from touristid_api.credentials.analytics import CredentialAnalytics
from touristid_api.credentials.errors import PermissionDenied
from touristid_api.credentials.manager import CredentialLifecycleManager
from touristid_api.credentials.results import Actor, CredentialSummary
from touristid_api.db.session import SessionLocal, get_db
from touristid_api.ledger import get_ledger_facade
from touristid_api.ledger.facade import ConsentSettings
from touristid_api.reconciliation.outbox import LocalWriteOutbox
from touristid_api.security.encryption import get_encryption_service
from touristid_api.settings import get_settings

router = APIRouter(prefix="/v1/digital-ids", tags=["digital-ids"])

SYSTEM_ROLES = {"admin", "system"}


def get_lifecycle_manager(db: Session = Depends(get_db)) -> CredentialLifecycleManager:
    return CredentialLifecycleManager(
        db,
        get_ledger_facade(),
        get_encryption_service(),
        LocalWriteOutbox(SessionLocal),
        settings=get_settings(),
    )


def get_analytics(db: Session = Depends(get_db)) -> CredentialAnalytics:
    return CredentialAnalytics(db, get_ledger_facade(), settings=get_settings())


def get_actor(request: Request) -> Actor:
    """Caller identity set by ActorMiddleware."""
    return request.state.actor


def require_system_actor(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role not in SYSTEM_ROLES:
        raise PermissionDenied(f"Role {actor.role} may not run system operations")
    return actor


def _correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC, as stored."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConsentModel(BaseModel):
    """Consent categories, keyed the way the ledger names them."""

    model_config = ConfigDict(populate_by_name=True)

    police_access: bool = Field(False, alias="POLICE_ACCESS")
    hotel_access: bool = Field(False, alias="HOTEL_ACCESS")
    family_access: bool = Field(False, alias="FAMILY_ACCESS")
    tourism_dept_access: bool = Field(False, alias="TOURISM_DEPT_ACCESS")

    def to_settings(self) -> ConsentSettings:
        return ConsentSettings(
            police_access=self.police_access,
            hotel_access=self.hotel_access,
            family_access=self.family_access,
            tourism_dept_access=self.tourism_dept_access,
        )

    @classmethod
    def from_settings(cls, consent: Optional[ConsentSettings]) -> Optional["ConsentModel"]:
        if consent is None:
            return None
        return cls.model_validate(consent.to_dict())


# Requests


class IssueRequest(CamelModel):
    tourist_id: str
    tourist_wallet: str
    personal_data: dict
    booking_data: Optional[dict] = None
    emergency_contacts: dict
    validity_days: int
    initial_consent: Optional[ConsentModel] = None
    checkout_timestamp: Optional[datetime] = None
    biometric_data: Optional[str] = None


class AccessRequest(CamelModel):
    blockchain_id: str
    access_reason: str
    emergency_access: bool = False


class ConsentUpdateRequest(CamelModel):
    consent_settings: ConsentModel


class ReportLostRequest(CamelModel):
    blockchain_id: str
    reason: str
    new_wallet_address: Optional[str] = None
    kiosk_location: Optional[str] = None


class EmergencyAccessRequest(CamelModel):
    blockchain_id: str
    reason: str
    emergency_responder_address: Optional[str] = None


class RevokeRequest(CamelModel):
    reason: str


class LedgerEventRequest(CamelModel):
    event_type: str
    blockchain_id: Optional[str] = None
    tourist_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


# Responses


class DigitalIdSummary(CamelModel):
    blockchain_id: str
    tourist_id: str
    tourist_name: str
    status: str
    issued_at: datetime
    expires_at: datetime
    access_count: int
    emergency_override: bool

    @classmethod
    def from_summary(cls, summary: CredentialSummary) -> "DigitalIdSummary":
        return cls(
            blockchain_id=summary.blockchain_id,
            tourist_id=summary.tourist_id,
            tourist_name=summary.tourist_name,
            status=summary.status,
            issued_at=summary.issued_at,
            expires_at=summary.expires_at,
            access_count=summary.access_count,
            emergency_override=summary.emergency_override,
        )


class IssueResponse(CamelModel):
    blockchain_id: str
    transaction_hash: str
    issued_at: datetime
    expires_at: datetime
    access_levels: dict = Field(default_factory=dict)
    consent_transaction_hash: Optional[str] = None
    pending_reconciliation: bool = False


class AccessResponse(CamelModel):
    digital_id: DigitalIdSummary
    personal_data: Optional[dict] = None
    booking_data: Optional[dict] = None
    emergency_contacts: Optional[dict] = None
    emergency_data: Optional[dict] = None
    data_accessed: list[str] = Field(default_factory=list)
    access_levels: dict = Field(default_factory=dict)
    access_count: int
    emergency_access: bool
    accessed_at: datetime
    transaction_hash: str
    pending_reconciliation: bool = False


class ConsentUpdateResponse(CamelModel):
    blockchain_id: str
    transaction_hash: str
    updated_consent: ConsentModel
    previous_consent: Optional[ConsentModel] = None
    pending_reconciliation: bool = False


class ReportLostResponse(CamelModel):
    original_id: str
    replacement_id: str
    transaction_hash: str
    pending_reconciliation: bool = False


class EmergencyAccessResponse(CamelModel):
    digital_id: DigitalIdSummary
    emergency_data: Optional[dict] = None
    personal_data: Optional[dict] = None
    emergency_contacts: Optional[dict] = None
    transaction_hash: str
    override_active: bool = True
    pending_reconciliation: bool = False


class RevokeResponse(CamelModel):
    blockchain_id: str
    transaction_hash: str
    pending_reconciliation: bool = False


class ExpirationErrorModel(BaseModel):
    id: str
    error: str


class AutoExpireResponse(CamelModel):
    processed_count: int
    expired_count: int
    errors: list[ExpirationErrorModel] = Field(default_factory=list)
    pending_reconciliation: list[str] = Field(default_factory=list)


class LedgerEventResponse(CamelModel):
    recorded: bool


# Lifecycle operations


@router.post("/issue", response_model=IssueResponse, status_code=status.HTTP_201_CREATED)
def issue_digital_id(
    request_data: IssueRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Issue a Digital Tourist ID anchored on the ledger."""
    result = manager.issue(
        tourist_id=request_data.tourist_id,
        wallet_address=request_data.tourist_wallet,
        personal_data=request_data.personal_data,
        booking_data=request_data.booking_data,
        emergency_contacts=request_data.emergency_contacts,
        validity_days=request_data.validity_days,
        issuer=actor,
        initial_consent=request_data.initial_consent.to_settings() if request_data.initial_consent else None,
        checkout_at=_as_utc(request_data.checkout_timestamp),
        biometric_data=request_data.biometric_data,
        correlation_id=_correlation_id(request),
    )
    return IssueResponse(
        blockchain_id=result.blockchain_id,
        transaction_hash=result.transaction_hash,
        issued_at=result.issued_at,
        expires_at=result.expires_at,
        access_levels=result.access_levels,
        consent_transaction_hash=result.consent_transaction_hash,
        pending_reconciliation=not result.persisted,
    )


@router.post("/access", response_model=AccessResponse)
def access_digital_id(
    request_data: AccessRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Access a Digital Tourist ID's data, subject to ledger consent."""
    result = manager.access(
        request_data.blockchain_id,
        actor,
        request_data.access_reason,
        emergency_access=request_data.emergency_access,
        correlation_id=_correlation_id(request),
    )
    return AccessResponse(
        digital_id=DigitalIdSummary.from_summary(result.digital_id),
        personal_data=result.personal_data,
        booking_data=result.booking_data,
        emergency_contacts=result.emergency_contacts,
        emergency_data=result.emergency_data,
        data_accessed=result.data_accessed,
        access_levels=result.access_levels,
        access_count=result.access_count,
        emergency_access=result.emergency_access,
        accessed_at=result.accessed_at,
        transaction_hash=result.transaction_hash,
        pending_reconciliation=not result.persisted,
    )


@router.put("/{blockchain_id}/consent", response_model=ConsentUpdateResponse)
def update_consent(
    blockchain_id: str,
    request_data: ConsentUpdateRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Replace the consent settings recorded on the ledger."""
    result = manager.update_consent(
        blockchain_id,
        request_data.consent_settings.to_settings(),
        actor,
        correlation_id=_correlation_id(request),
    )
    return ConsentUpdateResponse(
        blockchain_id=result.blockchain_id,
        transaction_hash=result.transaction_hash,
        updated_consent=ConsentModel.from_settings(result.updated_consent),
        previous_consent=ConsentModel.from_settings(result.previous_consent),
        pending_reconciliation=not result.persisted,
    )


@router.post("/report-lost", response_model=ReportLostResponse)
def report_lost(
    request_data: ReportLostRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Report a Digital Tourist ID lost and issue its replacement."""
    result = manager.report_lost(
        request_data.blockchain_id,
        request_data.reason,
        actor,
        new_wallet_address=request_data.new_wallet_address,
        kiosk_location=request_data.kiosk_location,
        correlation_id=_correlation_id(request),
    )
    return ReportLostResponse(
        original_id=result.original_id,
        replacement_id=result.replacement_id,
        transaction_hash=result.transaction_hash,
        pending_reconciliation=not result.persisted,
    )


@router.post("/emergency-access", response_model=EmergencyAccessResponse)
def emergency_access(
    request_data: EmergencyAccessRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Emergency disclosure, regardless of credential state or consent."""
    responder = Actor(
        actor_id=actor.actor_id,
        role=actor.role,
        wallet=request_data.emergency_responder_address or actor.wallet,
    )
    result = manager.trigger_emergency_access(
        request_data.blockchain_id,
        request_data.reason,
        responder,
        correlation_id=_correlation_id(request),
    )
    return EmergencyAccessResponse(
        digital_id=DigitalIdSummary.from_summary(result.digital_id),
        emergency_data=result.emergency_data,
        personal_data=result.personal_data,
        emergency_contacts=result.emergency_contacts,
        transaction_hash=result.transaction_hash,
        override_active=result.override_active,
        pending_reconciliation=not result.persisted,
    )


@router.post("/{blockchain_id}/revoke", response_model=RevokeResponse)
def revoke_digital_id(
    blockchain_id: str,
    request_data: RevokeRequest,
    request: Request,
    actor: Actor = Depends(get_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Revoke a Digital Tourist ID."""
    result = manager.revoke(blockchain_id, request_data.reason, actor, correlation_id=_correlation_id(request))
    return RevokeResponse(
        blockchain_id=result.blockchain_id,
        transaction_hash=result.transaction_hash,
        pending_reconciliation=not result.persisted,
    )


@router.post("/auto-expire", response_model=AutoExpireResponse)
def auto_expire(
    actor: Actor = Depends(require_system_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Expire every credential past its expiry or checkout."""
    result = manager.auto_expire(executor=actor)
    return AutoExpireResponse(
        processed_count=result.processed_count,
        expired_count=result.expired_count,
        errors=[ExpirationErrorModel(**error.to_dict()) for error in result.errors],
        pending_reconciliation=result.pending_reconciliation,
    )


@router.post("/events", response_model=LedgerEventResponse, status_code=status.HTTP_202_ACCEPTED)
def record_ledger_event(
    request_data: LedgerEventRequest,
    actor: Actor = Depends(require_system_actor),
    manager: CredentialLifecycleManager = Depends(get_lifecycle_manager),
):
    """Mirror an event observed on the ledger."""
    recorded = manager.record_ledger_event(
        request_data.event_type,
        blockchain_id=request_data.blockchain_id,
        tourist_id=request_data.tourist_id,
        transaction_hash=request_data.transaction_hash,
        metadata=request_data.metadata,
    )
    return LedgerEventResponse(recorded=recorded)


# Read paths
# Fixed paths are registered before /{blockchain_id}.


@router.get("/analytics/summary")
def analytics_summary(analytics: CredentialAnalytics = Depends(get_analytics)):
    """Counts by state, access statistics and recent activity."""
    return analytics.summary()


@router.get("/ledger/status")
def ledger_status(analytics: CredentialAnalytics = Depends(get_analytics)):
    return analytics.ledger_status()


@router.get("/{blockchain_id}")
def get_digital_id(blockchain_id: str, analytics: CredentialAnalytics = Depends(get_analytics)):
    """Credential details with its recent accesses and events."""
    return analytics.details(blockchain_id)


@router.get("/{blockchain_id}/access-logs")
def get_access_logs(
    blockchain_id: str,
    limit: int = Query(50),
    offset: int = Query(0),
    analytics: CredentialAnalytics = Depends(get_analytics),
):
    return analytics.access_logs_page(blockchain_id, limit=limit, offset=offset)


@router.get("/{blockchain_id}/access-logs/verify")
def verify_access_logs(blockchain_id: str, analytics: CredentialAnalytics = Depends(get_analytics)):
    """Check the access log hash chain for tampering."""
    return analytics.verify_access_chain(blockchain_id)
