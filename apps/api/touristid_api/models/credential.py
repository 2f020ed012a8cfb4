"""Digital Tourist ID credential model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, text
from sqlalchemy.orm import relationship

from touristid_api.credentials.state import CredentialStatus
from touristid_api.db.base import Base


class DigitalTouristId(Base):
    """One ledger-confirmed credential and its lifecycle state.

    Plaintext personal data is never stored: only its hash and the key
    reference used by the encryption capability.
    """

    __tablename__ = "digital_tourist_ids"

    id = Column(Integer, primary_key=True, index=True)
    blockchain_id = Column(String(255), nullable=False, unique=True, index=True)
    tourist_id = Column(String(255), nullable=False, index=True)
    tourist_name = Column(String(255), nullable=False)
    tourist_wallet = Column(String(255), nullable=False, index=True)
    personal_data_hash = Column(String(64), nullable=False)
    encryption_key_ref = Column(String(255), nullable=False)
    status = Column(String(20), default=CredentialStatus.ACTIVE.value, nullable=False, index=True)
    issuer_id = Column(String(255), nullable=False)
    issuer_role = Column(String(100), nullable=False)
    validity_days = Column(Integer, nullable=False)
    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    checkout_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)
    emergency_override = Column(Boolean, default=False, nullable=False)  # sticky
    access_count = Column(Integer, default=0, nullable=False)
    consent_configured = Column(Boolean, default=False, nullable=False)
    transaction_hash = Column(String(255), nullable=True)
    replaces_id = Column(String(255), nullable=True, index=True)  # lost credential this one replaces
    metadata_json = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    access_logs = relationship(
        "AccessLogEntry",
        back_populates="credential",
        order_by="AccessLogEntry.id",
    )

    __table_args__ = (
        # At most one ACTIVE credential per subject
        Index(
            "uq_digital_tourist_ids_active_subject",
            "tourist_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_digital_tourist_ids_status_expires", "status", "expires_at"),
    )

    def summary(self) -> dict:
        """Public view of the credential, without hash or key reference."""
        return {
            "blockchainId": self.blockchain_id,
            "touristId": self.tourist_id,
            "touristName": self.tourist_name,
            "touristWallet": self.tourist_wallet,
            "status": self.status,
            "issuerId": self.issuer_id,
            "issuerRole": self.issuer_role,
            "validityDays": self.validity_days,
            "issuedAt": self.issued_at,
            "expiresAt": self.expires_at,
            "checkoutAt": self.checkout_at,
            "lastAccessedAt": self.last_accessed_at,
            "emergencyOverride": self.emergency_override,
            "accessCount": self.access_count,
            "consentConfigured": self.consent_configured,
            "transactionHash": self.transaction_hash,
            "replacesId": self.replaces_id,
        }
