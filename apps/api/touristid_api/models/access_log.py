"""Access log model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from touristid_api.db.base import Base


class AccessLogEntry(Base):
    """Append-only record of one disclosure, hash-chained per credential."""

    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True, index=True)
    credential_id = Column(Integer, ForeignKey("digital_tourist_ids.id"), nullable=False, index=True)
    blockchain_id = Column(String(255), nullable=False, index=True)
    accessor_id = Column(String(255), nullable=False, index=True)
    accessor_role = Column(String(100), nullable=False)
    accessor_wallet = Column(String(255), nullable=True)
    access_reason = Column(Text, nullable=False)
    emergency_access = Column(Boolean, default=False, nullable=False, index=True)
    transaction_hash = Column(String(255), nullable=False, unique=True, index=True)
    data_accessed = Column(JSON, nullable=False)  # categories disclosed by the ledger
    access_metadata = Column(JSON, nullable=True)
    accessed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    entry_hash = Column(String(64), nullable=False, unique=True)
    previous_entry_hash = Column(String(64), nullable=True)  # NULL for first entry

    # Relationships
    credential = relationship("DigitalTouristId", back_populates="access_logs")

    __table_args__ = (
        Index("ix_access_logs_credential_accessed", "credential_id", "accessed_at"),
    )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.accessed_at,
            "accessorId": self.accessor_id,
            "accessorRole": self.accessor_role,
            "accessReason": self.access_reason,
            "emergencyAccess": self.emergency_access,
            "transactionHash": self.transaction_hash,
            "dataAccessed": self.data_accessed,
        }
