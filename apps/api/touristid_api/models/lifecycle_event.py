"""Lifecycle event log model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String

from touristid_api.db.base import Base


class LifecycleEvent(Base):
    """Append-only log of state-affecting operations, for compliance review."""

    __tablename__ = "lifecycle_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    blockchain_id = Column(String(255), nullable=True, index=True)
    tourist_id = Column(String(255), nullable=True)
    transaction_hash = Column(String(255), nullable=True, index=True)
    metadata_json = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "eventType": self.event_type,
            "blockchainId": self.blockchain_id,
            "touristId": self.tourist_id,
            "transactionHash": self.transaction_hash,
            "metadata": self.metadata_json or {},
            "timestamp": self.timestamp,
        }
