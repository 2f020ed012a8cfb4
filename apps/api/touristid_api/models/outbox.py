"""Reconciliation outbox model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text

from touristid_api.db.base import Base


class PendingLocalWrite(Base):
    """A ledger-confirmed local write that still has to be applied."""

    __tablename__ = "pending_local_writes"

    id = Column(Integer, primary_key=True, index=True)
    operation = Column(String(50), nullable=False)  # issue, access, consent, report_lost, expire, revoke, event
    blockchain_id = Column(String(255), nullable=True, index=True)
    tourist_id = Column(String(255), nullable=True, index=True)
    transaction_hash = Column(String(255), nullable=True)
    payload_json = Column(JSON, nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, applied, conflict, failed
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    applied_at = Column(DateTime, nullable=True)
