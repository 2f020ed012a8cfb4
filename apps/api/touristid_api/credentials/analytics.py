"""Read-only views over the local credential store."""

import logging
from datetime import datetime, time
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from touristid_api.credentials.errors import InvalidInput, NotFound
from touristid_api.credentials.repository import (
    AccessLogRepository,
    CredentialRepository,
    LifecycleEventRepository,
)
from touristid_api.ledger.facade import LedgerFacade
from touristid_api.models import DigitalTouristId
from touristid_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class CredentialAnalytics:
    """Answers status and analytics queries from local state only.

    ``ledger_status`` is the one method that talks to the ledger, and it
    never raises.
    """

    def __init__(self, db: Session, ledger: Optional[LedgerFacade] = None, settings: Optional[Settings] = None):
        self.db = db
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.credentials = CredentialRepository(db)
        self.access_logs = AccessLogRepository(db)
        self.events = LifecycleEventRepository(db)

    def _get(self, blockchain_id: str) -> DigitalTouristId:
        credential = self.credentials.get(blockchain_id)
        if credential is None:
            raise NotFound(f"Digital ID {blockchain_id} not found", blockchain_id=blockchain_id)
        return credential

    def summary(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        by_status = self.credentials.count_by_status()
        start_of_day = datetime.combine(now.date(), time.min)
        total_accesses = self.access_logs.count()

        return {
            "totalIds": sum(by_status.values()),
            "activeIds": by_status["ACTIVE"],
            "expiredIds": by_status["EXPIRED"],
            "revokedIds": by_status["REVOKED"],
            "lostIds": by_status["LOST"],
            "emergencyOverrides": self.credentials.count(DigitalTouristId.emergency_override == True),  # noqa: E712
            "issuedToday": self.credentials.count(DigitalTouristId.issued_at >= start_of_day),
            "accessStats": {
                "totalAccesses": total_accesses,
                "emergencyAccesses": self.access_logs.count(emergency_only=True),
                "averageAccessesPerId": self._average_accesses(),
            },
            "mostAccessedIds": [
                {
                    "blockchainId": credential.blockchain_id,
                    "touristName": credential.tourist_name,
                    "accessCount": credential.access_count,
                    "status": credential.status,
                }
                for credential in self.credentials.most_accessed(10)
            ],
            "recentEvents": [event.to_dict() for event in self.events.recent(10)],
        }

    def _average_accesses(self) -> float:
        average = self.db.query(func.avg(DigitalTouristId.access_count)).scalar()
        return round(float(average or 0), 2)

    def details(self, blockchain_id: str) -> dict:
        credential = self._get(blockchain_id)
        recent_accesses, total = self.access_logs.page(credential.id, limit=50)
        return {
            "digitalId": credential.summary(),
            "accessLogs": [entry.to_dict() for entry in recent_accesses],
            "totalAccesses": total,
            "events": [event.to_dict() for event in self.events.recent(20, blockchain_id=blockchain_id)],
        }

    def access_logs_page(self, blockchain_id: str, limit: int = 50, offset: int = 0) -> dict:
        max_limit = self.settings.access_log_page_limit
        if limit < 1 or limit > max_limit:
            raise InvalidInput(f"limit must be between 1 and {max_limit}")
        if offset < 0:
            raise InvalidInput("offset must not be negative")

        credential = self._get(blockchain_id)
        entries, total = self.access_logs.page(credential.id, limit=limit, offset=offset)
        return {
            "blockchainId": blockchain_id,
            "accessLogs": [entry.to_dict() for entry in entries],
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + len(entries) < total,
            },
        }

    def verify_access_chain(self, blockchain_id: str) -> dict:
        credential = self._get(blockchain_id)
        valid, error = self.access_logs.verify_chain(credential.id)
        if not valid:
            logger.error(
                f"Access log chain broken for {blockchain_id}: {error}",
                extra={"blockchain_id": blockchain_id},
            )
        return {
            "blockchainId": blockchain_id,
            "valid": valid,
            "error": error,
            "entries": self.access_logs.count(credential.id),
        }

    def ledger_status(self) -> dict:
        if self.ledger is None:
            return {"connected": False, "provider": None, "network": None, "detail": "no ledger configured"}
        return self.ledger.status().to_dict()
