"""Database models - import all models here for Alembic discovery."""

from touristid_api.models.access_log import AccessLogEntry
from touristid_api.models.credential import DigitalTouristId
from touristid_api.models.lifecycle_event import LifecycleEvent
from touristid_api.models.outbox import PendingLocalWrite

__all__ = [
    "DigitalTouristId",
    "AccessLogEntry",
    "LifecycleEvent",
    "PendingLocalWrite",
]
