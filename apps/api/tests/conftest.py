"""Pytest configuration and fixtures."""

import os

# Settings are read at import time by the session module and the app
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOCAL_ENCRYPTION_SALT", "dGVzdC1zYWx0LWZvci10b3VyaXN0aWQtdGVzdHMtMzI=")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from touristid_api import models  # noqa: F401, E402
from touristid_api.credentials.manager import CredentialLifecycleManager  # noqa: E402
from touristid_api.credentials.results import Actor  # noqa: E402
from touristid_api.db.base import Base  # noqa: E402
from touristid_api.ledger.facade import ConsentSettings  # noqa: E402
from touristid_api.ledger.simulated import SimulatedLedgerFacade  # noqa: E402
from touristid_api.reconciliation.outbox import LocalWriteOutbox  # noqa: E402
from touristid_api.security.encryption import EncryptionService  # noqa: E402
from touristid_api.settings import Settings  # noqa: E402

START = datetime(2025, 3, 1, 12, 0, 0)


class FakeClock:
    """Controllable replacement for datetime.utcnow."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingDispatcher:
    """Captures outbox dispatches instead of sending them to Celery."""

    def __init__(self):
        self.replayed = []
        self.applied = []

    def replay(self, entry_id: int):
        self.replayed.append(entry_id)

    def apply(self, operation: str, payload: dict):
        self.applied.append((operation, payload))


@pytest.fixture
def settings(tmp_path) -> Settings:
    # File-backed SQLite so separate sessions are separate connections
    return Settings(
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'touristid.db'}",
        ledger_provider="simulated",
        payload_encryption_provider="local",
        local_encryption_salt="dGVzdC1zYWx0LWZvci10b3VyaXN0aWQtdGVzdHMtMzI=",
        auto_expire_batch_size=25,
    )


@pytest.fixture
def engine(settings: Settings):
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def encryption_service(settings: Settings) -> EncryptionService:
    return EncryptionService(settings)


@pytest.fixture
def ledger(encryption_service) -> SimulatedLedgerFacade:
    return SimulatedLedgerFacade(encryption_service)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def outbox(session_factory, dispatcher) -> LocalWriteOutbox:
    return LocalWriteOutbox(session_factory, dispatcher=dispatcher)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_manager(ledger, encryption_service, outbox, settings, clock):
    """Build a manager bound to a given session."""

    def _make(session: Session) -> CredentialLifecycleManager:
        return CredentialLifecycleManager(
            session, ledger, encryption_service, outbox, settings=settings, clock=clock
        )

    return _make


@pytest.fixture
def manager(db, make_manager) -> CredentialLifecycleManager:
    return make_manager(db)


@pytest.fixture
def issuer() -> Actor:
    return Actor(actor_id="officer-1", role="tourism_officer", wallet="0xissuer")


@pytest.fixture
def admin() -> Actor:
    return Actor(actor_id="admin-1", role="admin", wallet="0xadmin")


@pytest.fixture
def police() -> Actor:
    return Actor(actor_id="police-7", role="police", wallet="0xpolice")


@pytest.fixture
def hotel() -> Actor:
    return Actor(actor_id="hotel-3", role="hotel_staff", wallet="0xhotel")


@pytest.fixture
def responder() -> Actor:
    return Actor(actor_id="ems-1", role="emergency_responder", wallet="0xresponder")


def issue_kwargs(tourist_id: str = "T1", **overrides) -> dict:
    kwargs = {
        "tourist_id": tourist_id,
        "wallet_address": f"0xwallet{tourist_id}",
        "personal_data": {
            "name": f"Tourist {tourist_id}",
            "nationality": "NZ",
            "passportNumber": f"P-{tourist_id}",
            "phoneNumber": "+64 21 000 000",
        },
        "booking_data": {"hotel": "Harbour View", "room": "204"},
        "emergency_contacts": {"primary": "+64 21 111 111", "secondary": "+64 21 222 222"},
        "validity_days": 30,
    }
    kwargs.update(overrides)
    return kwargs


@pytest.fixture
def issue(manager, issuer):
    """Issue a credential for a subject with sensible defaults."""

    def _issue(tourist_id: str = "T1", **overrides):
        return manager.issue(issuer=issuer, **issue_kwargs(tourist_id, **overrides))

    return _issue


@pytest.fixture
def police_consent() -> ConsentSettings:
    return ConsentSettings(police_access=True)


@pytest.fixture(name="issue_kwargs")
def issue_kwargs_fixture():
    return issue_kwargs
