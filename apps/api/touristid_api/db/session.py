"""Database session management."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from touristid_api.settings import get_settings

settings = get_settings()


def _engine_options(url: str) -> dict:
    """Pool and timeout options for the configured backend."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "connect_args": {
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        },
    }


engine = create_engine(
    settings.database_url_computed,
    **_engine_options(settings.database_url_computed),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
