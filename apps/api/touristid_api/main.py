"""Digital Tourist ID API - Main FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from touristid_api import __version__
from touristid_api.credentials.errors import CredentialError
from touristid_api.middleware.auth import ActorMiddleware
from touristid_api.middleware.correlation import CorrelationIDMiddleware
from touristid_api.routes import digital_ids
from touristid_api.settings import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting Digital Tourist ID API...")
    try:
        settings.validate_production_settings()

        from touristid_api.security.encryption import get_encryption_service

        get_encryption_service()
        logger.info("Encryption service initialized")

        from touristid_api.ledger import get_ledger_facade

        ledger = get_ledger_facade()
        logger.info(f"Ledger facade initialized: {type(ledger).__name__}")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ValueError(f"Invalid configuration: {e}") from e

    yield
    logger.info("Shutting down Digital Tourist ID API...")

    from touristid_api.ledger import close_ledger_facade

    close_ledger_facade()


app = FastAPI(
    title="Digital Tourist ID API",
    description="Ledger-anchored Digital Tourist ID lifecycle management",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added is first executed: correlation id is set before the actor is logged
app.add_middleware(ActorMiddleware)
app.add_middleware(CorrelationIDMiddleware)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

app.include_router(digital_ids.router)


@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are caller errors like any other invalid input."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": "Invalid request",
            "errors": [
                {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
                for error in exc.errors()
            ],
            "error_code": "INVALID_INPUT",
            "retryable": False,
        },
    )


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    # Raised only before a ledger call; afterwards local failures go to the outbox
    logger.error(
        f"Local store unavailable: {exc}",
        extra={"correlation_id": getattr(request.state, "correlation_id", None)},
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "detail": "Local credential store unavailable; no changes were made",
            "error_code": "STORE_UNAVAILABLE",
            "retryable": True,
        },
    )


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "touristid-api",
        "version": __version__,
    }


@app.get("/ready")
def readiness_check():
    """Readiness check endpoint (verifies dependencies)."""
    import redis
    from sqlalchemy import text

    from touristid_api.db.session import SessionLocal
    from touristid_api.ledger import get_ledger_facade

    checks = {
        "database": False,
        "migrations": False,
        "redis": False,
        "ledger": False,
    }

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database check failed: {e}")
    finally:
        db.close()

    # Check Alembic migrations are at head
    if checks["database"]:
        try:
            from alembic.config import Config
            from alembic.runtime.migration import MigrationContext
            from alembic.script import ScriptDirectory

            db = SessionLocal()
            try:
                context = MigrationContext.configure(db.connection())
                current_rev = context.get_current_revision()

                alembic_ini_path = os.path.join(os.path.dirname(__file__), "..", "alembic.ini")
                alembic_cfg = Config(alembic_ini_path)
                head_rev = ScriptDirectory.from_config(alembic_cfg).get_current_head()

                if current_rev == head_rev:
                    checks["migrations"] = True
                else:
                    logger.warning(f"Migrations not at head: current={current_rev}, head={head_rev}")
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Migration check failed: {e}")

    try:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        redis_client.ping()
        checks["redis"] = True
    except Exception as e:
        logger.error(f"Redis check failed: {e}")

    try:
        checks["ledger"] = get_ledger_facade().status().connected
    except Exception as e:
        logger.error(f"Ledger check failed: {e}")

    all_ready = all(checks.values())
    return JSONResponse(
        content={
            "status": "ready" if all_ready else "not_ready",
            "checks": checks,
        },
        status_code=200 if all_ready else 503,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Digital Tourist ID API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
