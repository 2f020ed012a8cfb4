"""Application settings and configuration."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: Optional[str] = None
    postgres_user: str = "touristid"
    postgres_password: str = "touristid_dev_password"
    postgres_db: str = "touristid"
    postgres_port: int = 5432
    db_statement_timeout_ms: int = 5000

    # Redis (Celery broker for reconciliation)
    redis_url: str = "redis://localhost:6379/0"

    # API
    secret_key: str = "dev-secret-key-change-in-production"
    environment: str = "development"

    # Ledger
    ledger_provider: str = "simulated"  # simulated, http
    ledger_gateway_url: str = "http://localhost:8545"
    ledger_api_key: Optional[str] = None
    ledger_timeout_seconds: float = 10.0

    # Payload encryption
    payload_encryption_provider: str = "local"  # local, aws_kms
    payload_encryption_key_id: Optional[str] = None  # KMS key ID
    local_encryption_salt: Optional[str] = None

    # AWS (for KMS)
    aws_region: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None

    # Lifecycle policy
    min_validity_days: int = 1
    max_validity_days: int = 365
    auto_expire_batch_size: int = 100
    access_log_page_limit: int = 200

    # Worker schedules
    auto_expire_interval_seconds: int = 15 * 60
    outbox_sweep_interval_seconds: int = 60
    outbox_max_attempts: int = 10

    # Logging
    log_level: str = "INFO"

    # CORS
    cors_origins: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        """Compute database URL if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@localhost:{self.postgres_port}/{self.postgres_db}"
        )

    def validate_production_settings(self):
        """Validate settings for production environment."""
        env = self.environment.lower()
        if env not in ("development", "test", "dev"):
            if self.ledger_provider == "simulated":
                raise ValueError(
                    "LEDGER_PROVIDER=simulated is not allowed in production. "
                    "Use LEDGER_PROVIDER=http and set LEDGER_GATEWAY_URL."
                )
            if self.payload_encryption_provider == "local":
                raise ValueError(
                    "PAYLOAD_ENCRYPTION_PROVIDER=local is not allowed in production. "
                    "Use PAYLOAD_ENCRYPTION_PROVIDER=aws_kms."
                )
            if self.secret_key.startswith("dev-"):
                raise ValueError("SECRET_KEY must be set in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
