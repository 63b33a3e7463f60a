# backend/marketplace/core/config.py
from decimal import Decimal
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


class Settings(BaseSettings):
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development",
        description="Deployment environment name",
    )
    log_level: str = Field(default="INFO", description="Root log level")

    # Database
    database_url: str = Field(
        default="sqlite:///./marketplace.db",
        description="SQLAlchemy URL for the primary datastore",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Ledger
    platform_fee_rate: Decimal = Field(
        default=Decimal("0.10"),
        description="Canonical platform fee charged on every booking payment",
    )
    escrow_hold_days: int = Field(default=15, description="Days funds stay in escrow after completion")
    dispute_hold_days: int = Field(default=30, description="Escrow extension applied by a dispute")
    refund_claim_ttl_seconds: int = Field(
        default=300,
        description="A refund claim older than this is treated as abandoned and may be retaken",
    )
    minimum_withdrawal_amount: Decimal = Field(default=Decimal("10.00"))
    maximum_withdrawal_amount: Decimal = Field(default=Decimal("10000.00"))

    # Scheduler
    pending_booking_timeout_hours: int = Field(
        default=24,
        description="Pending bookings older than this are cancelled for provider no-response",
    )
    reminder_window_hours: int = Field(default=24)
    notification_retention_months: int = Field(default=6)

    # Payment gateway (Pagar.me)
    pagarme_api_url: str = Field(default="https://api.pagar.me/core/v5")
    pagarme_secret_key: Optional[SecretStr] = Field(default=None)
    pagarme_webhook_secret: Optional[SecretStr] = Field(default=None)
    gateway_timeout_seconds: float = Field(
        default=30.0,
        description="Upper bound for any single gateway HTTP call",
    )
    use_fake_gateway: bool = Field(
        default=True,
        description="Use the in-memory gateway instead of Pagar.me (non-production only)",
    )

    # Privileged triggers
    cron_secret: Optional[SecretStr] = Field(default=None, description="Bearer token for /api/internal/cron")
    admin_api_token: Optional[SecretStr] = Field(default=None, description="Bearer token for admin actions")

    # Celery
    redis_url: str = Field(default="redis://localhost:6379/0")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("platform_fee_rate")
    @classmethod
    def _validate_fee_rate(cls, value: Decimal) -> Decimal:
        if value < 0 or value >= 1:
            raise ValueError("platform_fee_rate must be in [0, 1)")
        return value

    @field_validator(
        "escrow_hold_days",
        "dispute_hold_days",
        "pending_booking_timeout_hours",
        "refund_claim_ttl_seconds",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number")
        return value

    @model_validator(mode="after")
    def _validate_withdrawal_bounds(self) -> "Settings":
        if self.minimum_withdrawal_amount > self.maximum_withdrawal_amount:
            raise ValueError("minimum_withdrawal_amount cannot exceed maximum_withdrawal_amount")
        if self.environment == "production" and self.use_fake_gateway:
            raise ValueError("Refusing to start: production requires the Pagar.me gateway")
        return self

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()
