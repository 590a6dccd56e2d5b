"""
Central configuration module for the license billing engine
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from decimal import Decimal
from typing import Optional, List

from dotenv import load_dotenv

# Only load .env in development
if os.getenv("ENV", "dev").lower() == "dev":
    load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Central configuration class with environment variable validation"""

    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()
    PORT: int = int(os.getenv("PORT", "8000"))

    # Database - PostgreSQL in staging/prod, SQLite accepted for dev/test
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./license_billing.db")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "10"))
    DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "900"))
    DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    DB_STATEMENT_TIMEOUT: int = int(os.getenv("DB_STATEMENT_TIMEOUT", "10000"))  # milliseconds

    # CORS
    CORS_ORIGINS: List[str] = []

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Billing arithmetic
    AMOUNT_TOLERANCE: Decimal = Decimal(os.getenv("AMOUNT_TOLERANCE", "0.01"))
    PAYMENT_DUE_DAYS: int = int(os.getenv("PAYMENT_DUE_DAYS", "7"))
    DUE_SOON_DAYS: int = int(os.getenv("DUE_SOON_DAYS", "7"))
    EXPIRING_SOON_DAYS: int = int(os.getenv("EXPIRING_SOON_DAYS", "30"))
    DEFAULT_TAX_APPLIES_TO: str = os.getenv("DEFAULT_TAX_APPLIES_TO", "license_fee")

    # Identifiers
    GUID_LENGTH: int = int(os.getenv("GUID_LENGTH", "6"))
    PAYMENT_REFERENCE_PREFIX: str = os.getenv("PAYMENT_REFERENCE_PREFIX", "PAY")

    # Payment state machine
    PAYMENT_ALLOW_FAILED_RETRY: bool = _env_bool("PAYMENT_ALLOW_FAILED_RETRY")
    TRANSITION_MAX_RETRIES: int = int(os.getenv("TRANSITION_MAX_RETRIES", "3"))

    # Build version (set during build/deploy)
    BUILD_VERSION: str = os.getenv("BUILD_VERSION", "dev")
    BUILD_COMMIT: str = os.getenv("BUILD_COMMIT", "unknown")

    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._load_cors_origins()
        self.errors = self._validate()

    def _load_cors_origins(self):
        """Load CORS origins from environment variable"""
        default_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
        cors_env = os.getenv("CORS_ORIGINS", "")
        if cors_env:
            env_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
            self.CORS_ORIGINS = default_origins + env_origins
        else:
            self.CORS_ORIGINS = default_origins

    def _validate(self) -> List[str]:
        """Validate required configuration based on environment"""
        errors = []

        if self.ENV not in ["dev", "test", "staging", "prod"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'test', 'staging', or 'prod'")

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required but not set")
        elif self.ENV in ["staging", "prod"] and not self.DATABASE_URL.startswith("postgresql"):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL connection string in {self.ENV} "
                f"(got: {self.DATABASE_URL[:30]}...)"
            )

        if self.AMOUNT_TOLERANCE <= 0:
            errors.append("AMOUNT_TOLERANCE must be positive")
        if self.PAYMENT_DUE_DAYS < 0:
            errors.append("PAYMENT_DUE_DAYS must not be negative")
        if not 1 <= self.GUID_LENGTH <= 18:
            errors.append("GUID_LENGTH must be between 1 and 18")
        if self.TRANSITION_MAX_RETRIES < 1:
            errors.append("TRANSITION_MAX_RETRIES must be at least 1")

        # Fail fast in staging/prod
        if errors and self.ENV in ["staging", "prod"]:
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION VALIDATION FAILED", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            sys.exit(1)

        # Warn in dev/test
        if errors:
            print("=" * 60, file=sys.stderr)
            print(f"CONFIGURATION WARNINGS ({self.ENV} mode - continuing)", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)

        return errors


# Create global config instance
config = Config()
