"""Configuration management for the GoaGuide booking lifecycle core"""

import os
import logging
from decimal import Decimal, InvalidOperation
from typing import List, Tuple

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={value!r} is not an integer, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={value!r} is not a number, using default {default}")
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    value = os.getenv(name)
    if value is None or not value.strip():
        return Decimal(default)
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation:
        parsed = None
    if parsed is None or not parsed.is_finite():
        logger.warning(f"⚠️ CONFIG: {name}={value!r} is not a decimal, using default {default}")
        return Decimal(default)
    return parsed


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    # Placeholder default only; real credentials come from the environment
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./goaguide.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO", False)
    DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 5)
    DB_MAX_OVERFLOW = _env_int("DB_MAX_OVERFLOW", 10)
    DB_POOL_TIMEOUT = _env_int("DB_POOL_TIMEOUT", 30)
    DB_CONNECT_TIMEOUT = _env_int("DB_CONNECT_TIMEOUT", 10)
    # Bounds worst-case latency of any single statement (PostgreSQL only)
    DB_STATEMENT_TIMEOUT_MS = _env_int("DB_STATEMENT_TIMEOUT_MS", 15000)

    # Service identity recorded on every audit row
    SERVICE_NAME = os.getenv("SERVICE_NAME", "goaguide-api")
    SERVICE_VERSION = os.getenv("SERVICE_VERSION", "1.0.0")

    # Trip defaults
    DEFAULT_DESTINATION = os.getenv("DEFAULT_DESTINATION", "Goa")
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")
    MAX_QUESTIONNAIRE_KEYS = _env_int("MAX_QUESTIONNAIRE_KEYS", 50)
    MAX_QUESTIONNAIRE_VALUE_LENGTH = _env_int("MAX_QUESTIONNAIRE_VALUE_LENGTH", 500)
    MAX_CONSENT_TTL_HOURS = _env_int("MAX_CONSENT_TTL_HOURS", 24 * 90)

    # RFP / offer lifecycle
    RFP_TTL_HOURS = _env_int("RFP_TTL_HOURS", 48)
    DEFAULT_OFFER_VALIDITY_HOURS = _env_int("DEFAULT_OFFER_VALIDITY_HOURS", 24)
    MAX_OFFER_VALIDITY_HOURS = _env_int("MAX_OFFER_VALIDITY_HOURS", 24 * 7)

    # Booking lifecycle
    BOOKING_HOLD_MINUTES = _env_int("BOOKING_HOLD_MINUTES", 15)
    # Fixed by the idempotency contract; not meant to be tuned per deployment
    IDEMPOTENCY_TTL_HOURS = 24

    # Refund policy: (minimum hours before travel start, refundable fraction),
    # evaluated top-down; anything closer than the last tier refunds nothing
    REFUND_POLICY_TIERS: List[Tuple[int, Decimal]] = [
        (_env_int("REFUND_FULL_NOTICE_HOURS", 24 * 7), Decimal("1.00")),
        (_env_int("REFUND_PARTIAL_NOTICE_HOURS", 48), _env_decimal("REFUND_PARTIAL_FRACTION", "0.50")),
    ]
    REFUND_UNKNOWN_START_FRACTION = _env_decimal("REFUND_UNKNOWN_START_FRACTION", "1.00")

    # Photo verification
    PHOTO_REVIEW_CONFIDENCE_THRESHOLD = _env_float("PHOTO_REVIEW_CONFIDENCE_THRESHOLD", 0.70)

    # Background sweeps
    HOLD_SWEEP_INTERVAL_SECONDS = _env_int("HOLD_SWEEP_INTERVAL_SECONDS", 60)
    LIFECYCLE_SWEEP_INTERVAL_SECONDS = _env_int("LIFECYCLE_SWEEP_INTERVAL_SECONDS", 300)
    SWEEP_BATCH_SIZE = _env_int("SWEEP_BATCH_SIZE", 100)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 GoaGuide lifecycle configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.database_backend()}")
        logger.info(f"   Booking hold: {Config.BOOKING_HOLD_MINUTES} min")
        logger.info(f"   RFP TTL: {Config.RFP_TTL_HOURS} h")
        logger.info(f"   Photo review threshold: {Config.PHOTO_REVIEW_CONFIDENCE_THRESHOLD:.2f}")
        logger.info(
            f"   Sweeps: holds every {Config.HOLD_SWEEP_INTERVAL_SECONDS}s, "
            f"lifecycle every {Config.LIFECYCLE_SWEEP_INTERVAL_SECONDS}s"
        )

    @staticmethod
    def database_backend() -> str:
        """Database dialect name without revealing the connection string"""
        url = Config.DATABASE_URL or ""
        if not url:
            return "NOT CONFIGURED"
        return url.split(":", 1)[0]
