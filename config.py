"""
Configuration settings for the application.
"""
import os
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_RAZORPAY_API_URL = "https://api.razorpay.com/v1"
DEFAULT_LEDGER_URL = "sqlite+aiosqlite:///./payments.db"


def _strip_quotes(value: str) -> str:
    # Remove quotes if present (common when copying from examples)
    return value.strip().strip('"').strip("'")


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """
    Explicit application configuration.

    Built once from the environment and handed to the store, the payment
    flow and the route layer. Business logic never reads os.environ.
    """
    mongodb_uri: str = ""
    mongodb_db: str = "car_rental"
    database_url: str = DEFAULT_LEDGER_URL
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_url: str = DEFAULT_RAZORPAY_API_URL
    payment_currency: str = "INR"
    payment_timeout_seconds: float = 30.0
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    identity_header: str = "X-User-Id"
    booking_lock_seconds: int = 30
    booking_lock_retries: int = 5
    booking_lock_retry_delay: float = 0.05

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (and the .env file)."""
        return cls(
            mongodb_uri=_strip_quotes(os.getenv("MONGODB_URI", "")),
            mongodb_db=os.getenv("MONGODB_DB", "car_rental"),
            database_url=_strip_quotes(os.getenv("DATABASE_URL", DEFAULT_LEDGER_URL)),
            razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
            razorpay_api_url=os.getenv("RAZORPAY_API_URL", DEFAULT_RAZORPAY_API_URL).rstrip("/"),
            payment_currency=os.getenv("PAYMENT_CURRENCY", "INR"),
            payment_timeout_seconds=float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "30")),
            cors_origins=_split_csv(os.getenv("CORS_ORIGINS", "http://localhost:3000")),
            identity_header=os.getenv("IDENTITY_HEADER", "X-User-Id"),
            booking_lock_seconds=int(os.getenv("BOOKING_LOCK_SECONDS", "30")),
            booking_lock_retries=int(os.getenv("BOOKING_LOCK_RETRIES", "5")),
        )

    def validate(self) -> None:
        """
        Fail fast on missing required settings.

        Raises:
            ValueError: if a required variable is not set
        """
        missing = []
        if not self.mongodb_uri:
            missing.append("MONGODB_URI")
        if not self.razorpay_key_id:
            missing.append("RAZORPAY_KEY_ID")
        if not self.razorpay_key_secret:
            missing.append("RAZORPAY_KEY_SECRET")
        if missing:
            raise ValueError(
                f"Missing required environment variables: {', '.join(missing)}. "
                "Please set them in .env file or environment variables."
            )


@lru_cache
def get_settings() -> Settings:
    settings = Settings.from_env()
    logger.info(f"Settings loaded (database: {settings.mongodb_db}, currency: {settings.payment_currency})")
    return settings
