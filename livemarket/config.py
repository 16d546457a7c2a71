import os
import warnings
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env")


class Settings:
    @staticmethod
    def _get_int(name: str, default: int) -> int:
        return int(os.getenv(name, str(default)))

    @staticmethod
    def _get_bool(name: str, default: bool) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    @property
    def DATABASE_URL(self) -> str:
        value = os.getenv("DATABASE_URL", "").strip()
        if not value:
            raise ValueError("DATABASE_URL is not set")
        return value

    @property
    def DB_CONNECT_RETRIES(self) -> int:
        return self._get_int("DB_CONNECT_RETRIES", 10)

    @property
    def DB_CONNECT_RETRY_DELAY_SECONDS(self) -> int:
        return self._get_int("DB_CONNECT_RETRY_DELAY_SECONDS", 2)

    @property
    def JWT_SECRET(self) -> str:
        return os.getenv("JWT_SECRET", "change-me-in-production")

    @property
    def JWT_ALGORITHM(self) -> str:
        return os.getenv("JWT_ALGORITHM", "HS256")

    @property
    def CORS_ORIGINS(self) -> str:
        return os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:3001")

    @property
    def STRIPE_SECRET_KEY(self) -> str:
        return os.getenv("STRIPE_SECRET_KEY", "")

    @property
    def STRIPE_WEBHOOK_SECRET(self) -> str:
        return os.getenv("STRIPE_WEBHOOK_SECRET", "")

    @property
    def PAYMENT_PROCESSOR_TIMEOUT_SECONDS(self) -> int:
        return self._get_int("PAYMENT_PROCESSOR_TIMEOUT_SECONDS", 10)

    @property
    def PAYMENT_CURRENCY(self) -> str:
        return os.getenv("PAYMENT_CURRENCY", "usd").strip().lower()

    @property
    def PLATFORM_FEE_RATE(self) -> Decimal:
        return Decimal(os.getenv("PLATFORM_FEE_RATE", "0.08"))

    @property
    def ESCROW_AUTO_RELEASE_DAYS(self) -> int:
        return self._get_int("ESCROW_AUTO_RELEASE_DAYS", 7)

    @property
    def BID_EXTENSION_THRESHOLD_SECONDS(self) -> int:
        return self._get_int("BID_EXTENSION_THRESHOLD_SECONDS", 30)

    @property
    def BID_EXTENSION_SECONDS(self) -> int:
        return self._get_int("BID_EXTENSION_SECONDS", 30)

    @property
    def DEFAULT_MAX_TIMER_EXTENSIONS(self) -> int:
        return self._get_int("DEFAULT_MAX_TIMER_EXTENSIONS", 10)

    @property
    def JOBS_ENABLED(self) -> bool:
        return self._get_bool("JOBS_ENABLED", False)

    @property
    def AUTO_RELEASE_INTERVAL_SECONDS(self) -> int:
        return self._get_int("AUTO_RELEASE_INTERVAL_SECONDS", 3600)

    @property
    def AUCTION_CLOSE_INTERVAL_SECONDS(self) -> int:
        return self._get_int("AUCTION_CLOSE_INTERVAL_SECONDS", 5)


settings = Settings()

if settings.JWT_SECRET == "change-me-in-production":
    warnings.warn("JWT_SECRET still has its placeholder value; tokens can be forged.", UserWarning)
