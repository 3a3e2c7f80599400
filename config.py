"""
Application configuration: environment-aware settings.

All environment variables are documented here. Values can also come from a
.env file next to this module.
"""

from __future__ import annotations

import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

load_dotenv(BASE_DIR / ".env")


class BaseConfig:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "progress.db"))

    # Answer judge (Gemini)
    GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY", "")
    JUDGE_PROVIDER = os.environ.get("JUDGE_PROVIDER", "gemini")
    JUDGE_MODEL = os.environ.get("JUDGE_MODEL", "gemini-2.0-flash")
    JUDGE_TIMEOUT_SECONDS = float(os.environ.get("JUDGE_TIMEOUT_SECONDS", "15"))
    JUDGE_BREAKER_THRESHOLD = int(os.environ.get("JUDGE_BREAKER_THRESHOLD", "3"))
    JUDGE_BREAKER_RECOVERY_SECONDS = float(os.environ.get("JUDGE_BREAKER_RECOVERY_SECONDS", "60"))

    # Request limits
    MAX_ANSWER_LENGTH = int(os.environ.get("MAX_ANSWER_LENGTH", "1000"))
    MAX_XP_AWARD = int(os.environ.get("MAX_XP_AWARD", "1000"))
    MAX_HISTORY_DAYS = 90

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")


class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")

    @classmethod
    def validate(cls):
        """Fail fast on missing or insecure configuration in production."""
        errors: list[str] = []

        if cls.SECRET_KEY in ("dev-key-change-in-production", ""):
            errors.append("SECRET_KEY must be set to a secure value in production.")

        if cls.JUDGE_TIMEOUT_SECONDS <= 0:
            errors.append("JUDGE_TIMEOUT_SECONDS must be positive.")

        if not cls.GOOGLE_API_KEY:
            warnings.warn("GOOGLE_API_KEY is not set; answer checking will be unavailable.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    RATELIMIT_ENABLED = False
    GOOGLE_API_KEY = ""


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
