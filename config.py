"""
Application configuration: environment-aware settings.

All environment variables are documented here. A .env file is loaded at startup.
"""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).parent


class BaseConfig:
    # Core Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key-change-in-production")
    # Database: SQLite (default) or PostgreSQL (set DATABASE_URL=postgresql://...)
    DATABASE = os.environ.get("DATABASE_URL", str(BASE_DIR / "progress.db"))
    DATABASE_TIMEOUT = float(os.environ.get("DATABASE_TIMEOUT", "10"))

    # Request body limit; the API only accepts small JSON payloads
    MAX_CONTENT_LENGTH = 64 * 1024

    # Logging
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # "json" or "text"
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Redis (cache, task queue, rate limit storage)
    REDIS_URL = os.environ.get("REDIS_URL", "")
    CACHE_KEY_PREFIX = os.environ.get("CACHE_KEY_PREFIX", "progress:")
    TASK_QUEUE = os.environ.get("TASK_QUEUE", "progress")

    # Leaderboard
    LEADERBOARD_CACHE_TTL = int(os.environ.get("LEADERBOARD_CACHE_TTL", "60"))
    LEADERBOARD_MAX_LIMIT = int(os.environ.get("LEADERBOARD_MAX_LIMIT", "100"))

    # Optimistic write retries per learner action
    WRITE_RETRY_ATTEMPTS = int(os.environ.get("WRITE_RETRY_ATTEMPTS", "5"))

    # Upstream gateway header carrying the authenticated learner id
    LEARNER_ID_HEADER = os.environ.get("LEARNER_ID_HEADER", "X-Learner-Id")

    # Rate limiting (defaults to in-memory; set REDIS_URL for Redis-backed)
    RATELIMIT_STORAGE_URI = os.environ.get("REDIS_URL", "") or "memory://"
    RATELIMIT_ENABLED = True
    WRITE_RATE_LIMIT = os.environ.get("WRITE_RATE_LIMIT", "120 per minute")


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

        if cls.LEADERBOARD_CACHE_TTL < 0:
            errors.append("LEADERBOARD_CACHE_TTL must not be negative.")

        if cls.WRITE_RETRY_ATTEMPTS < 1:
            errors.append("WRITE_RETRY_ATTEMPTS must be at least 1.")

        if errors:
            raise RuntimeError(
                "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            )


class TestingConfig(BaseConfig):
    TESTING = True
    RATELIMIT_ENABLED = False
    LOG_LEVEL = "WARNING"


config_by_name = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}
