from __future__ import annotations

import os


def _env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


class Config:
    """Runtime settings read from the environment (and .env via python-dotenv)."""

    def __init__(self):
        self.APP_ENV = _env("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV in {"prod", "production"}
        self.APP_VERSION = _env("APP_VERSION", "0.1.0")

        self.DATABASE_URL = _env("DATABASE_URL", "sqlite:///./onboarding.db")
        self.LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()
        self.HOST = _env("HOST", "127.0.0.1")
        self.PORT = _env_int("PORT", 5002)

        origins = _env("ALLOWED_ORIGINS", "*")
        self.ALLOWED_ORIGINS = [o.strip() for o in origins.split(",") if o.strip()] or ["*"]

        self.GOOGLE_CLIENT_ID = _env("GOOGLE_CLIENT_ID")
        self.AUTH_ALLOW_TEST_TOKENS = _env_bool("ALLOW_TEST_TOKENS", False)
        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 480))

        self.UPLOAD_DIR = _env("UPLOAD_DIR", "./uploads")
        self.MAX_CERTIFICATE_MB = max(1, _env_int("MAX_CERTIFICATE_MB", 10))

        self.STAGE_DURATION_DAYS = max(1, _env_int("STAGE_DURATION_DAYS", 30))
        self.JOURNEY_DURATION_DAYS = max(1, _env_int("JOURNEY_DURATION_DAYS", 90))

        self.NOTIFY_ASYNC = _env_bool("NOTIFY_ASYNC", False)
        self.REDIS_URL = _env("REDIS_URL")
        self.NOTIFY_WEBHOOK_URL = _env("NOTIFY_WEBHOOK_URL")
        self.NOTIFY_WEBHOOK_SECRET = _env("NOTIFY_WEBHOOK_SECRET")
        self.NOTIFY_WEBHOOK_TIMEOUT = max(1, _env_int("NOTIFY_WEBHOOK_TIMEOUT", 10))

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if self.IS_PRODUCTION:
            if not self.GOOGLE_CLIENT_ID:
                raise RuntimeError("GOOGLE_CLIENT_ID is required in production")
            if self.AUTH_ALLOW_TEST_TOKENS:
                raise RuntimeError("ALLOW_TEST_TOKENS must be disabled in production")
        if self.NOTIFY_ASYNC and not self.REDIS_URL:
            raise RuntimeError("NOTIFY_ASYNC requires REDIS_URL")
        if self.NOTIFY_ASYNC and not self.NOTIFY_WEBHOOK_URL:
            raise RuntimeError("NOTIFY_ASYNC requires NOTIFY_WEBHOOK_URL")
