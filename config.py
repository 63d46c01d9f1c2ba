from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except Exception:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str, default: str = "") -> list[str]:
    raw = _env_str(name, default)
    return [p.strip() for p in raw.split(",") if p.strip()]


class Config:
    """Process configuration, read once from the environment at app start."""

    def __init__(self):
        self.APP_ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.APP_ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "0.1.0")
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5000)

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./onboardflow.db")
        self.ALLOWED_ORIGINS = _env_csv("ALLOWED_ORIGINS", "*")

        # Sessions and login lockout.
        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 480))
        self.LOGIN_MAX_FAILED_ATTEMPTS = max(1, _env_int("LOGIN_MAX_FAILED_ATTEMPTS", 5))
        self.LOGIN_LOCK_MINUTES = max(1, _env_int("LOGIN_LOCK_MINUTES", 15))

        # Notification gateway.
        default_backend = "smtp" if self.IS_PRODUCTION else "memory"
        self.NOTIFY_BACKEND = _env_str("NOTIFY_BACKEND", default_backend).lower()
        self.SMTP_HOST = _env_str("SMTP_HOST", "")
        self.SMTP_PORT = _env_int("SMTP_PORT", 587)
        self.SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", True)
        self.MAIL_RELAY_URL = _env_str("MAIL_RELAY_URL", "")
        self.MAIL_RELAY_TOKEN = _env_str("MAIL_RELAY_TOKEN", "")
        self.MAIL_TIMEOUT_SECONDS = max(1, _env_int("MAIL_TIMEOUT_SECONDS", 20))

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if self.IS_PRODUCTION and "*" in self.ALLOWED_ORIGINS:
            raise RuntimeError("ALLOWED_ORIGINS must be explicit in production")
        if self.NOTIFY_BACKEND not in {"smtp", "http", "memory"}:
            raise RuntimeError(f"Unknown NOTIFY_BACKEND: {self.NOTIFY_BACKEND}")
        if self.NOTIFY_BACKEND == "smtp" and not self.SMTP_HOST:
            raise RuntimeError("SMTP_HOST is required when NOTIFY_BACKEND=smtp")
        if self.NOTIFY_BACKEND == "http" and not self.MAIL_RELAY_URL:
            raise RuntimeError("MAIL_RELAY_URL is required when NOTIFY_BACKEND=http")
