from __future__ import annotations

import json
import os


def _env(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or "").strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name) or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str, default: str = "") -> list[str]:
    return [p.strip() for p in _env(name, default).split(",") if p.strip()]


class Config:
    def __init__(self):
        self.ENV = _env("ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env("APP_VERSION", "0.1.0")
        self.LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()
        self.HOST = _env("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5002)

        # Tenancy: one database per tenant, resolved from the X-Tenant-ID header.
        self.TENANT_DATABASE_URL_TEMPLATE = _env("TENANT_DATABASE_URL_TEMPLATE", "sqlite:///./data/tenant_{tenant}.db")
        self.TENANT_DATABASE_URLS = self._parse_url_map(_env("TENANT_DATABASE_URLS"))
        self.ALLOWED_TENANTS = [t.lower() for t in _env_csv("ALLOWED_TENANTS")]
        self.DB_POOL_SIZE = max(1, _env_int("DB_POOL_SIZE", 5))
        self.DB_MAX_OVERFLOW = max(0, _env_int("DB_MAX_OVERFLOW", 10))

        self.GOOGLE_CLIENT_ID = _env("GOOGLE_CLIENT_ID")
        self.AUTH_ALLOW_TEST_TOKENS = _env_bool("AUTH_ALLOW_TEST_TOKENS", False)
        self.SESSION_TTL_MINUTES = max(5, _env_int("SESSION_TTL_MINUTES", 480))

        self.ALLOWED_ORIGINS = _env_csv("ALLOWED_ORIGINS", "http://localhost:5173")
        self.RATE_LIMIT_GLOBAL = _env("RATE_LIMIT_GLOBAL", "1200/60")
        self.RATE_LIMIT_DEFAULT = _env("RATE_LIMIT_DEFAULT", "300/60")
        self.RATE_LIMIT_LOGIN = _env("RATE_LIMIT_LOGIN", "20/60")

        self.NOTIFIER_BACKEND = _env("NOTIFIER_BACKEND", "log").lower()
        self.NOTIFY_WEBHOOK_URL = _env("NOTIFY_WEBHOOK_URL")
        self.NOTIFY_TIMEOUT_SECONDS = max(1, _env_int("NOTIFY_TIMEOUT_SECONDS", 5))

        self.REDIS_URL = _env("REDIS_URL")
        self.OUTBOX_REPLAY_LIMIT = max(1, _env_int("OUTBOX_REPLAY_LIMIT", 100))

    @staticmethod
    def _parse_url_map(raw: str) -> dict[str, str]:
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            raise RuntimeError("TENANT_DATABASE_URLS must be a JSON object of tenant -> database URL")
        if not isinstance(parsed, dict):
            raise RuntimeError("TENANT_DATABASE_URLS must be a JSON object of tenant -> database URL")
        return {str(k).strip().lower(): str(v).strip() for k, v in parsed.items() if str(k).strip() and str(v).strip()}

    def validate(self) -> None:
        if "{tenant}" not in self.TENANT_DATABASE_URL_TEMPLATE:
            raise RuntimeError("TENANT_DATABASE_URL_TEMPLATE must contain a {tenant} placeholder")
        if self.IS_PRODUCTION and self.AUTH_ALLOW_TEST_TOKENS:
            raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be disabled in production")
        if self.IS_PRODUCTION and not self.GOOGLE_CLIENT_ID:
            raise RuntimeError("Missing GOOGLE_CLIENT_ID")
        if self.NOTIFIER_BACKEND not in {"log", "celery", "webhook"}:
            raise RuntimeError(f"Unknown NOTIFIER_BACKEND: {self.NOTIFIER_BACKEND}")
        if self.NOTIFIER_BACKEND == "webhook" and not self.NOTIFY_WEBHOOK_URL:
            raise RuntimeError("NOTIFY_WEBHOOK_URL is required when NOTIFIER_BACKEND=webhook")
