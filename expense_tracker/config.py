from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

DEVELOPMENT = "development"
PRODUCTION = "production"
LOCAL_FRONTEND_ORIGIN = "http://localhost:3000"
DEV_SESSION_SECRET = "dev-session-secret-change-me"

logger = logging.getLogger("expense_tracker.config")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./expense_tracker.db"
    port: int = 5000
    frontend_url: str | None = None
    environment: str = DEVELOPMENT
    session_secret: str = DEV_SESSION_SECRET
    session_ttl_minutes: int = 24 * 60
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        environment = os.getenv("APP_ENV", DEVELOPMENT).strip().lower() or DEVELOPMENT
        settings = cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            port=_int_env("PORT", cls.port),
            frontend_url=os.getenv("FRONTEND_URL") or None,
            environment=environment,
            session_secret=os.getenv("SESSION_SECRET", DEV_SESSION_SECRET),
            session_ttl_minutes=_int_env("SESSION_TTL_MINUTES", cls.session_ttl_minutes),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
        if settings.is_production and settings.session_secret == DEV_SESSION_SECRET:
            logger.warning("SESSION_SECRET is not set; using the development secret in production.")
        return settings

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.environment == PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        if self.is_production:
            return [self.frontend_url] if self.frontend_url else []
        return [LOCAL_FRONTEND_ORIGIN]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s.", name, raw, default)
        return default


def configure_logging(level: str = "INFO") -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
