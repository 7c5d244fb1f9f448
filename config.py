"""
Runtime configuration and logging setup.

Values come from the environment (a local .env file is loaded first), the
same variables the deployment platform injects: DATABASE_URL, DATABASE_NAME,
PORT, plus the keys for the optional integrations.
"""

import logging
import os
import sys
from typing import List, Optional

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _split(value: Optional[str], default: List[str]) -> List[str]:
    if not value:
        return default
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseModel):
    app_env: str = Field("development", description="development|production|test")
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    jwt_secret: str = "change-me"
    jwt_expires_minutes: int = 60 * 24 * 7
    bcrypt_rounds: int = 12
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 300
    resend_api_key: Optional[str] = None
    mail_from: str = "Storefront <no-reply@storefront.local>"
    gemini_api_key: Optional[str] = None
    gemini_models: List[str] = Field(
        default_factory=lambda: ["gemini-2.5-flash-lite-preview-09-2025", "gemini-1.5-flash"]
    )
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            app_env=env.get("APP_ENV", "development"),
            database_url=env.get("DATABASE_URL"),
            database_name=env.get("DATABASE_NAME"),
            jwt_secret=env.get("JWT_SECRET", "change-me"),
            jwt_expires_minutes=int(env.get("JWT_EXPIRES_MINUTES", 60 * 24 * 7)),
            bcrypt_rounds=int(env.get("BCRYPT_ROUNDS", 12)),
            redis_url=env.get("REDIS_URL") or None,
            cache_ttl_seconds=int(env.get("CACHE_TTL_SECONDS", 300)),
            resend_api_key=env.get("RESEND_API_KEY") or None,
            mail_from=env.get("MAIL_FROM", "Storefront <no-reply@storefront.local>"),
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            gemini_models=_split(
                env.get("GEMINI_MODELS"),
                ["gemini-2.5-flash-lite-preview-09-2025", "gemini-1.5-flash"],
            ),
            cors_origins=_split(env.get("CORS_ORIGINS"), ["*"]),
            log_level=env.get("LOG_LEVEL", "INFO"),
            port=int(env.get("PORT", 8000)),
        )


settings = Settings.from_env()


def configure_logging(cfg: Settings = settings) -> None:
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if cfg.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
