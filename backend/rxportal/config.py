import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/rx_portal"
    DATABASE_URL_SYNC: str = "postgresql+psycopg2://postgres:postgres@db:5432/rx_portal"
    JWT_SECRET: str = "change-me-in-production"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    FRONTEND_URL: str = "http://localhost:5173"
    APP_ENV: str = "development"

    # Outbound email (SMTP)
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: int = 20
    EMAIL_FROM: str = ""
    EMAIL_FROM_NAME: str = "DoctorPortal Pharmacy"

    # Refill workflow
    REFILL_QUERY_TIMEOUT_SECONDS: float = 5.0
    SIDE_EFFECT_DRAIN_SECONDS: float = 10.0

    # Database connection pool (tune per environment via env vars)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30

    model_config = {"env_file": "../.env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def smtp_configured(self) -> bool:
        return bool(self.SMTP_HOST and self.SMTP_USERNAME and self.SMTP_PASSWORD)


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()

    if settings.APP_ENV == "production" and settings.JWT_SECRET == "change-me-in-production":
        raise RuntimeError(
            "FATAL: JWT_SECRET is still the default value. "
            "Set a strong random secret via environment variable before running in production. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )

    if settings.APP_ENV == "production":
        origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
        if "*" in origins:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS contains '*' which is not allowed in production. "
                "Set explicit allowed origins, e.g. CORS_ORIGINS=https://app.example.com"
            )
        if not settings.smtp_configured:
            logger.warning(
                "SMTP_HOST/SMTP_USERNAME/SMTP_PASSWORD not set. "
                "Refill emails to pharmacies and patients will be skipped."
            )

    return settings


def clear_settings_cache() -> None:
    """Clear the cached Settings so the next call to ``get_settings()``
    re-reads environment variables.  Useful after rotating SMTP or JWT
    secrets without a full process restart.
    """
    get_settings.cache_clear()
