"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

import re
from functools import lru_cache
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "StaySafe Verification Service"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Email ────────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@staysafehub.in"
    EMAIL_FROM_NAME: str = "StaySafe Hub"

    # ── URLs ─────────────────────────────────────────────────
    BACKEND_URL: str = "http://localhost:8000"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Aadhaar OTP provider ─────────────────────────────────
    OTP_PROVIDER: str = "mock"
    OTP_PROVIDER_BASE_URL: Optional[str] = None
    OTP_PROVIDER_API_KEY: Optional[str] = None
    OTP_PROVIDER_TIMEOUT: float = 10.0
    OTP_CHALLENGE_BACKEND: str = "memory"     # memory | redis
    OTP_TTL_SECONDS: int = 300                # 5 minutes
    OTP_STRICT_CHECKSUM: bool = False         # Verhoeff check on top of the 12-digit format

    # ── College email verification ───────────────────────────
    ACADEMIC_DOMAINS: str = ""
    ACADEMIC_DOMAIN_REGEX: str = r"\.(edu|ac\.in)$"
    EMAIL_TOKEN_TTL_HOURS: int = 24

    # ── Documents ────────────────────────────────────────────
    DOCUMENT_MAX_SIZE_BYTES: int = 5 * 1024 * 1024
    DOCUMENT_ALLOWED_MIME_TYPES: str = "image/jpeg,image/png,image/jpg,application/pdf"

    # ── Concurrency ──────────────────────────────────────────
    SUBJECT_WRITE_MAX_RETRIES: int = 3

    @field_validator("ACADEMIC_DOMAIN_REGEX")
    @classmethod
    def _compile_domain_regex(cls, value: str) -> str:
        try:
            re.compile(value, re.IGNORECASE)
        except re.error as exc:
            raise ValueError(f"ACADEMIC_DOMAIN_REGEX is not a valid pattern: {exc}") from exc
        return value

    @field_validator("OTP_CHALLENGE_BACKEND")
    @classmethod
    def _check_challenge_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"memory", "redis"}:
            raise ValueError("OTP_CHALLENGE_BACKEND must be 'memory' or 'redis'")
        return value

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def academic_domains_list(self) -> List[str]:
        return [d.strip().lower() for d in self.ACADEMIC_DOMAINS.split(",") if d.strip()]

    @property
    def academic_domain_pattern(self) -> re.Pattern:
        return re.compile(self.ACADEMIC_DOMAIN_REGEX, re.IGNORECASE)

    @property
    def allowed_mime_types(self) -> List[str]:
        return [m.strip().lower() for m in self.DOCUMENT_ALLOWED_MIME_TYPES.split(",") if m.strip()]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance: call this everywhere."""
    return Settings()


settings = get_settings()
