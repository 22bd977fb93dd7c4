from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from teamcrm.logging import get_logger

logger = get_logger(__name__)

DEV_JWT_SECRET = "dev-jwt-secret-not-for-production"
DEV_JWT_REFRESH_SECRET = "dev-refresh-secret-not-for-production"


class Environment(str, Enum):
    """Deployment environments; production tightens secrets and cookies."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/teamcrm", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/teamcrm", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token and cookie lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token, session and cookie lifetime"
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    invite_ttl_days: int = env_field(7, "INVITE_TTL_DAYS")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TeamCRM", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:5173", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        [], "CORS_ALLOW_ORIGINS", description="Comma separated list of allowed origins"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        if self.is_production:
            if not self.jwt_secret or not self.jwt_refresh_secret:
                raise ValueError(
                    "JWT_SECRET and JWT_REFRESH_SECRET are required in production"
                )
            if self.jwt_secret in (DEV_JWT_SECRET, DEV_JWT_REFRESH_SECRET) or (
                self.jwt_refresh_secret in (DEV_JWT_SECRET, DEV_JWT_REFRESH_SECRET)
            ):
                raise ValueError("development JWT secrets cannot be used in production")
            if self.jwt_secret == self.jwt_refresh_secret:
                raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
            return self
        if not self.jwt_secret:
            self.jwt_secret = DEV_JWT_SECRET
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = DEV_JWT_REFRESH_SECRET
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if not _settings_cache.is_production and (
            _settings_cache.jwt_secret == DEV_JWT_SECRET
        ):
            logger.warning("jwt_dev_secrets_in_use", environment=_settings_cache.environment.value)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
