from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from citadel.logging import get_logger

logger = get_logger(__name__)

_PRODUCTION_ENVS = {"production", "prod"}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/citadel", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    app_env: str = env_field(
        "development",
        "APP_ENV",
        description="Deployment environment; production/prod enables strict cookies",
    )
    tls_enabled: bool = env_field(False, "TLS_ENABLED")
    app_base_url: str = env_field("http://localhost:8080", "APP_BASE_URL")
    build_sha: str = env_field("dev", "BUILD_SHA")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("citadel", "JWT_ISSUER")
    jwt_audience: str = env_field("citadel-api", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(300, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")

    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors and relaxed startup checks",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peer addresses or CIDRs whose X-Forwarded-For / X-Real-IP headers are honoured",
    )

    # Password reset anti-automation
    honeypot_delay_seconds: float = env_field(2.0, "HONEYPOT_DELAY_SECONDS")
    reset_min_form_seconds: int = env_field(2, "RESET_MIN_FORM_SECONDS")
    reset_max_form_age_seconds: int = env_field(30 * 60, "RESET_MAX_FORM_AGE_SECONDS")
    reset_email_limit_per_hour: int = env_field(3, "RESET_EMAIL_LIMIT_PER_HOUR")
    reset_ip_limit_per_hour: int = env_field(10, "RESET_IP_LIMIT_PER_HOUR")
    reset_attempt_prune_interval_seconds: int = env_field(
        3600, "RESET_ATTEMPT_PRUNE_INTERVAL_SECONDS"
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Citadel", "EMAIL_FROM_NAME")

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
        # GO_ENV is honoured for deployments that predate APP_ENV
        if "app_env" not in merged:
            legacy = os.environ.get("GO_ENV") or env_file_values.get("GO_ENV")
            if legacy:
                merged["app_env"] = legacy
        return cls(**merged)

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("app_env")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside of TEST_MODE")
        # Ephemeral secret; tokens do not survive a restart in test mode
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_generated_for_test_mode")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env in _PRODUCTION_ENVS or self.tls_enabled


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
