from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from playerdash.logging import get_logger

logger = get_logger(__name__)

# Wire constants for access credentials; not configurable.
JWT_ISSUER = "player-dashboard"
JWT_AUDIENCE = "player-dashboard-api"
MAX_ACCESS_TOKEN_TTL_SECONDS = 15 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and session core."""

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(2.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/playerdash", "SHARED_FS_ROOT")
    allowed_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "ALLOWED_ORIGINS",
        description="Comma-separated list of browser origins allowed by CORS",
    )
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # Credential lifetimes
    access_token_ttl_seconds: int = env_field(900, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    refresh_rotation_age_seconds: int = env_field(24 * 3600, "REFRESH_ROTATION_AGE_SECONDS")
    handoff_token_ttl_seconds: int = env_field(300, "HANDOFF_TOKEN_TTL_SECONDS")
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS")

    # Password hashing cost (argon2id); one tunable shared by every comparison
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Secrets for derived keys; fall back to jwt_secret when unset
    totp_encryption_key: str | None = env_field(None, "TOTP_ENCRYPTION_KEY")
    request_signing_secret: str | None = env_field(None, "REQUEST_SIGNING_SECRET")

    # Rate limits applied in front of the login and reset flows
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    reset_rate_limit: int = env_field(5, "RESET_RATE_LIMIT")
    mutation_rate_limit: int = env_field(60, "MUTATION_RATE_LIMIT")

    # CAPTCHA
    recaptcha_secret: str | None = env_field(None, "RECAPTCHA_SECRET")
    recaptcha_verify_url: str = env_field(
        "https://www.google.com/recaptcha/api/siteverify", "RECAPTCHA_VERIFY_URL"
    )
    recaptcha_timeout_seconds: float = env_field(5.0, "RECAPTCHA_TIMEOUT_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Display Beheer", "EMAIL_FROM_NAME")
    email_send_timeout_seconds: float = env_field(30.0, "EMAIL_SEND_TIMEOUT_SECONDS")

    # Push channel timers
    push_ping_interval_seconds: float = env_field(30.0, "PUSH_PING_INTERVAL_SECONDS")
    push_pong_timeout_seconds: float = env_field(5.0, "PUSH_PONG_TIMEOUT_SECONDS")
    push_reverify_interval_seconds: float = env_field(60.0, "PUSH_REVERIFY_INTERVAL_SECONDS")
    push_coalesce_window_seconds: float = env_field(1.0, "PUSH_COALESCE_WINDOW_SECONDS")

    scheduler_enabled: bool = env_field(True, "SCHEDULER_ENABLED")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviour: in-process cache, no scheduler",
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

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return value

    @field_validator("access_token_ttl_seconds")
    @classmethod
    def _cap_access_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be positive")
        if value > MAX_ACCESS_TOKEN_TTL_SECONDS:
            logger.warning(
                "access_token_ttl_capped",
                requested=value,
                cap=MAX_ACCESS_TOKEN_TTL_SECONDS,
            )
            return MAX_ACCESS_TOKEN_TTL_SECONDS
        return value

    @field_validator("handoff_token_ttl_seconds")
    @classmethod
    def _cap_handoff_ttl(cls, value: int) -> int:
        return max(1, min(value, 300))

    @model_validator(mode="after")
    def _require_persistence(self) -> "Settings":
        if not self.use_memory_store and not self.database_url:
            raise ValueError("DATABASE_URL must be set unless USE_MEMORY_STORE is enabled")
        return self

    @property
    def signing_secret(self) -> str:
        return self.request_signing_secret or self.jwt_secret

    @property
    def totp_key_material(self) -> str:
        return self.totp_encryption_key or self.jwt_secret


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
