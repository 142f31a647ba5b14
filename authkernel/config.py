from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authkernel.logging import get_logger
from authkernel.service.errors import ConfigurationError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
    "w": 7 * 24 * 60 * 60,
}


def parse_duration(value: str | int) -> timedelta:
    """Parse ``"24h"``, ``"15m"``, ``"7d"``, ``"30s"`` or bare seconds."""
    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(value or "")
        if not match:
            raise ConfigurationError(f"invalid duration: {value!r}")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds <= 0:
        raise ConfigurationError(f"duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings read from the environment with ``.env`` fallback."""

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("authkernel", "JWT_ISSUER")
    jwt_audience: str = env_field("authkernel-clients", "JWT_AUDIENCE")
    access_token_expires_in: str = env_field(
        "24h",
        "JWT_EXPIRES_IN",
        description="Access token lifetime, e.g. 24h, 15m, 3600",
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    database_url: str = env_field(
        "postgresql://localhost:5432/authkernel", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax infrastructure requirements (memory rate limiting) for tests",
    )

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "ALLOWED_ORIGINS",
        description="Comma-separated list of browser origins allowed by CORS",
    )
    trust_proxy_headers: bool = env_field(False, "TRUST_PROXY_HEADERS")
    max_body_bytes: int = env_field(
        1024 * 1024,
        "MAX_BODY_BYTES",
        description="Largest request body accepted before a 413 is returned",
    )

    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_max_requests: int = env_field(5, "AUTH_RATE_LIMIT_MAX_REQUESTS")
    api_rate_limit_window_seconds: int = env_field(15 * 60, "API_RATE_LIMIT_WINDOW_SECONDS")
    api_rate_limit_max_requests: int = env_field(100, "API_RATE_LIMIT_MAX_REQUESTS")
    strict_rate_limit_window_seconds: int = env_field(60 * 60, "STRICT_RATE_LIMIT_WINDOW_SECONDS")
    strict_rate_limit_max_requests: int = env_field(10, "STRICT_RATE_LIMIT_MAX_REQUESTS")

    token_sweep_interval_seconds: int = env_field(
        3600,
        "TOKEN_SWEEP_INTERVAL_SECONDS",
        description="How often expired refresh tokens are purged; 0 disables",
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("access_token_expires_in")
    @classmethod
    def _validate_expires_in(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("refresh_token_ttl_days")
    @classmethod
    def _validate_refresh_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("REFRESH_TOKEN_TTL_DAYS must be positive")
        return value

    @property
    def access_token_ttl(self) -> timedelta:
        return parse_duration(self.access_token_expires_in)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(days=self.refresh_token_ttl_days)

    def require_signing_secrets(self) -> None:
        """Fail fast unless both signing secrets are present and long enough.

        Tokens signed with a missing or short key are never issued; the
        process must not start serving traffic in that state.
        """
        for env_name, value in (
            ("JWT_SECRET", self.jwt_secret),
            ("REFRESH_TOKEN_SECRET", self.refresh_token_secret),
        ):
            if not value:
                logger.error("signing_secret_missing", setting=env_name)
                raise ConfigurationError(f"{env_name} must be set")
            if len(value) < MIN_SECRET_LENGTH:
                logger.error("signing_secret_too_short", setting=env_name)
                raise ConfigurationError(
                    f"{env_name} must be at least {MIN_SECRET_LENGTH} characters long"
                )
        if self.jwt_secret == self.refresh_token_secret:
            logger.warning("signing_secrets_identical")


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
