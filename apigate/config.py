from __future__ import annotations

import os
from enum import Enum
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class AppEnv(str, Enum):
    """Deployment environments recognised by the server."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class RateLimitBackend(str, Enum):
    """Where fixed-window counters live.

    ``memory`` is only correct for single-process deployments.
    """

    REDIS = "redis"
    MEMORY = "memory"


# Loopback origins of the web client, allowed in development only
_DEV_ORIGINS = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class ConfigError(Exception):
    """Startup configuration is incomplete or invalid.

    ``problems`` lists every missing or invalid key, not only the first one.
    """

    def __init__(self, problems: List[str]) -> None:
        self.problems = problems
        super().__init__(
            "invalid configuration:\n" + "\n".join(f"  - {p}" for p in problems)
        )


class Settings(BaseModel):
    """Runtime settings for the request-lifecycle core."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT", ge=1, le=65535)
    api_prefix: str = env_field("/api/v1", "API_PREFIX")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")
    log_request_headers: bool = env_field(
        False,
        "LOG_REQUEST_HEADERS",
        description="Include redacted request headers in request_completed logs",
    )

    redis_url: Optional[str] = env_field(None, "REDIS_URL", json_schema_extra={"required": True})
    identity_provider_url: Optional[str] = env_field(
        None, "IDENTITY_PROVIDER_URL", json_schema_extra={"required": True}
    )
    identity_provider_key: Optional[str] = env_field(
        None, "IDENTITY_PROVIDER_KEY", json_schema_extra={"required": True}
    )
    identity_provider_timeout_seconds: float = env_field(5.0, "IDENTITY_PROVIDER_TIMEOUT_SECONDS", gt=0)
    cors_origins: Optional[List[str]] = env_field(
        None, "CORS_ORIGINS", json_schema_extra={"required": True}
    )
    trust_proxy: bool = env_field(
        False, "TRUST_PROXY", description="Derive client IP from X-Forwarded-For"
    )

    max_body_bytes: int = env_field(10 * 1024 * 1024, "MAX_BODY_BYTES", ge=0)
    rate_limit_backend: RateLimitBackend = env_field(RateLimitBackend.REDIS, "RATE_LIMIT_BACKEND")
    rate_limit_prefix: str = env_field("apigate:rl:", "RATE_LIMIT_PREFIX")
    redis_socket_timeout_seconds: float = env_field(2.0, "REDIS_SOCKET_TIMEOUT_SECONDS", gt=0)

    shutdown_timeout_seconds: float = env_field(10.0, "SHUTDOWN_TIMEOUT_SECONDS", gt=0)
    shutdown_step_timeout_seconds: float = env_field(2.0, "SHUTDOWN_STEP_TIMEOUT_SECONDS", gt=0)
    health_check_timeout_seconds: float = env_field(3.0, "HEALTH_CHECK_TIMEOUT_SECONDS", gt=0)
    health_critical_dependencies: List[str] = env_field(
        ["identity_provider"], "HEALTH_CRITICAL_DEPENDENCIES"
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def env_names(cls) -> dict[str, str]:
        names = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            names[name] = env_key or name.upper()
        return names

    @classmethod
    def required_fields(cls) -> List[str]:
        return [
            name
            for name, field in cls.model_fields.items()
            if isinstance(field.json_schema_extra, dict) and field.json_schema_extra.get("required")
        ]

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, env_name in cls.env_names().items():
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_file_values.get(env_name) is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_origins", "health_critical_dependencies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return "" if value == "/" else value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("redis_url")
    @classmethod
    def _validate_redis_url(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("must use the redis://, rediss:// or unix:// scheme")
        return value

    @field_validator("identity_provider_url")
    @classmethod
    def _validate_provider_url(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/") if value else value

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnv.DEVELOPMENT

    def allowed_origins(self) -> List[str]:
        origins = list(self.cors_origins or [])
        if self.is_development:
            origins.extend(o for o in _DEV_ORIGINS if o not in origins)
        return origins

    def missing_required(self) -> List[str]:
        env_names = self.env_names()
        missing = []
        for name in self.required_fields():
            if not getattr(self, name):
                missing.append(env_names[name])
        return missing


def load_settings() -> Settings:
    """Read and validate every setting at once.

    Raises ``ConfigError`` naming every missing required key and every key
    whose value failed validation.
    """
    env_names = Settings.env_names()
    try:
        settings = Settings.from_env()
    except ValidationError as exc:
        problems = []
        invalid = set()
        for err in exc.errors():
            field = str(err["loc"][0]) if err.get("loc") else "?"
            invalid.add(field)
            problems.append(f"{env_names.get(field, field)}: {err['msg']}")
        env_file_values = dotenv_values(".env")
        for name in Settings.required_fields():
            env_name = env_names[name]
            if name not in invalid and not (
                os.environ.get(env_name) or env_file_values.get(env_name)
            ):
                problems.append(f"{env_name}: missing required value")
        raise ConfigError(sorted(problems)) from exc

    missing = settings.missing_required()
    if missing:
        raise ConfigError(sorted(f"{key}: missing required value" for key in missing))
    return settings


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
