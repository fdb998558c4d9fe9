from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from prodauth.logging import get_logger

logger = get_logger(__name__)


class PermissionSource(str, Enum):
    """Where the authorization gate reads permission levels from.

    - SNAPSHOT: the map embedded in the access token at issue time
    - LIVE: re-resolved from the credential store on every check
    """

    SNAPSHOT = "snapshot"
    LIVE = "live"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/prodauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/prodauth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow generated secrets and other deterministic test behaviors.",
    )
    environment: str = env_field("development", "ENVIRONMENT")
    access_token_secret: str | None = env_field(None, "ACCESS_TOKEN_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("prodauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        30, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_days: int = env_field(
        14, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime in days"
    )
    frontend_origin: str = env_field("http://localhost:3000", "FRONTEND_ORIGIN")
    cookie_secure: bool | None = env_field(
        None,
        "COOKIE_SECURE",
        description="Force the Secure cookie attribute; defaults to ENVIRONMENT == production",
    )
    refresh_cookie_name: str = env_field("refreshToken", "REFRESH_COOKIE_NAME")
    permission_source: PermissionSource = env_field(
        PermissionSource.SNAPSHOT,
        "PERMISSION_SOURCE",
        description="snapshot: trust the token's permission map; live: re-resolve per request",
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

    @field_validator("permission_source")
    @classmethod
    def _validate_permission_source(cls, value: PermissionSource) -> PermissionSource:
        return PermissionSource(value)

    @field_validator("access_token_ttl_minutes", "refresh_token_ttl_days")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        if not self.access_token_secret or not self.refresh_token_secret:
            if not self.test_mode:
                raise ValueError(
                    "ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be set outside TEST_MODE"
                )
            import secrets

            logger.warning("token_secrets_generated", reason="test_mode")
            self.access_token_secret = self.access_token_secret or secrets.token_urlsafe(64)
            self.refresh_token_secret = self.refresh_token_secret or secrets.token_urlsafe(64)
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
        return self

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.environment.lower() == "production"

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60


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
