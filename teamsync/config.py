from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from teamsync.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings, read once at startup and handed to each component."""

    database_url: str = env_field(
        "postgresql://localhost:5432/teamsync", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for MemoryStore snapshots; unset keeps state in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    session_secret: str | None = env_field(None, "SESSION_SECRET")
    jwt_issuer: str = env_field("team-sync-app", "JWT_ISSUER")
    jwt_audience: str = env_field("team-sync-users", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(
        24 * 60, "TOKEN_TTL_MINUTES", description="Lifetime of the signed auth token"
    )
    session_ttl_minutes: int = env_field(
        24 * 60, "SESSION_TTL_MINUTES", description="Lifetime of server-side sessions"
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")

    session_cookie_name: str = env_field("session_id", "SESSION_COOKIE_NAME")
    token_cookie_name: str = env_field("auth_token", "TOKEN_COOKIE_NAME")
    profile_cookie_name: str = env_field("auth_user", "PROFILE_COOKIE_NAME")
    cross_origin_cookies: bool = env_field(
        False,
        "CROSS_ORIGIN_COOKIES",
        description="Frontend is served from another site; cookies use SameSite=None and Secure",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

    frontend_origin: str = env_field("http://localhost:5173", "FRONTEND_ORIGIN")
    frontend_oauth_callback_path: str = env_field(
        "/google/oauth/callback", "FRONTEND_OAUTH_CALLBACK_PATH"
    )
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_base_url: str = env_field(
        "http://localhost:8000/v1/auth/oauth", "OAUTH_REDIRECT_BASE_URL"
    )

    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    default_workspace_name: str = env_field("My Workspace", "DEFAULT_WORKSPACE_NAME")

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

    @field_validator("redis_url", "cookie_domain", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("token_ttl_minutes", "session_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TTL must be a positive number of minutes")
        return value

    @model_validator(mode="after")
    def _ensure_session_secret(self) -> "Settings":
        if self.session_secret:
            if len(self.session_secret) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"SESSION_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("SESSION_SECRET is required outside TEST_MODE")
        logger.warning(
            "session_secret_generated",
            message="SESSION_SECRET not set; generated an ephemeral secret for TEST_MODE",
        )
        self.session_secret = secrets.token_urlsafe(48)
        return self

    @property
    def cookie_samesite(self) -> str:
        return "none" if self.cross_origin_cookies else "strict"

    @property
    def cookies_secure(self) -> bool:
        # browsers drop SameSite=None cookies that are not Secure
        return True if self.cross_origin_cookies else self.cookie_secure


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
