from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_SECRET_BYTES = 32


@dataclass(frozen=True)
class OAuthClientConfig:
    """Client credentials and callback settings for one OAuth provider."""

    client_id: Optional[str]
    client_secret: Optional[str]
    redirect_uri: str
    scopes: List[str] = field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.client_id)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_scopes(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part for part in value.replace(",", " ").split() if part]
    return [str(part) for part in value if str(part)]


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("trustcore", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "ACCESS_TOKEN_TTL_SECONDS",
        gt=0,
        description="Access token lifetime; also used as the session lifetime",
    )
    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_google_redirect_uri: str = env_field(
        "http://localhost:4000/auth/google/callback", "OAUTH_GOOGLE_REDIRECT_URI"
    )
    oauth_google_scopes: List[str] = env_field(
        ["email", "profile"], "OAUTH_GOOGLE_SCOPES"
    )
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_github_redirect_uri: str = env_field(
        "http://localhost:4000/auth/github/callback", "OAUTH_GITHUB_REDIRECT_URI"
    )
    oauth_github_scopes: List[str] = env_field(["user:email"], "OAUTH_GITHUB_SCOPES")
    oauth_state_ttl_seconds: int = env_field(10 * 60, "OAUTH_STATE_TTL_SECONDS", gt=0)
    oauth_http_timeout_seconds: float = env_field(
        5.0,
        "OAUTH_HTTP_TIMEOUT_SECONDS",
        gt=0,
        description="Connect/read/write timeout for provider endpoints",
    )
    frontend_success_url: str = env_field(
        "http://localhost:3000/auth/success", "FRONTEND_SUCCESS_URL"
    )
    frontend_error_url: str = env_field(
        "http://localhost:3000/auth/error", "FRONTEND_ERROR_URL"
    )
    # Security settings
    password_hash_cost: int = env_field(
        3,
        "PASSWORD_HASH_COST",
        ge=1,
        description="Argon2 time cost used when hashing new passwords",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    # Store settings; an empty REDIS_URL selects the in-process store
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT_SECONDS", gt=0)
    store_sweep_interval_seconds: float = env_field(
        60.0, "STORE_SWEEP_INTERVAL_SECONDS", gt=0
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET is required")
        if len(value.encode()) < MIN_SECRET_BYTES:
            raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes")
        return value

    @field_validator("oauth_google_scopes", "oauth_github_scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, value: Any) -> List[str]:
        return _split_scopes(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    def oauth_client(self, provider: str) -> OAuthClientConfig:
        """Return the client configuration for a provider tag."""
        if provider == "google":
            return OAuthClientConfig(
                client_id=self.oauth_google_client_id,
                client_secret=self.oauth_google_client_secret,
                redirect_uri=self.oauth_google_redirect_uri,
                scopes=list(self.oauth_google_scopes),
            )
        if provider == "github":
            return OAuthClientConfig(
                client_id=self.oauth_github_client_id,
                client_secret=self.oauth_github_client_secret,
                redirect_uri=self.oauth_github_redirect_uri,
                scopes=list(self.oauth_github_scopes),
            )
        raise ValueError(f"Unsupported OAuth provider: {provider}")


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
