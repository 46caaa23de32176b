from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment mode; production tightens PKCE and secret handling."""

    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


class StoreBackend(str, Enum):
    """Backing store implementations for codes, token families and counters."""

    MEMORY = "memory"
    REDIS = "redis"
    POSTGRES = "postgres"


@dataclass(frozen=True)
class ClientRegistration:
    """A registered OAuth client.

    ``redirect_uris`` is matched exactly: no wildcard, prefix, or
    normalization (trailing slash, scheme and port all count).
    An empty ``scopes`` set means the client may request any scope.
    """

    client_id: str
    redirect_uris: frozenset[str] = field(default_factory=frozenset)
    scopes: frozenset[str] = field(default_factory=frozenset)

    def allows_redirect(self, redirect_uri: str) -> bool:
        return redirect_uri in self.redirect_uris

    def allows_scope(self, scope: frozenset[str]) -> bool:
        if not self.scopes:
            return True
        return scope <= self.scopes


def parse_clients(raw: Any) -> Dict[str, ClientRegistration]:
    """Parse the client registry from JSON text or an already-decoded mapping.

    Accepted shape::

        {"app1": {"redirect_uris": ["https://app.test/cb"], "scopes": ["read"]}}
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"AUTHCORE_CLIENTS is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("AUTHCORE_CLIENTS must be a JSON object keyed by client_id")

    clients: Dict[str, ClientRegistration] = {}
    for client_id, entry in raw.items():
        if isinstance(entry, ClientRegistration):
            clients[client_id] = entry
            continue
        if not isinstance(entry, dict):
            raise ValueError(f"client {client_id!r} must map to an object")
        redirect_uris = entry.get("redirect_uris") or []
        if isinstance(redirect_uris, str) or not all(
            isinstance(uri, str) and uri for uri in redirect_uris
        ):
            raise ValueError(f"client {client_id!r} redirect_uris must be a list of URIs")
        scopes = entry.get("scopes") or []
        clients[client_id] = ClientRegistration(
            client_id=client_id,
            redirect_uris=frozenset(redirect_uris),
            scopes=frozenset(scopes),
        )
    return clients


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    environment: Environment = env_field(Environment.PRODUCTION, "AUTHCORE_ENV")
    allow_plain_pkce: bool = env_field(
        False,
        "ALLOW_PLAIN_PKCE",
        description="Accept code_challenge_method=plain outside production",
    )
    clients: Dict[str, ClientRegistration] = env_field({}, "AUTHCORE_CLIENTS")

    jwt_secret: Optional[str] = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        10, "ACCESS_TOKEN_TTL_MINUTES", ge=1, le=60
    )
    refresh_token_ttl_days: int = env_field(14, "REFRESH_TOKEN_TTL_DAYS", ge=1, le=90)
    authorization_request_ttl_seconds: int = env_field(
        600, "AUTHORIZATION_REQUEST_TTL_SECONDS", ge=1, le=600
    )
    authorization_code_ttl_seconds: int = env_field(
        60, "AUTHORIZATION_CODE_TTL_SECONDS", ge=1, le=60
    )
    code_replay_retention_seconds: int = env_field(
        86400,
        "CODE_REPLAY_RETENTION_SECONDS",
        ge=0,
        description="How long a redeemed code is remembered so a replay can revoke its family",
    )
    clock_skew_seconds: int = env_field(30, "CLOCK_SKEW_SECONDS", ge=0, le=300)

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_window_seconds: int = env_field(900, "LOCKOUT_WINDOW_SECONDS", ge=1)
    lockout_duration_seconds: int = env_field(1800, "LOCKOUT_DURATION_SECONDS", ge=1)
    expose_retry_after: bool = env_field(False, "EXPOSE_RETRY_AFTER")

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "AUTHCORE_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Default deadline for a single store round trip",
    )

    sweep_interval_seconds: int = env_field(
        300,
        "SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Minimum gap between opportunistic sweeps of the in-memory store; 0 disables",
    )

    trust_subject_header: bool = env_field(
        False,
        "TRUST_SUBJECT_HEADER",
        description="Accept the authenticated subject from a header set by a trusted proxy",
    )
    subject_header: str = env_field("X-Authenticated-Subject", "SUBJECT_HEADER")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
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

    @property
    def plain_pkce_enabled(self) -> bool:
        return self.allow_plain_pkce and not self.is_production

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("clients", mode="before")
    @classmethod
    def _parse_clients(cls, value: Any) -> Dict[str, ClientRegistration]:
        return parse_clients(value)

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret and len(self.jwt_secret) >= _MIN_SECRET_LENGTH:
            return self
        if self.is_production:
            raise ValueError(
                f"JWT_SECRET must be set to at least {_MIN_SECRET_LENGTH} characters in production"
            )
        if self.jwt_secret:
            logger.warning(
                "jwt_secret_too_short_regenerated",
                environment=self.environment.value,
                min_length=_MIN_SECRET_LENGTH,
            )
        else:
            logger.warning(
                "jwt_secret_generated",
                environment=self.environment.value,
                message="Access tokens will not survive a restart; set JWT_SECRET",
            )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self


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
