"""Pydantic models for Keycloak provider configuration.

Example YAML structure:
    providers:
      default:
        baseUrl: https://keycloak.example.com
        loginRealm: master
        realm: acme
        clientId: backstage
        clientSecret: ${KEYCLOAK_CLIENT_SECRET}   # supports env vars
        userQuerySize: 100
        groupQuerySize: 100
        maxConcurrency: 20
        schedule:
          frequency: 86400
          timeout: 180
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from orgsync.keycloak.constants import KEYCLOAK_BRIEF_REPRESENTATION_DEFAULT


# Pattern for ${VAR} and ${VAR:-default} interpolation
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")


def _resolve_env_str(s: str) -> str:
    """Resolve environment variable placeholders in a string."""
    def repl(m: re.Match[str]) -> str:
        var = m.group(1)
        default = m.group(3)
        val = os.getenv(var)
        if val is None or val == "":
            return default if default is not None else ""
        return val

    # Resolve repeatedly until stable (handles nested defaults)
    prev = None
    cur = s
    for _ in range(5):
        if cur == prev:
            break
        prev = cur
        cur = _ENV_PATTERN.sub(repl, cur)
    return cur


def _resolve_env(value: Any) -> Any:
    """Recursively resolve environment variables in a data structure."""
    if isinstance(value, str):
        return _resolve_env_str(value)
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    return value


class ScheduleConfig(BaseModel):
    """Cadence of the full realm sync."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    frequency: float = Field(
        default=24 * 60 * 60,
        gt=0,
        description="Seconds between two full syncs",
    )
    timeout: float = Field(
        default=3 * 60,
        gt=0,
        description="Seconds before a running full sync is abandoned",
    )
    initial_delay: float = Field(
        default=0,
        ge=0,
        description="Seconds to wait before the first run",
    )


class ProviderConfig(BaseModel):
    """Configuration for one Keycloak organization provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., description="Stable provider identifier")
    base_url: str = Field(..., description="Keycloak base URL")
    login_realm: str = Field(default="master", description="Realm used to authenticate")
    realm: str = Field(default="master", description="Realm to read users and groups from")

    # Client credentials (preferred) or admin user
    client_id: str | None = None
    client_secret: str | None = None
    username: str | None = None
    password: str | None = None

    user_query_size: int = Field(default=100, ge=1, description="Page size for users")
    group_query_size: int = Field(default=100, ge=1, description="Page size for groups")
    max_concurrency: int = Field(default=20, ge=1, description="Parallel fetch limit")
    brief_representation: bool = KEYCLOAK_BRIEF_REPRESENTATION_DEFAULT
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    # Dotted paths ("package.module:attr") to transformer callables
    user_transformer: str | None = None
    group_transformer: str | None = None

    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)

    @model_validator(mode="after")
    def check_credentials(self) -> "ProviderConfig":
        if self.has_client_credentials or self.has_user_credentials:
            return self
        raise ValueError(
            f"Keycloak provider '{self.id}' requires clientId and clientSecret, "
            "or username and password"
        )

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @property
    def has_user_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def token_url(self) -> str:
        return (
            f"{self.base_url.rstrip('/')}/realms/{self.login_realm}"
            "/protocol/openid-connect/token"
        )

    @property
    def admin_url(self) -> str:
        """Admin API URL for the synced realm."""
        return f"{self.base_url.rstrip('/')}/admin/realms/{self.realm}"


def parse_provider_configs(raw: dict[str, Any]) -> list[ProviderConfig]:
    """Build provider configs from an already-loaded mapping."""
    providers = raw.get("providers", {})
    if not isinstance(providers, dict):
        raise ValueError("'providers' must be a mapping of provider id to config")

    configs = []
    for provider_id, body in providers.items():
        if not isinstance(body, dict):
            raise ValueError(f"Provider '{provider_id}' must be a mapping")
        configs.append(ProviderConfig.model_validate({**body, "id": provider_id}))
    return configs


def read_provider_configs(path: str | Path) -> list[ProviderConfig]:
    """Load provider configurations from a YAML file with env var interpolation."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    raw = yaml.safe_load(p.read_text())
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must be a YAML mapping: {path}")

    return parse_provider_configs(_resolve_env(raw))
