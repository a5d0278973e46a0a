"""Service configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ORGSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service
    service_name: str = "orgsync-keycloak"
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool | None = None  # Defaults to JSON outside development

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Providers
    providers_file: Path = Field(default=Path("providers.yaml"))

    # Catalog
    catalog_mode: Literal["memory", "remote"] = "memory"
    catalog_url: str | None = None  # e.g. http://backstage:7007/api/catalog
    catalog_token: str | None = None
    ingest_url: str | None = None

    # Events
    event_topic: str = "keycloak"
    webhook_secret: str | None = None  # If set, require X-Keycloak-Signature

    @property
    def json_logs(self) -> bool:
        if self.log_json is not None:
            return self.log_json
        return self.environment != "development"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Alias for the module-level settings singleton."""
    return settings
