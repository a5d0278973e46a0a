"""Response models for the HTTP API."""

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    providers: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class ProviderStatus(BaseModel):
    id: str
    name: str
    base_url: str
    realm: str
    synced: bool
    last_started: str | None = None
    last_completed: str | None = None
    users: int = 0
    groups: int = 0
    last_error: str | None = None


class EventAccepted(BaseModel):
    """Acknowledgement for a routed Keycloak admin event."""

    type: str
    resource_path: str
    topic: str
