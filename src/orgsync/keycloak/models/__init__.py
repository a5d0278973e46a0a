"""Domain models for the Keycloak organization sync."""

from .api import EventAccepted, HealthResponse, ProviderStatus
from .entity import (
    DeferredEntity,
    DeltaMutation,
    Entity,
    EntityMetadata,
    EntityMutation,
    EntityRelation,
    FullMutation,
    normalize_entity_ref,
    parse_entity_ref,
    stringify_entity_ref,
)
from .keycloak import KeycloakGroup, KeycloakUser
from .provider import (
    ProviderConfig,
    ScheduleConfig,
    parse_provider_configs,
    read_provider_configs,
)

__all__ = [
    "DeferredEntity",
    "DeltaMutation",
    "Entity",
    "EntityMetadata",
    "EntityMutation",
    "EntityRelation",
    "EventAccepted",
    "FullMutation",
    "HealthResponse",
    "KeycloakGroup",
    "KeycloakUser",
    "ProviderConfig",
    "ProviderStatus",
    "ScheduleConfig",
    "normalize_entity_ref",
    "parse_entity_ref",
    "parse_provider_configs",
    "read_provider_configs",
    "stringify_entity_ref",
]
