"""Catalog entity documents and ingestion mutations."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from orgsync.keycloak.constants import API_VERSION, DEFAULT_NAMESPACE


class EntityRelation(BaseModel):
    """A typed edge from one entity to another."""

    type: str
    target_ref: str = Field(..., alias="targetRef")

    model_config = ConfigDict(populate_by_name=True)


class EntityMetadata(BaseModel):
    """Entity metadata block."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    namespace: str = DEFAULT_NAMESPACE
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    description: str | None = None


class Entity(BaseModel):
    """A catalog entity (User or Group).

    `spec` is kept as a plain mapping: transformers are free to add fields the
    sync itself does not know about.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_version: str = Field(default=API_VERSION, alias="apiVersion")
    kind: str
    metadata: EntityMetadata
    spec: dict[str, Any] = Field(default_factory=dict)
    relations: list[EntityRelation] = Field(default_factory=list)

    @property
    def ref(self) -> str:
        return stringify_entity_ref(self.kind, self.metadata.name, self.metadata.namespace)

    def annotation(self, key: str) -> str | None:
        return self.metadata.annotations.get(key)

    def relation_targets(self, relation_type: str) -> list[str]:
        return [r.target_ref for r in self.relations if r.type == relation_type]

    def to_document(self) -> dict[str, Any]:
        """Serialize to the catalog JSON shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


def stringify_entity_ref(kind: str, name: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Build a lower-cased `kind:namespace/name` reference."""
    return f"{kind}:{namespace or DEFAULT_NAMESPACE}/{name}".lower()


def parse_entity_ref(ref: str, default_kind: str | None = None) -> tuple[str, str, str]:
    """Split a full or short entity reference into (kind, namespace, name)."""
    kind = default_kind
    rest = ref
    if ":" in rest:
        kind, rest = rest.split(":", 1)
    namespace = DEFAULT_NAMESPACE
    if "/" in rest:
        namespace, rest = rest.split("/", 1)
    if not kind:
        raise ValueError(f"Entity reference '{ref}' has no kind")
    if not rest:
        raise ValueError(f"Entity reference '{ref}' has no name")
    return kind.lower(), namespace.lower(), rest.lower()


def normalize_entity_ref(ref: str, default_kind: str) -> str:
    kind, namespace, name = parse_entity_ref(ref, default_kind)
    return f"{kind}:{namespace}/{name}"


class DeferredEntity(BaseModel):
    """An entity paired with the location key of the provider that owns it."""

    entity: Entity
    location_key: str | None = Field(default=None, alias="locationKey")

    model_config = ConfigDict(populate_by_name=True)


class FullMutation(BaseModel):
    """Replace every entity owned by the provider."""

    type: str = "full"
    entities: list[DeferredEntity] = Field(default_factory=list)
    location_key: str | None = Field(default=None, alias="locationKey")

    model_config = ConfigDict(populate_by_name=True)


class DeltaMutation(BaseModel):
    """Remove, then add, a set of entities."""

    type: str = "delta"
    added: list[DeferredEntity] = Field(default_factory=list)
    removed: list[DeferredEntity] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


EntityMutation = FullMutation | DeltaMutation
