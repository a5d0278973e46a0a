"""Catalog connections.

The provider writes through an `EntityProviderConnection` (full or delta
mutations) and reads prior state through a `CatalogReader`. `InMemoryCatalog`
implements both and backs the standalone service; `CatalogClient` and
`HttpEntityProviderConnection` talk to a remote catalog instead.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog

from orgsync.keycloak.models import (
    DeltaMutation,
    Entity,
    EntityMutation,
    FullMutation,
    parse_entity_ref,
)

logger = structlog.get_logger(__name__)


class CatalogError(Exception):
    """Catalog API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EntityProviderConnection(Protocol):
    async def apply_mutation(self, mutation: EntityMutation) -> None: ...


class CatalogReader(Protocol):
    async def get_entities_by_annotation(
        self, kind: str, annotation: str, value: str
    ) -> list[Entity]: ...

    async def get_entity_by_ref(self, ref: str) -> Entity | None: ...


class InMemoryCatalog:
    """Entity store keyed by entity ref, tracking the owning location key."""

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._owners: dict[str, str | None] = {}
        self._lock = asyncio.Lock()
        self._mutations = 0

    @property
    def mutation_count(self) -> int:
        return self._mutations

    def __len__(self) -> int:
        return len(self._entities)

    async def apply_mutation(self, mutation: EntityMutation) -> None:
        async with self._lock:
            if isinstance(mutation, FullMutation):
                keys = {mutation.location_key} | {d.location_key for d in mutation.entities}
                stale = [ref for ref, owner in self._owners.items() if owner in keys]
                for ref in stale:
                    self._drop(ref)
                for deferred in mutation.entities:
                    self._store(deferred.entity, deferred.location_key)
            elif isinstance(mutation, DeltaMutation):
                for deferred in mutation.removed:
                    self._drop(deferred.entity.ref)
                for deferred in mutation.added:
                    self._store(deferred.entity, deferred.location_key)
            else:
                raise TypeError(f"Unsupported mutation: {type(mutation).__name__}")
            self._mutations += 1

        logger.debug(
            "Applied catalog mutation",
            type=mutation.type,
            entity_count=len(self._entities),
        )

    def _store(self, entity: Entity, location_key: str | None) -> None:
        self._entities[entity.ref] = entity.model_copy(deep=True)
        self._owners[entity.ref] = location_key

    def _drop(self, ref: str) -> None:
        self._entities.pop(ref, None)
        self._owners.pop(ref, None)

    async def get_entities_by_annotation(
        self, kind: str, annotation: str, value: str
    ) -> list[Entity]:
        return [
            e.model_copy(deep=True)
            for e in self._entities.values()
            if e.kind.lower() == kind.lower() and e.annotation(annotation) == value
        ]

    async def get_entity_by_ref(self, ref: str) -> Entity | None:
        kind, namespace, name = parse_entity_ref(ref)
        entity = self._entities.get(f"{kind}:{namespace}/{name}")
        return entity.model_copy(deep=True) if entity else None

    def query(
        self,
        kind: str | None = None,
        filters: dict[str, str] | None = None,
    ) -> list[Entity]:
        """Entities matching a kind and dotted-path equality filters."""
        results = []
        for entity in self._entities.values():
            if kind and entity.kind.lower() != kind.lower():
                continue
            document = entity.to_document()
            if all(_match(document, path, value) for path, value in (filters or {}).items()):
                results.append(entity)
        return sorted(results, key=lambda e: e.ref)


def _match(document: dict[str, Any], path: str, expected: str) -> bool:
    """Match a `metadata.annotations.keycloak.org/id` style path.

    Annotation keys contain dots, so after `metadata.annotations.` the rest of
    the path is taken as the key.
    """
    for prefix in ("metadata.annotations.", "metadata.labels."):
        if path.startswith(prefix):
            bucket = document.get("metadata", {}).get(prefix.split(".")[1], {})
            return str(bucket.get(path[len(prefix):], "")).lower() == expected.lower()

    node: Any = document
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return False
        node = node[part]
    return str(node).lower() == expected.lower()


class CatalogClient:
    """Remote catalog reader over the catalog REST API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_entities_by_annotation(
        self, kind: str, annotation: str, value: str
    ) -> list[Entity]:
        response = await self._client.get(
            "/entities/by-query",
            params={"filter": f"kind={kind},metadata.annotations.{annotation}={value}"},
        )
        if response.status_code != 200:
            raise CatalogError(
                f"Entity query failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return [Entity.model_validate(item) for item in response.json().get("items", [])]

    async def get_entity_by_ref(self, ref: str) -> Entity | None:
        kind, namespace, name = parse_entity_ref(ref)
        response = await self._client.get(
            f"/entities/by-name/{quote(kind)}/{quote(namespace)}/{quote(name)}"
        )
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise CatalogError(
                f"Entity lookup for {ref} failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return Entity.model_validate(response.json())


class HttpEntityProviderConnection:
    """Forwards mutations as JSON to a remote ingestion endpoint."""

    def __init__(
        self,
        ingest_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = ingest_url
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def apply_mutation(self, mutation: EntityMutation) -> None:
        payload = mutation.model_dump(by_alias=True, exclude_none=True)
        response = await self._client.post(self._url, json=payload)
        if response.status_code not in (200, 201, 202, 204):
            raise CatalogError(
                f"Ingestion of {mutation.type} mutation failed with status {response.status_code}",
                status_code=response.status_code,
            )
