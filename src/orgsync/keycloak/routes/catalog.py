"""Read API over the in-memory catalog.

Mirrors the subset of the catalog REST API that `CatalogClient` consumes, so
another service can point a `CatalogClient` at this one.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from orgsync.keycloak.catalog import InMemoryCatalog
from orgsync.keycloak.models import stringify_entity_ref

from .deps import ServiceState, get_state

router = APIRouter(prefix="/api/catalog", tags=["catalog"])


def get_memory_catalog(state: ServiceState = Depends(get_state)) -> InMemoryCatalog:
    catalog = state.memory_catalog
    if catalog is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Catalog API is only served in memory mode",
        )
    return catalog


def parse_filter(raw: str | None) -> dict[str, str]:
    """Parse `kind=user,metadata.annotations.keycloak.org/id=abc`."""
    filters: dict[str, str] = {}
    if not raw:
        return filters
    for part in raw.split(","):
        key, sep, value = part.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid filter expression: {part!r}")
        filters[key.strip()] = value.strip()
    return filters


@router.get("/entities/by-query")
async def query_entities(
    filter: str | None = Query(default=None),
    catalog: InMemoryCatalog = Depends(get_memory_catalog),
) -> dict[str, Any]:
    try:
        filters = parse_filter(filter)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    kind = filters.pop("kind", None)
    items = [e.to_document() for e in catalog.query(kind=kind, filters=filters)]
    return {"items": items, "totalItems": len(items)}


@router.get("/entities/by-name/{kind}/{namespace}/{name}")
async def get_entity_by_name(
    kind: str,
    namespace: str,
    name: str,
    catalog: InMemoryCatalog = Depends(get_memory_catalog),
) -> dict[str, Any]:
    entity = await catalog.get_entity_by_ref(stringify_entity_ref(kind, name, namespace))
    if entity is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No entity named {kind}:{namespace}/{name}",
        )
    return entity.to_document()
