from __future__ import annotations

from dataclasses import dataclass, field

import httpx
import structlog

from orgsync.keycloak.catalog import (
    CatalogClient,
    CatalogReader,
    EntityProviderConnection,
    HttpEntityProviderConnection,
    InMemoryCatalog,
)
from orgsync.keycloak.config import Settings
from orgsync.keycloak.events import EventsService, KeycloakEventRouter
from orgsync.keycloak.models import ProviderConfig, read_provider_configs
from orgsync.keycloak.provider import KeycloakOrgEntityProvider
from orgsync.keycloak.scheduler import SchedulerService
from orgsync.keycloak.transformers import TransformerRegistry

logger = structlog.get_logger(__name__)


@dataclass
class ServiceState:
    """Everything the HTTP layer needs, wired once at startup."""

    settings: Settings
    catalog: CatalogReader
    connection: EntityProviderConnection
    events: EventsService
    router: KeycloakEventRouter
    scheduler: SchedulerService
    providers: dict[str, KeycloakOrgEntityProvider] = field(default_factory=dict)

    @property
    def memory_catalog(self) -> InMemoryCatalog | None:
        return self.catalog if isinstance(self.catalog, InMemoryCatalog) else None


_state: ServiceState | None = None
registry = TransformerRegistry()


def _build_catalog(settings: Settings) -> tuple[CatalogReader, EntityProviderConnection]:
    if settings.catalog_mode == "memory":
        catalog = InMemoryCatalog()
        return catalog, catalog

    if not settings.catalog_url or not settings.ingest_url:
        raise ValueError("Remote catalog mode requires catalog_url and ingest_url")
    return (
        CatalogClient(settings.catalog_url, token=settings.catalog_token),
        HttpEntityProviderConnection(settings.ingest_url, token=settings.catalog_token),
    )


async def init_deps(
    settings: Settings,
    configs: list[ProviderConfig] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ServiceState:
    """Build and connect every provider."""
    global _state

    if configs is None:
        configs = read_provider_configs(settings.providers_file)

    catalog, connection = _build_catalog(settings)
    events = EventsService()
    scheduler = SchedulerService()
    providers = KeycloakOrgEntityProvider.from_config(
        configs,
        scheduler=scheduler,
        catalog=catalog,
        events=events,
        registry=registry,
        transport=transport,
        topic=settings.event_topic,
    )

    state = ServiceState(
        settings=settings,
        catalog=catalog,
        connection=connection,
        events=events,
        router=KeycloakEventRouter(events, topic=settings.event_topic),
        scheduler=scheduler,
        providers={p.id: p for p in providers},
    )
    for provider in providers:
        await provider.connect(connection)
        logger.info("Connected provider", provider=provider.get_provider_name())

    _state = state
    return state


async def shutdown_deps() -> None:
    global _state
    if _state is None:
        return

    state, _state = _state, None
    for provider in state.providers.values():
        await provider.close()
    await state.scheduler.shutdown()
    for resource in (state.catalog, state.connection):
        if isinstance(resource, (CatalogClient, HttpEntityProviderConnection)):
            await resource.close()


def get_state() -> ServiceState:
    if _state is None:
        raise RuntimeError("Service not initialized")
    return _state
