"""Keycloak organization entity provider.

Ingests users and groups from a Keycloak realm into the catalog: a full crawl
on a fixed schedule, plus incremental updates driven by Keycloak admin events.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from orgsync.keycloak.catalog import CatalogReader, EntityProviderConnection
from orgsync.keycloak.client import KeycloakAdminClient
from orgsync.keycloak.constants import KEYCLOAK_TOPIC
from orgsync.keycloak.events import EventParams, EventsService
from orgsync.keycloak.mapper import with_locations
from orgsync.keycloak.metrics import (
    EVENTS_PROCESSED,
    FETCH_BATCH_FAILURES,
    FETCH_TASK_FAILURES,
    LAST_SYNC_ENTITIES,
)
from orgsync.keycloak.models import (
    DeferredEntity,
    DeltaMutation,
    Entity,
    FullMutation,
    ProviderConfig,
)
from orgsync.keycloak.read import read_keycloak_realm
from orgsync.keycloak.reconcile import EntityDelta, KeycloakReconciler
from orgsync.keycloak.scheduler import ScheduledTaskRunner, SchedulerService
from orgsync.keycloak.transformers import (
    GroupTransformer,
    TransformerRegistry,
    UserTransformer,
    load_transformer,
)

logger = structlog.get_logger(__name__)


class ProviderNotConnectedError(RuntimeError):
    """The provider was used before `connect` gave it a catalog connection."""


@dataclass
class SyncStatus:
    """Outcome of the most recent full sync."""

    last_started: datetime | None = None
    last_completed: datetime | None = None
    users: int = 0
    groups: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_started": self.last_started.isoformat() if self.last_started else None,
            "last_completed": self.last_completed.isoformat() if self.last_completed else None,
            "users": self.users,
            "groups": self.groups,
            "last_error": self.last_error,
        }


class KeycloakOrgEntityProvider:
    """Ingests org data (users and groups) from one Keycloak realm."""

    @classmethod
    def from_config(
        cls,
        configs: list[ProviderConfig],
        *,
        scheduler: SchedulerService,
        catalog: CatalogReader,
        events: EventsService | None = None,
        registry: TransformerRegistry | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        topic: str = KEYCLOAK_TOPIC,
    ) -> list["KeycloakOrgEntityProvider"]:
        """One provider per configured id.

        Transformers named in a provider's config take precedence over the
        ones registered on the shared registry.
        """
        providers = []
        for config in configs:
            user_transformer = (
                load_transformer(config.user_transformer)
                if config.user_transformer
                else registry.user_transformer if registry else None
            )
            group_transformer = (
                load_transformer(config.group_transformer)
                if config.group_transformer
                else registry.group_transformer if registry else None
            )
            providers.append(
                cls(
                    config=config,
                    task_runner=scheduler.create_scheduled_task_runner(config.schedule),
                    catalog=catalog,
                    events=events,
                    user_transformer=user_transformer,
                    group_transformer=group_transformer,
                    transport=transport,
                    topic=topic,
                )
            )
        return providers

    def __init__(
        self,
        *,
        config: ProviderConfig,
        task_runner: ScheduledTaskRunner,
        catalog: CatalogReader,
        events: EventsService | None = None,
        user_transformer: UserTransformer | None = None,
        group_transformer: GroupTransformer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        topic: str = KEYCLOAK_TOPIC,
    ):
        self._config = config
        self._topic = topic
        self._task_runner = task_runner
        self._events = events
        self._user_transformer = user_transformer
        self._group_transformer = group_transformer
        self._connection: EntityProviderConnection | None = None
        self._client = KeycloakAdminClient(config, transport=transport)
        self._reconciler = KeycloakReconciler(
            self._client,
            config,
            catalog,
            user_transformer,
            group_transformer,
            limiter=asyncio.Semaphore(config.max_concurrency),
        )
        self._event_lock = asyncio.Lock()
        self.status = SyncStatus()

    @property
    def id(self) -> str:
        return self._config.id

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def location_key(self) -> str:
        return f"keycloak-org-provider:{self._config.id}"

    @property
    def refresh_task_id(self) -> str:
        return f"{self.get_provider_name()}:refresh"

    @property
    def has_synced(self) -> bool:
        return self.status.last_completed is not None

    def get_provider_name(self) -> str:
        return f"KeycloakOrgEntityProvider:{self._config.id}"

    async def attach(self, connection: EntityProviderConnection) -> None:
        """Open the admin client and bind the catalog connection, nothing more."""
        self._connection = connection
        await self._client.open()

    async def connect(self, connection: EntityProviderConnection) -> None:
        """Attach to the catalog, subscribe to events and start the schedule."""
        await self.attach(connection)
        if self._events is not None:
            self._events.subscribe(
                id=self.get_provider_name(),
                topics=[self._topic],
                on_event=self._on_event,
            )
        await self._task_runner.run(
            self.refresh_task_id, self._refresh, on_timeout=self._on_refresh_timeout
        )

    async def close(self) -> None:
        if self._events is not None:
            self._events.unsubscribe(self.get_provider_name())
        await self._task_runner.stop()
        await self._client.close()

    async def refresh(self) -> None:
        """Run the scheduled full sync right away."""
        await self._task_runner.trigger(self.refresh_task_id)

    def _require_connection(self) -> EntityProviderConnection:
        if self._connection is None:
            raise ProviderNotConnectedError(f"{self.get_provider_name()} is not connected")
        return self._connection

    def _deferred(self, entity: Entity) -> DeferredEntity:
        return DeferredEntity(
            entity=with_locations(self._config.base_url, self._config.realm, entity),
            location_key=self.location_key,
        )

    # -------------------------------------------------------------------------
    # Incremental updates
    # -------------------------------------------------------------------------

    async def _on_event(self, params: EventParams) -> None:
        await self.handle_event(params.event_payload)

    async def handle_event(self, payload: dict[str, Any]) -> EntityDelta | None:
        """Reconcile one Keycloak admin event; events are processed one at a time."""
        connection = self._require_connection()
        event_type = str(payload.get("type"))
        log = logger.bind(provider=self.id, type=event_type)
        log.info("Received Keycloak event", resource_path=payload.get("resourcePath"))

        async with self._event_lock:
            try:
                delta = await self._reconciler.handle(payload)
                if delta is not None:
                    await connection.apply_mutation(
                        DeltaMutation(
                            added=[self._deferred(e) for e in delta.added],
                            removed=[self._deferred(e) for e in delta.removed],
                        )
                    )
            except Exception:
                EVENTS_PROCESSED.labels(provider=self.id, type=event_type, result="error").inc()
                raise

        result = "applied" if delta is not None else "ignored"
        EVENTS_PROCESSED.labels(provider=self.id, type=event_type, result=result).inc()
        log.info(
            "Processed Keycloak event",
            result=result,
            added=len(delta.added) if delta else 0,
            removed=len(delta.removed) if delta else 0,
        )
        return delta

    # -------------------------------------------------------------------------
    # Full sync
    # -------------------------------------------------------------------------

    async def read(self, task_instance_id: str | None = None, log: Any = None) -> None:
        """Run one complete ingestion loop."""
        connection = self._require_connection()
        log = log or logger.bind(provider=self.id, task_instance_id=task_instance_id)

        self.status.last_started = datetime.now(timezone.utc)
        started = time.monotonic()
        log.info("Reading Keycloak users and groups")

        snapshot = await read_keycloak_realm(
            self._client,
            self._config,
            asyncio.Semaphore(self._config.max_concurrency),
            FETCH_BATCH_FAILURES.labels(provider=self.id).inc,
            self._user_transformer,
            self._group_transformer,
        )

        summary = (
            f"{len(snapshot.users)} Keycloak users and {len(snapshot.groups)} Keycloak groups"
        )
        log.info(f"Read {summary} in {time.monotonic() - started:.1f} seconds. Committing...")
        started = time.monotonic()

        await connection.apply_mutation(
            FullMutation(
                entities=[self._deferred(e) for e in [*snapshot.users, *snapshot.groups]],
                location_key=self.location_key,
            )
        )

        log.info(f"Committed {summary} in {time.monotonic() - started:.1f} seconds.")
        self.status.last_completed = datetime.now(timezone.utc)
        self.status.users = len(snapshot.users)
        self.status.groups = len(snapshot.groups)
        self.status.last_error = None
        LAST_SYNC_ENTITIES.labels(provider=self.id, kind="user").set(len(snapshot.users))
        LAST_SYNC_ENTITIES.labels(provider=self.id, kind="group").set(len(snapshot.groups))

    async def _refresh(self) -> None:
        task_instance_id = str(uuid.uuid4())
        log = logger.bind(
            provider=self.id,
            task_id=self.refresh_task_id,
            task_instance_id=task_instance_id,
        )
        try:
            await self.read(task_instance_id=task_instance_id, log=log)
        except Exception as e:
            FETCH_TASK_FAILURES.labels(provider=self.id).inc()
            self.status.last_error = f"{type(e).__name__}: {e}"
            # Never log response bodies here.
            log.error(
                "Error while syncing Keycloak users and groups",
                error_name=type(e).__name__,
                error_message=str(e),
                status=getattr(e, "status_code", None),
            )

    def _on_refresh_timeout(self, timeout: float) -> None:
        FETCH_TASK_FAILURES.labels(provider=self.id).inc()
        self.status.last_error = f"TimeoutError: full sync exceeded {timeout:g} seconds"
        logger.error(
            "Timed out while syncing Keycloak users and groups",
            provider=self.id,
            task_id=self.refresh_task_id,
            timeout=timeout,
        )
