"""Incremental reconciliation of Keycloak admin events against the catalog.

Each handler reads the affected entities' previous state from the catalog,
re-reads the current state from Keycloak, and returns the entities to remove
and to add. Entities are referenced by name across the org graph (a user's
`memberOf`, a group's `parent`, `children` and `members`), so a change to one
record usually means re-mapping its neighbours as well.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError

from orgsync.keycloak.catalog import CatalogReader
from orgsync.keycloak.client import KeycloakAdminClient
from orgsync.keycloak.constants import (
    GROUP_TOPICS,
    KEYCLOAK_ID_ANNOTATION,
    MEMBERSHIP_TOPICS,
    RELATION_CHILD_OF,
    RELATION_HAS_MEMBER,
    RELATION_MEMBER_OF,
    RELATION_PARENT_OF,
    TOPIC_GROUP_CREATE,
    TOPIC_GROUP_DELETE,
    TOPIC_USER_CREATE,
    TOPIC_USER_DELETE,
    USER_TOPICS,
)
from orgsync.keycloak.mapper import parse_user
from orgsync.keycloak.models import (
    Entity,
    KeycloakGroup,
    KeycloakUser,
    ProviderConfig,
    stringify_entity_ref,
)
from orgsync.keycloak.read import ParsedGroup, get_all_user_groups, parse_groups
from orgsync.keycloak.transformers import GroupTransformer, UserTransformer

logger = structlog.get_logger(__name__)


@dataclass
class EntityDelta:
    """Entities to remove from and add to the catalog for one event."""

    added: list[Entity] = field(default_factory=list)
    removed: list[Entity] = field(default_factory=list)

    def add(self, *entities: Entity | None) -> None:
        self.added.extend(e for e in entities if e is not None)

    def remove(self, *entities: Entity | None) -> None:
        self.removed.extend(e for e in entities if e is not None)

    def deduplicated(self) -> "EntityDelta":
        """Collapse repeated refs; the last added version of an entity wins."""
        return EntityDelta(
            added=list({e.ref: e for e in self.added}.values()),
            removed=list({e.ref: e for e in self.removed}.values()),
        )

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


class KeycloakReconciler:
    """Turns Keycloak admin events into catalog deltas."""

    def __init__(
        self,
        client: KeycloakAdminClient,
        config: ProviderConfig,
        catalog: CatalogReader,
        user_transformer: UserTransformer | None = None,
        group_transformer: GroupTransformer | None = None,
        limiter: asyncio.Semaphore | None = None,
    ):
        self._client = client
        self._config = config
        self._catalog = catalog
        self._user_transformer = user_transformer
        self._group_transformer = group_transformer
        self._limiter = limiter

    async def handle(self, payload: dict[str, Any]) -> EntityDelta | None:
        """Compute the delta for one event; None when nothing should change."""
        event_type = payload.get("type")
        parts = [p for p in str(payload.get("resourcePath", "")).split("/") if p]
        log = logger.bind(type=event_type, resource_path=payload.get("resourcePath"))

        if event_type in USER_TOPICS:
            if len(parts) < 2 or parts[0] != "users":
                log.warning("Ignoring user event with unexpected resource path")
                return None
            user_id = parts[1]
            if event_type == TOPIC_USER_CREATE:
                delta = await self.on_user_create(user_id)
            elif event_type == TOPIC_USER_DELETE:
                delta = await self.on_user_delete(user_id)
            else:
                delta = await self.on_user_update(user_id)

        elif event_type in MEMBERSHIP_TOPICS:
            if len(parts) < 4 or parts[0] != "users" or parts[2] != "groups":
                log.warning("Ignoring membership event with unexpected resource path")
                return None
            delta = await self.on_membership_change(parts[1], parts[3])

        elif event_type in GROUP_TOPICS:
            if len(parts) < 2 or parts[0] != "groups":
                log.warning("Ignoring group event with unexpected resource path")
                return None
            if event_type == TOPIC_GROUP_CREATE:
                delta = await self.on_group_create(parts, payload.get("representation"))
            elif event_type == TOPIC_GROUP_DELETE:
                delta = await self.on_group_delete(parts[1])
            else:
                delta = await self.on_group_update(parts[1])

        else:
            log.debug("Ignoring unsupported Keycloak event")
            return None

        if delta is None or delta.is_empty:
            return None
        return delta.deduplicated()

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    async def _find_entity(self, kind: str, keycloak_id: str) -> Entity | None:
        """Catalog entity carrying the given Keycloak id annotation."""
        entities = await self._catalog.get_entities_by_annotation(
            kind, KEYCLOAK_ID_ANNOTATION, keycloak_id
        )
        return entities[0] if entities else None

    async def _entities_by_refs(self, refs: list[str]) -> list[Entity]:
        found = await asyncio.gather(*(self._catalog.get_entity_by_ref(r) for r in refs))
        return [e for e in found if e is not None]

    async def _map_user(self, user_id: str) -> tuple[Entity | None, list[ParsedGroup]]:
        """Map a user from Keycloak, with memberOf taken from its Keycloak groups."""
        raw = await self._client.get_user(user_id)
        if raw is None:
            return None, []

        try:
            user = KeycloakUser.model_validate(raw)
        except ValidationError as e:
            logger.warning("Skipping malformed Keycloak user", user_id=user_id, error=str(e))
            return None, []

        groups = await get_all_user_groups(self._client, user_id, self._config.group_query_size)
        parsed = await self._parse_groups(groups)
        user_group_map = {user.username: [p.entity.metadata.name for p in parsed]}
        entity = await parse_user(
            user,
            self._config.realm,
            [p.group for p in parsed],
            user_group_map,
            self._user_transformer,
        )
        return entity, parsed

    async def _parse_groups(self, groups: list[KeycloakGroup]) -> list[ParsedGroup]:
        return await parse_groups(
            self._client, groups, self._config, self._group_transformer, self._limiter
        )

    async def _fetch_groups(self, group_ids: list[str]) -> list[KeycloakGroup]:
        raw = await asyncio.gather(*(self._client.get_group(gid) for gid in group_ids))
        return [KeycloakGroup.from_api(g) for g in raw if g is not None]

    async def _remap_groups(self, group_ids: set[str], delta: EntityDelta) -> None:
        """Replace the catalog version of each group with a fresh mapping."""
        ids = sorted(group_ids)
        old = await asyncio.gather(*(self._find_entity("Group", gid) for gid in ids))
        delta.remove(*old)
        parsed = await self._parse_groups(await self._fetch_groups(ids))
        delta.add(*(p.entity for p in parsed))

    async def _remap_users(self, user_ids: set[str], delta: EntityDelta) -> None:
        """Replace the catalog version of each user with a fresh mapping."""
        for user_id in sorted(user_ids):
            delta.remove(await self._find_entity("User", user_id))
            entity, _ = await self._map_user(user_id)
            delta.add(entity)

    @staticmethod
    def _keycloak_ids(entities: list[Entity]) -> set[str]:
        return {
            e.annotation(KEYCLOAK_ID_ANNOTATION)
            for e in entities
            if e.annotation(KEYCLOAK_ID_ANNOTATION)
        }

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def on_user_create(self, user_id: str) -> EntityDelta | None:
        entity, _ = await self._map_user(user_id)
        if entity is None:
            logger.debug("User not found after USER-CREATE event", user_id=user_id)
            return None
        return EntityDelta(added=[entity])

    async def on_user_delete(self, user_id: str) -> EntityDelta | None:
        old_user = await self._find_entity("User", user_id)
        if old_user is None:
            logger.debug("No catalog entity for deleted user", user_id=user_id)
            return None

        delta = EntityDelta(removed=[old_user])
        groups = await self._entities_by_refs(old_user.relation_targets(RELATION_MEMBER_OF))
        group_ids = self._keycloak_ids(groups)
        if group_ids:
            await self._remap_groups(group_ids, delta)
        return delta

    async def on_user_update(self, user_id: str) -> EntityDelta | None:
        new_user, parsed_groups = await self._map_user(user_id)
        if new_user is None:
            logger.debug("User not found after USER-UPDATE event", user_id=user_id)
            return None

        old_user = await self._find_entity("User", user_id)
        delta = EntityDelta(added=[new_user])
        delta.remove(old_user)

        # Groups list their members by name; a rename has to reach them too.
        if old_user is not None and old_user.metadata.name != new_user.metadata.name:
            await self._remap_groups({p.group.id for p in parsed_groups}, delta)
        return delta

    async def on_membership_change(self, user_id: str, group_id: str) -> EntityDelta | None:
        new_user, _ = await self._map_user(user_id)
        if new_user is None:
            logger.debug("User not found after membership event", user_id=user_id)
            return None

        delta = EntityDelta(added=[new_user])
        delta.remove(await self._find_entity("User", user_id))
        await self._remap_groups({group_id}, delta)
        return delta

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def on_group_create(
        self, parts: list[str], representation: Any
    ) -> EntityDelta | None:
        if len(parts) == 2:
            group_id = parts[1]
            groups = await self._fetch_groups([group_id])
            if not groups:
                logger.debug("Group not found after GROUP-CREATE event", group_id=group_id)
                return None
            parsed = await self._parse_groups(groups)
            return EntityDelta(added=[p.entity for p in parsed])

        parent_id = parts[1]
        subgroup_id = _representation_id(representation)
        if subgroup_id is None:
            logger.warning("Subgroup GROUP-CREATE event without an id", parent_id=parent_id)
            return None

        groups = await self._fetch_groups([subgroup_id, parent_id])
        if len(groups) < 2:
            logger.debug(
                "Subgroup or parent not found after GROUP-CREATE event",
                parent_id=parent_id,
                subgroup_id=subgroup_id,
            )
            return None

        delta = EntityDelta()
        delta.remove(await self._find_entity("Group", parent_id))
        parsed = await self._parse_groups(groups)
        delta.add(*(p.entity for p in parsed))
        return delta

    async def on_group_update(self, group_id: str) -> EntityDelta | None:
        groups = await self._fetch_groups([group_id])
        if not groups:
            logger.debug("Group not found after GROUP-UPDATE event", group_id=group_id)
            return None

        parsed = await self._parse_groups(groups)
        old_group = await self._find_entity("Group", group_id)
        if not parsed:
            # The transformer dropped the group; only its old version goes away.
            return EntityDelta(removed=[old_group]) if old_group else None
        current = parsed[0]

        group_ids = {group_id}
        group_ids.update(g.id for g in current.group.sub_groups or [])
        if current.group.parent_id:
            group_ids.add(current.group.parent_id)
        elif current.group.parent:
            parent = await self._catalog.get_entity_by_ref(
                stringify_entity_ref("Group", current.group.parent)
            )
            group_ids.update(self._keycloak_ids([parent] if parent else []))

        user_refs = [stringify_entity_ref("User", m) for m in current.group.members]
        if old_group is not None:
            related = await self._entities_by_refs(
                old_group.relation_targets(RELATION_CHILD_OF)
                + old_group.relation_targets(RELATION_PARENT_OF)
            )
            group_ids.update(self._keycloak_ids(related))
            user_refs += old_group.relation_targets(RELATION_HAS_MEMBER)

        users = await self._entities_by_refs(sorted(set(user_refs)))

        delta = EntityDelta()
        await self._remap_groups(group_ids, delta)
        await self._remap_users(self._keycloak_ids(users), delta)
        return delta

    async def on_group_delete(self, group_id: str) -> EntityDelta | None:
        deleted = await self._find_entity("Group", group_id)
        if deleted is None:
            logger.debug("No catalog entity for deleted group", group_id=group_id)
            return None

        subtree = [deleted, *await self._descendants(deleted)]
        delta = EntityDelta()
        delta.remove(*subtree)

        parents = await self._entities_by_refs(deleted.relation_targets(RELATION_CHILD_OF))
        delta.remove(*parents)
        parent_ids = self._keycloak_ids(parents)
        if parent_ids:
            parsed = await self._parse_groups(await self._fetch_groups(sorted(parent_ids)))
            delta.add(*(p.entity for p in parsed))

        member_refs = sorted({r for g in subtree for r in g.relation_targets(RELATION_HAS_MEMBER)})
        users = await self._entities_by_refs(member_refs)
        await self._remap_users(self._keycloak_ids(users), delta)
        return delta

    async def _descendants(self, group: Entity) -> list[Entity]:
        """Every catalog group below `group`, following parentOf relations."""
        found: list[Entity] = []
        seen = {group.ref}
        frontier = [group]
        while frontier:
            refs = [
                r
                for g in frontier
                for r in g.relation_targets(RELATION_PARENT_OF)
                if r not in seen
            ]
            seen.update(refs)
            frontier = await self._entities_by_refs(refs)
            found.extend(frontier)
        return found


def _representation_id(representation: Any) -> str | None:
    """Id from an event's `representation`, which is a JSON string or a mapping."""
    if isinstance(representation, str):
        try:
            representation = json.loads(representation)
        except json.JSONDecodeError:
            return None
    if isinstance(representation, dict) and representation.get("id"):
        return str(representation["id"])
    return None
