"""Reading users and groups out of a Keycloak realm.

Two group hierarchy strategies exist. Keycloak 23 and newer return only top
level groups from /groups together with a `subGroupCount`, and subgroups have
to be paged through /groups/{id}/children. Older servers return the complete
tree inline in `subGroups`, so the hierarchy is flattened locally instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
import structlog
from pydantic import ValidationError

from orgsync.keycloak.client import KeycloakAdminClient, KeycloakError
from orgsync.keycloak.mapper import parse_group, parse_user
from orgsync.keycloak.models import Entity, KeycloakGroup, KeycloakUser, ProviderConfig
from orgsync.keycloak.transformers import GroupTransformer, UserTransformer

logger = structlog.get_logger(__name__)

PageFetcher = Callable[[int, int], Awaitable[list[dict[str, Any]]]]


@dataclass
class ParsedGroup:
    """A hydrated Keycloak group and the entity it mapped to."""

    group: KeycloakGroup
    entity: Entity


@dataclass
class RealmSnapshot:
    """Everything read from a realm in one full crawl."""

    users: list[Entity] = field(default_factory=list)
    groups: list[Entity] = field(default_factory=list)


def _slot(limiter: asyncio.Semaphore | None):
    return limiter if limiter is not None else contextlib.nullcontext()


async def paginate(fetch: PageFetcher, page_size: int) -> list[dict[str, Any]]:
    """Fetch pages until one comes back shorter than the page size."""
    results: list[dict[str, Any]] = []
    first = 0
    while True:
        page = await fetch(first, page_size)
        results.extend(page)
        if len(page) < page_size:
            return results
        first += page_size


async def get_all_group_members(
    client: KeycloakAdminClient, group_id: str, page_size: int
) -> list[str]:
    """Usernames of every direct member of a group."""
    members = await paginate(
        lambda first, size: client.list_group_members(group_id, first, size), page_size
    )
    return [m["username"] for m in members if m.get("username")]


async def get_all_user_groups(
    client: KeycloakAdminClient, user_id: str, page_size: int
) -> list[KeycloakGroup]:
    """Every group a user is a direct member of."""
    groups = await paginate(
        lambda first, size: client.list_user_groups(user_id, first, size), page_size
    )
    return [KeycloakGroup.from_api(g) for g in groups]


async def list_sub_groups(
    client: KeycloakAdminClient, parent: KeycloakGroup, page_size: int
) -> list[KeycloakGroup]:
    raw = await paginate(
        lambda first, size: client.list_sub_groups(parent.id, first, size), page_size
    )
    children = [KeycloakGroup.from_api(g) for g in raw]
    for child in children:
        child.parent = parent.name
    return children


def traverse_groups(group: KeycloakGroup):
    """Yield a group and all of its inline descendants, depth first."""
    yield group
    for child in group.sub_groups or []:
        child.parent = group.name
        yield from traverse_groups(child)


async def process_groups_recursively(
    client: KeycloakAdminClient,
    groups: list[KeycloakGroup],
    page_size: int,
    limiter: asyncio.Semaphore | None = None,
) -> list[KeycloakGroup]:
    """Expand groups into a flat list including all descendants (Keycloak 23+)."""

    async def expand(group: KeycloakGroup) -> list[KeycloakGroup]:
        if not group.sub_group_count:
            return [group]
        async with _slot(limiter):
            children = await list_sub_groups(client, group, page_size)
        group.sub_groups = children
        return [group, *await process_groups_recursively(client, children, page_size, limiter)]

    expanded = await asyncio.gather(*(expand(g) for g in groups))
    return [g for batch in expanded for g in batch]


async def hydrate_group(
    client: KeycloakAdminClient,
    group: KeycloakGroup,
    config: ProviderConfig,
    is_v23: bool,
) -> KeycloakGroup:
    """Fill in members, children and parent name for a group."""
    group.members = await get_all_group_members(client, group.id, config.user_query_size)

    if is_v23:
        if group.sub_group_count and not group.sub_groups:
            group.sub_groups = await list_sub_groups(client, group, config.group_query_size)
        if group.parent_id and not group.parent:
            parent = await client.get_group(group.parent_id)
            group.parent = parent.get("name") if parent else None
    if not group.parent:
        group.parent = group.parent_name_from_path()

    return group


async def parse_groups(
    client: KeycloakAdminClient,
    groups: list[KeycloakGroup],
    config: ProviderConfig,
    transformer: GroupTransformer | None = None,
    limiter: asyncio.Semaphore | None = None,
) -> list[ParsedGroup]:
    """Hydrate and map groups; duplicates (by id) are mapped once."""
    unique: dict[str, KeycloakGroup] = {}
    for group in groups:
        unique.setdefault(group.id, group)

    is_v23 = await client.supports_subgroup_endpoint()

    async def hydrate(group: KeycloakGroup) -> KeycloakGroup:
        async with _slot(limiter):
            return await hydrate_group(client, group, config, is_v23)

    hydrated = await asyncio.gather(*(hydrate(g) for g in unique.values()))

    parsed: list[ParsedGroup] = []
    for group in hydrated:
        entity = await parse_group(group, config.realm, transformer)
        if entity is not None:
            parsed.append(ParsedGroup(group=group, entity=entity))
    return parsed


def build_user_group_map(parsed_groups: list[ParsedGroup]) -> dict[str, list[str]]:
    """Username -> entity names of the groups listing that user as a member."""
    user_groups: dict[str, list[str]] = {}
    for parsed in parsed_groups:
        for member in parsed.group.members:
            user_groups.setdefault(member, []).append(parsed.entity.metadata.name)
    return user_groups


async def _read_pages(
    kind: str,
    total: int,
    page_size: int,
    fetch: PageFetcher,
    limiter: asyncio.Semaphore,
    on_batch_failure: Callable[[], None],
    realm: str,
) -> list[dict[str, Any]]:
    async def read_page(index: int) -> list[dict[str, Any]]:
        async with limiter:
            try:
                return await fetch(index * page_size, page_size)
            except (KeycloakError, httpx.HTTPError) as e:
                on_batch_failure()
                logger.warning(
                    f"Failed to retrieve Keycloak {kind}",
                    realm=realm,
                    batch=index,
                    error=str(e),
                )
                return []

    pages = await asyncio.gather(*(read_page(i) for i in range(math.ceil(total / page_size))))
    return [item for page in pages for item in page]


async def read_keycloak_realm(
    client: KeycloakAdminClient,
    config: ProviderConfig,
    limiter: asyncio.Semaphore,
    on_batch_failure: Callable[[], None],
    user_transformer: UserTransformer | None = None,
    group_transformer: GroupTransformer | None = None,
) -> RealmSnapshot:
    """Crawl every user and group of the configured realm into entities."""
    users_count = await client.count_users()
    raw_users = await _read_pages(
        "users",
        users_count,
        config.user_query_size,
        client.list_users,
        limiter,
        on_batch_failure,
        config.realm,
    )

    is_v23 = await client.supports_subgroup_endpoint()
    groups_count = await client.count_groups(top=True)
    raw_groups = await _read_pages(
        "groups",
        groups_count,
        config.group_query_size,
        client.list_groups,
        limiter,
        on_batch_failure,
        config.realm,
    )

    top_level = [KeycloakGroup.from_api(g) for g in raw_groups]
    if is_v23:
        all_groups = await process_groups_recursively(
            client, top_level, config.group_query_size, limiter
        )
    else:
        all_groups = [g for top in top_level for g in traverse_groups(top)]

    parsed_groups = await parse_groups(client, all_groups, config, group_transformer, limiter)
    user_group_map = build_user_group_map(parsed_groups)
    keycloak_groups = [p.group for p in parsed_groups]

    users: list[Entity] = []
    for raw in raw_users:
        try:
            user = KeycloakUser.model_validate(raw)
        except ValidationError as e:
            logger.warning("Skipping malformed Keycloak user", user_id=raw.get("id"), error=str(e))
            continue
        entity = await parse_user(
            user, config.realm, keycloak_groups, user_group_map, user_transformer
        )
        if entity is not None:
            users.append(entity)

    return RealmSnapshot(users=users, groups=[p.entity for p in parsed_groups])
