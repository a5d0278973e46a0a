"""Mapping of Keycloak users and groups to catalog entities."""

from __future__ import annotations

from orgsync.keycloak.constants import (
    ANNOTATION_LOCATION,
    ANNOTATION_ORIGIN_LOCATION,
    KEYCLOAK_ID_ANNOTATION,
    KEYCLOAK_REALM_ANNOTATION,
    RELATION_CHILD_OF,
    RELATION_HAS_MEMBER,
    RELATION_MEMBER_OF,
    RELATION_PARENT_OF,
)
from orgsync.keycloak.models import (
    Entity,
    EntityMetadata,
    EntityRelation,
    KeycloakGroup,
    KeycloakUser,
    normalize_entity_ref,
)
from orgsync.keycloak.transformers import (
    GroupTransformer,
    UserTransformer,
    noop_group_transformer,
    noop_user_transformer,
    resolve_transform,
)


def _annotations(keycloak_id: str, realm: str) -> dict[str, str]:
    return {
        KEYCLOAK_ID_ANNOTATION: keycloak_id,
        KEYCLOAK_REALM_ANNOTATION: realm,
    }


def build_group_entity(group: KeycloakGroup, realm: str) -> Entity:
    """Default Group entity for a hydrated Keycloak group."""
    spec: dict = {
        "type": "group",
        "profile": {"displayName": group.name},
        "children": [g.name for g in group.sub_groups or []],
        "members": list(group.members),
    }
    if group.parent:
        spec["parent"] = group.parent

    return Entity(
        kind="Group",
        metadata=EntityMetadata(
            name=group.name,
            annotations=_annotations(group.id, realm),
        ),
        spec=spec,
    )


def build_user_entity(user: KeycloakUser, realm: str, member_of: list[str]) -> Entity:
    """Default User entity for a Keycloak user."""
    profile: dict = {}
    if user.email:
        profile["email"] = user.email
    if user.first_name or user.last_name:
        profile["displayName"] = " ".join(n for n in (user.first_name, user.last_name) if n)

    return Entity(
        kind="User",
        metadata=EntityMetadata(
            name=user.username,
            annotations=_annotations(user.id, realm),
        ),
        spec={"profile": profile, "memberOf": list(member_of)},
    )


def derive_relations(entity: Entity) -> list[EntityRelation]:
    """Relations implied by a User or Group spec."""
    relations: list[EntityRelation] = []

    def add(relation_type: str, ref: str, kind: str) -> None:
        relations.append(
            EntityRelation(type=relation_type, target_ref=normalize_entity_ref(ref, kind))
        )

    if entity.kind == "User":
        for group in entity.spec.get("memberOf") or []:
            add(RELATION_MEMBER_OF, group, "group")
    elif entity.kind == "Group":
        if entity.spec.get("parent"):
            add(RELATION_CHILD_OF, entity.spec["parent"], "group")
        for child in entity.spec.get("children") or []:
            add(RELATION_PARENT_OF, child, "group")
        for member in entity.spec.get("members") or []:
            add(RELATION_HAS_MEMBER, member, "user")
    return relations


def with_relations(entity: Entity) -> Entity:
    entity.relations = derive_relations(entity)
    return entity


async def parse_group(
    group: KeycloakGroup,
    realm: str,
    transformer: GroupTransformer | None = None,
) -> Entity | None:
    """Map a group through the (optional) transformer."""
    transform = transformer or noop_group_transformer
    entity = await resolve_transform(transform(build_group_entity(group, realm), group, realm))
    if entity is None:
        return None
    return with_relations(entity)


async def parse_user(
    user: KeycloakUser,
    realm: str,
    groups: list[KeycloakGroup],
    user_group_map: dict[str, list[str]],
    transformer: UserTransformer | None = None,
) -> Entity | None:
    """Map a user through the (optional) transformer.

    `user_group_map` maps usernames to the entity names of their groups.
    """
    transform = transformer or noop_user_transformer
    entity = build_user_entity(user, realm, user_group_map.get(user.username, []))
    entity = await resolve_transform(transform(entity, user, realm, groups))
    if entity is None:
        return None
    return with_relations(entity)


def with_locations(base_url: str, realm: str, entity: Entity) -> Entity:
    """Add managed-by location annotations pointing at the Keycloak resource."""
    kind = "groups" if entity.kind == "Group" else "users"
    keycloak_id = entity.annotation(KEYCLOAK_ID_ANNOTATION)
    location = f"url:{base_url.rstrip('/')}/admin/realms/{realm}/{kind}/{keycloak_id}"

    located = entity.model_copy(deep=True)
    located.metadata.annotations = {
        ANNOTATION_LOCATION: location,
        ANNOTATION_ORIGIN_LOCATION: location,
        **entity.metadata.annotations,
    }
    return located
