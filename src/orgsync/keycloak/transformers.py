"""User and group transformers.

A transformer receives the entity built by the default mapping together with
the raw Keycloak record, and returns the entity to emit (possibly modified) or
None to drop it. Transformers may be plain functions or coroutines.
"""

from __future__ import annotations

import importlib
import inspect
import re
from typing import Any, Awaitable, Callable, Union

from orgsync.keycloak.models import Entity, KeycloakGroup, KeycloakUser

TransformResult = Union[Entity, None, Awaitable[Union[Entity, None]]]

UserTransformer = Callable[[Entity, KeycloakUser, str, list[KeycloakGroup]], TransformResult]
GroupTransformer = Callable[[Entity, KeycloakGroup, str], TransformResult]

_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.\-]+")
_REPEATED_SEPARATORS = re.compile(r"([_.\-])[_.\-]+")


class TransformerError(ValueError):
    """Transformer registration or lookup failed."""


async def resolve_transform(result: TransformResult) -> Entity | None:
    if inspect.isawaitable(result):
        return await result
    return result


def sanitize_entity_name(name: str) -> str:
    """Make a Keycloak name safe to use as a catalog entity name."""
    cleaned = _INVALID_NAME_CHARS.sub("-", name)
    cleaned = _REPEATED_SEPARATORS.sub(r"\1", cleaned)
    return cleaned.strip("_.-")


def noop_user_transformer(
    entity: Entity, user: KeycloakUser, realm: str, groups: list[KeycloakGroup]
) -> Entity | None:
    return entity


def noop_group_transformer(
    entity: Entity, group: KeycloakGroup, realm: str
) -> Entity | None:
    return entity


def sanitize_user_name_transformer(
    entity: Entity, user: KeycloakUser, realm: str, groups: list[KeycloakGroup]
) -> Entity | None:
    """Sanitize the user name and the group names it references."""
    entity.metadata.name = sanitize_entity_name(entity.metadata.name)
    member_of = entity.spec.get("memberOf")
    if member_of:
        entity.spec["memberOf"] = [sanitize_entity_name(g) for g in member_of]
    return entity


def sanitize_group_name_transformer(
    entity: Entity, group: KeycloakGroup, realm: str
) -> Entity | None:
    """Sanitize the group name and every name it references."""
    entity.metadata.name = sanitize_entity_name(entity.metadata.name)
    spec = entity.spec
    if spec.get("parent"):
        spec["parent"] = sanitize_entity_name(spec["parent"])
    for key in ("children", "members"):
        if spec.get(key):
            spec[key] = [sanitize_entity_name(n) for n in spec[key]]
    return entity


def load_transformer(path: str) -> Callable[..., Any]:
    """Resolve a transformer from a "package.module:attribute" path."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise TransformerError(
            f"Transformer path '{path}' must look like 'package.module:function'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise TransformerError(f"Cannot import transformer module '{module_name}': {e}") from e

    transformer = getattr(module, attr, None)
    if not callable(transformer):
        raise TransformerError(f"'{path}' does not name a callable")
    return transformer


class TransformerRegistry:
    """Extension point where user and group transformers are registered once."""

    def __init__(self) -> None:
        self._user_transformer: UserTransformer | None = None
        self._group_transformer: GroupTransformer | None = None

    @property
    def user_transformer(self) -> UserTransformer | None:
        return self._user_transformer

    @property
    def group_transformer(self) -> GroupTransformer | None:
        return self._group_transformer

    def set_user_transformer(self, transformer: UserTransformer) -> None:
        if self._user_transformer is not None:
            raise TransformerError("User transformer may only be set once")
        self._user_transformer = transformer

    def set_group_transformer(self, transformer: GroupTransformer) -> None:
        if self._group_transformer is not None:
            raise TransformerError("Group transformer may only be set once")
        self._group_transformer = transformer
