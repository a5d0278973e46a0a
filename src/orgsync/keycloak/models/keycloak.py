"""Keycloak user and group representations.

Only the fields the sync reads are declared; everything else returned by the
admin API is kept as extra data so transformers can still see it.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class KeycloakUser(BaseModel):
    """A user as returned by the Keycloak admin API."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: str
    username: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    enabled: bool = True
    attributes: dict[str, list[str]] = Field(default_factory=dict)


class KeycloakGroup(BaseModel):
    """A group as returned by the Keycloak admin API.

    `members` and `parent` are not part of the API payload; the realm reader
    fills them in while hydrating the group.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    id: str
    name: str
    path: str | None = None
    parent_id: str | None = None
    sub_group_count: int | None = None
    sub_groups: list["KeycloakGroup"] | None = None
    attributes: dict[str, list[str]] = Field(default_factory=dict)

    # Populated during hydration
    members: list[str] = Field(default_factory=list)
    parent: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "KeycloakGroup":
        return cls.model_validate(data)

    def parent_name_from_path(self) -> str | None:
        """Parent group name derived from the group path (/a/b/c -> b)."""
        if not self.path:
            return None
        segments = [s for s in self.path.split("/") if s]
        if len(segments) < 2:
            return None
        return segments[-2]
