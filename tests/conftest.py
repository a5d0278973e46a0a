"""Pytest configuration and fixtures."""

from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from orgsync.keycloak.catalog import InMemoryCatalog
from orgsync.keycloak.client import KeycloakAdminClient
from orgsync.keycloak.models import ProviderConfig

BASE_URL = "http://keycloak.test"
REALM = "acme"


class FakeKeycloak:
    """Just enough of the Keycloak admin API for the sync, served over MockTransport.

    Keycloak 23+ returns top-level groups with a `subGroupCount` and serves
    children from /groups/{id}/children; older versions inline the whole tree.
    """

    def __init__(self, version: str = "24.0.1"):
        self.version = version
        self.users: dict[str, dict] = {}
        self.groups: dict[str, dict] = {}
        self.members: dict[str, list[str]] = {}
        self.tokens: set[str] = set()
        self.token_requests: list[dict[str, list[str]]] = []
        self.requests: list[httpx.Request] = []
        self.fail_paths: set[str] = set()
        self._issued = 0

    # -- realm setup ---------------------------------------------------------

    def add_user(self, id: str, username: str, **fields) -> None:
        self.users[id] = {"id": id, "username": username, "enabled": True, **fields}

    def add_group(self, id: str, name: str, parent_id: str | None = None) -> None:
        self.groups[id] = {"id": id, "name": name, "parent_id": parent_id}
        self.members.setdefault(id, [])

    def add_member(self, group_id: str, user_id: str) -> None:
        self.members[group_id].append(user_id)

    def remove_member(self, group_id: str, user_id: str) -> None:
        self.members[group_id].remove(user_id)

    def remove_user(self, user_id: str) -> None:
        del self.users[user_id]
        for members in self.members.values():
            if user_id in members:
                members.remove(user_id)

    def remove_group(self, group_id: str) -> None:
        for child in self._children(group_id):
            self.remove_group(child)
        del self.groups[group_id]
        del self.members[group_id]

    def revoke_tokens(self) -> None:
        self.tokens.clear()

    @property
    def is_v23(self) -> bool:
        return int(self.version.split(".")[0]) >= 23

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    # -- representations -----------------------------------------------------

    def _children(self, group_id: str) -> list[str]:
        return [gid for gid, g in self.groups.items() if g["parent_id"] == group_id]

    def _path(self, group_id: str) -> str:
        group = self.groups[group_id]
        prefix = self._path(group["parent_id"]) if group["parent_id"] else ""
        return f"{prefix}/{group['name']}"

    def group_rep(self, group_id: str) -> dict:
        group = self.groups[group_id]
        rep = {"id": group_id, "name": group["name"], "path": self._path(group_id)}
        children = self._children(group_id)
        if self.is_v23:
            if group["parent_id"]:
                rep["parentId"] = group["parent_id"]
            rep["subGroupCount"] = len(children)
            rep["subGroups"] = []
        else:
            rep["subGroups"] = [self.group_rep(c) for c in children]
        return rep

    def user_group_rep(self, group_id: str) -> dict:
        """Groups listed under a user carry no subgroup tree or count."""
        rep = self.group_rep(group_id)
        rep.pop("subGroups")
        rep.pop("subGroupCount", None)
        return rep

    # -- request handling ----------------------------------------------------

    def _page(self, items: list, params: dict) -> list:
        first = int(params.get("first", 0))
        size = int(params.get("max", 100))
        return items[first:first + size]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = dict(request.url.params)

        if path.endswith("/protocol/openid-connect/token"):
            form = parse_qs(request.content.decode())
            self.token_requests.append(form)
            self._issued += 1
            token = f"token-{self._issued}"
            self.tokens.add(token)
            return httpx.Response(200, json={"access_token": token, "expires_in": 300})

        auth = request.headers.get("Authorization", "")
        if auth.removeprefix("Bearer ") not in self.tokens:
            return httpx.Response(401, json={"error": "unauthorized"})

        if path in self.fail_paths:
            return httpx.Response(500, text="boom")

        if path == "/admin/serverinfo":
            return httpx.Response(200, json={"systemInfo": {"version": self.version}})

        prefix = f"/admin/realms/{REALM}"
        if not path.startswith(prefix):
            return httpx.Response(404)
        parts = [p for p in path[len(prefix):].split("/") if p]

        if parts == ["users", "count"]:
            return httpx.Response(200, json=len(self.users))
        if parts == ["users"]:
            return httpx.Response(200, json=self._page(list(self.users.values()), params))
        if len(parts) == 2 and parts[0] == "users":
            user = self.users.get(parts[1])
            return httpx.Response(200, json=user) if user else httpx.Response(404)
        if len(parts) == 3 and parts[0] == "users" and parts[2] == "groups":
            if parts[1] not in self.users:
                return httpx.Response(404)
            groups = [
                self.user_group_rep(gid) for gid, members in self.members.items()
                if parts[1] in members
            ]
            return httpx.Response(200, json=self._page(groups, params))

        if parts == ["groups", "count"]:
            top = [gid for gid, g in self.groups.items() if g["parent_id"] is None]
            return httpx.Response(200, json={"count": len(top)})
        if parts == ["groups"]:
            top = [self.group_rep(gid) for gid, g in self.groups.items() if g["parent_id"] is None]
            return httpx.Response(200, json=self._page(top, params))
        if len(parts) >= 2 and parts[0] == "groups":
            if parts[1] not in self.groups:
                return httpx.Response(404)
            if len(parts) == 2:
                return httpx.Response(200, json=self.group_rep(parts[1]))
            if parts[2] == "children" and self.is_v23:
                children = [self.group_rep(c) for c in self._children(parts[1])]
                return httpx.Response(200, json=self._page(children, params))
            if parts[2] == "members":
                users = [self.users[u] for u in self.members[parts[1]]]
                return httpx.Response(200, json=self._page(users, params))

        return httpx.Response(404)


def build_realm(version: str = "24.0.1") -> FakeKeycloak:
    """engineering > backend, plus sales; alice in engineering, bob in backend."""
    kc = FakeKeycloak(version=version)
    kc.add_user("u-alice", "alice", email="alice@acme.test", firstName="Alice", lastName="Liddell")
    kc.add_user("u-bob", "bob", email="bob@acme.test")
    kc.add_user("u-carol", "carol")
    kc.add_group("g-eng", "engineering")
    kc.add_group("g-backend", "backend", parent_id="g-eng")
    kc.add_group("g-sales", "sales")
    kc.add_member("g-eng", "u-alice")
    kc.add_member("g-backend", "u-bob")
    return kc


def admin_event(type: str, resource_path: str, representation: dict | None = None) -> dict:
    event = {"type": type, "resourcePath": resource_path, "realmId": REALM}
    if representation is not None:
        event["representation"] = json.dumps(representation)
    return event


@pytest.fixture
def keycloak() -> FakeKeycloak:
    return build_realm()


@pytest.fixture
def legacy_keycloak() -> FakeKeycloak:
    return build_realm(version="22.0.5")


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        id="default",
        base_url=BASE_URL,
        realm=REALM,
        client_id="orgsync",
        client_secret="secret",
        user_query_size=2,
        group_query_size=2,
        schedule={"frequency": 3600, "timeout": 30, "initial_delay": 3600},
    )


@pytest.fixture
async def admin_client(keycloak, provider_config):
    async with KeycloakAdminClient(provider_config, transport=keycloak.transport()) as client:
        yield client


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()
