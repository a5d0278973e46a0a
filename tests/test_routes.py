"""HTTP surface tests against a fake Keycloak realm."""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from orgsync.keycloak.config import Settings
from orgsync.keycloak.main import create_app
from orgsync.keycloak.routes import deps
from orgsync.keycloak.routes.catalog import parse_filter

from conftest import admin_event


def _client(keycloak, provider_config, **settings) -> TestClient:
    app = create_app(
        settings=Settings(catalog_mode="memory", **settings),
        provider_configs=[provider_config],
        transport=keycloak.transport(),
    )
    return TestClient(app)


@pytest.fixture
def client(keycloak, provider_config):
    with _client(keycloak, provider_config) as c:
        yield c


def test_get_state_requires_startup():
    with pytest.raises(RuntimeError):
        deps.get_state()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["providers"] == 1
    assert body["details"]["subscribers"] == ["KeycloakOrgEntityProvider:default"]


def test_ready_after_first_sync(client):
    response = client.get("/ready")
    assert response.status_code == 503
    assert response.json()["details"]["pending"] == ["default"]

    refreshed = client.post("/providers/default/refresh")
    assert refreshed.status_code == 200
    assert refreshed.json()["synced"] is True
    assert refreshed.json()["users"] == 3

    assert client.get("/ready").status_code == 200


def test_list_providers(client):
    [provider] = client.get("/providers").json()
    assert provider["id"] == "default"
    assert provider["name"] == "KeycloakOrgEntityProvider:default"
    assert provider["realm"] == "acme"
    assert provider["synced"] is False


def test_refresh_unknown_provider(client):
    assert client.post("/providers/nope/refresh").status_code == 404


def test_catalog_read_api(client):
    client.post("/providers/default/refresh")

    users = client.get("/api/catalog/entities/by-query", params={"filter": "kind=user"}).json()
    assert users["totalItems"] == 3

    by_id = client.get(
        "/api/catalog/entities/by-query",
        params={"filter": "kind=group,metadata.annotations.keycloak.org/id=g-backend"},
    ).json()
    [backend] = by_id["items"]
    assert backend["metadata"]["name"] == "backend"
    assert backend["spec"]["parent"] == "engineering"

    alice = client.get("/api/catalog/entities/by-name/user/default/alice")
    assert alice.status_code == 200
    assert alice.json()["apiVersion"] == "backstage.io/v1beta1"

    assert client.get("/api/catalog/entities/by-name/user/default/nobody").status_code == 404
    assert client.get(
        "/api/catalog/entities/by-query", params={"filter": "broken"}
    ).status_code == 400


def test_event_webhook_updates_catalog(keycloak, client):
    client.post("/providers/default/refresh")
    keycloak.add_user("u-dan", "dan")

    response = client.post(
        "/events/keycloak", json=admin_event("admin.USER-CREATE", "/users/u-dan")
    )

    assert response.status_code == 202
    assert response.json() == {
        "type": "admin.USER-CREATE",
        "resource_path": "users/u-dan",
        "topic": "keycloak",
    }
    assert client.get("/api/catalog/entities/by-name/user/default/dan").status_code == 200


def test_event_webhook_uses_configured_topic(keycloak, provider_config):
    with _client(keycloak, provider_config, event_topic="kc-admin") as client:
        client.post("/providers/default/refresh")
        keycloak.add_user("u-dan", "dan")

        response = client.post(
            "/events/keycloak", json=admin_event("admin.USER-CREATE", "users/u-dan")
        )
        dan = client.get("/api/catalog/entities/by-name/user/default/dan")

    assert response.status_code == 202
    assert response.json()["topic"] == "kc-admin"
    assert dan.status_code == 200


def test_event_webhook_rejects_bad_payload(client):
    response = client.post("/events/keycloak", content=b"{not json")
    assert response.status_code == 400


def test_event_webhook_signature(keycloak, provider_config):
    body = json.dumps(admin_event("admin.USER-DELETE", "users/ghost")).encode()
    signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    with _client(keycloak, provider_config, webhook_secret="s3cret") as client:
        unsigned = client.post("/events/keycloak", content=body)
        signed = client.post(
            "/events/keycloak", content=body, headers={"X-Keycloak-Signature": signature}
        )

    assert unsigned.status_code == 401
    assert signed.status_code == 202


def test_metrics(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "keycloak_fetch_task_failure_count" in response.text
    assert "keycloak_fetch_data_batch_failure_count" in response.text


def test_state_is_cleared_on_shutdown(keycloak, provider_config):
    with _client(keycloak, provider_config):
        assert deps.get_state().providers
    with pytest.raises(RuntimeError):
        deps.get_state()


def test_parse_filter():
    assert parse_filter("kind=user, metadata.annotations.keycloak.org/id=u1") == {
        "kind": "user",
        "metadata.annotations.keycloak.org/id": "u1",
    }
    assert parse_filter(None) == {}
    with pytest.raises(ValueError):
        parse_filter("kind")
