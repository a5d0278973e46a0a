import httpx
import pytest

from orgsync.keycloak.client import (
    KeycloakAdminClient,
    KeycloakAuthError,
    KeycloakError,
)
from orgsync.keycloak.models import ProviderConfig

from conftest import BASE_URL, REALM


@pytest.mark.asyncio
async def test_client_credentials_grant(keycloak, admin_client):
    assert await admin_client.count_users() == 3

    [form] = keycloak.token_requests
    assert form["grant_type"] == ["client_credentials"]
    assert form["client_id"] == ["orgsync"]
    assert form["client_secret"] == ["secret"]


@pytest.mark.asyncio
async def test_password_grant_uses_admin_cli(keycloak):
    config = ProviderConfig(
        id="p", base_url=BASE_URL, realm=REALM, username="admin", password="pw"
    )
    async with KeycloakAdminClient(config, transport=keycloak.transport()) as client:
        await client.count_users()

    [form] = keycloak.token_requests
    assert form["grant_type"] == ["password"]
    assert form["client_id"] == ["admin-cli"]
    assert form["username"] == ["admin"]


@pytest.mark.asyncio
async def test_token_is_reused(keycloak, admin_client):
    await admin_client.count_users()
    await admin_client.count_groups()
    assert len(keycloak.token_requests) == 1


@pytest.mark.asyncio
async def test_reauthenticates_once_on_401(keycloak, admin_client):
    await admin_client.count_users()
    keycloak.revoke_tokens()

    assert await admin_client.count_users() == 3
    assert len(keycloak.token_requests) == 2


@pytest.mark.asyncio
async def test_failed_authentication_raises(provider_config):
    transport = httpx.MockTransport(lambda request: httpx.Response(401))
    async with KeycloakAdminClient(provider_config, transport=transport) as client:
        with pytest.raises(KeycloakAuthError) as e:
            await client.count_users()
    assert e.value.status_code == 401


@pytest.mark.asyncio
async def test_server_errors_raise(keycloak, admin_client):
    keycloak.fail_paths.add(f"/admin/realms/{REALM}/users")
    with pytest.raises(KeycloakError) as e:
        await admin_client.list_users(0, 10)
    assert e.value.status_code == 500


@pytest.mark.asyncio
async def test_paging_params(keycloak, admin_client):
    page = await admin_client.list_users(first=1, max_results=1)
    assert [u["username"] for u in page] == ["bob"]

    params = keycloak.requests[-1].url.params
    assert params["first"] == "1"
    assert params["max"] == "1"
    assert params["briefRepresentation"] == "true"


@pytest.mark.asyncio
async def test_missing_resources_return_none(admin_client):
    assert await admin_client.get_user("nobody") is None
    assert await admin_client.get_group("nothing") is None


@pytest.mark.asyncio
async def test_count_groups_reads_count_object(admin_client):
    assert await admin_client.count_groups(top=True) == 2


@pytest.mark.asyncio
async def test_server_version_is_cached(keycloak, admin_client):
    assert await admin_client.get_server_version() == 24
    assert await admin_client.supports_subgroup_endpoint() is True
    calls = [r for r in keycloak.requests if r.url.path == "/admin/serverinfo"]
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_legacy_server_has_no_subgroup_endpoint(legacy_keycloak, provider_config):
    async with KeycloakAdminClient(
        provider_config, transport=legacy_keycloak.transport()
    ) as client:
        assert await client.supports_subgroup_endpoint() is False


@pytest.mark.asyncio
async def test_unparseable_version(keycloak, admin_client):
    keycloak.version = "nightly"
    with pytest.raises(KeycloakError):
        await admin_client.get_server_version()


@pytest.mark.asyncio
async def test_requests_require_open_client(provider_config):
    client = KeycloakAdminClient(provider_config)
    with pytest.raises(RuntimeError):
        await client.count_users()
