import pytest
from pydantic import ValidationError

from orgsync.keycloak.models import (
    ProviderConfig,
    parse_provider_configs,
    read_provider_configs,
)


def test_defaults_and_urls():
    config = ProviderConfig(
        id="p", base_url="https://kc.example.com/", client_id="c", client_secret="s"
    )
    assert config.login_realm == "master"
    assert config.realm == "master"
    assert config.user_query_size == 100
    assert config.group_query_size == 100
    assert config.max_concurrency == 20
    assert config.brief_representation is True
    assert config.schedule.frequency == 86400
    assert config.schedule.timeout == 180
    assert config.token_url == (
        "https://kc.example.com/realms/master/protocol/openid-connect/token"
    )
    assert config.admin_url == "https://kc.example.com/admin/realms/master"


def test_requires_some_credentials():
    with pytest.raises(ValidationError) as e:
        ProviderConfig(id="p", base_url="https://kc", client_id="only-id")
    assert "requires clientId and clientSecret" in str(e.value)


def test_password_credentials_are_enough():
    config = ProviderConfig(id="p", base_url="https://kc", username="admin", password="pw")
    assert config.has_user_credentials
    assert not config.has_client_credentials


def test_parse_camel_and_snake_case_keys():
    configs = parse_provider_configs(
        {
            "providers": {
                "one": {
                    "baseUrl": "https://kc",
                    "realm": "acme",
                    "clientId": "c",
                    "clientSecret": "s",
                    "userQuerySize": 50,
                    "schedule": {"frequency": 60, "initialDelay": 5},
                },
                "two": {
                    "base_url": "https://kc2",
                    "username": "admin",
                    "password": "pw",
                    "group_query_size": 10,
                },
            }
        }
    )
    assert [c.id for c in configs] == ["one", "two"]
    assert configs[0].user_query_size == 50
    assert configs[0].schedule.initial_delay == 5
    assert configs[1].group_query_size == 10


def test_parse_rejects_non_mapping_providers():
    with pytest.raises(ValueError):
        parse_provider_configs({"providers": ["a", "b"]})


def test_read_interpolates_env(tmp_path, monkeypatch):
    monkeypatch.setenv("KC_SECRET", "from-env")
    path = tmp_path / "providers.yaml"
    path.write_text(
        "providers:\n"
        "  default:\n"
        "    baseUrl: ${KC_URL:-https://fallback}\n"
        "    clientId: orgsync\n"
        "    clientSecret: ${KC_SECRET}\n"
    )
    [config] = read_provider_configs(path)
    assert config.base_url == "https://fallback"
    assert config.client_secret == "from-env"


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_provider_configs(tmp_path / "nope.yaml")


def test_read_rejects_non_mapping_yaml(tmp_path):
    path = tmp_path / "providers.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        read_provider_configs(path)
