import hashlib
import hmac
import json

import pytest

from orgsync.keycloak.events import (
    EventParams,
    EventsService,
    KeycloakEventRouter,
    normalize_event_type,
    verify_signature,
)


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"type": "admin.USER-CREATE"}, "admin.USER-CREATE"),
        ({"resourceType": "USER", "operationType": "CREATE"}, "admin.USER-CREATE"),
        (
            {"resourceType": "GROUP_MEMBERSHIP", "operationType": "DELETE"},
            "admin.GROUP_MEMBERSHIP-DELETE",
        ),
        ({"type": "LOGIN"}, None),
        ({}, None),
    ],
)
def test_normalize_event_type(payload, expected):
    assert normalize_event_type(payload) == expected


def test_verify_signature():
    body = b'{"type": "admin.USER-CREATE"}'
    digest = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()
    assert verify_signature("s3cret", body, digest)
    assert verify_signature("s3cret", body, digest.upper())
    assert not verify_signature("s3cret", body, "0" * 64)
    assert not verify_signature("s3cret", body, None)


@pytest.mark.asyncio
async def test_publish_delivers_by_topic():
    events = EventsService()
    received = []

    async def on_event(params: EventParams):
        received.append(params.event_payload)

    events.subscribe("a", ["keycloak"], on_event)
    events.subscribe("b", ["other"], on_event)

    delivered = await events.publish(EventParams(topic="keycloak", event_payload={"n": 1}))
    assert delivered == 1
    assert received == [{"n": 1}]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    events = EventsService()
    received = []

    async def broken(params):
        raise RuntimeError("boom")

    async def working(params):
        received.append(params.topic)

    events.subscribe("broken", ["keycloak"], broken)
    events.subscribe("working", ["keycloak"], working)

    assert await events.publish(EventParams(topic="keycloak", event_payload={})) == 1
    assert received == ["keycloak"]


def test_subscriber_ids_are_unique():
    events = EventsService()

    async def noop(params):
        pass

    events.subscribe("a", ["keycloak"], noop)
    with pytest.raises(ValueError):
        events.subscribe("a", ["keycloak"], noop)

    events.unsubscribe("a")
    assert events.subscriber_ids == []


def test_router_parse_normalizes_payload():
    router = KeycloakEventRouter(EventsService())
    payload = router.parse(
        json.dumps(
            {
                "resourceType": "GROUP",
                "operationType": "CREATE",
                "resourcePath": "/groups/g1/children/",
                "representation": '{"id": "g2"}',
            }
        )
    )
    assert payload["type"] == "admin.GROUP-CREATE"
    assert payload["resourcePath"] == "groups/g1/children"
    assert payload["representation"] == '{"id": "g2"}'


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2]",
        b'{"resourcePath": "users/u1"}',
        b'{"type": "admin.USER-CREATE"}',
        b'{"type": "admin.USER-CREATE", "resourcePath": "/"}',
    ],
)
def test_router_parse_rejects_bad_payloads(raw):
    with pytest.raises(ValueError):
        KeycloakEventRouter(EventsService()).parse(raw)


@pytest.mark.asyncio
async def test_router_publishes_on_keycloak_topic():
    events = EventsService()
    received = []

    async def on_event(params):
        received.append(params)

    events.subscribe("provider", ["keycloak"], on_event)
    router = KeycloakEventRouter(events)

    params = await router.route({"type": "admin.USER-DELETE", "resourcePath": "users/u1", "realmId": "acme"})

    assert router.topic == "keycloak"
    assert params.topic == "keycloak"
    assert params.metadata == {"realm": "acme"}
    assert [p.event_payload["type"] for p in received] == ["admin.USER-DELETE"]
