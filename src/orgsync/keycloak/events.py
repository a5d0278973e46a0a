"""In-process event bus and the Keycloak admin event router."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

from orgsync.keycloak.constants import KEYCLOAK_TOPIC

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Keycloak-Signature"


@dataclass
class EventParams:
    """A published event."""

    topic: str
    event_payload: dict[str, Any]
    metadata: dict[str, str] = field(default_factory=dict)


EventHandler = Callable[[EventParams], Awaitable[None]]


@dataclass
class _Subscription:
    id: str
    topics: frozenset[str]
    on_event: EventHandler


class EventsService:
    """Minimal topic-based pub/sub.

    Subscribers are awaited in registration order; one failing subscriber is
    logged and does not prevent delivery to the rest.
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def subscribe(self, id: str, topics: list[str], on_event: EventHandler) -> None:
        if any(s.id == id for s in self._subscriptions):
            raise ValueError(f"Subscriber '{id}' is already registered")
        self._subscriptions.append(_Subscription(id, frozenset(topics), on_event))
        logger.debug("Subscribed to events", subscriber=id, topics=sorted(topics))

    def unsubscribe(self, id: str) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.id != id]

    @property
    def subscriber_ids(self) -> list[str]:
        return [s.id for s in self._subscriptions]

    async def publish(self, params: EventParams) -> int:
        """Deliver an event; returns how many subscribers handled it cleanly."""
        delivered = 0
        for subscription in self._subscriptions:
            if params.topic not in subscription.topics:
                continue
            try:
                await subscription.on_event(params)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    subscriber=subscription.id,
                    topic=params.topic,
                )
        return delivered


def normalize_event_type(payload: dict[str, Any]) -> str | None:
    """Resolve the `admin.<RESOURCE>-<OPERATION>` type of a Keycloak admin event.

    Webhook listeners send `type` directly; raw admin events only carry
    `resourceType` and `operationType`.
    """
    event_type = payload.get("type")
    if isinstance(event_type, str) and event_type.startswith("admin."):
        return event_type

    resource_type = payload.get("resourceType")
    operation_type = payload.get("operationType")
    if resource_type and operation_type:
        return f"admin.{resource_type}-{operation_type}"
    return None


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an HMAC-SHA256 hex digest of the request body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class KeycloakEventRouter:
    """Validates inbound Keycloak admin events and republishes them on the bus."""

    def __init__(self, events: EventsService, topic: str = KEYCLOAK_TOPIC):
        self._events = events
        self._topic = topic

    @property
    def topic(self) -> str:
        return self._topic

    def parse(self, raw: bytes | str | dict[str, Any]) -> dict[str, Any]:
        """Turn a webhook body into a normalized event payload."""
        if isinstance(raw, (bytes, str)):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"Event body is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError("Event body must be a JSON object")

        event_type = normalize_event_type(raw)
        if event_type is None:
            raise ValueError("Event has no admin event type")

        resource_path = raw.get("resourcePath")
        if not isinstance(resource_path, str) or not resource_path.strip("/"):
            raise ValueError(f"Event {event_type} has no resourcePath")

        return {**raw, "type": event_type, "resourcePath": resource_path.strip("/")}

    async def route(self, raw: bytes | str | dict[str, Any]) -> EventParams:
        payload = self.parse(raw)
        params = EventParams(
            topic=self._topic,
            event_payload=payload,
            metadata={"realm": str(payload.get("realmId", ""))},
        )
        delivered = await self._events.publish(params)
        logger.info(
            "Routed Keycloak event",
            topic=self._topic,
            type=payload["type"],
            resource_path=payload["resourcePath"],
            subscribers=delivered,
        )
        return params
