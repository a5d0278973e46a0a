"""Keycloak admin event webhook."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from orgsync.keycloak.events import SIGNATURE_HEADER, verify_signature
from orgsync.keycloak.models import EventAccepted

from .deps import ServiceState, get_state

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


@router.post(
    "/keycloak",
    response_model=EventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_keycloak_event(
    request: Request,
    state: ServiceState = Depends(get_state),
) -> EventAccepted:
    """Accept one Keycloak admin event and hand it to the subscribed providers.

    When a webhook secret is configured the raw body must be signed with
    HMAC-SHA256 and the hex digest sent in `X-Keycloak-Signature`.
    """
    body = await request.body()

    secret = state.settings.webhook_secret
    if secret and not verify_signature(secret, body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected Keycloak event with bad signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid event signature",
        )

    try:
        params = await state.router.route(body)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return EventAccepted(
        type=params.event_payload["type"],
        resource_path=params.event_payload["resourcePath"],
        topic=params.topic,
    )
