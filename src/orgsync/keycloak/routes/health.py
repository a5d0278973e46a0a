"""Health check endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from orgsync.keycloak.models import HealthResponse

from .deps import ServiceState, get_state

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(state: ServiceState = Depends(get_state)) -> HealthResponse:
    """Liveness check - is the service running?"""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        providers=len(state.providers),
        details={"subscribers": state.events.subscriber_ids},
    )


@router.get("/ready", response_model=HealthResponse)
async def readiness_check(state: ServiceState = Depends(get_state)):
    """Readiness check - has every provider committed a full sync?"""
    pending = sorted(p.id for p in state.providers.values() if not p.has_synced)
    response = HealthResponse(
        status="unhealthy" if pending else "healthy",
        version=VERSION,
        providers=len(state.providers),
        details={"pending": pending},
    )
    if pending:
        return JSONResponse(status_code=503, content=response.model_dump())
    return response
