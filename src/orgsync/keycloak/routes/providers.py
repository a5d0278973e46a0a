"""Provider status and manual refresh."""

from fastapi import APIRouter, Depends, HTTPException, status

from orgsync.keycloak.models import ProviderStatus
from orgsync.keycloak.provider import KeycloakOrgEntityProvider

from .deps import ServiceState, get_state

router = APIRouter(prefix="/providers", tags=["providers"])


def _status(provider: KeycloakOrgEntityProvider) -> ProviderStatus:
    return ProviderStatus(
        id=provider.id,
        name=provider.get_provider_name(),
        base_url=provider.config.base_url,
        realm=provider.config.realm,
        synced=provider.has_synced,
        **provider.status.to_dict(),
    )


@router.get("", response_model=list[ProviderStatus])
async def list_providers(state: ServiceState = Depends(get_state)) -> list[ProviderStatus]:
    return [_status(p) for p in state.providers.values()]


@router.post("/{provider_id}/refresh", response_model=ProviderStatus)
async def refresh_provider(
    provider_id: str,
    state: ServiceState = Depends(get_state),
) -> ProviderStatus:
    """Run a full sync now and return the resulting status."""
    provider = state.providers.get(provider_id)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {provider_id}",
        )
    await provider.refresh()
    return _status(provider)
