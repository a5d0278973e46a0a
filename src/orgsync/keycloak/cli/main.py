"""Keycloak org sync CLI - Main entrypoint.

Usage:
    orgsync-keycloak serve
    orgsync-keycloak sync providers.yaml --provider default --output entities.yaml
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Optional

import typer
import yaml

from orgsync.keycloak.catalog import InMemoryCatalog
from orgsync.keycloak.client import KeycloakAuthError, KeycloakError
from orgsync.keycloak.config import get_settings
from orgsync.keycloak.logs import configure_logging
from orgsync.keycloak.models import Entity, ProviderConfig, read_provider_configs
from orgsync.keycloak.provider import KeycloakOrgEntityProvider
from orgsync.keycloak.scheduler import SchedulerService

app = typer.Typer(
    name="orgsync-keycloak",
    help="Keycloak organization sync tools",
    add_completion=True,
)


@app.command("serve")
def serve(
    host: Annotated[
        Optional[str],
        typer.Option("--host", help="Bind address (defaults to ORGSYNC_HOST)"),
    ] = None,
    port: Annotated[
        Optional[int],
        typer.Option("--port", "-p", help="Bind port (defaults to ORGSYNC_PORT)"),
    ] = None,
) -> None:
    """Run the sync service: scheduled crawls, event webhook and catalog API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "orgsync.keycloak.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
    )


async def _async_sync(configs: list[ProviderConfig]) -> InMemoryCatalog:
    """Crawl every provider once into a fresh in-memory catalog."""
    catalog = InMemoryCatalog()
    scheduler = SchedulerService()
    providers = KeycloakOrgEntityProvider.from_config(
        configs, scheduler=scheduler, catalog=catalog
    )
    try:
        for provider in providers:
            await provider.attach(catalog)
            await provider.read()
            typer.echo(
                f"{provider.id}: {provider.status.users} users, "
                f"{provider.status.groups} groups"
            )
    finally:
        for provider in providers:
            await provider.close()
        await scheduler.shutdown()
    return catalog


def _dump_entities(entities: list[Entity], output: Path) -> None:
    documents = [e.to_document() for e in entities]
    output.write_text(
        yaml.safe_dump_all(documents, sort_keys=False, allow_unicode=True),
        encoding="utf-8",
    )


@app.command("sync")
def sync(
    providers_file: Path = typer.Argument(
        help="Path to the providers YAML file",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    provider: Annotated[
        Optional[str],
        typer.Option("--provider", "-p", help="Only sync this provider id"),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the entities as YAML documents"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """Run one full crawl without starting the service.

    Example:
        orgsync-keycloak sync providers.yaml
        orgsync-keycloak sync providers.yaml --provider acme -o acme.yaml
    """
    configure_logging(log_level="DEBUG" if verbose else "INFO", json_format=False)

    try:
        configs = read_provider_configs(providers_file)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Error loading providers: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if provider is not None:
        configs = [c for c in configs if c.id == provider]
        if not configs:
            typer.secho(f"Unknown provider: {provider}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)

    try:
        catalog = asyncio.run(_async_sync(configs))
    except KeycloakAuthError as e:
        typer.secho(f"Authentication failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KeycloakError as e:
        typer.secho(f"Keycloak error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    entities = catalog.query()
    if output is not None:
        _dump_entities(entities, output)
        typer.secho(f"Wrote {len(entities)} entities to {output}", fg=typer.colors.GREEN)
    else:
        typer.secho(f"Synced {len(entities)} entities", fg=typer.colors.GREEN)


def create_app() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    create_app()
