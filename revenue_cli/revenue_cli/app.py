"""Revenue CLI application -- Typer-based operator interface.

Provides commands for signing-key management, one-off sync passes,
offline verification of signed exports, API key issuance, and running the
HTTP server.  Human-readable output goes to *stderr* via Rich; with
``--json`` a machine-readable document is written to *stdout*.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from revenue_api.container import ServiceContainer
from revenue_engine.config import load_settings
from revenue_engine.errors import NotFoundError, SigningError
from revenue_engine.models import SignedPayload, SyncResult, SyncStatus
from revenue_engine.signing import SigningService
from revenue_engine.state.database import get_session
from revenue_engine.state.repository import APIKeyRepository, ConnectionRepository
from revenue_engine.sync import summarize

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="revenue",
    help="Revenue telemetry - sync payment processors and sign revenue exports",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at INFO level."),
) -> None:
    """Global options applied to every command."""
    global _json_output  # noqa: PLW0603
    _json_output = json_mode
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


async def _with_container(action: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Run *action* against a container without the background scheduler."""
    container = ServiceContainer(load_settings())
    try:
        await container.start()
        return await action(container)
    finally:
        await container.close()


# ---------------------------------------------------------------------------
# keygen
# ---------------------------------------------------------------------------


@app.command()
def keygen() -> None:
    """Show the deployment signing key, creating it on first use.

    An existing key is never replaced; delete the key file by hand to rotate.
    """
    settings = load_settings()
    secret = settings.signing_private_key.get_secret_value() if settings.signing_private_key else None
    existed = secret is not None or settings.signing_key_path.exists()
    service = SigningService(secret, settings.signing_key_path)
    try:
        public_key = service.public_key()
    except SigningError as exc:
        console.print(f"[red]Signing key unavailable: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    source = "configuration" if secret is not None else str(settings.signing_key_path)
    if _json_output:
        _emit_json({"public_key": public_key, "source": source, "created": not existed})
        return

    if existed:
        console.print(f"Signing key loaded from [bold]{source}[/bold]")
    else:
        console.print(f"[green]Generated new signing key at[/green] [bold]{source}[/bold]")
    console.print(f"Public key: [cyan]{public_key}[/cyan]")


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


def _display_results(results: list[SyncResult]) -> None:
    table = Table(title="Sync results")
    table.add_column("Connection", style="dim")
    table.add_column("Status")
    table.add_column("Snapshots", justify="right")
    table.add_column("Error")
    for result in results:
        style = {"success": "green", "error": "red"}.get(result.status.value, "yellow")
        table.add_row(
            result.connection_id,
            f"[{style}]{result.status.value}[/{style}]",
            str(result.records_processed),
            result.error or "",
        )
    console.print(table)


@app.command()
def sync(
    connection: str | None = typer.Option(None, "--connection", "-c", help="Sync only this connection id."),
) -> None:
    """Run one sync pass now, for every active connection or just one."""

    async def _run(container: ServiceContainer) -> list[SyncResult]:
        if connection is not None:
            async with get_session(container.session_factory) as session:
                if await ConnectionRepository(session, tenant_id=None).get(connection) is None:
                    raise NotFoundError(f"Connection {connection} not found")
            return [await container.orchestrator.sync_connection(connection)]
        return await container.orchestrator.run_pass()

    try:
        results = asyncio.run(_with_container(_run))
    except NotFoundError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    if _json_output:
        _emit_json({"summary": summarize(results), "results": [r.model_dump(mode="json") for r in results]})
    elif not results:
        console.print("[yellow]No active connections. Nothing to sync.[/yellow]")
    else:
        _display_results(results)

    if any(r.status == SyncStatus.ERROR for r in results):
        raise typer.Exit(code=3)


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------


@app.command()
def verify(
    file: Path = typer.Argument(..., help="Signed export JSON file.", exists=True, dir_okay=False),
    public_key: str | None = typer.Option(None, "--public-key", help="Require this signer (base64 public key)."),
) -> None:
    """Check the signature of a signed revenue export."""
    try:
        signed = SignedPayload.model_validate_json(file.read_text(encoding="utf-8"))
    except (OSError, PydanticValidationError) as exc:
        console.print(f"[red]Not a signed export: {escape(str(exc))}[/red]")
        raise typer.Exit(code=3) from exc

    valid = SigningService.verify(signed, expected_public_key=public_key)
    if _json_output:
        _emit_json({"valid": valid, "public_key": signed.public_key, "timestamp": signed.timestamp})
    elif valid:
        points = SigningService.load_data(signed)
        count = len(points) if isinstance(points, list) else 1
        console.print(f"[green]Signature valid[/green] ({count} data point(s), signer {signed.public_key})")
    else:
        console.print("[red]Signature INVALID[/red]")

    if not valid:
        raise typer.Exit(code=3)


# ---------------------------------------------------------------------------
# create-api-key
# ---------------------------------------------------------------------------


@app.command(name="create-api-key")
def create_api_key(
    name: str = typer.Argument(..., help="Label for the key."),
    expires_in_days: int | None = typer.Option(None, "--expires-in-days", min=1, help="Expire the key after N days."),
) -> None:
    """Issue an API key.  The key is printed once and cannot be recovered."""

    async def _create(container: ServiceContainer) -> tuple[str, str]:
        expires_at = datetime.now(UTC) + timedelta(days=expires_in_days) if expires_in_days else None
        async with get_session(container.session_factory) as session:
            row, plaintext = await APIKeyRepository(session).create(name, expires_at=expires_at)
            return row.id, plaintext

    key_id, plaintext = asyncio.run(_with_container(_create))
    if _json_output:
        _emit_json({"id": key_id, "name": name, "api_key": plaintext})
        return
    console.print(f"Created API key [bold]{name}[/bold] ({key_id})")
    console.print("[yellow]Store it now; it will not be shown again:[/yellow]")
    typer.echo(plaintext)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", envvar="API_HOST"),
    port: int = typer.Option(8000, "--port", envvar="API_PORT"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes (development)."),
) -> None:
    """Run the HTTP API and the background sync scheduler."""
    import uvicorn

    console.print(f"Serving revenue API on [bold]http://{host}:{port}[/bold]")
    uvicorn.run("revenue_api.main:app", host=host, port=port, reload=reload, log_level="info")
