"""ELD sync CLI - operator commands."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import select

app = typer.Typer(
    name="eldsync",
    help="ELD provider integration: connections, scheduled sync and the API server",
    no_args_is_help=True,
)
console = Console()


def _status_style(status: str) -> str:
    return {
        "active": "green",
        "error": "red",
        "pending": "yellow",
        "disconnected": "dim",
    }.get(status, "white")


@app.command("providers")
def providers():
    """List supported ELD providers and whether OAuth credentials are configured."""
    from .providers import list_providers

    table = Table(title="ELD Providers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Features", style="dim")
    table.add_column("Configured")

    for info in list_providers():
        table.add_row(
            info.id,
            info.name,
            ", ".join(info.features),
            "[green]yes[/green]" if info.configured else "[red]no[/red]",
        )
    console.print(table)


@app.command("tenant-add")
def tenant_add(
    slug: str = typer.Argument(..., help="Tenant slug used in the X-Tenant header"),
    name: str = typer.Option(None, "--name", "-n", help="Display name"),
    plan: str = typer.Option("basic", "--plan", "-p", help="basic, premium, fleet or enterprise"),
):
    """Create a tenant (local development)."""
    from .database import async_session_factory, engine
    from .models import Base, Tenant
    from .models.enums import Tier

    try:
        tier = Tier(plan)
    except ValueError:
        console.print(f"[red]Unknown plan '{plan}'[/red]")
        raise typer.Exit(1)

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with async_session_factory() as db:
            tenant = Tenant(slug=slug, name=name or slug, plan=tier.value)
            db.add(tenant)
            await db.commit()
            return tenant.id

    tenant_id = asyncio.run(_create())
    console.print(f"[green]Created tenant {slug}[/green] ({tenant_id})")


@app.command("connections")
def connections(
    tenant_slug: str = typer.Argument(..., help="Tenant slug"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Show a tenant's ELD connections and their health."""
    from .database import async_session_factory
    from .models import Tenant
    from .services.connection_svc import ConnectionManager

    async def _list():
        async with async_session_factory() as db:
            tenant = (await db.execute(select(Tenant).where(Tenant.slug == tenant_slug))).scalar_one_or_none()
            if tenant is None:
                return None
            summary = await ConnectionManager(db).get_connection_status(tenant.id)
            return summary.to_dict()

    result = asyncio.run(_list())
    if result is None:
        console.print(f"[red]Tenant '{tenant_slug}' not found[/red]")
        raise typer.Exit(1)

    if json_output:
        console.print_json(json.dumps(result))
        return

    table = Table(title=f"ELD connections for {tenant_slug}")
    table.add_column("ID", style="dim", max_width=36)
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Account")
    table.add_column("Last sync")
    table.add_column("Error", style="red")
    for c in result["connections"]:
        style = _status_style(c["status"])
        table.add_row(
            c["id"],
            c["provider"],
            f"[{style}]{c['status']}[/{style}]",
            c["accountName"] or "-",
            c["lastSyncAt"] or "never",
            c["errorMessage"] or "",
        )
    console.print(table)


@app.command("sync-due")
def sync_due(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
):
    """Run one scheduled sync pass over every stale connection."""
    from .scheduler import run_scheduled_sync

    report = asyncio.run(run_scheduled_sync())
    if json_output:
        console.print_json(json.dumps(report.to_dict()))
        return

    table = Table(title=f"Scheduled sync ({report.connections_processed} connections)")
    table.add_column("Connection", style="dim", max_width=36)
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Error", style="red")
    for r in report.sync_results:
        style = "green" if r.status == "synced" else "yellow" if r.status == "partial" else "red"
        table.add_row(str(r.connection_id), r.provider, f"[{style}]{r.status}[/{style}]", r.error or "")
    console.print(table)
    if report.reaped_jobs:
        console.print(f"[yellow]Reaped {report.reaped_jobs} stuck job(s)[/yellow]")
    if report.collapsed_connections:
        console.print(f"[yellow]Disconnected {report.collapsed_connections} duplicate connection(s)[/yellow]")


@app.command("reap")
def reap(
    minutes: int = typer.Option(None, "--minutes", "-m", help="Fail jobs running longer than this"),
):
    """Fail sync jobs stuck in running."""
    from .config import settings
    from .database import async_session_factory
    from .sync.jobs import reap_stuck_jobs

    bound = timedelta(minutes=minutes or settings.sync_job_timeout_minutes)

    async def _reap():
        async with async_session_factory() as db:
            return await reap_stuck_jobs(db, bound)

    count = asyncio.run(_reap())
    console.print(f"Reaped {count} stuck job(s)")


@app.command("serve")
def serve(
    port: int = typer.Option(8030, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Launch the ELD sync API."""
    import uvicorn

    console.print(f"[bold cyan]Starting ELD sync at http://{host}:{port}[/bold cyan]")
    uvicorn.run("eldsync.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
