"""CLI entry point for refiner-client."""

import asyncio
import json
import logging

import click
import uvicorn

from .api import ApiError, GatewayClient
from .config import get_gateway_url
from .provider import StaticAuthProvider
from .store import create_store


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Proxy gateway and client-state tools for the refinement backend."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the proxy gateway."""
    click.echo(f"Starting refiner gateway on http://{host}:{port}")
    uvicorn.run("refiner_client.gateway:app", host=host, port=port, reload=False)


@main.command()
@click.option("--user", "user_id", required=True, help="User id to list sessions for.")
@click.option("--gateway", "gateway_url", default=None, help="Gateway base URL.")
def sessions(user_id: str, gateway_url: str | None):
    """List a user's chat sessions, most recent first."""

    async def run():
        async with create_store(StaticAuthProvider(user_id), gateway_url=gateway_url) as store:
            found = await store.sessions.list_sessions()
            if store.sessions.error:
                raise click.ClickException(store.sessions.error)
            return found

    for session in asyncio.run(run()):
        updated = session.updated_at.strftime("%Y-%m-%d %H:%M") if session.updated_at else "-"
        click.echo(f"{session.id}  {updated}  {session.message_count:>4}  {session.title}")


@main.command()
@click.option("--lines", "-n", default=200, help="Number of log lines (1-1000).")
@click.option("--level", default=None, help="Only show this log level.")
@click.option("--gateway", "gateway_url", default=None, help="Gateway base URL.")
def logs(lines: int, level: str | None, gateway_url: str | None):
    """Print the backend's recent log lines."""

    async def run():
        api = GatewayClient(gateway_url or get_gateway_url())
        try:
            return await api.get_logs(lines, level)
        finally:
            await api.aclose()

    try:
        payload = asyncio.run(run())
    except ApiError as e:
        raise click.ClickException(e.message)
    payload = payload or {}
    for entry in payload.get("logs") or payload.get("lines") or []:
        click.echo(entry if isinstance(entry, str) else json.dumps(entry))


@main.command()
@click.argument("job_id")
@click.option("--file-id", required=True, help="File whose pass to export.")
@click.option("--pass", "pass_number", required=True, type=int, help="Refinement pass number.")
@click.option("--format", "export_format", default="same", help="Output format.")
@click.option("--gateway", "gateway_url", default=None, help="Gateway base URL.")
def export(job_id: str, file_id: str, pass_number: int, export_format: str, gateway_url: str | None):
    """Print the download link for one refinement pass."""

    async def run():
        api = GatewayClient(gateway_url or get_gateway_url())
        try:
            return await api.export_pass(job_id, file_id, pass_number, export_format)
        finally:
            await api.aclose()

    try:
        payload = asyncio.run(run())
    except ApiError as e:
        raise click.ClickException(e.message)
    payload = payload or {}
    for warning in payload.get("warnings") or []:
        click.echo(f"warning: {warning}", err=True)
    click.echo(payload.get("download_url") or "")


@main.command()
@click.argument("workspace_id")
@click.option("--user", "user_id", required=True, help="User id to connect as.")
@click.option("--gateway", "gateway_url", default=None, help="Gateway base URL.")
@click.option("--ws-url", default=None, help="Backend WebSocket base URL.")
def tail(workspace_id: str, user_id: str, gateway_url: str | None, ws_url: str | None):
    """Follow a workspace's live messages and presence until interrupted."""

    async def run():
        async with create_store(StaticAuthProvider(user_id), gateway_url=gateway_url, ws_url=ws_url) as store:
            workspaces = store.workspaces
            seen: set[str] = set()

            def on_change(ws_store):
                for message in ws_store.messages:
                    if message.id not in seen and not message.is_temp:
                        seen.add(message.id)
                        click.echo(f"[{message.role}] {message.user_id}: {message.content}")

            workspaces.subscribe(on_change)
            if not await workspaces.select_workspace(workspace_id):
                raise click.ClickException(workspaces.error or f"Workspace not found: {workspace_id}")
            click.echo(f"Following {workspaces.current_workspace.name}; press Ctrl-C to stop")
            await asyncio.Event().wait()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("Stopped.")
