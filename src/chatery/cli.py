"""CLI entry point for chatery."""

import logging
from pathlib import Path

import click
import uvicorn

from .config import Settings, get_sessions_path, get_transport_path
from .registry import SessionRegistry
from .server import create_app
from .storage import FileSessionStorage
from .transport import load_transport_factory


@click.group()
def main():
    """Run and inspect multi-session WhatsApp messaging."""
    pass


@main.command()
@click.option("--port", default=3000, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option(
    "--sessions-path",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding session credentials and snapshots.",
)
@click.option("--transport", default=None, help="Transport factory as 'module:callable'.")
@click.option("--log-level", default="info", help="Logging level.")
def serve(port: int, host: str, sessions_path: Path | None, transport: str | None, log_level: str):
    """Start the HTTP API."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    transport = transport or get_transport_path()
    if not transport:
        raise click.UsageError("No transport configured. Pass --transport or set CHATERY_TRANSPORT.")

    try:
        factory = load_transport_factory(transport)
    except (ImportError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint="--transport") from e

    registry = SessionRegistry(
        FileSessionStorage(sessions_path or get_sessions_path()),
        factory,
        settings=Settings.from_env(),
    )
    click.echo(f"Starting chatery on http://{host}:{port}")
    uvicorn.run(create_app(registry), host=host, port=port, log_level=log_level.lower())


@main.command()
@click.option(
    "--sessions-path",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding session credentials and snapshots.",
)
def sessions(sessions_path: Path | None):
    """List sessions that have stored state."""
    storage = FileSessionStorage(sessions_path or get_sessions_path())
    found = storage.list_sessions()
    if not found:
        click.echo("No sessions found.")
        return
    for session_id in found:
        has_creds = storage.read_credentials(session_id) is not None
        click.echo(f"{session_id}\t{'paired' if has_creds else 'unpaired'}")
