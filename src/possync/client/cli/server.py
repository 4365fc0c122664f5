"""Remote endpoint command for the possync CLI.

Commands:
- serve: Run the reference remote sync endpoint
"""

from __future__ import annotations

import os
from pathlib import Path

import click


@click.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", "-p", type=int, default=8000, show_default=True, help="Bind port.")
@click.option(
    "--db-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Remote database (default: POSSYNC_REMOTE_DB_PATH or ./possync-remote.db).",
)
@click.option(
    "--token",
    default=None,
    help="Bearer token required from stations (default: POSSYNC_REMOTE_TOKEN).",
)
@click.option(
    "--log-path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Log file (default: POSSYNC_REMOTE_LOG_PATH or ./possync-remote.log).",
)
def serve(
    host: str,
    port: int,
    db_path: Path | None,
    token: str | None,
    log_path: Path | None,
) -> None:
    """Run the reference remote sync endpoint.

    Examples:

        # Serve on localhost:8000
        possync serve

        # Require a token and use a custom database
        possync serve --token secret --db-path /var/lib/possync/remote.db
    """
    import uvicorn

    from possync.server.app import create_app, setup_logging
    from possync.server.database import RemoteDatabase

    resolved_db_path = db_path or Path(
        os.environ.get("POSSYNC_REMOTE_DB_PATH", "possync-remote.db")
    )
    resolved_log_path = log_path or Path(
        os.environ.get("POSSYNC_REMOTE_LOG_PATH", "possync-remote.log")
    )
    resolved_token = token or os.environ.get("POSSYNC_REMOTE_TOKEN") or None

    setup_logging(resolved_log_path)
    app = create_app(RemoteDatabase(resolved_db_path), token=resolved_token)

    click.echo(f"Serving possync remote on http://{host}:{port} (database {resolved_db_path})")
    uvicorn.run(app, host=host, port=port, log_level="info")
