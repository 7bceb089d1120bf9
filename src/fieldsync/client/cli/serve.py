"""Reference server command for FieldSync CLI.

Commands:
- serve: Run the reference batch endpoint
"""

from __future__ import annotations

import os
from pathlib import Path

import click


@click.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", type=int, default=8000, show_default=True)
@click.option(
    "--token",
    default=None,
    envvar="FIELDSYNC_TOKEN",
    help="Require this bearer token (default: FIELDSYNC_TOKEN, or no auth).",
)
@click.option(
    "--log-path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Log file (default: FIELDSYNC_LOG_PATH or ./fieldsync-server.log).",
)
def serve(host: str, port: int, token: str | None, log_path: str | None) -> None:
    """Run the reference batch endpoint (in-memory records).

    Examples:

        fieldsync serve --port 8000 --token secret
    """
    import uvicorn

    from fieldsync.server.app import create_app, setup_logging

    resolved_log_path = log_path or os.environ.get("FIELDSYNC_LOG_PATH", "fieldsync-server.log")
    setup_logging(Path(resolved_log_path))
    uvicorn.run(create_app(token=token), host=host, port=port)
