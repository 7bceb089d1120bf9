"""Setup command for FieldSync CLI.

Commands:
- init: Write the device configuration
"""

from __future__ import annotations

import sys

import click

from fieldsync.client.cli.config import get_config_file, get_queue_db, load_config, save_config
from fieldsync.core.crypto import derive_key, generate_salt, make_passphrase_check


@click.command()
@click.option("--server-url", "-s", required=True, help="Base URL of the batch endpoint.")
@click.option("--token", "-t", default="", help="Bearer token for this device.")
@click.option("--queue-db", type=click.Path(dir_okay=False), default=None, help="Queue database path.")
@click.option(
    "--encrypt/--no-encrypt",
    default=False,
    help="Encrypt queued payloads with a device passphrase.",
)
def init(server_url: str, token: str, queue_db: str | None, encrypt: bool) -> None:
    """Configure this device for offline sync.

    With --encrypt you will be prompted for a passphrase; it is needed by
    every later command (or FIELDSYNC_PASSPHRASE).
    """
    config = load_config()
    if encrypt and config.get("passphrase_salt"):
        click.echo("Error: queue encryption is already configured.", err=True)
        sys.exit(1)

    config["server_url"] = server_url.rstrip("/")
    config["auth_token"] = token
    if queue_db:
        config["queue_db"] = queue_db

    if encrypt:
        passphrase = click.prompt(
            "Create device passphrase",
            hide_input=True,
            confirmation_prompt="Confirm device passphrase",
        )
        salt = generate_salt()
        key = derive_key(passphrase, salt)
        config["passphrase_salt"] = salt.hex()
        config["passphrase_check"] = make_passphrase_check(key)

    save_config(config)
    click.echo("FieldSync configured.")
    click.echo(f"Server: {config['server_url']}")
    click.echo(f"Queue:  {get_queue_db(config)}")
    click.echo(f"Config: {get_config_file()}")
    if encrypt:
        click.echo("Queued payloads will be encrypted at rest.")
