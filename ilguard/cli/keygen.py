"""
ilguard keygen - create an Ed25519 signing key for a worker, attestor,
settlement executor or reserve journal.
"""

import sys
from pathlib import Path

import click

from ilguard.core.crypto import Ed25519KeyManager


@click.command(name="keygen")
@click.argument("path", type=click.Path(dir_okay=False))
@click.option("--force", is_flag=True, default=False,
              help="Overwrite an existing key file.")
def keygen_command(path: str, force: bool) -> None:
    """Write a new PEM private key to PATH and print its public key hex."""
    key_path = Path(path)
    if key_path.exists() and not force:
        click.echo(f"Error: {key_path} exists (use --force to overwrite)", err=True)
        sys.exit(2)

    key_manager = Ed25519KeyManager.generate()
    try:
        key_manager.save(key_path)
    except RuntimeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    click.echo(key_manager.public_key_hex)
