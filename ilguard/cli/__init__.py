"""
ilguard/cli/__init__.py

ILGuard CLI - root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    ilguard = "ilguard.cli:cli"

Adding a new command:
    1. Create ilguard/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

import logging

import click

from ilguard.cli.keygen import keygen_command
from ilguard.cli.quote import quote_command
from ilguard.cli.verify import verify_command


@click.group()
@click.version_option(package_name="ilguard")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity for ilguard.* loggers.",
)
def cli(log_level: str) -> None:
    """
    ILGuard - impermanent-loss claim engine tools.

    \b
    Commands:
      quote     Payout breakdown for one position.
      verify    Verify a reserve journal: chain, signatures, balances.
      keygen    Generate an Ed25519 signing key.

    \b
    Quick start:
      ilguard quote --entry 1000:0 --exit 700:0 --deductible-bps 1000 --cap-bps 5000
      ilguard verify reserve.jsonl --format json
      ilguard keygen keys/executor.pem
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


cli.add_command(quote_command)
cli.add_command(verify_command)
cli.add_command(keygen_command)
