"""
vouchsafe/cli/__init__.py

Vouchsafe CLI - root Click command group.

Registered in pyproject.toml as:

    [project.scripts]
    vouchsafe = "vouchsafe.cli:cli"

Adding a new command:
    1. Create vouchsafe/cli/your_command.py with a @click.command()
    2. Import it here
    3. cli.add_command(your_command)
"""

import click

from vouchsafe.cli.ledger import ledger_command
from vouchsafe.cli.voucher import digest_command, verify_command


@click.group()
@click.version_option(package_name="vouchsafe")
def cli() -> None:
    """
    Vouchsafe - voucher settlement tooling.

    \b
    Commands:
      digest    Print a voucher's canonical encoding and digest.
      verify    Check a voucher's signature against the authority.
      ledger    Verify a persisted replay ledger.

    \b
    Quick start:
      vouchsafe digest voucher.json
      vouchsafe verify voucher.json --authority 0xAbC...
      vouchsafe ledger .vouchsafe/replay --format json
    """
    pass


cli.add_command(digest_command)
cli.add_command(verify_command)
cli.add_command(ledger_command)
