"""
vouchsafe/cli/ledger.py

vouchsafe ledger - load and verify a persisted replay ledger.

Exit codes:
    0  Ledger intact
    2  Error  (directory missing, chain break, malformed record)
"""

import sys
from pathlib import Path

import click

from vouchsafe.cli.output import (
    configure_color,
    emit_error,
    emit_json,
    header,
    row_fail,
    row_info,
    row_ok,
)
from vouchsafe.core.exceptions import LedgerError
from vouchsafe.core.time import iso_timestamp
from vouchsafe.ledger.replay import LEDGER_FILENAME, ReplayLedger


def _when(seconds) -> str:
    if seconds is None:
        return "-"
    try:
        return iso_timestamp(seconds)
    except (OverflowError, OSError, ValueError):
        return str(seconds)


@click.command(name="ledger")
@click.argument("ledger_dir", type=click.Path(exists=False))
@click.option(
    "--format", "fmt",
    type=click.Choice(["human", "json"], case_sensitive=False),
    default="human",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable ANSI color output.",
)
def ledger_command(ledger_dir: str, fmt: str, no_color: bool) -> None:
    """
    Verify a replay ledger directory and summarize settled vouchers.

    LEDGER_DIR is the directory holding replay.jsonl.
    """
    configure_color(not no_color)

    path = Path(ledger_dir)
    if not (path / LEDGER_FILENAME).exists():
        emit_error(f"Replay ledger not found: {path / LEDGER_FILENAME}", fmt)
        sys.exit(2)

    try:
        ledger = ReplayLedger(ledger_path=path)
    except LedgerError as e:
        emit_error(str(e), fmt)
        sys.exit(2)

    stats = ledger.get_stats()

    if fmt == "json":
        emit_json({
            "status":           "valid",
            "settled":          stats["settled"],
            "unresolved":       [str(i) for i in sorted(ledger.unresolved_ids())],
            "head_hash":        stats["last_hash"],
            "first_settled_at": stats["first_settled_at"],
            "last_settled_at":  stats["last_settled_at"],
            "ledger_file":      stats["ledger_file"],
        })
        return

    header("Replay Ledger")
    click.echo(row_info("Ledger", stats["ledger_file"]))
    click.echo(row_ok("Chain", f"{stats['settled']} settled ids, chain intact"))
    for unique_id in sorted(ledger.unresolved_ids()):
        click.echo(row_fail("Unresolved", f"{unique_id} claimed, outcome not recorded"))
    click.echo(row_info("Head hash", stats["last_hash"]))
    click.echo(row_info("First settled", _when(stats["first_settled_at"])))
    click.echo(row_info("Last settled", _when(stats["last_settled_at"])))
    click.echo()
