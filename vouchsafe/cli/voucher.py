"""
vouchsafe/cli/voucher.py

vouchsafe digest / vouchsafe verify - offline voucher inspection.

Usage:
    vouchsafe digest voucher.json                       Canonical bytes + digest
    vouchsafe verify voucher.json --authority 0x...     Signature check
    vouchsafe verify voucher.json --authority 0x... --format json

Exit codes:
    0  Voucher signed by the authority
    1  Signature invalid (malformed, unrecoverable or wrong signer)
    2  Error  (file missing, malformed JSON, invalid voucher fields)
"""

import json
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
from vouchsafe.core.canonical import encode_voucher
from vouchsafe.core.exceptions import SignatureError, ValidationError
from vouchsafe.core.models import Voucher
from vouchsafe.verification.verifier import SignatureVerifier


FORMAT_CHOICE = click.Choice(["human", "json"], case_sensitive=False)


def _load_voucher(path: str, fmt: str) -> Voucher:
    voucher_path = Path(path)
    if not voucher_path.exists():
        emit_error(f"Voucher not found: {path}", fmt)
        sys.exit(2)
    try:
        data = json.loads(voucher_path.read_text(encoding="utf-8"))
        return Voucher.from_dict(data)
    except json.JSONDecodeError as e:
        emit_error(f"Invalid JSON in {path}: {e}", fmt)
    except ValidationError as e:
        emit_error(str(e), fmt)
    sys.exit(2)


@click.command(name="digest")
@click.argument("voucher", type=click.Path(exists=False))
@click.option(
    "--format", "fmt",
    type=FORMAT_CHOICE,
    default="human",
    show_default=True,
    help="Output format.",
)
def digest_command(voucher: str, fmt: str) -> None:
    """
    Print the canonical encoding and digest the authority signs.

    VOUCHER is a JSON file with amount, fee, recipient, unique_id, expires_at.
    """
    v = _load_voucher(voucher, fmt)
    encoded = encode_voucher(v.amount, v.fee, v.recipient, v.unique_id, v.expires_at)
    digest = v.digest()

    if fmt == "json":
        emit_json({
            "encoding": "0x" + encoded.hex(),
            "digest":   "0x" + digest.hex(),
        })
        return

    header("Voucher Digest")
    click.echo(row_info("Unique id", str(v.unique_id)))
    click.echo(row_info("Encoding", f"{len(encoded)} bytes"))
    click.echo(f"  0x{encoded.hex()}")
    click.echo(row_info("Digest", "0x" + digest.hex()))
    click.echo()


@click.command(name="verify")
@click.argument("voucher", type=click.Path(exists=False))
@click.option(
    "--authority",
    required=True,
    metavar="ADDRESS",
    help="Address whose signature is accepted.",
)
@click.option(
    "--format", "fmt",
    type=FORMAT_CHOICE,
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
def verify_command(voucher: str, authority: str, fmt: str, no_color: bool) -> None:
    """
    Check a voucher's signature against an authority address.

    Only the signature is checked; expiry and replay state are not.
    """
    configure_color(not no_color)

    try:
        verifier = SignatureVerifier(authority)
    except ValidationError as e:
        emit_error(str(e), fmt)
        sys.exit(2)

    v = _load_voucher(voucher, fmt)

    recovered = None
    failure = None
    try:
        recovered = verifier.recover(v)
        if recovered != verifier.authority:
            failure = "signer mismatch"
    except SignatureError as e:
        failure = f"{type(e).__name__}: {e}"

    valid = failure is None

    if fmt == "json":
        emit_json({
            "status":    "valid" if valid else "invalid",
            "unique_id": str(v.unique_id),
            "authority": verifier.authority,
            "recovered": recovered,
            "error":     failure,
        })
        sys.exit(0 if valid else 1)

    header("Voucher Verification")
    click.echo(row_info("Unique id", str(v.unique_id)))
    click.echo(row_info("Recipient", v.recipient))
    click.echo(row_info("Authority", verifier.authority))
    if recovered:
        click.echo(row_info("Recovered", recovered))
    if valid:
        click.echo(row_ok("Signature", "signed by authority"))
    else:
        click.echo(row_fail("Signature", failure))
    click.echo()
    sys.exit(0 if valid else 1)
