"""
vouchsafe/core/time.py

THE ONLY CLOCK IN VOUCHSAFE.

Voucher expiry is expressed in whole unix seconds (uint64). Every module
that needs "now" takes a clock callable that defaults to unix_now().
Tests inject their own clock instead of patching time.time().
"""

import time
from datetime import datetime, timezone


def unix_now() -> int:
    """Return the current UTC time as whole unix seconds."""
    return int(time.time())


def iso_timestamp(seconds: int) -> str:
    """
    Render unix seconds as YYYY-MM-DDTHH:MM:SSZ for human output.
    """
    return datetime.fromtimestamp(seconds, timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )
