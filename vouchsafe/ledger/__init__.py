"""
Vouchsafe Ledgers

ReplayLedger  - which voucher ids have been settled (append-only journal).
AssetLedger   - the external payout asset, behind a two-method interface.
"""

from vouchsafe.ledger.assets import AssetLedger, InMemoryAssetLedger
from vouchsafe.ledger.replay import (
    GENESIS_HASH,
    LedgerRecord,
    RecordAction,
    ReplayLedger,
)

__all__ = [
    "AssetLedger",
    "InMemoryAssetLedger",
    "ReplayLedger",
    "LedgerRecord",
    "RecordAction",
    "GENESIS_HASH",
]
