"""
Vouchsafe Settlement Engine

The Settlement Engine redeems a Voucher by tying together:
- the Replay Ledger   (has this unique_id been settled?)
- the Signature check (did the authority sign it?)
- the Fee Vault       (operator's cut, in native currency)
- the Asset Ledger    (the payout itself)

Critical Invariants:
- A unique_id is paid out at most once
- The replay mark is taken BEFORE any transfer
- A failed transfer leaves no trace: no mark, no fee
- Settlement never retries on its own
"""

from vouchsafe.settlement.engine import ExcessPaymentPolicy, SettlementEngine
from vouchsafe.settlement.fees import FeeVault

__all__ = ["SettlementEngine", "ExcessPaymentPolicy", "FeeVault"]
