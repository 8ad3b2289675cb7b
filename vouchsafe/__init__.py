"""
vouchsafe/__init__.py

Vouchsafe: exactly-once settlement of authority-signed payout vouchers.

An offline authority signs a voucher; the named recipient redeems it by
presenting the voucher and paying a settlement fee. Each voucher's
unique_id settles at most once, under concurrent or reentrant attempts.
"""

__version__ = "0.1.0"

from vouchsafe.core.canonical import encode_voucher, voucher_digest
from vouchsafe.core.crypto import AuthorityKeyManager, recover_signer
from vouchsafe.core.exceptions import (
    AlreadyMarkedError,
    AlreadyProcessedError,
    InsufficientFeeError,
    LedgerError,
    MalformedSignatureError,
    RecipientMismatchError,
    RecoveryFailureError,
    SettlementError,
    SignatureError,
    SignerMismatchError,
    TransferFailureError,
    ValidationError,
    VouchsafeError,
    VoucherExpiredError,
)
from vouchsafe.core.models import RedemptionState, SettlementReceipt, Voucher
from vouchsafe.core.observers import SettlementEvent
from vouchsafe.ledger import AssetLedger, InMemoryAssetLedger, ReplayLedger
from vouchsafe.settlement import ExcessPaymentPolicy, FeeVault, SettlementEngine
from vouchsafe.verification import SignatureVerifier

__all__ = [
    # Core types
    "Voucher",
    "SettlementReceipt",
    "RedemptionState",
    "SettlementEvent",
    "AuthorityKeyManager",
    "SignatureVerifier",
    "ReplayLedger",
    "AssetLedger",
    "InMemoryAssetLedger",
    "FeeVault",
    "SettlementEngine",
    "ExcessPaymentPolicy",
    # Helpers
    "encode_voucher",
    "voucher_digest",
    "recover_signer",
    # Errors
    "VouchsafeError",
    "ValidationError",
    "LedgerError",
    "AlreadyMarkedError",
    "SettlementError",
    "AlreadyProcessedError",
    "VoucherExpiredError",
    "RecipientMismatchError",
    "SignatureError",
    "MalformedSignatureError",
    "RecoveryFailureError",
    "SignerMismatchError",
    "InsufficientFeeError",
    "TransferFailureError",
]
