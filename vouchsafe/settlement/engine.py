"""
Settlement engine - the single entry point that redeems a voucher.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, Optional

from vouchsafe.core.exceptions import (
    AlreadyMarkedError,
    AlreadyProcessedError,
    InsufficientFeeError,
    LedgerError,
    RecipientMismatchError,
    SettlementError,
    TransferFailureError,
    ValidationError,
    VoucherExpiredError,
)
from vouchsafe.core.models import (
    RedemptionState,
    SettlementReceipt,
    Voucher,
    normalize_address,
)
from vouchsafe.core.observers import (
    ObserverRegistry,
    SettlementEvent,
    SettlementObserver,
)
from vouchsafe.core.time import unix_now
from vouchsafe.ledger.assets import AssetLedger
from vouchsafe.ledger.replay import ReplayLedger
from vouchsafe.settlement.fees import FeeVault
from vouchsafe.verification.verifier import SignatureVerifier


logger = logging.getLogger(__name__)


class ExcessPaymentPolicy(Enum):
    """What happens to payment above the voucher fee."""
    REFUND = "refund"   # returned to the caller, reported on the receipt
    RETAIN = "retain"   # kept by the operator with the fee


class SettlementEngine:
    """
    Redeems authority-signed vouchers exactly once.

    Gates, in order - the first failure aborts with no state change:
        1. unique_id not settled       AlreadyProcessedError
        2. now < expires_at            VoucherExpiredError
        3. caller == recipient         RecipientMismatchError
        4. authority signature         Malformed/RecoveryFailure/SignerMismatch
        5. payment >= fee              InsufficientFeeError

    Then, effects before interactions:
        mark unique_id → credit fee to operator → transfer asset → commit

    The mark is durable before any transfer. A failed fee credit or asset
    transfer reverses the credit, releases the mark and raises
    TransferFailureError. A failed commit after the transfer keeps the
    fee and the mark and raises LedgerError. No lock is held across the
    asset transfer; a reentrant redemption fails at gate 1 on the mark.
    """

    def __init__(
        self,
        authority:          str,
        asset_ledger:       AssetLedger,
        settlement_address: str,
        operator:           Optional[str] = None,
        replay_ledger:      Optional[ReplayLedger] = None,
        fee_vault:          Optional[FeeVault] = None,
        clock:              Callable[[], int] = unix_now,
        excess_payment:     ExcessPaymentPolicy = ExcessPaymentPolicy.REFUND,
    ):
        """
        Initialize settlement engine.

        Args:
            authority:          Address whose signatures are accepted
            asset_ledger:       Ledger of the payout asset
            settlement_address: Account holding payout assets in asset_ledger
            operator:           Fee recipient; defaults to settlement_address
            replay_ledger:      Settled-id store; in-memory if omitted
            fee_vault:          Fee account book; fresh if omitted
            clock:              Returns current unix seconds
            excess_payment:     Policy for payment above the fee
        """
        self._verifier = SignatureVerifier(authority)
        self._assets = asset_ledger
        self._settlement_address = normalize_address(
            settlement_address, "settlement_address"
        )
        self._operator = normalize_address(
            operator or self._settlement_address, "operator"
        )
        self._clock = clock
        self._replay = replay_ledger if replay_ledger is not None else ReplayLedger(clock=clock)
        self._fees = fee_vault if fee_vault is not None else FeeVault()
        self._excess_payment = ExcessPaymentPolicy(excess_payment)
        self._observers = ObserverRegistry()

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, object] = {
            "settled": 0,
            "rolled_back": 0,
            "rejected": {},
        }

    # ── Configuration (read-only) ─────────────────────────────

    @property
    def authority(self) -> str:
        return self._verifier.authority

    @property
    def operator(self) -> str:
        return self._operator

    @property
    def settlement_address(self) -> str:
        return self._settlement_address

    @property
    def excess_payment(self) -> ExcessPaymentPolicy:
        return self._excess_payment

    @property
    def replay_ledger(self) -> ReplayLedger:
        return self._replay

    @property
    def fee_vault(self) -> FeeVault:
        return self._fees

    # ── Redemption ────────────────────────────────────────────

    def redeem(self, voucher: Voucher, caller: str, payment: int) -> SettlementReceipt:
        """
        Redeem `voucher` on behalf of `caller`, who attaches `payment`
        in the native currency.

        Returns:
            SettlementReceipt for the settled voucher

        Raises:
            ValidationError on a bad caller address or payment value,
            a SettlementError subclass for every rejected attempt, and
            LedgerError when a replay-ledger record cannot be written:
            the claim (nothing moved), a rollback's release (the id stays
            blocked) or the completion after the asset moved (the id
            stays settled).
        """
        caller = normalize_address(caller, "caller")
        if isinstance(payment, bool) or not isinstance(payment, int) or payment < 0:
            raise ValidationError(
                "payment must be a non-negative int", {"payment": repr(payment)}
            )

        unique_id = voucher.unique_id
        logger.debug("Redemption %s: %s", unique_id, RedemptionState.RECEIVED.value)

        try:
            self._check_gates(voucher, caller, payment)
            try:
                self._replay.mark_settled(unique_id, voucher.recipient)
            except AlreadyMarkedError as exc:
                raise AlreadyProcessedError(
                    "voucher already processed", {"unique_id": unique_id}
                ) from exc
        except SettlementError as exc:
            self._record_rejection(exc)
            logger.debug(
                "Redemption %s rejected: %s", unique_id, type(exc).__name__
            )
            raise

        if self._excess_payment is ExcessPaymentPolicy.RETAIN:
            retained = payment
        else:
            retained = voucher.fee
        refund = payment - retained

        credited = 0
        try:
            credited = self._collect_fee(retained)
            self._transfer_asset(voucher)
        except TransferFailureError as exc:
            self._record_rejection(exc)
            self._rollback(unique_id, credited)
            raise

        record = self._commit(voucher)

        with self._stats_lock:
            self._stats["settled"] += 1
        logger.info(
            "Settled voucher %s: %s to %s, fee %s, refund %s",
            unique_id, voucher.amount, voucher.recipient, retained, refund,
        )

        self._observers.publish(
            SettlementEvent(
                unique_id=  unique_id,
                recipient=  voucher.recipient,
                settled_at= record.recorded_at,
            )
        )

        return SettlementReceipt(
            unique_id=  unique_id,
            recipient=  voucher.recipient,
            amount=     voucher.amount,
            fee_paid=   retained,
            refund=     refund,
            settled_at= record.recorded_at,
        )

    def _check_gates(self, voucher: Voucher, caller: str, payment: int) -> None:
        unique_id = voucher.unique_id

        if self._replay.is_settled(unique_id):
            raise AlreadyProcessedError(
                "voucher already processed", {"unique_id": unique_id}
            )
        logger.debug("Redemption %s: %s", unique_id, RedemptionState.NOT_SETTLED.value)

        now = self._clock()
        if voucher.is_expired(now):
            raise VoucherExpiredError(
                "voucher expired",
                {"unique_id": unique_id, "expires_at": voucher.expires_at, "now": now},
            )
        logger.debug("Redemption %s: %s", unique_id, RedemptionState.NOT_EXPIRED.value)

        if caller != voucher.recipient:
            raise RecipientMismatchError(
                "caller is not the voucher recipient",
                {"caller": caller, "recipient": voucher.recipient},
            )
        logger.debug("Redemption %s: %s", unique_id, RedemptionState.RECIPIENT_OK.value)

        self._verifier.verify_or_raise(voucher)
        logger.debug("Redemption %s: %s", unique_id, RedemptionState.SIGNATURE_OK.value)

        if payment < voucher.fee:
            raise InsufficientFeeError(
                "payment below voucher fee",
                {"payment": payment, "fee": voucher.fee},
            )
        logger.debug("Redemption %s: %s", unique_id, RedemptionState.FEE_OK.value)

    def _collect_fee(self, amount: int) -> int:
        """Credit the operator. Returns the amount credited."""
        try:
            self._fees.credit(self._operator, amount)
        except Exception as exc:
            raise TransferFailureError(
                "fee transfer failed", {"operator": self._operator, "reason": str(exc)}
            ) from exc
        return amount

    def _transfer_asset(self, voucher: Voucher) -> None:
        # may run receiver code that re-enters redeem()
        try:
            ok = self._assets.transfer(voucher.recipient, voucher.amount)
        except Exception as exc:
            raise TransferFailureError(
                "asset transfer raised",
                {"unique_id": voucher.unique_id, "reason": str(exc)},
            ) from exc
        if not ok:
            raise TransferFailureError(
                "asset transfer returned failure",
                {"unique_id": voucher.unique_id, "amount": voucher.amount},
            )

    def _rollback(self, unique_id: int, credited: int) -> None:
        if credited:
            self._fees.debit(self._operator, credited)
        try:
            self._replay.release(unique_id)
        except LedgerError:
            # unreleased claim: the id stays blocked here and after restart
            logger.error(
                "Voucher %s rolled back but its release was not recorded",
                unique_id,
            )
            raise
        with self._stats_lock:
            self._stats["rolled_back"] += 1
        logger.info(
            "Redemption %s %s: transfer failed",
            unique_id, RedemptionState.ROLLED_BACK.value,
        )

    def _commit(self, voucher: Voucher):
        try:
            return self._replay.commit(voucher.unique_id, voucher.recipient)
        except LedgerError:
            # The asset has moved and cannot be taken back. The CLAIMED
            # record keeps the id settled here and after a restart.
            logger.error(
                "Voucher %s paid out but not persisted to replay ledger",
                voucher.unique_id,
            )
            raise

    def _record_rejection(self, exc: SettlementError) -> None:
        name = type(exc).__name__
        with self._stats_lock:
            rejected = self._stats["rejected"]
            rejected[name] = rejected.get(name, 0) + 1

    # ── Queries ───────────────────────────────────────────────

    def balance(self) -> int:
        """Payout asset held by the settlement account."""
        return self._assets.balance_of(self._settlement_address)

    def fees_collected(self, identity: Optional[str] = None) -> int:
        """Fees accrued to `identity` (the operator by default)."""
        return self._fees.balance_of(identity or self._operator)

    def is_settled(self, unique_id: int) -> bool:
        return self._replay.is_settled(unique_id)

    def get_settlement_stats(self) -> dict:
        """
        Counts since construction.

        Returns:
            {"settled": int, "rolled_back": int, "rejected": {error_name: int}}
        """
        with self._stats_lock:
            return {
                "settled": self._stats["settled"],
                "rolled_back": self._stats["rolled_back"],
                "rejected": dict(self._stats["rejected"]),
            }

    # ── Notifications ─────────────────────────────────────────

    def subscribe(self, observer: SettlementObserver) -> None:
        self._observers.subscribe(observer)

    def unsubscribe(self, observer: SettlementObserver) -> None:
        self._observers.unsubscribe(observer)

    def __repr__(self) -> str:
        return (
            f"SettlementEngine(authority={self.authority}, "
            f"operator={self._operator}, settled={len(self._replay)})"
        )
