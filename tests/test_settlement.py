"""
tests/test_settlement.py

Settlement engine behaviour.

  SCENARIO     the canonical 1000 / fee 5 / id 42 walk-through
  GATES        each rejection kind, and that rejections leave no state
  EXPIRY       valid at T-1, expired at T
  ROLLBACK     failed transfers leave no mark and no fee
  REENTRANCY   a redemption nested in the transfer hook is rejected
  FEES         excess payment policy
  NOTIFY       observers see exactly one event per settlement
"""

import dataclasses
import logging

import pytest

from vouchsafe.core.exceptions import (
    AlreadyProcessedError,
    InsufficientFeeError,
    LedgerError,
    MalformedSignatureError,
    RecipientMismatchError,
    RecoveryFailureError,
    SignerMismatchError,
    TransferFailureError,
    ValidationError,
    VoucherExpiredError,
)
from vouchsafe.core.crypto import AuthorityKeyManager
from vouchsafe.core.models import RedemptionState
from vouchsafe.core.observers import SettlementEvent
from vouchsafe.ledger.assets import AssetLedger, InMemoryAssetLedger
from vouchsafe.ledger.replay import RecordAction, ReplayLedger
from vouchsafe.settlement.engine import ExcessPaymentPolicy, SettlementEngine
from vouchsafe.settlement.fees import FeeVault

from conftest import FUNDING, NOW, new_address


def assert_untouched(engine, assets, recipient, unique_id=42):
    assert not engine.is_settled(unique_id)
    assert engine.fees_collected() == 0
    assert assets.balance_of(recipient) == 0
    assert engine.balance() == FUNDING


class FailingAssetLedger(AssetLedger):
    """Reports failure on every transfer."""

    def __init__(self, raise_instead: bool = False):
        self.raise_instead = raise_instead
        self.calls = 0

    def transfer(self, to, amount):
        self.calls += 1
        if self.raise_instead:
            raise RuntimeError("ledger offline")
        return False

    def balance_of(self, owner):
        return 0


class BrokenFeeVault(FeeVault):
    def credit(self, identity, amount):
        raise ValueError("vault locked")


# ─────────────────────────────────────────────────────────────
# Scenario
# ─────────────────────────────────────────────────────────────

class TestScenario:

    def test_redeem_success(self, engine, assets, recipient, make_voucher):
        voucher = make_voucher()
        receipt = engine.redeem(voucher, recipient, 5)

        assert receipt.unique_id == 42
        assert receipt.recipient == recipient
        assert receipt.amount == 1000
        assert receipt.fee_paid == 5
        assert receipt.refund == 0
        assert receipt.settled_at == NOW
        assert receipt.state is RedemptionState.SETTLED

        assert assets.balance_of(recipient) == 1000
        assert engine.balance() == FUNDING - 1000
        assert engine.is_settled(42)
        assert engine.fees_collected() == 5

    def test_second_redemption_already_processed(self, engine, recipient, make_voucher):
        voucher = make_voucher()
        engine.redeem(voucher, recipient, 5)
        with pytest.raises(AlreadyProcessedError):
            engine.redeem(voucher, recipient, 5)

    def test_other_caller_recipient_mismatch(self, engine, assets, recipient, make_voucher):
        with pytest.raises(RecipientMismatchError):
            engine.redeem(make_voucher(), new_address(), 5)
        assert_untouched(engine, assets, recipient)

    def test_short_payment_insufficient_fee(self, engine, assets, recipient, make_voucher):
        with pytest.raises(InsufficientFeeError):
            engine.redeem(make_voucher(), recipient, 3)
        assert_untouched(engine, assets, recipient)

    def test_retry_after_rejection_succeeds(self, engine, recipient, make_voucher):
        voucher = make_voucher()
        with pytest.raises(InsufficientFeeError):
            engine.redeem(voucher, recipient, 3)
        engine.redeem(voucher, recipient, 5)
        assert engine.is_settled(42)

    def test_receipt_serializes(self, engine, recipient, make_voucher):
        data = engine.redeem(make_voucher(), recipient, 5).to_dict()
        assert data["unique_id"] == "42"
        assert data["state"] == "settled"

    def test_zero_fee_voucher(self, engine, recipient, make_voucher):
        receipt = engine.redeem(make_voucher(fee=0, unique_id=1), recipient, 0)
        assert receipt.fee_paid == 0


# ─────────────────────────────────────────────────────────────
# Gates
# ─────────────────────────────────────────────────────────────

class TestGates:

    def test_expiry_boundary(self, engine, clock, recipient, make_voucher):
        voucher = make_voucher(expires_at=NOW + 10)

        clock.now = NOW + 10
        with pytest.raises(VoucherExpiredError):
            engine.redeem(voucher, recipient, 5)

        clock.now = NOW + 11
        with pytest.raises(VoucherExpiredError):
            engine.redeem(voucher, recipient, 5)

        clock.now = NOW + 9
        engine.redeem(voucher, recipient, 5)

    def test_tampered_amount_rejected(self, engine, assets, recipient, make_voucher):
        tampered = dataclasses.replace(make_voucher(), amount=999_999)
        with pytest.raises((SignerMismatchError, RecoveryFailureError)):
            engine.redeem(tampered, recipient, 5)
        assert_untouched(engine, assets, recipient)

    def test_wrong_signer_rejected(self, engine, recipient, make_voucher):
        voucher = make_voucher(signer=AuthorityKeyManager.generate())
        with pytest.raises(SignerMismatchError):
            engine.redeem(voucher, recipient, 5)

    def test_malformed_signature_rejected(self, engine, recipient, make_voucher):
        voucher = make_voucher().with_signature(b"\x00" * 64)
        with pytest.raises(MalformedSignatureError):
            engine.redeem(voucher, recipient, 5)

    def test_recipient_checked_before_signature(self, engine, make_voucher):
        """Recipient binding holds even for a garbage signature."""
        voucher = make_voucher().with_signature(b"")
        with pytest.raises(RecipientMismatchError):
            engine.redeem(voucher, new_address(), 5)

    def test_settled_checked_before_expiry(self, engine, clock, recipient, make_voucher):
        voucher = make_voucher(expires_at=NOW + 10)
        engine.redeem(voucher, recipient, 5)
        clock.now = NOW + 100
        with pytest.raises(AlreadyProcessedError):
            engine.redeem(voucher, recipient, 5)

    def test_caller_address_case_insensitive(self, engine, recipient, make_voucher):
        engine.redeem(make_voucher(), recipient.lower(), 5)

    def test_invalid_caller(self, engine, make_voucher):
        with pytest.raises(ValidationError):
            engine.redeem(make_voucher(), "bob", 5)

    @pytest.mark.parametrize("payment", [-1, 1.5, True, "5"])
    def test_invalid_payment(self, engine, recipient, make_voucher, payment):
        with pytest.raises(ValidationError):
            engine.redeem(make_voucher(), recipient, payment)

    def test_rejections_counted(self, engine, recipient, make_voucher):
        with pytest.raises(InsufficientFeeError):
            engine.redeem(make_voucher(), recipient, 0)
        with pytest.raises(RecipientMismatchError):
            engine.redeem(make_voucher(), new_address(), 5)
        engine.redeem(make_voucher(), recipient, 5)

        stats = engine.get_settlement_stats()
        assert stats["settled"] == 1
        assert stats["rolled_back"] == 0
        assert stats["rejected"] == {
            "InsufficientFeeError": 1,
            "RecipientMismatchError": 1,
        }


# ─────────────────────────────────────────────────────────────
# Rollback
# ─────────────────────────────────────────────────────────────

class TestRollback:

    def _engine(self, authority, ledger, settlement_address, clock, **kwargs):
        return SettlementEngine(
            authority=          authority.address,
            asset_ledger=       ledger,
            settlement_address= settlement_address,
            clock=              clock,
            **kwargs,
        )

    def test_failed_transfer_leaves_no_state(
        self, authority, settlement_address, clock, recipient, make_voucher
    ):
        ledger = FailingAssetLedger()
        engine = self._engine(authority, ledger, settlement_address, clock)

        with pytest.raises(TransferFailureError):
            engine.redeem(make_voucher(), recipient, 5)

        assert ledger.calls == 1
        assert not engine.is_settled(42)
        assert engine.fees_collected() == 0
        assert engine.get_settlement_stats()["rolled_back"] == 1

    def test_raising_transfer_is_transfer_failure(
        self, authority, settlement_address, clock, recipient, make_voucher
    ):
        engine = self._engine(
            authority, FailingAssetLedger(raise_instead=True), settlement_address, clock
        )
        with pytest.raises(TransferFailureError) as exc_info:
            engine.redeem(make_voucher(), recipient, 5)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert not engine.is_settled(42)

    def test_underfunded_settlement_account(
        self, authority, settlement_address, clock, recipient, make_voucher
    ):
        ledger = InMemoryAssetLedger(holder=settlement_address, balances={settlement_address: 10})
        engine = self._engine(authority, ledger, settlement_address, clock)

        with pytest.raises(TransferFailureError):
            engine.redeem(make_voucher(amount=1000), recipient, 5)
        assert ledger.balance_of(recipient) == 0
        assert not engine.is_settled(42)

        ledger.mint(settlement_address, 1000)
        engine.redeem(make_voucher(amount=1000), recipient, 5)
        assert ledger.balance_of(recipient) == 1000

    def test_fee_failure_rolls_back(
        self, authority, assets, settlement_address, clock, recipient, make_voucher
    ):
        engine = self._engine(
            authority, assets, settlement_address, clock, fee_vault=BrokenFeeVault()
        )
        with pytest.raises(TransferFailureError):
            engine.redeem(make_voucher(), recipient, 5)
        assert not engine.is_settled(42)
        assert assets.balance_of(recipient) == 0

    def test_retained_excess_also_rolled_back(
        self, authority, settlement_address, clock, recipient, make_voucher
    ):
        engine = self._engine(
            authority, FailingAssetLedger(), settlement_address, clock,
            excess_payment=ExcessPaymentPolicy.RETAIN,
        )
        with pytest.raises(TransferFailureError):
            engine.redeem(make_voucher(), recipient, 50)
        assert engine.fee_vault.total() == 0

    def test_rollback_logged_at_info(
        self, authority, settlement_address, clock, recipient, make_voucher, caplog
    ):
        engine = self._engine(authority, FailingAssetLedger(), settlement_address, clock)
        with caplog.at_level(logging.INFO, logger="vouchsafe.settlement.engine"):
            with pytest.raises(TransferFailureError):
                engine.redeem(make_voucher(), recipient, 5)
        rolled = [r for r in caplog.records if "rolled_back" in r.getMessage()]
        assert [r.levelno for r in rolled] == [logging.INFO]


# ─────────────────────────────────────────────────────────────
# Durability across restart
# ─────────────────────────────────────────────────────────────

class TestDurability:

    def _engine(self, authority, assets, settlement_address, clock, path):
        replay = ReplayLedger(ledger_path=path, clock=clock)
        return SettlementEngine(
            authority=          authority.address,
            asset_ledger=       assets,
            settlement_address= settlement_address,
            replay_ledger=      replay,
            clock=              clock,
        )

    def _fail_writes(self, engine, monkeypatch, action):
        replay = engine.replay_ledger
        original = replay._append_to_ledger

        def append(record):
            if record.action is action:
                raise LedgerError("disk full")
            original(record)

        monkeypatch.setattr(replay, "_append_to_ledger", append)

    def test_claim_is_on_disk_before_transfer(
        self, authority, assets, settlement_address, clock, recipient,
        make_voucher, tmp_path,
    ):
        engine = self._engine(authority, assets, settlement_address, clock, tmp_path)
        seen_on_disk = []

        def receiver_hook(to, amount):
            seen_on_disk.append(ReplayLedger(ledger_path=tmp_path).is_settled(42))

        assets.on_transfer = receiver_hook
        engine.redeem(make_voucher(), recipient, 5)
        assert seen_on_disk == [True]

    def test_commit_failure_cannot_pay_twice_after_restart(
        self, authority, assets, settlement_address, clock, recipient,
        make_voucher, tmp_path, monkeypatch,
    ):
        engine = self._engine(authority, assets, settlement_address, clock, tmp_path)
        self._fail_writes(engine, monkeypatch, RecordAction.SETTLED)

        with pytest.raises(LedgerError):
            engine.redeem(make_voucher(), recipient, 5)

        # the asset moved and the operator earned the fee
        assert assets.balance_of(recipient) == 1000
        assert engine.fees_collected() == 5
        with pytest.raises(AlreadyProcessedError):
            engine.redeem(make_voucher(), recipient, 5)

        restarted = self._engine(authority, assets, settlement_address, clock, tmp_path)
        with pytest.raises(AlreadyProcessedError):
            restarted.redeem(make_voucher(), recipient, 5)
        assert assets.balance_of(recipient) == 1000

    def test_stop_mid_transfer_cannot_pay_twice_after_restart(
        self, authority, assets, settlement_address, clock, recipient,
        make_voucher, tmp_path,
    ):
        """Restart while the first redemption is still inside the transfer."""
        engine = self._engine(authority, assets, settlement_address, clock, tmp_path)
        second_attempt = []

        def receiver_hook(to, amount):
            restarted = self._engine(authority, assets, settlement_address, clock, tmp_path)
            try:
                restarted.redeem(make_voucher(), recipient, 5)
            except AlreadyProcessedError as exc:
                second_attempt.append(exc)

        assets.on_transfer = receiver_hook
        engine.redeem(make_voucher(), recipient, 5)
        assert len(second_attempt) == 1
        assert assets.balance_of(recipient) == 1000

    def test_rollback_frees_id_after_restart(
        self, authority, settlement_address, clock, recipient, make_voucher, tmp_path,
    ):
        engine = self._engine(
            authority, FailingAssetLedger(), settlement_address, clock, tmp_path
        )
        with pytest.raises(TransferFailureError):
            engine.redeem(make_voucher(), recipient, 5)

        funded = InMemoryAssetLedger(
            holder=settlement_address, balances={settlement_address: FUNDING}
        )
        restarted = self._engine(authority, funded, settlement_address, clock, tmp_path)
        assert not restarted.is_settled(42)
        restarted.redeem(make_voucher(), recipient, 5)
        assert funded.balance_of(recipient) == 1000

    def test_claim_failure_moves_nothing(
        self, authority, assets, settlement_address, clock, recipient,
        make_voucher, tmp_path, monkeypatch,
    ):
        engine = self._engine(authority, assets, settlement_address, clock, tmp_path)
        self._fail_writes(engine, monkeypatch, RecordAction.CLAIMED)
        with pytest.raises(LedgerError):
            engine.redeem(make_voucher(), recipient, 5)
        assert_untouched(engine, assets, recipient)

    def test_release_failure_keeps_id_blocked(
        self, authority, settlement_address, clock, recipient,
        make_voucher, tmp_path, monkeypatch,
    ):
        engine = self._engine(
            authority, FailingAssetLedger(), settlement_address, clock, tmp_path
        )
        self._fail_writes(engine, monkeypatch, RecordAction.RELEASED)
        with pytest.raises(LedgerError) as exc_info:
            engine.redeem(make_voucher(), recipient, 5)
        assert isinstance(exc_info.value.__context__, TransferFailureError)
        assert engine.fees_collected() == 0
        assert engine.is_settled(42)
        assert ReplayLedger(ledger_path=tmp_path).is_settled(42)


# ─────────────────────────────────────────────────────────────
# Reentrancy
# ─────────────────────────────────────────────────────────────

class TestReentrancy:

    def test_nested_redemption_rejected(self, engine, assets, recipient, make_voucher):
        voucher = make_voucher()
        nested_errors = []

        def receiver_hook(to, amount):
            try:
                engine.redeem(voucher, recipient, 5)
            except AlreadyProcessedError as exc:
                nested_errors.append(exc)

        assets.on_transfer = receiver_hook
        engine.redeem(voucher, recipient, 5)

        assert len(nested_errors) == 1
        assert assets.balance_of(recipient) == 1000
        assert engine.fees_collected() == 5
        assert engine.get_settlement_stats()["settled"] == 1

    def test_nested_failure_propagating_rolls_back(
        self, engine, assets, recipient, make_voucher
    ):
        voucher = make_voucher()

        def receiver_hook(to, amount):
            engine.redeem(voucher, recipient, 5)

        assets.on_transfer = receiver_hook
        with pytest.raises(TransferFailureError) as exc_info:
            engine.redeem(voucher, recipient, 5)
        assert isinstance(exc_info.value.__cause__, AlreadyProcessedError)
        assert_untouched(engine, assets, recipient)

        assets.on_transfer = None
        engine.redeem(voucher, recipient, 5)
        assert assets.balance_of(recipient) == 1000

    def test_nested_redemption_of_other_voucher_allowed(
        self, engine, assets, recipient, make_voucher
    ):
        first = make_voucher(unique_id=1)
        second = make_voucher(unique_id=2)
        done = []

        def receiver_hook(to, amount):
            if not done:
                done.append(engine.redeem(second, recipient, 5))

        assets.on_transfer = receiver_hook
        engine.redeem(first, recipient, 5)
        assert engine.is_settled(1) and engine.is_settled(2)
        assert assets.balance_of(recipient) == 2000


# ─────────────────────────────────────────────────────────────
# Fees
# ─────────────────────────────────────────────────────────────

class TestExcessPayment:

    def test_refund_is_default(self, engine, recipient, make_voucher):
        receipt = engine.redeem(make_voucher(), recipient, 12)
        assert engine.excess_payment is ExcessPaymentPolicy.REFUND
        assert receipt.fee_paid == 5
        assert receipt.refund == 7
        assert engine.fees_collected() == 5

    def test_retain(self, authority, assets, settlement_address, clock, recipient, make_voucher):
        engine = SettlementEngine(
            authority=          authority.address,
            asset_ledger=       assets,
            settlement_address= settlement_address,
            clock=              clock,
            excess_payment=     "retain",
        )
        receipt = engine.redeem(make_voucher(), recipient, 12)
        assert receipt.fee_paid == 12
        assert receipt.refund == 0
        assert engine.fees_collected() == 12

    def test_operator_defaults_to_settlement_address(self, engine, settlement_address):
        assert engine.operator == settlement_address

    def test_explicit_operator_receives_fees(
        self, authority, assets, settlement_address, clock, recipient, make_voucher
    ):
        operator = new_address()
        engine = SettlementEngine(
            authority=          authority.address,
            asset_ledger=       assets,
            settlement_address= settlement_address,
            operator=           operator,
            clock=              clock,
        )
        engine.redeem(make_voucher(), recipient, 5)
        assert engine.fees_collected(operator) == 5
        assert engine.fees_collected(settlement_address) == 0


# ─────────────────────────────────────────────────────────────
# Notifications
# ─────────────────────────────────────────────────────────────

class TestNotifications:

    def test_one_event_per_settlement(self, engine, recipient, make_voucher):
        events = []
        engine.subscribe(events.append)

        voucher = make_voucher()
        engine.redeem(voucher, recipient, 5)
        with pytest.raises(AlreadyProcessedError):
            engine.redeem(voucher, recipient, 5)

        assert events == [SettlementEvent(unique_id=42, recipient=recipient, settled_at=NOW)]
        assert events[0].to_dict()["unique_id"] == "42"

    def test_no_event_on_rollback(
        self, authority, settlement_address, clock, recipient, make_voucher
    ):
        engine = SettlementEngine(
            authority=          authority.address,
            asset_ledger=       FailingAssetLedger(),
            settlement_address= settlement_address,
            clock=              clock,
        )
        events = []
        engine.subscribe(events.append)
        with pytest.raises(TransferFailureError):
            engine.redeem(make_voucher(), recipient, 5)
        assert events == []

    def test_failing_observer_does_not_undo_settlement(
        self, engine, recipient, make_voucher, caplog
    ):
        events = []

        def broken(event):
            raise RuntimeError("webhook down")

        engine.subscribe(broken)
        engine.subscribe(events.append)

        with caplog.at_level(logging.ERROR, logger="vouchsafe.core.observers"):
            receipt = engine.redeem(make_voucher(), recipient, 5)

        assert receipt.unique_id == 42
        assert engine.is_settled(42)
        assert len(events) == 1
        assert "webhook down" in caplog.text

    def test_unsubscribe(self, engine, recipient, make_voucher):
        events = []
        engine.subscribe(events.append)
        engine.unsubscribe(events.append)
        engine.redeem(make_voucher(), recipient, 5)
        assert events == []


class TestEngineConfiguration:

    def test_authority_normalized(self, authority, assets, settlement_address):
        engine = SettlementEngine(
            authority=          authority.address.lower(),
            asset_ledger=       assets,
            settlement_address= settlement_address,
        )
        assert engine.authority == authority.address

    def test_bad_settlement_address(self, authority, assets):
        with pytest.raises(ValidationError):
            SettlementEngine(
                authority=          authority.address,
                asset_ledger=       assets,
                settlement_address= "nowhere",
            )

    def test_balance_query(self, engine):
        assert engine.balance() == FUNDING
