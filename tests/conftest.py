"""
Shared fixtures for the Vouchsafe test suite.

Addresses are generated fresh per test. Time is a FakeClock so expiry
boundaries can be tested exactly.
"""

import pytest
from eth_account import Account

from vouchsafe.core.crypto import AuthorityKeyManager
from vouchsafe.core.models import Voucher
from vouchsafe.ledger.assets import InMemoryAssetLedger
from vouchsafe.settlement.engine import SettlementEngine


NOW = 1_700_000_000
FUTURE = NOW + 3_600
FUNDING = 1_000_000

# Known test secret from the eth-account documentation.
FIXED_SECRET = bytes.fromhex(
    "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
)


class FakeClock:
    """Callable clock returning a settable unix time."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


def new_address() -> str:
    return Account.create().address


@pytest.fixture
def authority():
    return AuthorityKeyManager.generate()


@pytest.fixture
def recipient():
    return new_address()


@pytest.fixture
def settlement_address():
    return new_address()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def assets(settlement_address):
    return InMemoryAssetLedger(
        holder=settlement_address,
        balances={settlement_address: FUNDING},
    )


@pytest.fixture
def engine(authority, assets, settlement_address, clock):
    return SettlementEngine(
        authority=          authority.address,
        asset_ledger=       assets,
        settlement_address= settlement_address,
        clock=              clock,
    )


@pytest.fixture
def make_voucher(authority, recipient):
    """Factory: a voucher signed by the authority, scenario values by default."""

    def _make(
        amount:     int = 1000,
        fee:        int = 5,
        recipient_: str = None,
        unique_id:  int = 42,
        expires_at: int = FUTURE,
        signer:     AuthorityKeyManager = None,
    ) -> Voucher:
        voucher = Voucher(
            amount=     amount,
            fee=        fee,
            recipient=  recipient_ or recipient,
            unique_id=  unique_id,
            expires_at= expires_at,
        )
        return (signer or authority).sign_voucher(voucher)

    return _make
