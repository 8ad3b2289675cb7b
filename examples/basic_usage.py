"""
Vouchsafe: Basic Usage Example

Demonstrates:
- Authority key setup and voucher signing (offline)
- Settlement engine over an in-memory asset ledger
- Redemption, replay rejection, recipient binding
- Settlement notifications and stats
"""

import logging
import time

from eth_account import Account

from vouchsafe import (
    AlreadyProcessedError,
    AuthorityKeyManager,
    InMemoryAssetLedger,
    RecipientMismatchError,
    SettlementEngine,
    Voucher,
)


def main():
    """Basic Vouchsafe usage."""
    logging.basicConfig(level=logging.INFO, format="  [%(name)s] %(message)s")

    print("=" * 60)
    print("Vouchsafe: Basic Usage Example")
    print("=" * 60)
    print()

    # 1️⃣ Authority signs a voucher (this side never talks to the engine)
    print("1️⃣ Authority signs a voucher...")
    authority = AuthorityKeyManager.generate()
    recipient = Account.create().address

    voucher = authority.sign_voucher(Voucher(
        amount=     1000,
        fee=        5,
        recipient=  recipient,
        unique_id=  42,
        expires_at= int(time.time()) + 3600,
    ))
    print(f"  Authority : {authority.address}")
    print(f"  Digest    : 0x{voucher.digest().hex()}")
    print("✅ Voucher signed")
    print()

    # 2️⃣ Settlement side: asset ledger + engine
    print("2️⃣ Starting settlement engine...")
    settlement_account = Account.create().address
    assets = InMemoryAssetLedger(
        holder=settlement_account,
        balances={settlement_account: 1_000_000},
    )
    engine = SettlementEngine(
        authority=          authority.address,
        asset_ledger=       assets,
        settlement_address= settlement_account,
    )
    engine.subscribe(lambda event: print(f"  📣 Settled: {event.to_dict()}"))
    print(f"✅ Engine ready, balance {engine.balance()}")
    print()

    # 3️⃣ Recipient redeems
    print("3️⃣ Recipient redeems with a payment of 5...")
    receipt = engine.redeem(voucher, recipient, 5)
    print(f"  Receipt   : {receipt.to_dict()}")
    print(f"  Recipient balance : {assets.balance_of(recipient)}")
    print()

    # 4️⃣ Replays and strangers are rejected
    print("4️⃣ Trying again...")
    try:
        engine.redeem(voucher, recipient, 5)
    except AlreadyProcessedError as e:
        print(f"  ❌ {e}")
    try:
        engine.redeem(voucher, Account.create().address, 5)
    except (AlreadyProcessedError, RecipientMismatchError) as e:
        print(f"  ❌ {type(e).__name__}: {e}")
    print()

    print("=" * 60)
    print("✅ Basic usage complete!")
    print("=" * 60)
    stats = engine.get_settlement_stats()
    print(f"  Settled      : {stats['settled']}")
    print(f"  Rejected     : {stats['rejected']}")
    print(f"  Fees to operator : {engine.fees_collected()}")
    print()
    print("Next steps:")
    print("  - Persist settled ids: SettlementConfig(replay_ledger_path=...)")
    print("  - Check a voucher offline: vouchsafe verify voucher.json --authority 0x...")
    print("  - Audit the replay ledger: vouchsafe ledger .vouchsafe/replay")


if __name__ == "__main__":
    main()
