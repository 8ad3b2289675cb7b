"""
Fee vault - native-currency account book for settlement fees.

Fees paid by redeemers accrue to the operator here. Credits taken during
a redemption are reversed with debit() if the attempt rolls back.
"""

import threading
from typing import Dict

from vouchsafe.core.models import normalize_address


class FeeVault:
    """Thread-safe balances of collected fees, keyed by checksum address."""

    def __init__(self):
        self._lock = threading.Lock()
        self._balances: Dict[str, int] = {}

    def credit(self, identity: str, amount: int) -> None:
        _check_amount(amount)
        identity = normalize_address(identity, "identity")
        with self._lock:
            self._balances[identity] = self._balances.get(identity, 0) + amount

    def debit(self, identity: str, amount: int) -> None:
        """Raises ValueError if the balance would go negative."""
        _check_amount(amount)
        identity = normalize_address(identity, "identity")
        with self._lock:
            balance = self._balances.get(identity, 0)
            if balance < amount:
                raise ValueError(
                    f"fee vault overdraft for {identity}: "
                    f"balance {balance}, debit {amount}"
                )
            self._balances[identity] = balance - amount

    def balance_of(self, identity: str) -> int:
        identity = normalize_address(identity, "identity")
        with self._lock:
            return self._balances.get(identity, 0)

    def total(self) -> int:
        with self._lock:
            return sum(self._balances.values())


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise ValueError(f"fee amount must be a non-negative int, got {amount!r}")
