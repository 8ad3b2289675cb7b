"""
Asset ledger interface and an in-memory reference implementation.

The engine only ever calls transfer() and balance_of(). Everything about
how the payout asset really moves lives behind this interface.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

from vouchsafe.core.models import normalize_address


class AssetLedger(ABC):
    """
    The payout asset, as seen from the settlement account.

    transfer() moves `amount` from the settlement account to `to` and
    returns False on failure. It may run receiver code that calls back
    into the engine.
    """

    @abstractmethod
    def transfer(self, to: str, amount: int) -> bool:
        ...

    @abstractmethod
    def balance_of(self, owner: str) -> int:
        ...


class InMemoryAssetLedger(AssetLedger):
    """
    Thread-safe in-process asset ledger.

    on_transfer(to, amount) runs after balances move and outside the lock,
    like a token receiver hook. If it raises, the move is reverted and the
    exception propagates.
    """

    def __init__(
        self,
        holder:      str,
        balances:    Optional[Dict[str, int]] = None,
        on_transfer: Optional[Callable[[str, int], None]] = None,
    ):
        self.holder = normalize_address(holder, "holder")
        self.on_transfer = on_transfer
        self._lock = threading.Lock()
        self._balances: Dict[str, int] = {}
        for owner, amount in (balances or {}).items():
            self.mint(owner, amount)

    def mint(self, owner: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"mint amount must be non-negative, got {amount}")
        owner = normalize_address(owner, "owner")
        with self._lock:
            self._balances[owner] = self._balances.get(owner, 0) + amount

    def balance_of(self, owner: str) -> int:
        owner = normalize_address(owner, "owner")
        with self._lock:
            return self._balances.get(owner, 0)

    def transfer(self, to: str, amount: int) -> bool:
        to = normalize_address(to, "to")
        with self._lock:
            if amount < 0 or self._balances.get(self.holder, 0) < amount:
                return False
            self._move(self.holder, to, amount)

        if self.on_transfer is not None:
            try:
                self.on_transfer(to, amount)
            except Exception:
                with self._lock:
                    self._move(to, self.holder, amount)
                raise
        return True

    def _move(self, sender: str, to: str, amount: int) -> None:
        self._balances[sender] = self._balances.get(sender, 0) - amount
        self._balances[to] = self._balances.get(to, 0) + amount

    def __repr__(self) -> str:
        return f"InMemoryAssetLedger(holder={self.holder})"
