"""
Vouchsafe settlement notifications.

One SettlementEvent is published per successful redemption, after the
replay ledger commit. Observers are plain callables.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementEvent:
    """A voucher was settled."""
    unique_id:  int
    recipient:  str
    settled_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unique_id":  str(self.unique_id),
            "recipient":  self.recipient,
            "settled_at": self.settled_at,
        }


SettlementObserver = Callable[[SettlementEvent], None]


class ObserverRegistry:
    """Ordered, thread-safe list of settlement observers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._observers: List[SettlementObserver] = []

    def subscribe(self, observer: SettlementObserver) -> None:
        with self._lock:
            self._observers.append(observer)

    def unsubscribe(self, observer: SettlementObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def publish(self, event: SettlementEvent) -> None:
        """
        Deliver `event` to every observer in registration order.

        The settlement is already committed when this runs, so an observer
        failure is logged and delivery continues with the next observer.
        """
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "Settlement observer %r failed for unique_id=%s",
                    observer, event.unique_id,
                )
