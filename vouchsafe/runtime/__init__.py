"""
Vouchsafe Runtime - configuration loading and engine wiring.
"""

from vouchsafe.runtime.config import SettlementConfig
from vouchsafe.runtime.context import RuntimeContext

__all__ = [
    "SettlementConfig",
    "RuntimeContext",
]
