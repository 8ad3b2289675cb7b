"""
Runtime context for Vouchsafe settlement.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from vouchsafe.core.time import unix_now
from vouchsafe.ledger.assets import AssetLedger
from vouchsafe.ledger.replay import ReplayLedger
from vouchsafe.runtime.config import SettlementConfig
from vouchsafe.settlement.engine import SettlementEngine


@dataclass
class RuntimeContext:
    """A configured settlement engine and the pieces it was built from."""

    config: SettlementConfig
    settlement_engine: SettlementEngine
    replay_ledger: ReplayLedger

    @classmethod
    def from_config(
        cls,
        config_file: Path,
        asset_ledger: AssetLedger,
        clock: Callable[[], int] = unix_now,
    ) -> "RuntimeContext":
        """Create runtime context from a YAML configuration file."""
        return cls.from_settings(
            SettlementConfig.from_yaml(config_file), asset_ledger, clock
        )

    @classmethod
    def from_settings(
        cls,
        config: SettlementConfig,
        asset_ledger: AssetLedger,
        clock: Callable[[], int] = unix_now,
    ) -> "RuntimeContext":
        replay_ledger = ReplayLedger(
            ledger_path=config.replay_ledger_path, clock=clock
        )
        settlement_engine = SettlementEngine(
            authority=config.authority,
            asset_ledger=asset_ledger,
            settlement_address=config.settlement_address,
            operator=config.operator,
            replay_ledger=replay_ledger,
            clock=clock,
            excess_payment=config.excess_payment,
        )
        return cls(
            config=config,
            settlement_engine=settlement_engine,
            replay_ledger=replay_ledger,
        )

    def __repr__(self) -> str:
        return (
            f"RuntimeContext("
            f"authority={self.config.authority!r}, "
            f"settled={len(self.replay_ledger)})"
        )
