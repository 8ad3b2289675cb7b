"""
Settlement configuration.

Example settlement.yaml:

    authority: "0x..."            # required - voucher signer
    settlement_address: "0x..."   # required - holds payout assets
    operator: "0x..."             # optional - fee recipient
    replay_ledger_path: ".vouchsafe/replay"   # optional - persist settled ids
    excess_payment: refund        # refund | retain
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from vouchsafe.core.exceptions import ValidationError
from vouchsafe.core.models import normalize_address
from vouchsafe.settlement.engine import ExcessPaymentPolicy


_KNOWN_KEYS = {
    "authority",
    "settlement_address",
    "operator",
    "replay_ledger_path",
    "excess_payment",
}


@dataclass(frozen=True)
class SettlementConfig:
    """Immutable engine initialization parameters."""
    authority:          str
    settlement_address: str
    operator:           Optional[str] = None
    replay_ledger_path: Optional[Path] = None
    excess_payment:     ExcessPaymentPolicy = ExcessPaymentPolicy.REFUND

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SettlementConfig":
        """Raises ValidationError on missing, unknown or invalid keys."""
        if not isinstance(data, dict):
            raise ValidationError("configuration must be a mapping")

        unknown = set(data) - _KNOWN_KEYS
        if unknown:
            raise ValidationError(
                "unknown configuration keys", {"keys": ",".join(sorted(unknown))}
            )
        for key in ("authority", "settlement_address"):
            if key not in data:
                raise ValidationError(f"missing required key '{key}'")

        operator = data.get("operator")
        ledger_path = data.get("replay_ledger_path")
        policy = data.get("excess_payment", ExcessPaymentPolicy.REFUND.value)
        try:
            excess_payment = ExcessPaymentPolicy(str(policy).lower())
        except ValueError as exc:
            raise ValidationError(
                "excess_payment must be 'refund' or 'retain'",
                {"excess_payment": policy},
            ) from exc

        return SettlementConfig(
            authority=          normalize_address(data["authority"], "authority"),
            settlement_address= normalize_address(
                data["settlement_address"], "settlement_address"
            ),
            operator=           (
                normalize_address(operator, "operator") if operator else None
            ),
            replay_ledger_path= Path(ledger_path) if ledger_path else None,
            excess_payment=     excess_payment,
        )

    @classmethod
    def from_yaml(cls, config_file: Path) -> "SettlementConfig":
        """Load configuration from a YAML file."""
        config_file = Path(config_file)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        with open(config_file, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ValidationError(
                    f"invalid YAML in {config_file}: {exc}"
                ) from exc
        return cls.from_dict(data or {})
