"""
vouchsafe/core/models.py

Vouchsafe Data Model

═══════════════════════════════════════════════════════════════════
CONTRACTS
═══════════════════════════════════════════════════════════════════

CONTRACT 1 - Signing
    bytes_signed = voucher_digest(amount, fee, recipient, unique_id, expires_at)
    signature    = 65 bytes, r ‖ s ‖ v, over the domain-separated digest
    signature is NOT part of the digest

CONTRACT 2 - Field widths
    amount, fee, unique_id  : uint256
    expires_at              : uint64 (unix seconds, exclusive upper bound)
    recipient               : 20-byte address, stored in checksum form

CONTRACT 3 - JSON form
    amount, fee, unique_id  : decimal strings (may exceed 2**53)
    expires_at              : int
    signature               : 0x-prefixed lowercase hex

A voucher is immutable once issued. The system persists nothing about
it beyond its unique_id in the replay ledger.
═══════════════════════════════════════════════════════════════════
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Union

from eth_utils import is_address, to_checksum_address

from vouchsafe.core.canonical import voucher_digest
from vouchsafe.core.exceptions import ValidationError


UINT256_MAX = 2 ** 256 - 1
UINT64_MAX  = 2 ** 64 - 1


def normalize_address(value: Any, name: str = "address") -> str:
    """Return the checksum form of an address or raise ValidationError."""
    if not isinstance(value, (str, bytes)) or not is_address(value):
        raise ValidationError(f"{name} is not a valid address", {name: value})
    return to_checksum_address(value)


def _check_uint(name: str, value: Any, maximum: int) -> int:
    # bool is an int subclass; True is never a meaningful amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an int", {name: repr(value)})
    if value < 0 or value > maximum:
        raise ValidationError(f"{name} out of range", {name: value})
    return value


def _parse_uint(name: str, value: Any) -> int:
    if isinstance(value, str):
        try:
            return int(value, 10)
        except ValueError as exc:
            raise ValidationError(
                f"{name} is not a decimal integer", {name: value}
            ) from exc
    return value


def _coerce_signature(value: Union[bytes, str]) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(hex_str)
        except ValueError as exc:
            raise ValidationError(
                "signature is not valid hex", {"signature": value[:16]}
            ) from exc
    raise ValidationError(
        "signature must be bytes or hex string",
        {"type": type(value).__name__},
    )


class RedemptionState(Enum):
    """Gates a redemption attempt passes through, in order."""
    RECEIVED     = "received"
    NOT_SETTLED  = "not_settled"
    NOT_EXPIRED  = "not_expired"
    RECIPIENT_OK = "recipient_ok"
    SIGNATURE_OK = "signature_ok"
    FEE_OK       = "fee_ok"
    SETTLED      = "settled"
    ROLLED_BACK  = "rolled_back"


@dataclass(frozen=True)
class Voucher:
    """
    A signed, off-system-issued authorization for one payout.

    Field ranges and the recipient address are validated here.
    The signature length is not: a malformed signature is a
    redemption-time failure, not a construction-time one.
    """
    amount:     int
    fee:        int
    recipient:  str
    unique_id:  int
    expires_at: int
    signature:  bytes = field(default=b"", repr=False)

    def __post_init__(self) -> None:
        _check_uint("amount", self.amount, UINT256_MAX)
        _check_uint("fee", self.fee, UINT256_MAX)
        _check_uint("unique_id", self.unique_id, UINT256_MAX)
        _check_uint("expires_at", self.expires_at, UINT64_MAX)
        object.__setattr__(
            self, "recipient", normalize_address(self.recipient, "recipient")
        )
        object.__setattr__(self, "signature", _coerce_signature(self.signature))

    def digest(self) -> bytes:
        """32-byte Keccak-256 digest of the canonical encoding."""
        return voucher_digest(
            self.amount,
            self.fee,
            self.recipient,
            self.unique_id,
            self.expires_at,
        )

    def is_expired(self, now: int) -> bool:
        """Valid up to, but not including, expires_at."""
        return now >= self.expires_at

    def with_signature(self, signature: Union[bytes, str]) -> "Voucher":
        return replace(self, signature=signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount":     str(self.amount),
            "fee":        str(self.fee),
            "recipient":  self.recipient,
            "unique_id":  str(self.unique_id),
            "expires_at": self.expires_at,
            "signature":  "0x" + self.signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Voucher":
        """
        Build a voucher from its JSON form.
        Integer fields accept ints or decimal strings.
        Raises ValidationError on missing or invalid fields.
        """
        if not isinstance(data, dict):
            raise ValidationError("voucher must be a JSON object")
        missing = [
            k for k in ("amount", "fee", "recipient", "unique_id", "expires_at")
            if k not in data
        ]
        if missing:
            raise ValidationError(
                "voucher is missing fields", {"missing": ",".join(missing)}
            )
        return cls(
            amount=     _parse_uint("amount", data["amount"]),
            fee=        _parse_uint("fee", data["fee"]),
            recipient=  data["recipient"],
            unique_id=  _parse_uint("unique_id", data["unique_id"]),
            expires_at= _parse_uint("expires_at", data["expires_at"]),
            signature=  data.get("signature", b""),
        )


@dataclass(frozen=True)
class SettlementReceipt:
    """Result of a successful redemption."""
    unique_id:  int
    recipient:  str
    amount:     int
    fee_paid:   int
    refund:     int
    settled_at: int
    state:      RedemptionState = RedemptionState.SETTLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unique_id":  str(self.unique_id),
            "recipient":  self.recipient,
            "amount":     str(self.amount),
            "fee_paid":   str(self.fee_paid),
            "refund":     str(self.refund),
            "settled_at": self.settled_at,
            "state":      self.state.value,
        }
