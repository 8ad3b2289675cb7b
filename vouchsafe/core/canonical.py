"""
Vouchsafe: Canonical Encoding

Two canonical forms live here and nowhere else:

    1. The voucher encoding - what the authority signs.
       Tightly packed, fixed-width fields, no delimiters:

           uint256 amount      32 bytes
           uint256 fee         32 bytes
           address recipient   20 bytes
           uint256 unique_id   32 bytes
           uint64  expires_at   8 bytes
                              ---------
                              124 bytes  → Keccak-256 → 32-byte digest

       Every field has a fixed width, so two different tuples can never
       produce the same byte string.

    2. RFC 8785 (JCS) canonical JSON - used to hash-chain the records of
       the persisted replay ledger.

RFC 8785: https://www.rfc-editor.org/rfc/rfc8785
"""

import hashlib

from eth_abi.exceptions import EncodingError
from eth_abi.packed import encode_packed
from eth_utils import is_address, keccak, to_canonical_address

from vouchsafe.core.exceptions import ValidationError

try:
    import jcs as _jcs
except ImportError as exc:
    raise ImportError(
        "Vouchsafe requires the 'jcs' package for RFC 8785 compliance.\n"
        "Install with: pip install jcs\n"
        f"Original error: {exc}"
    ) from exc


VOUCHER_TYPES = ("uint256", "uint256", "address", "uint256", "uint64")
VOUCHER_ENCODING_LENGTH = 124


def encode_voucher(
    amount:     int,
    fee:        int,
    recipient:  str,
    unique_id:  int,
    expires_at: int,
) -> bytes:
    """
    Packed encoding of the economically relevant voucher fields.

    Raises ValidationError if a value does not fit its fixed width
    or the recipient is not a 20-byte address.
    """
    if not isinstance(recipient, (str, bytes)) or not is_address(recipient):
        raise ValidationError(
            "recipient is not a valid address", {"recipient": recipient}
        )
    for name, value in (("amount", amount), ("fee", fee),
                        ("unique_id", unique_id), ("expires_at", expires_at)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(
                f"{name} must be an int", {name: repr(value)}
            )
    try:
        return encode_packed(
            list(VOUCHER_TYPES),
            [amount, fee, to_canonical_address(recipient), unique_id, expires_at],
        )
    except EncodingError as exc:
        raise ValidationError(f"voucher field out of range: {exc}") from exc


def voucher_digest(
    amount:     int,
    fee:        int,
    recipient:  str,
    unique_id:  int,
    expires_at: int,
) -> bytes:
    """Keccak-256 of encode_voucher(). Always 32 bytes."""
    return keccak(encode_voucher(amount, fee, recipient, unique_id, expires_at))


def canonicalize(obj: dict) -> bytes:
    """
    Encode a dict to RFC 8785 canonical JSON bytes.

    Output is deterministic regardless of key insertion order.
    Large integers must be passed as decimal strings.
    """
    return _jcs.canonicalize(obj)


def canonical_hash(obj: dict) -> str:
    """
    SHA-256 of the RFC 8785 canonical form.

    Returns:
        Lowercase hex-encoded SHA-256 digest (64 characters).
    """
    return hashlib.sha256(canonicalize(obj)).hexdigest()
