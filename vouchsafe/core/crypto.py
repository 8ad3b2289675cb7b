"""
vouchsafe/core/crypto.py

Vouchsafe Cryptographic Layer
secp256k1 recoverable signatures over domain-separated voucher digests.

Key contracts:
    prefixed_digest(digest)         : keccak256("\\x19Ethereum Signed Message:\\n32" ‖ digest)
    split_signature(sig)            : 65-byte r ‖ s ‖ v → eth_keys Signature
    recover_signer(digest, sig)     : checksum address of the signer
    AuthorityKeyManager.address     : @property → checksum address (NO parentheses)
    AuthorityKeyManager.sign_digest : bytes → 65-byte signature, v in {27, 28}

Domain separation:
    The authority never signs a raw digest. The EIP-191 personal-message
    tag and the digest length are prepended first, so a voucher signature
    cannot be replayed in a protocol that signs bare 32-byte hashes.

Recovery indicator:
    v is accepted as 27/28 (wire form) or 0/1 (library form).
    Anything else is a MalformedSignatureError.
"""

from pathlib import Path
from typing import TYPE_CHECKING

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as KeyValidationError
from eth_utils import keccak

from vouchsafe.core.exceptions import (
    MalformedSignatureError,
    RecoveryFailureError,
    ValidationError,
)

if TYPE_CHECKING:
    from vouchsafe.core.models import Voucher


SIGNATURE_LENGTH = 65
DIGEST_LENGTH    = 32

_V_OFFSET = 27


def prefixed_digest(digest: bytes) -> bytes:
    """
    Apply the protocol tag and digest length, then hash.

    Built from eth_account's EIP-191 "defunct" message so the bytes are
    exactly what wallets produce for personal_sign.
    """
    message = encode_defunct(primitive=digest)
    return keccak(b"\x19" + message.version + message.header + message.body)


def split_signature(signature: bytes) -> keys.Signature:
    """
    Decode a 65-byte r ‖ s ‖ v signature into its algebraic components.

    Raises:
        MalformedSignatureError - wrong length or v outside {0, 1, 27, 28}
        RecoveryFailureError    - r or s outside the secp256k1 group order
    """
    if not isinstance(signature, (bytes, bytearray)):
        raise MalformedSignatureError(
            "signature must be bytes", {"type": type(signature).__name__}
        )
    if len(signature) != SIGNATURE_LENGTH:
        raise MalformedSignatureError(
            "signature must be 65 bytes", {"length": len(signature)}
        )

    v = signature[64]
    if v >= _V_OFFSET:
        v -= _V_OFFSET
    if v not in (0, 1):
        raise MalformedSignatureError(
            "recovery indicator out of range", {"v": signature[64]}
        )

    try:
        return keys.Signature(signature_bytes=bytes(signature[:64]) + bytes([v]))
    except KeyValidationError as exc:
        raise RecoveryFailureError(
            "signature components out of range", {"reason": str(exc)}
        ) from exc


def recover_signer(digest: bytes, signature: bytes) -> str:
    """
    Recover the checksum address that produced `signature` over `digest`.

    Raises MalformedSignatureError / RecoveryFailureError as described in
    split_signature(), plus RecoveryFailureError for degenerate values
    (r == 0, s == 0, r not an x-coordinate on the curve).
    """
    if len(digest) != DIGEST_LENGTH:
        raise ValidationError(
            "digest must be 32 bytes", {"length": len(digest)}
        )

    sig = split_signature(signature)
    try:
        public_key = sig.recover_public_key_from_msg_hash(prefixed_digest(digest))
    except (BadSignature, KeyValidationError) as exc:
        raise RecoveryFailureError(
            "could not recover signer", {"reason": str(exc)}
        ) from exc
    return public_key.to_checksum_address()


class AuthorityKeyManager:
    """
    Signing key of the voucher authority.

    The authority is offline with respect to settlement; this class is the
    issuing side's tooling and is what the tests sign with.

    Public surface:
        AuthorityKeyManager.generate()                 → new random key
        AuthorityKeyManager.from_private_bytes(seed)   → from raw 32 bytes
        AuthorityKeyManager.from_file(path)            → from hex key file

        key.address                 (@property) → checksum address
        key.sign_digest(digest)                 → 65-byte signature
        key.sign_voucher(voucher)               → signed copy of voucher
        key.save(path)                          → write hex key file
    """

    def __init__(self, account: LocalAccount) -> None:
        self._account: LocalAccount = account

    # ── Construction ──────────────────────────────────────────

    @classmethod
    def generate(cls) -> "AuthorityKeyManager":
        """Generate a new random secp256k1 key."""
        return cls(Account.create())

    @classmethod
    def from_private_bytes(cls, seed: bytes) -> "AuthorityKeyManager":
        """
        Load a key from a raw 32-byte secret.
        Raises ValueError if seed is not exactly 32 bytes.
        """
        if len(seed) != 32:
            raise ValueError(f"secp256k1 secret must be 32 bytes, got {len(seed)}")
        return cls(Account.from_key(seed))

    @classmethod
    def from_file(cls, path: Path) -> "AuthorityKeyManager":
        """
        Load a key from a file holding the hex secret (0x prefix optional).
        Raises FileNotFoundError if path does not exist.
        Raises ValueError if the file does not hold a valid key.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Key file not found: {path}")
        text = path.read_text(encoding="utf-8").strip()
        if text.startswith(("0x", "0X")):
            text = text[2:]
        try:
            return cls.from_private_bytes(bytes.fromhex(text))
        except ValueError as exc:
            raise ValueError(f"Failed to load key from {path}: {exc}") from exc

    # ── Identity ──────────────────────────────────────────────

    @property
    def address(self) -> str:
        """Checksum address of this key. THIS IS A @property."""
        return self._account.address

    # ── Signing ───────────────────────────────────────────────

    def sign_digest(self, digest: bytes) -> bytes:
        """
        Sign a 32-byte voucher digest with domain separation.
        Returns r ‖ s ‖ v with v in {27, 28}.
        """
        if len(digest) != DIGEST_LENGTH:
            raise ValidationError("digest must be 32 bytes", {"length": len(digest)})
        signed = self._account.sign_message(encode_defunct(primitive=digest))
        return bytes(signed.signature)

    def sign_voucher(self, voucher: "Voucher") -> "Voucher":
        """Return a copy of `voucher` carrying this key's signature."""
        return voucher.with_signature(self.sign_digest(voucher.digest()))

    # ── Persistence ───────────────────────────────────────────

    def save(self, path: Path) -> None:
        """
        Write the secret as hex. Creates parent directories if needed.
        Raises RuntimeError on write failure.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(bytes(self._account.key).hex() + "\n", encoding="utf-8")
        except OSError as exc:
            raise RuntimeError(f"Failed to save key to {path}: {exc}") from exc

    def __repr__(self) -> str:
        return f"AuthorityKeyManager(address={self.address})"
