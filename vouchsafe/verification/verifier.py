"""
Signature verification bound to a single voucher authority.
"""

from vouchsafe.core.crypto import recover_signer
from vouchsafe.core.exceptions import SignatureError, SignerMismatchError
from vouchsafe.core.models import Voucher, normalize_address


class SignatureVerifier:
    """
    Decides whether a voucher was signed by the configured authority.

    Validation order (cheapest to most opaque):
        1. Signature shape      → MalformedSignatureError
        2. Signer recovery      → RecoveryFailureError
        3. Identity comparison  → SignerMismatchError

    Pure: depends only on the immutable authority address.
    """

    def __init__(self, authority: str):
        self._authority = normalize_address(authority, "authority")

    @property
    def authority(self) -> str:
        return self._authority

    def recover(self, voucher: Voucher) -> str:
        """Recovered signer address. Raises on malformed/unrecoverable signatures."""
        return recover_signer(voucher.digest(), voucher.signature)

    def verify_or_raise(self, voucher: Voucher) -> None:
        recovered = self.recover(voucher)
        if recovered != self._authority:
            raise SignerMismatchError(
                "voucher not signed by authority",
                {"expected": self._authority, "recovered": recovered},
            )

    def verify(self, voucher: Voucher) -> bool:
        """True if the authority signed this voucher. Never raises on bad signatures."""
        try:
            self.verify_or_raise(voucher)
        except SignatureError:
            return False
        return True

    def __repr__(self) -> str:
        return f"SignatureVerifier(authority={self._authority})"
