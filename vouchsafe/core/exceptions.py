"""
Vouchsafe Exception Hierarchy

All exceptions inherit from VouchsafeError for easy catching.
Every SettlementError is terminal for the redemption attempt that raised it.
"""


class VouchsafeError(Exception):
    """Base exception for all Vouchsafe errors"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(VouchsafeError):
    """Raised when voucher fields or configuration values are invalid"""
    pass


class LedgerError(VouchsafeError):
    """Raised when replay ledger operations fail"""
    pass


class AlreadyMarkedError(LedgerError):
    """Raised when a unique_id is marked settled a second time"""
    pass


class SettlementError(VouchsafeError):
    """Raised when a redemption attempt is rejected"""
    pass


class AlreadyProcessedError(SettlementError):
    """Raised when the voucher's unique_id has already been settled"""
    pass


class VoucherExpiredError(SettlementError):
    """Raised when the current time is at or after expires_at"""
    pass


class RecipientMismatchError(SettlementError):
    """Raised when the caller is not the voucher's recipient"""
    pass


class SignatureError(SettlementError):
    """Base for signature failures"""
    pass


class MalformedSignatureError(SignatureError):
    """Raised when a signature has the wrong length or recovery indicator"""
    pass


class RecoveryFailureError(SignatureError):
    """Raised when no signer can be recovered from the signature"""
    pass


class SignerMismatchError(SignatureError):
    """Raised when the recovered signer is not the authority"""
    pass


class InsufficientFeeError(SettlementError):
    """Raised when the supplied payment is below the voucher fee"""
    pass


class TransferFailureError(SettlementError):
    """Raised when the fee or asset transfer fails; the attempt was rolled back"""
    pass
