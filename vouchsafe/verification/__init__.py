"""
Vouchsafe Verification - authority signature checks.
"""

from vouchsafe.verification.verifier import SignatureVerifier

__all__ = ["SignatureVerifier"]
