"""
cross_lang_proof/emit_proof.py

Voucher Cross-Language Proof - Python Emitter
=============================================

Signs ONE voucher with a fixed authority key, then dumps every
intermediate value to proof_bundle.json so another implementation
(an on-chain verifier, a wallet, a service in another language) can
recompute them independently:

    - voucher             (the JSON form of the voucher fields)
    - encoding_hex        (124-byte packed encoding)
    - digest_hex          (keccak256 of the encoding)
    - prefixed_digest_hex (the personal-sign digest that is actually signed)
    - signature_hex       (65 bytes, r || s || v, v in {27, 28})
    - authority           (checksum address the signature must recover to)

ECDSA signing here is deterministic (RFC 6979), so the bundle is
byte-identical across runs and machines.

Usage:
    cd cross_lang_proof
    python emit_proof.py
"""

import json
from pathlib import Path

from vouchsafe.core.canonical import encode_voucher
from vouchsafe.core.crypto import AuthorityKeyManager, prefixed_digest, recover_signer
from vouchsafe.core.models import Voucher


# ── Deterministic key ─────────────────────────────────────────────────────────
# Not a security key. It exists solely to make the bundle reproducible.
PROOF_SECRET = bytes.fromhex(
    "deadbeefdeadbeefdeadbeefdeadbeef"
    "cafebabecafebabecafebabecafebabe"
)


def main():
    out_path = Path(__file__).parent / "proof_bundle.json"

    authority = AuthorityKeyManager.from_private_bytes(PROOF_SECRET)
    print(f"Authority : {authority.address}")

    # Fixed fields, large enough that amount and unique_id exceed 2**64
    voucher = authority.sign_voucher(Voucher(
        amount=     10 ** 24,
        fee=        5 * 10 ** 15,
        recipient=  "0x" + "ab" * 20,
        unique_id=  2 ** 128 + 42,
        expires_at= 1_900_000_000,
    ))

    encoding = encode_voucher(
        voucher.amount, voucher.fee, voucher.recipient,
        voucher.unique_id, voucher.expires_at,
    )
    digest = voucher.digest()
    signed = prefixed_digest(digest)

    # Self-check before publishing
    assert recover_signer(digest, voucher.signature) == authority.address

    bundle = {
        "_description": (
            "Vouchsafe voucher proof bundle. "
            "All values must match independently computed output."
        ),
        "authority":           authority.address,
        "voucher":             voucher.to_dict(),
        "encoding_hex":        encoding.hex(),
        "digest_hex":          digest.hex(),
        "prefixed_digest_hex": signed.hex(),
        "signature_hex":       voucher.signature.hex(),
        "expected_results": {
            "encoding_length":  len(encoding),
            "recovers_to":      authority.address,
        },
    }

    out_path.write_text(json.dumps(bundle, indent=2), encoding="utf-8")
    print(f"Proof bundle written to: {out_path}")
    print()
    print(f"  encoding_hex        : {encoding.hex()[:64]}...")
    print(f"  digest_hex          : {digest.hex()}")
    print(f"  prefixed_digest_hex : {signed.hex()}")
    print(f"  signature_hex       : {voucher.signature.hex()[:32]}...")


if __name__ == "__main__":
    main()
