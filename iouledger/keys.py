"""
keys.py - Ed25519 signing for transaction ids

Every party owns one key pair. A party "signs a transaction" by signing its
tx_id; anyone can check the signature against the public key carried in the
Party identity. Keys travel as hex strings so they hash and compare cheaply.
"""

from __future__ import annotations
import hashlib
from typing import FrozenSet, Optional

from nacl.encoding import HexEncoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .core import (
    Key, Party, SignatureError, SignedTransaction, TransactionSignature, ISSUING_AUTHORITY,
)


class KeyPair:
    """
    An Ed25519 signing key and its public half.

    Example:
        keys = KeyPair.from_name("O=PartyA,L=London,C=GB")
        sig = keys.sign(tx.tx_id)
        assert verify_signature(tx.tx_id, sig)
    """

    def __init__(self, signing_key: Optional[SigningKey] = None):
        self._signing_key = signing_key or SigningKey.generate()
        self._public_key = self._signing_key.verify_key.encode(encoder=HexEncoder).decode("ascii")

    @classmethod
    def from_seed(cls, seed: bytes) -> KeyPair:
        """Deterministic key pair from a 32-byte seed."""
        return cls(SigningKey(seed))

    @classmethod
    def from_name(cls, name: str) -> KeyPair:
        """Deterministic key pair derived from a party name (tests and demos)."""
        return cls.from_seed(hashlib.sha256(name.encode("utf-8")).digest())

    @property
    def public_key(self) -> Key:
        return self._public_key

    def sign(self, tx_id: str) -> TransactionSignature:
        signed = self._signing_key.sign(tx_id.encode("utf-8"))
        return TransactionSignature(by=self._public_key, signature=signed.signature.hex())

    def __repr__(self) -> str:
        return f"KeyPair({self._public_key[:12]}...)"


# Well-known cash issuer. Its key is derived from its name, like the default
# node keys, so a Node named ISSUING_AUTHORITY holds it.
DEFAULT_ISSUER = Party(ISSUING_AUTHORITY, KeyPair.from_name(ISSUING_AUTHORITY).public_key)


def verify_signature(tx_id: str, sig: TransactionSignature) -> bool:
    """True if `sig` is a valid signature over `tx_id` by `sig.by`."""
    try:
        verify_key = VerifyKey(sig.by.encode("ascii"), encoder=HexEncoder)
        verify_key.verify(tx_id.encode("utf-8"), bytes.fromhex(sig.signature))
        return True
    except (BadSignatureError, ValueError, TypeError):
        return False


def check_signatures(
    stx: SignedTransaction,
    allowed_missing: FrozenSet[Key] = frozenset(),
) -> None:
    """
    Verify every attached signature and that no required one is absent.

    Args:
        stx: Signed transaction to check
        allowed_missing: Required keys whose signatures may still be pending

    Raises:
        SignatureError: On a tx_id that does not match the contents, any invalid
                        signature, or a missing required one
    """
    if stx.tx_id != stx.tx.content_id():
        raise SignatureError(f"Transaction id {stx.tx_id[:12]} does not match its contents")
    for sig in stx.sigs:
        if sig.by not in stx.tx.required_signers:
            raise SignatureError(f"Unexpected signature by {sig.by[:12]} on {stx.tx_id[:12]}")
        if not verify_signature(stx.tx_id, sig):
            raise SignatureError(f"Invalid signature by {sig.by[:12]} on {stx.tx_id[:12]}")
    missing = stx.missing_signers() - allowed_missing
    if missing:
        keys = ", ".join(sorted(k[:12] for k in missing))
        raise SignatureError(f"Transaction {stx.tx_id[:12]} is missing signatures from: {keys}")
