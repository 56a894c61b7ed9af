"""Verification of signed computation outputs.

Every output the compute boundary emits is signed with its Ed25519 key over
the canonical JSON of the output body. An output that fails verification is
fatal for that computation: it is never treated as a valid (even empty)
result.
"""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .errors import VerificationError
from .identity import canonical_json


@dataclass
class SignedOutput:
    """Output of one computation, as delivered to the callback."""

    computation_id: str
    session_id: str
    kind: str
    sealed_state: str | None = None
    party_output: dict | None = None
    signature: str = ""

    def body(self) -> dict:
        """Everything the signature covers."""
        return {
            "computation_id": self.computation_id,
            "session_id": self.session_id,
            "kind": self.kind,
            "sealed_state": self.sealed_state,
            "party_output": self.party_output,
        }

    def to_dict(self) -> dict:
        data = self.body()
        data["signature"] = self.signature
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SignedOutput:
        try:
            return cls(
                computation_id=str(data["computation_id"]),
                session_id=str(data["session_id"]),
                kind=str(data["kind"]),
                sealed_state=data.get("sealed_state"),
                party_output=data.get("party_output"),
                signature=str(data.get("signature") or ""),
            )
        except (KeyError, TypeError) as e:
            raise VerificationError(f"Malformed computation output: {e}") from e


def _load_verify_key(verify_key: bytes | str) -> Ed25519PublicKey:
    if isinstance(verify_key, str):
        try:
            verify_key = bytes.fromhex(verify_key)
        except ValueError as e:
            raise VerificationError("Verification key is not valid hex") from e
    try:
        return Ed25519PublicKey.from_public_bytes(verify_key)
    except ValueError as e:
        raise VerificationError(f"Invalid verification key: {e}") from e


def verify_output(output: SignedOutput, verify_key: bytes | str) -> SignedOutput:
    """Verify the boundary signature on an output.

    Returns the output unchanged so calls can be chained.

    Raises:
        VerificationError: Signature missing, malformed or not valid for the key
    """
    key = _load_verify_key(verify_key)
    try:
        signature = bytes.fromhex(output.signature)
    except ValueError as e:
        raise VerificationError("Output signature is not valid hex") from e
    if not signature:
        raise VerificationError(f"Computation {output.computation_id} output is unsigned")

    try:
        key.verify(signature, canonical_json(output.body()))
    except InvalidSignature as e:
        raise VerificationError(
            f"Computation {output.computation_id} output failed signature verification"
        ) from e
    return output
