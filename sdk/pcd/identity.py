"""Party identities and request signing.

A party is identified by its 32-byte Ed25519 public key. Every mutating
request carries a signature over:

    "pcd-v1|" + operation + "|" + session_id_hex + "|" + sha256(canonical payload)

so the service can check that the caller holds the identity it claims before
any ledger transition is attempted.
"""

from __future__ import annotations

import hashlib
import json

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import AuthorityError, InputError
from .layout import IDENTITY_BYTES, ZERO_IDENTITY

SIGNATURE_DOMAIN = b"pcd-v1"


def canonical_json(data) -> bytes:
    """Deterministic JSON encoding used for signatures."""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def request_message(operation: str, session_id_hex: str, payload: dict | None) -> bytes:
    payload_digest = hashlib.sha256(canonical_json(payload or {})).hexdigest()
    return b"|".join(
        [
            SIGNATURE_DOMAIN,
            operation.encode("ascii"),
            session_id_hex.lower().encode("ascii"),
            payload_digest.encode("ascii"),
        ]
    )


def parse_identity(identity: str | bytes) -> bytes:
    """Accept an identity as 32 raw bytes or 64 hex chars."""
    if isinstance(identity, str):
        try:
            identity = bytes.fromhex(identity)
        except ValueError as e:
            raise InputError("Identity must be hex") from e
    if len(identity) != IDENTITY_BYTES:
        raise InputError(f"Identity must be {IDENTITY_BYTES} bytes, got {len(identity)}")
    if identity == ZERO_IDENTITY:
        raise InputError("The all-zero identity is reserved")
    return identity


class PartyIdentity:
    """Ed25519 keypair that signs a party's requests."""

    def __init__(self, private_key: Ed25519PrivateKey | None = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()

    @classmethod
    def generate(cls) -> PartyIdentity:
        return cls()

    @classmethod
    def from_private_hex(cls, value: str) -> PartyIdentity:
        try:
            raw = bytes.fromhex(value)
        except ValueError as e:
            raise InputError("Private key must be hex") from e
        if len(raw) != 32:
            raise InputError("Private key must decode to 32 bytes")
        return cls(Ed25519PrivateKey.from_private_bytes(raw))

    @property
    def identity(self) -> bytes:
        return self._private_key.public_key().public_bytes_raw()

    @property
    def identity_hex(self) -> str:
        return self.identity.hex()

    def private_hex(self) -> str:
        return self._private_key.private_bytes_raw().hex()

    def sign_request(self, operation: str, session_id_hex: str, payload: dict | None) -> str:
        """Sign a request and return the hex signature."""
        message = request_message(operation, session_id_hex, payload)
        return self._private_key.sign(message).hex()


def verify_request_signature(
    identity: str | bytes,
    signature_hex: str,
    operation: str,
    session_id_hex: str,
    payload: dict | None,
) -> bytes:
    """Check a request signature and return the caller's identity bytes.

    Raises:
        InputError: Malformed identity
        AuthorityError: Signature missing or invalid
    """
    identity_bytes = parse_identity(identity)
    try:
        signature = bytes.fromhex(signature_hex or "")
    except ValueError as e:
        raise AuthorityError("Request signature is not valid hex") from e
    if not signature:
        raise AuthorityError("Request signature missing")

    message = request_message(operation, session_id_hex, payload)
    try:
        Ed25519PublicKey.from_public_bytes(identity_bytes).verify(signature, message)
    except (InvalidSignature, ValueError) as e:
        raise AuthorityError(f"Invalid request signature for {operation}") from e
    return identity_bytes
