"""Key exchange and per-slot encryption for contact submissions.

A party generates an ephemeral X25519 keypair, agrees a shared secret with
the compute boundary's published X25519 key and derives an AES-256-GCM key
with HKDF-SHA256. Every 128-bit value (fingerprint slot, count, result slot)
is encrypted independently into a 32-byte ciphertext (16-byte body plus
16-byte tag). One random 16-byte nonce covers a whole submission; the
12-byte GCM IV of each slot is BLAKE2b(nonce || slot index).

Wire payload for a submission:
    public_key (32) | nonce (16) | 32 x slot ciphertext (32) | count ciphertext (32)
"""

from __future__ import annotations

import hashlib
import secrets
from collections.abc import Sequence
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import InputError, KeyUnavailable
from .fingerprint import MAX_CONTACTS, ContactSet, bytes_to_u128, u128_to_bytes

PUBLIC_KEY_BYTES = 32
NONCE_BYTES = 16
CIPHERTEXT_BYTES = 32
COUNT_SLOT = MAX_CONTACTS  # the count field is encrypted as slot 32

_HKDF_INFO = b"pcd/x25519-aes256gcm/v1"


def generate_nonce() -> bytes:
    """Generate a random 16-byte submission nonce."""
    return secrets.token_bytes(NONCE_BYTES)


def derive_shared_key(private_key: X25519PrivateKey, peer_public_key: bytes) -> bytes:
    """X25519 agreement followed by HKDF-SHA256 to a 256-bit key."""
    if len(peer_public_key) != PUBLIC_KEY_BYTES:
        raise InputError(f"X25519 public key must be {PUBLIC_KEY_BYTES} bytes")
    try:
        shared_secret = private_key.exchange(X25519PublicKey.from_public_bytes(peer_public_key))
    except ValueError as e:
        # Low-order points give an all-zero shared secret
        raise InputError("X25519 public key is not usable for key agreement") from e
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_HKDF_INFO,
    ).derive(shared_secret)


def _slot_iv(nonce: bytes, index: int) -> bytes:
    if len(nonce) != NONCE_BYTES:
        raise InputError(f"Nonce must be {NONCE_BYTES} bytes, got {len(nonce)}")
    return hashlib.blake2b(nonce + index.to_bytes(2, "big"), digest_size=12).digest()


class SlotCipher:
    """AES-256-GCM over independent 128-bit slots."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise InputError("Slot cipher key must be 32 bytes")
        self._aesgcm = AESGCM(key)

    def encrypt_value(self, value: int, nonce: bytes, index: int = 0) -> bytes:
        """Encrypt one 128-bit value for slot *index*."""
        if not 0 <= value < 1 << 128:
            raise InputError("Value does not fit in 128 bits")
        return self._aesgcm.encrypt(_slot_iv(nonce, index), u128_to_bytes(value), None)

    def decrypt_value(self, ciphertext: bytes, nonce: bytes, index: int = 0) -> int:
        """Decrypt one slot ciphertext.

        Raises:
            InputError: Wrong size, wrong key, wrong nonce or tampered ciphertext
        """
        if len(ciphertext) != CIPHERTEXT_BYTES:
            raise InputError(f"Slot ciphertext must be {CIPHERTEXT_BYTES} bytes")
        try:
            plaintext = self._aesgcm.decrypt(_slot_iv(nonce, index), ciphertext, None)
        except InvalidTag as e:
            raise InputError(f"Slot {index} failed authentication") from e
        return bytes_to_u128(plaintext)

    def encrypt_values(self, values: Sequence[int], nonce: bytes) -> list[bytes]:
        return [self.encrypt_value(v, nonce, i) for i, v in enumerate(values)]

    def decrypt_values(self, ciphertexts: Sequence[bytes], nonce: bytes) -> list[int]:
        return [self.decrypt_value(ct, nonce, i) for i, ct in enumerate(ciphertexts)]


@dataclass
class SessionCipher:
    """A cipher keyed against the compute boundary, plus the ephemeral keypair behind it."""

    cipher: SlotCipher
    public_key: bytes
    private_key: X25519PrivateKey


def create_cipher(boundary_public_key: bytes | str | None) -> SessionCipher:
    """Create a cipher from the compute boundary's X25519 public key.

    Raises:
        KeyUnavailable: The boundary key is missing or not a valid X25519 key
    """
    if not boundary_public_key:
        raise KeyUnavailable(
            "Could not fetch compute boundary public key. Ensure the service is initialized."
        )
    if isinstance(boundary_public_key, str):
        try:
            boundary_public_key = bytes.fromhex(boundary_public_key)
        except ValueError as e:
            raise KeyUnavailable("Compute boundary public key is not valid hex") from e
    if len(boundary_public_key) != PUBLIC_KEY_BYTES:
        raise KeyUnavailable(
            f"Compute boundary public key must be {PUBLIC_KEY_BYTES} bytes, "
            f"got {len(boundary_public_key)}"
        )

    private_key = X25519PrivateKey.generate()
    try:
        key = derive_shared_key(private_key, boundary_public_key)
    except InputError as e:
        raise KeyUnavailable(f"Compute boundary public key rejected: {e.detail}") from e
    return SessionCipher(
        cipher=SlotCipher(key),
        public_key=private_key.public_key().public_bytes_raw(),
        private_key=private_key,
    )


def encrypt_set(
    cipher: SlotCipher, contact_set: ContactSet, nonce: bytes
) -> tuple[list[bytes], bytes]:
    """Encrypt all 32 slots independently plus the count field."""
    ciphertexts = cipher.encrypt_values(contact_set.slots, nonce)
    count_ciphertext = cipher.encrypt_value(contact_set.count, nonce, COUNT_SLOT)
    return ciphertexts, count_ciphertext


def _hex_field(data: dict, name: str, size: int) -> bytes:
    raw = data.get(name)
    if not isinstance(raw, str):
        raise InputError(f"Missing field: {name}")
    try:
        value = bytes.fromhex(raw)
    except ValueError as e:
        raise InputError(f"Field {name} is not valid hex") from e
    if len(value) != size:
        raise InputError(f"Field {name} must be {size} bytes, got {len(value)}")
    return value


@dataclass(frozen=True)
class EncryptedSubmission:
    """Wire payload for one party's contact set."""

    public_key: bytes
    nonce: bytes
    ciphertexts: tuple[bytes, ...]
    count_ciphertext: bytes

    def __post_init__(self):
        if len(self.public_key) != PUBLIC_KEY_BYTES:
            raise InputError(f"public_key must be {PUBLIC_KEY_BYTES} bytes")
        if len(self.nonce) != NONCE_BYTES:
            raise InputError(f"nonce must be {NONCE_BYTES} bytes")
        if len(self.ciphertexts) != MAX_CONTACTS:
            raise InputError(f"Expected {MAX_CONTACTS} ciphertexts, got {len(self.ciphertexts)}")
        if any(len(ct) != CIPHERTEXT_BYTES for ct in self.ciphertexts):
            raise InputError(f"Every ciphertext must be {CIPHERTEXT_BYTES} bytes")
        if len(self.count_ciphertext) != CIPHERTEXT_BYTES:
            raise InputError(f"count_ciphertext must be {CIPHERTEXT_BYTES} bytes")

    def to_dict(self) -> dict:
        return {
            "public_key": self.public_key.hex(),
            "nonce": self.nonce.hex(),
            "ciphertexts": [ct.hex() for ct in self.ciphertexts],
            "count_ciphertext": self.count_ciphertext.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> EncryptedSubmission:
        raw_cts = data.get("ciphertexts")
        if not isinstance(raw_cts, list):
            raise InputError("Missing field: ciphertexts")
        return cls(
            public_key=_hex_field(data, "public_key", PUBLIC_KEY_BYTES),
            nonce=_hex_field(data, "nonce", NONCE_BYTES),
            ciphertexts=tuple(_hex_field({"ct": raw}, "ct", CIPHERTEXT_BYTES) for raw in raw_cts),
            count_ciphertext=_hex_field(data, "count_ciphertext", CIPHERTEXT_BYTES),
        )


def seal_submission(
    session_cipher: SessionCipher, contact_set: ContactSet, nonce: bytes | None = None
) -> EncryptedSubmission:
    """Build the wire payload for a contact set."""
    nonce = nonce or generate_nonce()
    ciphertexts, count_ciphertext = encrypt_set(session_cipher.cipher, contact_set, nonce)
    return EncryptedSubmission(
        public_key=session_cipher.public_key,
        nonce=nonce,
        ciphertexts=tuple(ciphertexts),
        count_ciphertext=count_ciphertext,
    )


def decrypt_set(cipher: SlotCipher, submission: EncryptedSubmission) -> ContactSet:
    """Open a submission back into a contact set (compute boundary side)."""
    slots = cipher.decrypt_values(submission.ciphertexts, submission.nonce)
    count = cipher.decrypt_value(submission.count_ciphertext, submission.nonce, COUNT_SLOT)
    return ContactSet(slots=tuple(slots), count=count)


@dataclass(frozen=True)
class EncryptedFields:
    """A short vector of encrypted 128-bit values returned to one party."""

    nonce: bytes
    ciphertexts: tuple[bytes, ...]

    def to_dict(self) -> dict:
        return {
            "nonce": self.nonce.hex(),
            "ciphertexts": [ct.hex() for ct in self.ciphertexts],
        }

    @classmethod
    def from_dict(cls, data: dict) -> EncryptedFields:
        raw_cts = data.get("ciphertexts")
        if not isinstance(raw_cts, list):
            raise InputError("Missing field: ciphertexts")
        return cls(
            nonce=_hex_field(data, "nonce", NONCE_BYTES),
            ciphertexts=tuple(_hex_field({"ct": raw}, "ct", CIPHERTEXT_BYTES) for raw in raw_cts),
        )


def encrypt_fields(
    cipher: SlotCipher, values: Sequence[int], nonce: bytes | None = None
) -> EncryptedFields:
    nonce = nonce or generate_nonce()
    return EncryptedFields(nonce=nonce, ciphertexts=tuple(cipher.encrypt_values(values, nonce)))


def decrypt_fields(cipher: SlotCipher, fields: EncryptedFields) -> list[int]:
    return cipher.decrypt_values(fields.ciphertexts, fields.nonce)
