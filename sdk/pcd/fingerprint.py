"""Client-side contact fingerprinting.

Contacts are normalized, deduplicated and hashed into 128-bit fingerprints
before anything leaves the device. A fingerprint is the upper 128 bits of
SHA-256(normalize(contact)). Zero marks an empty slot, so a digest that
truncates to zero is re-hashed with a counter suffix until it is non-zero.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from .errors import CapacityExceeded, InputError

MAX_CONTACTS = 32
FINGERPRINT_BYTES = 16
EMPTY_SLOT = 0
DEFAULT_COUNTRY_CODE = "1"

_PHONE_RE = re.compile(r"[\d\s\-+().]+")
_PHONE_STRIP_RE = re.compile(r"[^\d+]")


def normalize_contact(contact: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a contact identifier for consistent hashing.

    - Trim whitespace and lowercase
    - Phone numbers (digits and phone punctuation only): strip punctuation,
      prepend +<country code> when there is no leading "+"
    - Everything else (emails, handles) is kept as trimmed lowercase
    """
    normalized = contact.strip().lower()

    if _PHONE_RE.fullmatch(normalized) and any(c.isdigit() for c in normalized):
        normalized = _PHONE_STRIP_RE.sub("", normalized)
        if not normalized.startswith("+"):
            normalized = f"+{default_country_code}{normalized}"

    return normalized


def _digest128(data: bytes) -> int:
    """Upper 128 bits of SHA-256, big-endian."""
    return int.from_bytes(hashlib.sha256(data).digest()[:FINGERPRINT_BYTES], "big")


def hash_normalized(normalized: str) -> int:
    """Hash an already-normalized identifier to a non-zero fingerprint."""
    encoded = normalized.encode("utf-8")
    value = _digest128(encoded)
    counter = 0
    while value == EMPTY_SLOT:
        counter += 1
        value = _digest128(encoded + b"\x00" + counter.to_bytes(4, "big"))
    return value


def fingerprint(contact: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> int:
    """Normalize and hash a single contact."""
    return hash_normalized(normalize_contact(contact, default_country_code))


def u128_to_bytes(value: int) -> bytes:
    """Convert a 128-bit value to 16 big-endian bytes."""
    return value.to_bytes(FINGERPRINT_BYTES, "big")


def bytes_to_u128(data: bytes) -> int:
    """Convert 16 big-endian bytes to a 128-bit value."""
    if len(data) != FINGERPRINT_BYTES:
        raise InputError(f"Expected {FINGERPRINT_BYTES} bytes, got {len(data)}")
    return int.from_bytes(data, "big")


@dataclass(frozen=True)
class ContactSet:
    """Fixed-capacity set of fingerprints.

    Slots [0, count) are non-zero and pairwise distinct, the rest are zero.
    """

    slots: tuple[int, ...]
    count: int

    def __post_init__(self):
        if len(self.slots) != MAX_CONTACTS:
            raise InputError(f"Contact set must have {MAX_CONTACTS} slots, got {len(self.slots)}")
        if not 0 <= self.count <= MAX_CONTACTS:
            raise InputError(f"Contact count out of range: {self.count}")
        used = self.slots[: self.count]
        if any(s <= 0 or s >= 1 << 128 for s in used):
            raise InputError("Populated slots must hold non-zero 128-bit fingerprints")
        if len(set(used)) != len(used):
            raise InputError("Populated slots must be distinct")
        if any(s != EMPTY_SLOT for s in self.slots[self.count :]):
            raise InputError("Unused slots must be zero")

    @classmethod
    def from_fingerprints(cls, fingerprints: Sequence[int]) -> ContactSet:
        """Zero-pad a list of distinct fingerprints into a contact set."""
        if len(fingerprints) > MAX_CONTACTS:
            raise CapacityExceeded(f"Maximum {MAX_CONTACTS} contacts allowed")
        padded = list(fingerprints) + [EMPTY_SLOT] * (MAX_CONTACTS - len(fingerprints))
        return cls(slots=tuple(padded), count=len(fingerprints))

    @classmethod
    def empty(cls) -> ContactSet:
        return cls(slots=(EMPTY_SLOT,) * MAX_CONTACTS, count=0)

    def fingerprints(self) -> list[int]:
        """Populated slots in order."""
        return list(self.slots[: self.count])


def build_contact_set(
    contacts: Iterable[str],
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> ContactSet:
    """Hash a list of contacts, deduplicate, and pad to MAX_CONTACTS with zeros.

    Capacity is checked on the raw input count, before normalization or
    deduplication could shrink the list.

    Raises:
        CapacityExceeded: More than MAX_CONTACTS raw contacts were supplied
    """
    contacts = list(contacts)
    if len(contacts) > MAX_CONTACTS:
        raise CapacityExceeded(
            f"Maximum {MAX_CONTACTS} contacts allowed, got {len(contacts)}"
        )

    # dict keeps first-seen order
    unique = dict.fromkeys(normalize_contact(c, default_country_code) for c in contacts)
    hashes = [hash_normalized(c) for c in unique if c]

    return ContactSet.from_fingerprints(hashes)
