"""Session ledger record layout, addressing and status codes.

Layout: discriminator(8) + session_id(32) + first_party(32) + second_party(32)
        + status(1) + bump(1) = 106 bytes

The record address is derived from the fixed "session" seed, the session id
and the bump, so any client holding the session id can find the record.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import IntEnum

from .errors import InputError

RECORD_SIZE = 8 + 32 + 32 + 32 + 1 + 1
SESSION_ID_BYTES = 32
IDENTITY_BYTES = 32
ZERO_IDENTITY = bytes(IDENTITY_BYTES)

# first 8 bytes of sha256("account:DiscoverySession")
SESSION_DISCRIMINATOR = hashlib.sha256(b"account:DiscoverySession").digest()[:8]

SESSION_SEED = b"session"
PROGRAM_ID = b"private-contact-discovery"
CANONICAL_BUMP = 255


class SessionStatus(IntEnum):
    """Ledger status codes. Transitions only move to a higher code."""

    AWAITING_FIRST_PARTY = 0
    AWAITING_SECOND_PARTY = 1
    COMPUTING = 2
    MATCHED = 3
    EXPIRED = 4

    @property
    def slug(self) -> str:
        return self.name.lower()

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.MATCHED, SessionStatus.EXPIRED)


STATUS_LABELS = {
    SessionStatus.AWAITING_FIRST_PARTY: "Created",
    SessionStatus.AWAITING_SECOND_PARTY: "Waiting for Partner",
    SessionStatus.COMPUTING: "Computing Matches",
    SessionStatus.MATCHED: "Complete",
    SessionStatus.EXPIRED: "Expired",
}


def parse_session_id(value: str | bytes) -> bytes:
    """Accept a session id as 32 raw bytes or 64 hex chars."""
    if isinstance(value, str):
        try:
            value = bytes.fromhex(value)
        except ValueError as e:
            raise InputError("Session id must be hex") from e
    if len(value) != SESSION_ID_BYTES:
        raise InputError(f"Session id must be {SESSION_ID_BYTES} bytes, got {len(value)}")
    return value


def session_id_to_hex(session_id: bytes, short: bool = False) -> str:
    """Hex form of a session id; the short form is for logs and display."""
    value = session_id.hex()
    return value[:16] if short else value


def derive_session_address(
    session_id: str | bytes, bump: int = CANONICAL_BUMP
) -> tuple[str, int]:
    """Derive the record address for a session.

    Seeds: ["session", session_id], then the bump and the program id.
    Returns (address_hex, bump).
    """
    sid = parse_session_id(session_id)
    digest = hashlib.sha256(SESSION_SEED + sid + bytes([bump]) + PROGRAM_ID).digest()
    return digest.hex(), bump


@dataclass(frozen=True)
class SessionRecord:
    """Decoded ledger record."""

    session_id: bytes
    first_party: bytes
    second_party: bytes
    status: SessionStatus
    bump: int

    @property
    def has_second_party(self) -> bool:
        return self.second_party != ZERO_IDENTITY


def encode_record(record: SessionRecord) -> bytes:
    """Serialize a record into the fixed 106-byte layout."""
    for name, value in (
        ("session_id", record.session_id),
        ("first_party", record.first_party),
        ("second_party", record.second_party),
    ):
        if len(value) != 32:
            raise InputError(f"{name} must be 32 bytes")
    if not 0 <= record.bump <= 255:
        raise InputError(f"bump must fit in one byte, got {record.bump}")
    return (
        SESSION_DISCRIMINATOR
        + record.session_id
        + record.first_party
        + record.second_party
        + bytes([int(record.status), record.bump])
    )


def decode_record(data: bytes) -> SessionRecord:
    """Parse a record from raw layout bytes.

    Raises:
        InputError: Wrong size, wrong discriminator or unknown status code
    """
    if len(data) != RECORD_SIZE:
        raise InputError(f"Session record must be {RECORD_SIZE} bytes, got {len(data)}")
    if data[:8] != SESSION_DISCRIMINATOR:
        raise InputError("Not a session record (discriminator mismatch)")

    body = data[8:]
    try:
        status = SessionStatus(body[96])
    except ValueError as e:
        raise InputError(f"Unknown session status code: {body[96]}") from e

    return SessionRecord(
        session_id=body[0:32],
        first_party=body[32:64],
        second_party=body[64:96],
        status=status,
        bump=body[97],
    )
