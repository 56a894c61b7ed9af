"""Private Contact Discovery SDK - fingerprinting, encryption and a client for the service."""

from .cipher import (
    EncryptedSubmission,
    SessionCipher,
    SlotCipher,
    create_cipher,
    decrypt_set,
    encrypt_set,
    seal_submission,
)
from .client import DiscoveryClient, PendingComputation
from .errors import (
    AuthorityError,
    CapacityExceeded,
    ComputationNotFoundError,
    InfrastructureError,
    InputError,
    KeyUnavailable,
    PCDError,
    SessionNotFoundError,
    StateError,
    VerificationError,
)
from .fingerprint import (
    MAX_CONTACTS,
    ContactSet,
    build_contact_set,
    fingerprint,
    normalize_contact,
)
from .identity import PartyIdentity
from .layout import SessionRecord, SessionStatus, decode_record, derive_session_address, encode_record
from .resolve import resolve_matches
from .results import MatchResult, SubmitConfirmation

__all__ = [
    # Client
    "DiscoveryClient",
    "PendingComputation",
    "PartyIdentity",
    # Fingerprints
    "MAX_CONTACTS",
    "ContactSet",
    "build_contact_set",
    "fingerprint",
    "normalize_contact",
    # Encryption
    "EncryptedSubmission",
    "SessionCipher",
    "SlotCipher",
    "create_cipher",
    "decrypt_set",
    "encrypt_set",
    "seal_submission",
    # Ledger record
    "SessionRecord",
    "SessionStatus",
    "decode_record",
    "derive_session_address",
    "encode_record",
    # Results
    "MatchResult",
    "SubmitConfirmation",
    "resolve_matches",
    # Exceptions
    "PCDError",
    "InputError",
    "CapacityExceeded",
    "AuthorityError",
    "SessionNotFoundError",
    "ComputationNotFoundError",
    "StateError",
    "VerificationError",
    "InfrastructureError",
    "KeyUnavailable",
]
__version__ = "0.1.0"
