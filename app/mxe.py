"""Confidential-compute boundary.

Holds the only key material able to open contact submissions and session
state. Everything it emits is signed with its Ed25519 key, so the callback
(and any client) can tell a genuine output from a forged or corrupted one.

Session state never leaves this module in plaintext: between computations
it is sealed with AES-256-GCM under the sealing key, with the session id as
associated data so a blob cannot be replayed into another session.

The four protocol entry points are pure functions over SessionState. They
use mask-based selects instead of branching on stored flags, mirroring the
intersection engine.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pcd.cipher import (
    EncryptedSubmission,
    SlotCipher,
    decrypt_set,
    derive_shared_key,
    encrypt_fields,
)
from pcd.errors import InfrastructureError, InputError, KeyUnavailable, StateError
from pcd.fingerprint import EMPTY_SLOT, MAX_CONTACTS, ContactSet
from pcd.identity import canonical_json
from pcd.layout import parse_session_id
from pcd.results import MatchResult, SubmitConfirmation
from pcd.verify import SignedOutput

from .engine import compute_intersection, ct_select
from .settings import get_setting

logger = logging.getLogger(__name__)

SEAL_NONCE_BYTES = 12


def _zero_slots() -> list[int]:
    return [EMPTY_SLOT] * MAX_CONTACTS


def _select_slots(flag: int, if_true: Sequence[int], if_false: Sequence[int]) -> list[int]:
    return [ct_select(flag, t, f) for t, f in zip(if_true, if_false)]


@dataclass
class SessionState:
    """Plaintext session state. Only ever exists inside the boundary."""

    first_slots: list[int] = field(default_factory=_zero_slots)
    first_count: int = 0
    second_slots: list[int] = field(default_factory=_zero_slots)
    second_count: int = 0
    first_submitted: int = 0
    second_submitted: int = 0
    matched: int = 0
    first_results: list[int] = field(default_factory=_zero_slots)
    second_results: list[int] = field(default_factory=_zero_slots)
    result_count: int = 0

    def to_dict(self) -> dict:
        data = {}
        for name, value in self.__dict__.items():
            data[name] = [format(v, "032x") for v in value] if isinstance(value, list) else value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> SessionState:
        values = {}
        for name in cls.__dataclass_fields__:
            value = data[name]
            values[name] = [int(v, 16) for v in value] if isinstance(value, list) else int(value)
        return cls(**values)


# ── Entry points ─────────────────────────────────────────────────────────────


def init_session() -> SessionState:
    """Zeroed session state."""
    return SessionState()


def submit_first_party(
    state: SessionState, contact_set: ContactSet
) -> tuple[SessionState, SubmitConfirmation]:
    """Store the first party's set unless one is already stored."""
    can_store = 1 ^ state.first_submitted
    new_state = replace(
        state,
        first_slots=_select_slots(can_store, contact_set.slots, state.first_slots),
        first_count=ct_select(can_store, contact_set.count, state.first_count),
        first_submitted=1,
    )
    return new_state, SubmitConfirmation(accepted=can_store, party=1)


def submit_second_party_and_match(
    state: SessionState, contact_set: ContactSet
) -> tuple[SessionState, MatchResult]:
    """Store the second party's set and run the intersection.

    The engine always runs the full grid; when the first party has not
    submitted, or matching already happened, can_proceed is 0 and nothing
    in the state changes.
    """
    can_proceed = state.first_submitted & (1 ^ state.matched)
    result = compute_intersection(state.first_slots, contact_set.slots, can_proceed)

    new_state = replace(
        state,
        second_slots=_select_slots(can_proceed, contact_set.slots, state.second_slots),
        second_count=ct_select(can_proceed, contact_set.count, state.second_count),
        second_submitted=ct_select(can_proceed, 1, state.second_submitted),
        first_results=_select_slots(can_proceed, result.first_matches, state.first_results),
        second_results=_select_slots(can_proceed, result.second_matches, state.second_results),
        result_count=ct_select(can_proceed, result.match_count, state.result_count),
        matched=ct_select(can_proceed, 1, state.matched),
    )
    return new_state, MatchResult(matches=result.second_matches, match_count=result.match_count)


def _reveal(state: SessionState, results: Sequence[int]) -> MatchResult:
    matches = tuple(ct_select(state.matched, r, EMPTY_SLOT) for r in results)
    return MatchResult(matches=matches, match_count=ct_select(state.matched, state.result_count, 0))


def reveal_first_party_matches(state: SessionState) -> MatchResult:
    """First party's view of the intersection; all zero before matching."""
    return _reveal(state, state.first_results)


def reveal_second_party_matches(state: SessionState) -> MatchResult:
    """Second party's view of the intersection; all zero before matching."""
    return _reveal(state, state.second_results)


# ── Keys ─────────────────────────────────────────────────────────────────────


def _key_bytes(key: str) -> bytes | None:
    value = get_setting(key)
    if not value:
        return None
    try:
        raw = bytes.fromhex(value)
    except ValueError as e:
        raise KeyUnavailable(f"Setting {key} is not valid hex") from e
    if len(raw) != 32:
        raise KeyUnavailable(f"Setting {key} must decode to 32 bytes")
    return raw


@dataclass
class ClusterKeys:
    """Key material of the compute boundary."""

    x25519: X25519PrivateKey
    signing: Ed25519PrivateKey
    sealing: bytes
    ephemeral: bool = False

    @classmethod
    def generate(cls) -> ClusterKeys:
        return cls(
            x25519=X25519PrivateKey.generate(),
            signing=Ed25519PrivateKey.generate(),
            sealing=AESGCM.generate_key(bit_length=256),
            ephemeral=True,
        )

    @classmethod
    def from_settings(cls) -> ClusterKeys:
        """Load keys from settings, generating any that are unset.

        Generated keys only live for this process: sealed state and pending
        submissions cannot be opened after a restart.
        """
        x25519_raw = _key_bytes("mxe.x25519_private_key")
        signing_raw = _key_bytes("mxe.signing_key")
        sealing = _key_bytes("mxe.sealing_key")

        missing = [
            name
            for name, raw in (
                ("x25519", x25519_raw),
                ("signing", signing_raw),
                ("sealing", sealing),
            )
            if raw is None
        ]
        if missing:
            logger.warning(
                f"No configured {', '.join(missing)} key(s); generated ephemeral keys for this boot"
            )

        return cls(
            x25519=(
                X25519PrivateKey.from_private_bytes(x25519_raw)
                if x25519_raw
                else X25519PrivateKey.generate()
            ),
            signing=(
                Ed25519PrivateKey.from_private_bytes(signing_raw)
                if signing_raw
                else Ed25519PrivateKey.generate()
            ),
            sealing=sealing or AESGCM.generate_key(bit_length=256),
            ephemeral=bool(missing),
        )

    @property
    def public_key(self) -> bytes:
        return self.x25519.public_key().public_bytes_raw()

    @property
    def verify_key(self) -> bytes:
        return self.signing.public_key().public_bytes_raw()


# ── Boundary ─────────────────────────────────────────────────────────────────


@dataclass
class ComputationRequest:
    """One unit of work for the boundary."""

    computation_id: str
    session_id: str
    kind: str
    payload: dict = field(default_factory=dict)


class ComputeBoundary:
    """Runs protocol entry points over sealed state and signs the outputs."""

    def __init__(self, keys: ClusterKeys):
        self.keys = keys
        self._sealer = AESGCM(keys.sealing)

    def cluster_info(self) -> dict:
        return {
            "public_key": self.keys.public_key.hex(),
            "verify_key": self.keys.verify_key.hex(),
            "ephemeral_keys": self.keys.ephemeral,
            "max_contacts": MAX_CONTACTS,
        }

    def seal(self, session_id: str, state: SessionState) -> str:
        nonce = secrets.token_bytes(SEAL_NONCE_BYTES)
        aad = parse_session_id(session_id)
        ciphertext = self._sealer.encrypt(nonce, canonical_json(state.to_dict()), aad)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def unseal(self, session_id: str, sealed: str) -> SessionState:
        """Open sealed state.

        Raises:
            InfrastructureError: Blob is corrupt, sealed under another key or
                belongs to another session
        """
        try:
            raw = base64.b64decode(sealed)
        except ValueError as e:
            raise InfrastructureError("Sealed session state is not valid base64") from e
        if len(raw) <= SEAL_NONCE_BYTES:
            raise InfrastructureError("Sealed session state is truncated")
        aad = parse_session_id(session_id)
        try:
            plaintext = self._sealer.decrypt(raw[:SEAL_NONCE_BYTES], raw[SEAL_NONCE_BYTES:], aad)
        except InvalidTag as e:
            raise InfrastructureError("Sealed session state failed authentication") from e
        return SessionState.from_dict(json.loads(plaintext))

    def _party_cipher(self, public_key: bytes) -> SlotCipher:
        return SlotCipher(derive_shared_key(self.keys.x25519, public_key))

    def validate_public_key(self, public_key: bytes) -> None:
        """Check a party key can be used to encrypt an output.

        Raises:
            InputError: Wrong size or a low-order point
        """
        self._party_cipher(public_key)

    def validate_submission(self, submission: EncryptedSubmission) -> ContactSet:
        """Open a submission to check it decrypts to a well-formed contact set.

        Raises:
            InputError: Ciphertexts do not authenticate or the set is malformed
        """
        return decrypt_set(self._party_cipher(submission.public_key), submission)

    def sign(self, output: SignedOutput) -> SignedOutput:
        output.signature = self.keys.signing.sign(canonical_json(output.body())).hex()
        return output

    def _party_output(
        self, public_key: bytes, party: int, output_type: str, values: list[int]
    ) -> dict:
        fields = encrypt_fields(self._party_cipher(public_key), values)
        return {
            "type": output_type,
            "party": party,
            "public_key": public_key.hex(),
            "fields": fields.to_dict(),
        }

    def execute(self, request: ComputationRequest, sealed_state: str | None) -> SignedOutput:
        """Run one computation against the current sealed state.

        Raises:
            InputError: Payload cannot be opened
            StateError: The state does not allow this computation
            InfrastructureError: Sealed state cannot be opened
        """
        sid = request.session_id
        new_state: SessionState | None = None
        party_output: dict | None = None

        if request.kind == "init_session":
            if sealed_state is not None:
                raise StateError(f"Session {sid[:16]} already has state")
            new_state = init_session()

        elif request.kind in ("submit_first_party", "submit_and_match"):
            if sealed_state is None:
                raise StateError(f"Session {sid[:16]} has not been initialized")
            state = self.unseal(sid, sealed_state)
            submission = EncryptedSubmission.from_dict(request.payload.get("submission") or {})
            contact_set = self.validate_submission(submission)

            if request.kind == "submit_first_party":
                new_state, confirmation = submit_first_party(state, contact_set)
                party_output = self._party_output(
                    submission.public_key, 1, "submit_confirmation", confirmation.to_values()
                )
            else:
                new_state, result = submit_second_party_and_match(state, contact_set)
                if not new_state.matched or state.matched:
                    raise StateError(f"Session {sid[:16]} is not ready for matching")
                party_output = self._party_output(
                    submission.public_key, 2, "match_result", result.to_values()
                )
                logger.info(f"Session {sid[:16]} matched")

        elif request.kind == "reveal_matches":
            if sealed_state is None:
                raise StateError(f"Session {sid[:16]} has not been initialized")
            state = self.unseal(sid, sealed_state)
            party = request.payload.get("party")
            try:
                public_key = bytes.fromhex(str(request.payload.get("public_key", "")))
            except ValueError as e:
                raise InputError("Reveal public key is not valid hex") from e
            if party == 1:
                result = reveal_first_party_matches(state)
            elif party == 2:
                result = reveal_second_party_matches(state)
            else:
                raise InputError(f"Unknown party: {party}")
            party_output = self._party_output(public_key, party, "match_result", result.to_values())

        else:
            raise InputError(f"Unknown computation kind: {request.kind}")

        output = SignedOutput(
            computation_id=request.computation_id,
            session_id=sid,
            kind=request.kind,
            sealed_state=self.seal(sid, new_state) if new_state is not None else None,
            party_output=party_output,
        )
        return self.sign(output)


_boundary: ComputeBoundary | None = None


def init_boundary(keys: ClusterKeys | None = None) -> ComputeBoundary:
    """Create the process-wide boundary, loading keys from settings by default."""
    global _boundary
    _boundary = ComputeBoundary(keys or ClusterKeys.from_settings())
    logger.info(f"Compute boundary ready (public key {_boundary.keys.public_key.hex()[:16]}...)")
    return _boundary


def get_boundary() -> ComputeBoundary:
    """Return the boundary.

    Raises:
        KeyUnavailable: The boundary has not been initialized
    """
    if _boundary is None:
        raise KeyUnavailable("Compute boundary is not initialized")
    return _boundary


def reset_boundary() -> None:
    global _boundary
    _boundary = None
