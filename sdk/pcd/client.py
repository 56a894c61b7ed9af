"""Private Contact Discovery SDK Client.

Flow for one party:
    fingerprints -> encrypt to the boundary key -> signed submit -> wait for
    the signed computation output -> verify -> decrypt -> resolve to contacts

Nothing but ciphertexts and the caller's public identity leaves the client.
"""

from __future__ import annotations

import base64
import secrets
import time
from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from .cipher import (
    EncryptedFields,
    SessionCipher,
    create_cipher,
    decrypt_fields,
    seal_submission,
)
from .errors import InfrastructureError, InputError, VerificationError, error_from_response
from .fingerprint import DEFAULT_COUNTRY_CODE, ContactSet, build_contact_set
from .identity import PartyIdentity
from .layout import SESSION_ID_BYTES, SessionRecord, decode_record, parse_session_id, session_id_to_hex
from .resolve import resolve_matches
from .results import MatchResult, SubmitConfirmation
from .verify import SignedOutput, verify_output

DEFAULT_HEADERS = {
    "user-agent": "PCD-SDK/0.1",
}


@dataclass
class PendingComputation:
    """A queued computation plus the cipher needed to read its output."""

    computation_id: str
    session_id: str
    session_cipher: SessionCipher
    session: dict


class DiscoveryClient:
    """Client for the private contact discovery service.

    Example:
        alice = PartyIdentity.generate()
        with DiscoveryClient("http://localhost:8000") as client:
            session_id = client.create_session(alice)["session"]["session_id"]
            client.submit_first_party(session_id, alice, ["+1 555 0100", "bob@example.com"])
    """

    def __init__(
        self,
        base_url: str = "http://testserver",
        client: httpx.Client | None = None,
        timeout: float = 30.0,
        default_country_code: str = DEFAULT_COUNTRY_CODE,
    ):
        """Create a client.

        Args:
            base_url: Service URL
            client: Pre-built httpx client (e.g. a FastAPI TestClient)
            timeout: Request timeout in seconds, for a client built here
            default_country_code: Prepended to phone numbers without a "+"
        """
        self.base_url = base_url.rstrip("/")
        self.default_country_code = default_country_code
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, headers=DEFAULT_HEADERS)
        self._cluster: dict | None = None

    # ── transport ────────────────────────────────────────────────────────────

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise InfrastructureError(f"Request to {path} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code >= 400:
            raise error_from_response(response.status_code, body if isinstance(body, dict) else None)
        if not isinstance(body, dict):
            raise InfrastructureError(f"Unexpected response from {path}")
        return body

    def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ── service info ─────────────────────────────────────────────────────────

    def health(self) -> dict:
        return self._request("GET", "/health")

    def cluster_info(self, refresh: bool = False) -> dict:
        """Boundary public keys, cached after the first call.

        Raises:
            KeyUnavailable: The service has no boundary key yet
        """
        if self._cluster is None or refresh:
            self._cluster = self._request("GET", "/api/v1/cluster")
        return self._cluster

    def _new_cipher(self) -> SessionCipher:
        return create_cipher(self.cluster_info().get("public_key"))

    # ── sessions ─────────────────────────────────────────────────────────────

    def create_session(
        self, identity: PartyIdentity, session_id: str | bytes | None = None
    ) -> dict:
        """Initialize a session with *identity* as first party.

        A random session id is chosen unless one is given.
        """
        sid = session_id_to_hex(
            parse_session_id(session_id) if session_id else secrets.token_bytes(SESSION_ID_BYTES)
        )
        return self._request(
            "POST",
            "/api/v1/sessions",
            json={
                "session_id": sid,
                "identity": identity.identity_hex,
                "signature": identity.sign_request("create_session", sid, {}),
            },
        )

    def _submit(
        self,
        route: str,
        operation: str,
        session_id: str,
        identity: PartyIdentity,
        contacts: Sequence[str] | ContactSet,
    ) -> PendingComputation:
        sid = session_id_to_hex(parse_session_id(session_id))
        if isinstance(contacts, ContactSet):
            contact_set = contacts
        else:
            contact_set = build_contact_set(contacts, self.default_country_code)
        session_cipher = self._new_cipher()
        submission = seal_submission(session_cipher, contact_set).to_dict()

        body = self._request(
            "POST",
            f"/api/v1/sessions/{sid}/{route}",
            json={
                "identity": identity.identity_hex,
                "signature": identity.sign_request(operation, sid, submission),
                "submission": submission,
            },
        )
        return PendingComputation(
            computation_id=body["computation"]["computation_id"],
            session_id=sid,
            session_cipher=session_cipher,
            session=body["session"],
        )

    def submit_first_party(
        self, session_id: str, identity: PartyIdentity, contacts: Sequence[str] | ContactSet
    ) -> PendingComputation:
        """Fingerprint, encrypt and submit the first party's contacts."""
        return self._submit("first-party", "submit_first_party", session_id, identity, contacts)

    def submit_second_party(
        self, session_id: str, identity: PartyIdentity, contacts: Sequence[str] | ContactSet
    ) -> PendingComputation:
        """Fingerprint, encrypt and submit the second party's contacts; matching follows."""
        return self._submit("second-party", "submit_second_party", session_id, identity, contacts)

    def reveal(self, session_id: str, identity: PartyIdentity) -> PendingComputation:
        """Ask for the caller's matches, encrypted to a fresh key."""
        sid = session_id_to_hex(parse_session_id(session_id))
        session_cipher = self._new_cipher()
        public_key = session_cipher.public_key.hex()
        body = self._request(
            "POST",
            f"/api/v1/sessions/{sid}/reveal",
            json={
                "identity": identity.identity_hex,
                "signature": identity.sign_request("reveal", sid, {"public_key": public_key}),
                "public_key": public_key,
            },
        )
        return PendingComputation(
            computation_id=body["computation"]["computation_id"],
            session_id=sid,
            session_cipher=session_cipher,
            session=body["session"],
        )

    def cancel(self, session_id: str, identity: PartyIdentity) -> dict:
        sid = session_id_to_hex(parse_session_id(session_id))
        return self._request(
            "POST",
            f"/api/v1/sessions/{sid}/cancel",
            json={
                "identity": identity.identity_hex,
                "signature": identity.sign_request("cancel", sid, {}),
            },
        )

    def get_session(self, session_id: str) -> dict:
        return self._request("GET", f"/api/v1/sessions/{session_id}")

    def get_record(self, session_id: str) -> SessionRecord:
        """Fetch and decode the raw 106-byte ledger record."""
        body = self._request("GET", f"/api/v1/sessions/{session_id}/record")
        return decode_record(base64.b64decode(body["data"]))

    def list_sessions(
        self, identity: PartyIdentity | str | None = None, status: int | None = None
    ) -> list[dict]:
        """All sessions, the given identity's own first."""
        params = {}
        if identity is not None:
            params["identity"] = (
                identity.identity_hex if isinstance(identity, PartyIdentity) else identity
            )
        if status is not None:
            params["status"] = int(status)
        return self._request("GET", "/api/v1/sessions", params=params)["sessions"]

    # ── computations ─────────────────────────────────────────────────────────

    def get_computation(self, computation_id: str) -> dict:
        return self._request("GET", f"/api/v1/computations/{computation_id}")

    def list_computations(self, session_id: str) -> list[dict]:
        """A session's computations, oldest first."""
        return self._request("GET", f"/api/v1/sessions/{session_id}/computations")[
            "computations"
        ]

    def wait_for_computation(
        self, computation_id: str, timeout: float = 60.0, poll_interval: float = 0.5
    ) -> dict:
        """Poll until a computation is finalized.

        Raises:
            VerificationError: The service rejected the output's signature
            InfrastructureError: The computation failed or did not finish in time
        """
        deadline = time.monotonic() + timeout
        while True:
            computation = self.get_computation(computation_id)
            status = computation.get("status")
            if status == "finalized":
                return computation
            if status == "failed":
                error = computation.get("error") or "unknown error"
                if error.startswith("verification failed"):
                    raise VerificationError(f"Computation {computation_id}: {error}")
                raise InfrastructureError(f"Computation {computation_id} failed: {error}")
            if time.monotonic() >= deadline:
                raise InfrastructureError(
                    f"Computation {computation_id} still {status} after {timeout}s"
                )
            time.sleep(poll_interval)

    def _open_output(
        self, computation: dict, session_cipher: SessionCipher, expected_type: str
    ) -> list[int]:
        if computation.get("status") != "finalized":
            raise InfrastructureError(
                f"Computation {computation.get('computation_id')} is {computation.get('status')}"
            )
        output = SignedOutput.from_dict(computation.get("output") or {})
        verify_output(output, self.cluster_info()["verify_key"])

        party_output = output.party_output or {}
        if party_output.get("type") != expected_type:
            raise VerificationError(
                f"Expected {expected_type} output, got {party_output.get('type')!r}"
            )
        if party_output.get("public_key") != session_cipher.public_key.hex():
            raise VerificationError("Output is encrypted to a different key")
        try:
            fields = EncryptedFields.from_dict(party_output.get("fields") or {})
            return decrypt_fields(session_cipher.cipher, fields)
        except InputError as e:
            raise VerificationError(f"Output could not be decrypted: {e.detail}") from e

    def match_result(self, computation: dict, session_cipher: SessionCipher) -> MatchResult:
        """Verify and decrypt a match output."""
        return MatchResult.from_values(self._open_output(computation, session_cipher, "match_result"))

    def submit_confirmation(
        self, computation: dict, session_cipher: SessionCipher
    ) -> SubmitConfirmation:
        """Verify and decrypt the first party's submit confirmation."""
        return SubmitConfirmation.from_values(
            self._open_output(computation, session_cipher, "submit_confirmation")
        )

    def wait_for_matches(self, pending: PendingComputation, timeout: float = 60.0) -> MatchResult:
        computation = self.wait_for_computation(pending.computation_id, timeout=timeout)
        return self.match_result(computation, pending.session_cipher)

    def find_matches(
        self, session_id: str, identity: PartyIdentity, contacts: Sequence[str]
    ) -> list[str]:
        """Reveal the caller's matches and map them back onto *contacts*."""
        result = self.wait_for_matches(self.reveal(session_id, identity))
        return resolve_matches(contacts, result, self.default_country_code)
