"""Tests for the HTTP API."""

import base64
import secrets

from pcd.cipher import EncryptedFields, create_cipher, decrypt_fields, seal_submission
from pcd.fingerprint import build_contact_set, fingerprint
from pcd.layout import decode_record
from pcd.results import MatchResult

ALICE_CONTACTS = ["carol@example.com", "(555) 010-0001", "dave@example.com", "erin@example.com"]
BOB_CONTACTS = ["+1 555 010 0001", "frank@example.com", "ERIN@example.com"]


def _create(client, identity, sid=None):
    sid = sid or secrets.token_hex(32)
    return client.post(
        "/api/v1/sessions",
        json={
            "session_id": sid,
            "identity": identity.identity_hex,
            "signature": identity.sign_request("create_session", sid, {}),
        },
    )


def _submit(client, sid, identity, contacts, route, operation):
    public_key = client.get("/api/v1/cluster").json()["public_key"]
    cipher = create_cipher(public_key)
    submission = seal_submission(cipher, build_contact_set(contacts)).to_dict()
    resp = client.post(
        f"/api/v1/sessions/{sid}/{route}",
        json={
            "identity": identity.identity_hex,
            "signature": identity.sign_request(operation, sid, submission),
            "submission": submission,
        },
    )
    return resp, cipher


def _reveal(client, sid, identity):
    public_key = client.get("/api/v1/cluster").json()["public_key"]
    cipher = create_cipher(public_key)
    reveal_key = cipher.public_key.hex()
    resp = client.post(
        f"/api/v1/sessions/{sid}/reveal",
        json={
            "identity": identity.identity_hex,
            "signature": identity.sign_request("reveal", sid, {"public_key": reveal_key}),
            "public_key": reveal_key,
        },
    )
    return resp, cipher


def _matches(cipher, computation) -> MatchResult:
    fields = EncryptedFields.from_dict(computation["output"]["party_output"]["fields"])
    return MatchResult.from_values(decrypt_fields(cipher.cipher, fields))


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["computation_mode"] == "inline"


def test_cluster_info(client, boundary):
    data = client.get("/api/v1/cluster").json()
    assert data["public_key"] == boundary.keys.public_key.hex()
    assert data["verify_key"] == boundary.keys.verify_key.hex()
    assert data["max_contacts"] == 32


def test_cluster_info_without_boundary(client):
    from app.mxe import reset_boundary

    reset_boundary()
    resp = client.get("/api/v1/cluster")
    assert resp.status_code == 503
    assert resp.json()["error"] == "KeyUnavailable"


def test_full_flow_partial_overlap(client, alice, bob):
    resp = _create(client, alice)
    assert resp.status_code == 202
    sid = resp.json()["session"]["session_id"]
    assert resp.json()["session"]["status_label"] == "Created"
    assert resp.json()["computation"]["status"] == "finalized"

    resp, _ = _submit(client, sid, alice, ALICE_CONTACTS, "first-party", "submit_first_party")
    assert resp.status_code == 202
    assert resp.json()["session"]["status_name"] == "awaiting_second_party"

    resp, bob_cipher = _submit(
        client, sid, bob, BOB_CONTACTS, "second-party", "submit_second_party"
    )
    assert resp.status_code == 202
    body = resp.json()
    assert body["session"]["status"] == 3
    assert body["session"]["status_label"] == "Complete"
    assert body["session"]["second_party"] == bob.identity_hex

    bob_result = _matches(bob_cipher, body["computation"])
    assert bob_result.match_count == 2
    assert bob_result.fingerprints() == {fingerprint("5550100001"), fingerprint("erin@example.com")}

    resp, alice_cipher = _reveal(client, sid, alice)
    assert resp.status_code == 202
    alice_result = _matches(alice_cipher, resp.json()["computation"])
    assert alice_result.fingerprints() == bob_result.fingerprints()
    assert alice_result.matches[1] == fingerprint("5550100001")
    assert alice_result.matches[3] == fingerprint("erin@example.com")


def test_get_session(client, alice):
    sid = _create(client, alice).json()["session"]["session_id"]
    resp = client.get(f"/api/v1/sessions/{sid}")
    assert resp.status_code == 200
    assert resp.json()["first_party"] == alice.identity_hex


def test_get_record(client, alice):
    sid = _create(client, alice).json()["session"]["session_id"]
    data = client.get(f"/api/v1/sessions/{sid}/record").json()
    assert data["size"] == 106
    record = decode_record(base64.b64decode(data["data"]))
    assert record.session_id.hex() == sid
    assert record.first_party == alice.identity


def test_list_sessions(client, alice, bob):
    _create(client, bob)
    own = _create(client, alice).json()["session"]["session_id"]
    _create(client, bob)
    data = client.get("/api/v1/sessions", params={"identity": alice.identity_hex}).json()
    assert data["total"] == 3
    assert data["sessions"][0]["session_id"] == own


def test_list_sessions_by_status(client, alice):
    _create(client, alice)
    sid = _create(client, alice).json()["session"]["session_id"]
    client.post(
        f"/api/v1/sessions/{sid}/cancel",
        json={"identity": alice.identity_hex, "signature": alice.sign_request("cancel", sid, {})},
    )
    data = client.get("/api/v1/sessions", params={"status": 4}).json()
    assert [s["session_id"] for s in data["sessions"]] == [sid]


def test_list_sessions_unknown_status_400(client):
    resp = client.get("/api/v1/sessions", params={"status": 9})
    assert resp.status_code == 400
    assert resp.json()["error"] == "InputError"


def test_list_session_computations(client, alice):
    sid = _create(client, alice).json()["session"]["session_id"]
    _submit(client, sid, alice, ["a@x.com"], "first-party", "submit_first_party")
    data = client.get(f"/api/v1/sessions/{sid}/computations").json()
    assert data["total"] == 2
    assert [c["kind"] for c in data["computations"]] == ["init_session", "submit_first_party"]


def test_get_computation(client, alice):
    computation_id = _create(client, alice).json()["computation"]["computation_id"]
    resp = client.get(f"/api/v1/computations/{computation_id}")
    assert resp.status_code == 200
    assert resp.json()["kind"] == "init_session"


def test_cancel(client, alice):
    sid = _create(client, alice).json()["session"]["session_id"]
    resp = client.post(
        f"/api/v1/sessions/{sid}/cancel",
        json={"identity": alice.identity_hex, "signature": alice.sign_request("cancel", sid, {})},
    )
    assert resp.status_code == 200
    assert resp.json()["session"]["status_name"] == "expired"
    assert resp.json()["computation"] is None


# ── Error mapping ────────────────────────────────────────────────────────────


def test_unknown_session_404(client):
    resp = client.get(f"/api/v1/sessions/{secrets.token_hex(32)}")
    assert resp.status_code == 404
    assert resp.json()["error"] == "SessionNotFoundError"


def test_unknown_computation_404(client):
    resp = client.get("/api/v1/computations/deadbeefdeadbeef")
    assert resp.status_code == 404
    assert resp.json()["error"] == "ComputationNotFoundError"


def test_malformed_session_id_400(client):
    resp = client.get("/api/v1/sessions/not-hex")
    assert resp.status_code == 400
    assert resp.json()["error"] == "InputError"


def test_wrong_first_party_403(client, alice, mallory):
    sid = _create(client, alice).json()["session"]["session_id"]
    resp, _ = _submit(client, sid, mallory, ["x@x.com"], "first-party", "submit_first_party")
    assert resp.status_code == 403
    assert resp.json()["error"] == "AuthorityError"
    assert client.get(f"/api/v1/sessions/{sid}").json()["status"] == 0


def test_second_party_too_early_409(client, alice, bob):
    sid = _create(client, alice).json()["session"]["session_id"]
    resp, _ = _submit(client, sid, bob, ["x@x.com"], "second-party", "submit_second_party")
    assert resp.status_code == 409
    assert resp.json()["error"] == "StateError"


def test_duplicate_session_409(client, alice):
    sid = secrets.token_hex(32)
    assert _create(client, alice, sid).status_code == 202
    assert _create(client, alice, sid).status_code == 409


def test_missing_fields_422(client):
    resp = client.post("/api/v1/sessions", json={"session_id": "ab" * 32})
    assert resp.status_code == 422


def test_settings_masks_secrets(client):
    from app.settings import set_setting

    set_setting("mxe.sealing_key", "ab" * 32)
    data = client.get("/api/v1/settings", params={"group": "mxe"}).json()
    sealing = next(s for s in data["settings"] if s["key"] == "mxe.sealing_key")
    assert sealing["value"] == "abab****abab"
    assert sealing["source"] == "db"
    assert all(s["group"] == "mxe" for s in data["settings"])


def test_low_order_submission_key_400(client, alice):
    sid = _create(client, alice).json()["session"]["session_id"]
    public_key = client.get("/api/v1/cluster").json()["public_key"]
    submission = seal_submission(create_cipher(public_key), build_contact_set(["a@x.com"])).to_dict()
    submission["public_key"] = "00" * 32
    resp = client.post(
        f"/api/v1/sessions/{sid}/first-party",
        json={
            "identity": alice.identity_hex,
            "signature": alice.sign_request("submit_first_party", sid, submission),
            "submission": submission,
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "InputError"
    assert client.get(f"/api/v1/sessions/{sid}").json()["status"] == 0


def test_low_order_reveal_key_400(client, alice, bob):
    sid = _create(client, alice).json()["session"]["session_id"]
    _submit(client, sid, alice, ["a@x.com"], "first-party", "submit_first_party")
    _submit(client, sid, bob, ["a@x.com"], "second-party", "submit_second_party")
    public_key = "00" * 32
    resp = client.post(
        f"/api/v1/sessions/{sid}/reveal",
        json={
            "identity": alice.identity_hex,
            "signature": alice.sign_request("reveal", sid, {"public_key": public_key}),
            "public_key": public_key,
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "InputError"
