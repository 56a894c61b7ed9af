"""Tests for key exchange and per-slot encryption."""

import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from pcd.cipher import (
    CIPHERTEXT_BYTES,
    COUNT_SLOT,
    EncryptedFields,
    EncryptedSubmission,
    SlotCipher,
    create_cipher,
    decrypt_fields,
    decrypt_set,
    derive_shared_key,
    encrypt_fields,
    encrypt_set,
    generate_nonce,
    seal_submission,
)
from pcd.errors import InfrastructureError, InputError, KeyUnavailable
from pcd.fingerprint import MAX_CONTACTS, build_contact_set


@pytest.fixture
def boundary_key():
    return X25519PrivateKey.generate()


@pytest.fixture
def boundary_public(boundary_key):
    return boundary_key.public_key().public_bytes_raw()


def _boundary_cipher(boundary_key, party_public: bytes) -> SlotCipher:
    return SlotCipher(derive_shared_key(boundary_key, party_public))


class TestCreateCipher:
    def test_both_sides_derive_the_same_key(self, boundary_key, boundary_public):
        session_cipher = create_cipher(boundary_public)
        nonce = generate_nonce()
        ct = session_cipher.cipher.encrypt_value(42, nonce, 3)
        other_side = _boundary_cipher(boundary_key, session_cipher.public_key)
        assert other_side.decrypt_value(ct, nonce, 3) == 42

    def test_accepts_hex_key(self, boundary_public):
        assert len(create_cipher(boundary_public.hex()).public_key) == 32

    def test_ephemeral_keys_differ_per_call(self, boundary_public):
        assert create_cipher(boundary_public).public_key != create_cipher(boundary_public).public_key

    @pytest.mark.parametrize("bad", [None, "", b"", "zz" * 32, b"\x01" * 31, b"\x00" * 32])
    def test_missing_or_invalid_key_is_key_unavailable(self, bad):
        with pytest.raises(KeyUnavailable):
            create_cipher(bad)

    def test_low_order_peer_key_is_input_error(self, boundary_key):
        with pytest.raises(InputError, match="key agreement"):
            derive_shared_key(boundary_key, b"\x00" * 32)

    def test_key_unavailable_is_infrastructure_not_input(self):
        assert issubclass(KeyUnavailable, InfrastructureError)
        assert not issubclass(KeyUnavailable, InputError)


class TestSlotCipher:
    def test_round_trip_any_128_bit_value(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        nonce = generate_nonce()
        for value in (0, 1, (1 << 128) - 1, 0xDEADBEEF):
            assert cipher.decrypt_value(cipher.encrypt_value(value, nonce, 5), nonce, 5) == value

    def test_ciphertext_size(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        assert len(cipher.encrypt_value(7, generate_nonce())) == CIPHERTEXT_BYTES

    def test_value_too_large(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        with pytest.raises(InputError):
            cipher.encrypt_value(1 << 128, generate_nonce())

    def test_wrong_slot_index_fails(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        nonce = generate_nonce()
        ct = cipher.encrypt_value(7, nonce, 1)
        with pytest.raises(InputError):
            cipher.decrypt_value(ct, nonce, 2)

    def test_tampered_ciphertext_fails(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        nonce = generate_nonce()
        ct = bytearray(cipher.encrypt_value(7, nonce))
        ct[0] ^= 1
        with pytest.raises(InputError):
            cipher.decrypt_value(bytes(ct), nonce)

    def test_wrong_key_fails(self, boundary_public):
        nonce = generate_nonce()
        ct = create_cipher(boundary_public).cipher.encrypt_value(7, nonce)
        with pytest.raises(InputError):
            create_cipher(boundary_public).cipher.decrypt_value(ct, nonce)


class TestEncryptSet:
    def test_32_slots_plus_count(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        cs = build_contact_set(["a@x.com", "b@x.com"])
        ciphertexts, count_ct = encrypt_set(cipher, cs, generate_nonce())
        assert len(ciphertexts) == MAX_CONTACTS
        assert all(len(ct) == CIPHERTEXT_BYTES for ct in ciphertexts)
        assert len(count_ct) == CIPHERTEXT_BYTES

    def test_slots_encrypted_independently(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        ciphertexts, _ = encrypt_set(cipher, build_contact_set([]), generate_nonce())
        # 32 zero slots, 32 different ciphertexts
        assert len(set(ciphertexts)) == MAX_CONTACTS

    def test_count_is_slot_32(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        nonce = generate_nonce()
        _, count_ct = encrypt_set(cipher, build_contact_set(["a@x.com"]), nonce)
        assert cipher.decrypt_value(count_ct, nonce, COUNT_SLOT) == 1

    def test_submission_round_trip(self, boundary_key, boundary_public):
        session_cipher = create_cipher(boundary_public)
        cs = build_contact_set(["a@x.com", "+1 555 0100"])
        submission = seal_submission(session_cipher, cs)
        wire = EncryptedSubmission.from_dict(submission.to_dict())
        opened = decrypt_set(_boundary_cipher(boundary_key, wire.public_key), wire)
        assert opened == cs


class TestEncryptedSubmission:
    def _wire(self, boundary_public):
        cs = build_contact_set(["a@x.com"])
        return seal_submission(create_cipher(boundary_public), cs).to_dict()

    def test_missing_ciphertexts(self, boundary_public):
        wire = self._wire(boundary_public)
        del wire["ciphertexts"]
        with pytest.raises(InputError):
            EncryptedSubmission.from_dict(wire)

    def test_wrong_ciphertext_count(self, boundary_public):
        wire = self._wire(boundary_public)
        wire["ciphertexts"] = wire["ciphertexts"][:31]
        with pytest.raises(InputError):
            EncryptedSubmission.from_dict(wire)

    def test_short_nonce(self, boundary_public):
        wire = self._wire(boundary_public)
        wire["nonce"] = wire["nonce"][:-2]
        with pytest.raises(InputError):
            EncryptedSubmission.from_dict(wire)

    def test_non_hex_public_key(self, boundary_public):
        wire = self._wire(boundary_public)
        wire["public_key"] = "xy" * 32
        with pytest.raises(InputError):
            EncryptedSubmission.from_dict(wire)


class TestEncryptedFields:
    def test_round_trip(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        fields = EncryptedFields.from_dict(encrypt_fields(cipher, [1, 0, 5]).to_dict())
        assert decrypt_fields(cipher, fields) == [1, 0, 5]

    def test_fresh_nonce_per_call(self, boundary_public):
        cipher = create_cipher(boundary_public).cipher
        assert encrypt_fields(cipher, [1]).nonce != encrypt_fields(cipher, [1]).nonce
