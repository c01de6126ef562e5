"""Tests for Ed25519 key handling and canonical signed messages."""

import base64

from signing import (
    decode_public_key,
    delete_message,
    generate_keypair,
    is_valid_public_key,
    private_key_from_b64,
    private_key_to_b64,
    sign,
    submit_message,
    verify_signature,
    vote_message,
)


class TestCanonicalMessages:

    def test_vote_message_lowercases_boolean(self):
        assert vote_message(12, True) == "VOTE:12:true"
        assert vote_message(12, False) == "VOTE:12:false"

    def test_submit_and_delete_messages(self):
        assert submit_message("hello") == "SUBMIT:hello"
        assert delete_message(7) == "DELETE:7"


class TestVerifySignature:

    def test_valid_signature_verifies(self):
        priv, pub = generate_keypair()
        sig = sign(priv, "VOTE:1:true")
        assert verify_signature("VOTE:1:true", sig, pub)

    def test_signature_over_other_message_fails(self):
        priv, pub = generate_keypair()
        sig = sign(priv, "VOTE:1:true")
        assert not verify_signature("VOTE:1:false", sig, pub)

    def test_signature_from_other_key_fails(self):
        priv, _ = generate_keypair()
        _, other_pub = generate_keypair()
        assert not verify_signature("DELETE:3", sign(priv, "DELETE:3"), other_pub)

    def test_malformed_inputs_return_false(self):
        _, pub = generate_keypair()
        assert verify_signature("x", "not base64!!", pub) is False
        assert verify_signature("x", "", pub) is False
        assert verify_signature("x", None, pub) is False
        assert verify_signature("x", base64.b64encode(b"short").decode(), pub) is False
        assert verify_signature("x", base64.b64encode(b"\x00" * 64).decode(), "garbage") is False


class TestPublicKeys:

    def test_generated_key_is_valid(self):
        _, pub = generate_keypair()
        assert is_valid_public_key(pub)
        assert decode_public_key(pub) is not None

    def test_wrong_length_rejected(self):
        assert not is_valid_public_key(base64.b64encode(b"\x01" * 31).decode())
        assert not is_valid_public_key("")
        assert not is_valid_public_key(None)

    def test_private_key_roundtrip_signs_identically(self):
        priv, pub = generate_keypair()
        restored = private_key_from_b64(private_key_to_b64(priv))
        assert verify_signature("SUBMIT:x", sign(restored, "SUBMIT:x"), pub)
