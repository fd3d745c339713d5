"""Tests for the cipher codec."""

from __future__ import annotations

import base64
import os

import pytest

from risu.crypto import (
    NO_CONTENT_TITLE,
    Classification,
    check_validator,
    classify,
    decode_document,
    decrypt,
    derive_key,
    encode_document,
    encrypt,
    generate_salt,
    make_validator,
    parse_document,
    sanitize_title,
    title_from_body,
)
from risu.errors import AuthenticationFailure, StructuralCorruption

from conftest import FAST_KDF


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


class TestDeriveKey:
    """Tests for Argon2id derivation."""

    def test_same_inputs_same_key(self) -> None:
        salt = generate_salt()
        assert derive_key("hunter2", salt, FAST_KDF) == derive_key("hunter2", salt, FAST_KDF)

    def test_key_length(self) -> None:
        assert len(derive_key("pw", generate_salt(), FAST_KDF)) == 32

    def test_different_salt_different_key(self) -> None:
        assert derive_key("pw", generate_salt(), FAST_KDF) != derive_key("pw", generate_salt(), FAST_KDF)

    def test_salt_is_16_bytes(self) -> None:
        assert len(base64.b64decode(generate_salt())) == 16

    def test_bad_salt_rejected(self) -> None:
        with pytest.raises(ValueError):
            derive_key("pw", "not base64!!", FAST_KDF)


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------


class TestEncryptDecrypt:
    """Tests for ChaCha20-Poly1305 encrypt/decrypt."""

    def test_roundtrip_unicode(self, key: bytes) -> None:
        ct, nonce = encrypt("héllo ✓ 日本", key)
        assert decrypt(ct, nonce, key) == "héllo ✓ 日本"

    def test_fresh_nonce_each_call(self, key: bytes) -> None:
        _, n1 = encrypt("same", key)
        _, n2 = encrypt("same", key)
        assert n1 != n2
        assert len(base64.b64decode(n1)) == 12

    def test_wrong_key_fails_authentication(self, key: bytes) -> None:
        ct, nonce = encrypt("secret", key)
        with pytest.raises(AuthenticationFailure):
            decrypt(ct, nonce, os.urandom(32))

    def test_tampered_ciphertext_fails(self, key: bytes) -> None:
        ct, nonce = encrypt("secret", key)
        raw = bytearray(base64.b64decode(ct))
        raw[0] ^= 0x01
        with pytest.raises(AuthenticationFailure):
            decrypt(base64.b64encode(bytes(raw)).decode(), nonce, key)

    def test_malformed_base64_is_corruption(self, key: bytes) -> None:
        _, nonce = encrypt("x", key)
        with pytest.raises(StructuralCorruption):
            decrypt("%%%not-base64%%%", nonce, key)

    def test_wrong_nonce_length_is_corruption(self, key: bytes) -> None:
        ct, _ = encrypt("x", key)
        short_nonce = base64.b64encode(b"12345678").decode()
        with pytest.raises(StructuralCorruption):
            decrypt(ct, short_nonce, key)

    def test_truncated_ciphertext_is_corruption(self, key: bytes) -> None:
        _, nonce = encrypt("x", key)
        with pytest.raises(StructuralCorruption):
            decrypt(base64.b64encode(b"short").decode(), nonce, key)

    def test_combined_payload_without_nonce(self, key: bytes) -> None:
        """Older clients sent nonce || ciphertext in one field."""
        ct, nonce = encrypt("legacy shape", key)
        combined = base64.b64encode(base64.b64decode(nonce) + base64.b64decode(ct)).decode()
        assert decrypt(combined, None, key) == "legacy shape"

    def test_combined_payload_too_short(self, key: bytes) -> None:
        with pytest.raises(StructuralCorruption):
            decrypt(base64.b64encode(b"x" * 20).decode(), None, key)


class TestValidator:
    """Tests for the passphrase validator."""

    def test_right_key_opens_validator(self, key: bytes) -> None:
        assert check_validator(make_validator(key), key) is True

    def test_wrong_key_rejected(self, key: bytes) -> None:
        assert check_validator(make_validator(key), os.urandom(32)) is False

    def test_garbage_validator_rejected(self, key: bytes) -> None:
        assert check_validator("garbage", key) is False


# ---------------------------------------------------------------------------
# Documents and titles
# ---------------------------------------------------------------------------


class TestDocuments:
    """Tests for the plaintext note document."""

    def test_encode_then_parse(self) -> None:
        assert parse_document(encode_document("Title", "Body")) == ("Title", "Body")

    def test_raw_body_falls_back(self) -> None:
        assert decode_document("# Groceries\nmilk") == ("Groceries", "# Groceries\nmilk")

    def test_missing_title_derived_from_body(self) -> None:
        assert parse_document('{"body": "first line\\nsecond"}') == ("first line", "first line\nsecond")

    def test_json_without_body_is_not_a_document(self) -> None:
        assert parse_document('{"title": "x"}') is None
        assert parse_document("[1, 2]") is None


class TestTitles:
    """Tests for title derivation."""

    def test_first_non_empty_line(self) -> None:
        assert title_from_body("\n\n  hello world \nmore") == "hello world"

    def test_empty_body(self) -> None:
        assert title_from_body("   \n") == NO_CONTENT_TITLE

    def test_control_characters_and_whitespace(self) -> None:
        assert sanitize_title("a\tb\x00c   d") == "a b c d"


# ---------------------------------------------------------------------------
# Legacy classification
# ---------------------------------------------------------------------------


class TestClassify:
    """Tests for the plaintext-flagged-encrypted heuristic."""

    def test_real_ciphertext_looks_encrypted(self, key: bytes) -> None:
        ct, nonce = encrypt("hello", key)
        assert classify(ct, nonce) == Classification.LOOKS_ENCRYPTED

    def test_combined_ciphertext_looks_encrypted(self, key: bytes) -> None:
        assert classify(make_validator(key)) == Classification.LOOKS_ENCRYPTED

    def test_markdown_is_unverified_plaintext(self) -> None:
        assert classify("# Shopping\n- eggs") == Classification.LOOKS_PLAINTEXT

    def test_note_document_is_plaintext(self) -> None:
        assert classify(encode_document("t", "b"), "AAAAAAAAAAAAAAAA") == Classification.LOOKS_PLAINTEXT_NOTE

    def test_short_base64_goes_to_decryption(self) -> None:
        """Too short to hold a tag, so decryption reports it as corrupted."""
        assert classify("aGVsbG8=") == Classification.LOOKS_ENCRYPTED

    def test_malformed_body_with_nonce_goes_to_decryption(self, key: bytes) -> None:
        ct, nonce = encrypt("hello", key)
        assert classify("*" + ct, nonce) == Classification.LOOKS_ENCRYPTED
