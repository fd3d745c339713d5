"""
Cipher codec — the stateless half of end-to-end encryption.

    derive_key      Argon2id(passphrase, salt) -> 32-byte key
    encrypt         ChaCha20-Poly1305, fresh 96-bit nonce per call
    decrypt         tag-verified; raises a DecryptError subclass
    classify        spots plaintext records that claim to be encrypted

Wire encoding: ciphertext and nonce travel as standard base64 text.
Older clients sent a single base64 payload of ``nonce || ciphertext``
with no separate nonce; ``decrypt`` accepts both shapes.

The plaintext that gets encrypted is a small JSON document
``{"title": ..., "body": ...}``. Payloads from clients that encrypted
the raw body only are still accepted by ``decode_document``.
"""

from __future__ import annotations

import base64
import binascii
import json
import secrets
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.argon2 import Argon2id
from pydantic import BaseModel

from .errors import AuthenticationFailure, StructuralCorruption

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
SALT_LENGTH = 16

VALIDATOR_MARKER = "RISU-VALID"
NO_CONTENT_TITLE = "No Content"


class KdfParams(BaseModel):
    """Argon2id cost profile. memory_cost is in KiB."""

    memory_cost: int = 65536
    iterations: int = 3
    lanes: int = 4
    length: int = KEY_LENGTH


# Fixed for the deployment: every derived key depends on it. Not in RisuConfig.
DEFAULT_KDF_PARAMS = KdfParams()


class Classification(str, Enum):
    """Result of the legacy plaintext heuristic."""

    LOOKS_ENCRYPTED = "looks_encrypted"
    LOOKS_PLAINTEXT_NOTE = "looks_plaintext_note"
    LOOKS_PLAINTEXT = "looks_plaintext"


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def generate_salt() -> str:
    """Random 16-byte salt, base64-encoded for storage and transport."""
    return base64.b64encode(secrets.token_bytes(SALT_LENGTH)).decode("ascii")


def derive_key(
    passphrase: str,
    salt_b64: str,
    params: KdfParams = DEFAULT_KDF_PARAMS,
) -> bytes:
    """Derive the symmetric key from a passphrase and the account salt.

    Deliberately slow; call it from a worker thread when a user is
    waiting on input.

    Args:
        passphrase: The user's passphrase.
        salt_b64: Base64 salt shared by all of the account's devices.
        params: Argon2id cost profile.

    Returns:
        Raw key bytes.

    Raises:
        ValueError: If the salt is not valid base64.
    """
    try:
        salt = base64.b64decode(salt_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Salt is not valid base64: {exc}") from exc

    kdf = Argon2id(
        salt=salt,
        length=params.length,
        iterations=params.iterations,
        lanes=params.lanes,
        memory_cost=params.memory_cost,
    )
    return kdf.derive(passphrase.encode("utf-8"))


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------


def encrypt(plaintext: str, key: bytes) -> tuple[str, str]:
    """Encrypt text under ``key`` with a fresh random nonce.

    Returns:
        (ciphertext_b64, nonce_b64)
    """
    nonce = secrets.token_bytes(NONCE_LENGTH)
    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return (
        base64.b64encode(ciphertext).decode("ascii"),
        base64.b64encode(nonce).decode("ascii"),
    )


def decrypt(ciphertext_b64: str, nonce_b64: Optional[str], key: bytes) -> str:
    """Decrypt and authenticate a record.

    Args:
        ciphertext_b64: Base64 ciphertext (with tag). When ``nonce_b64``
            is None this is the combined ``nonce || ciphertext`` payload.
        nonce_b64: Base64 nonce, or None for combined payloads.
        key: Raw key bytes.

    Returns:
        The plaintext.

    Raises:
        StructuralCorruption: Malformed base64, wrong nonce length,
            truncated ciphertext or non-UTF-8 plaintext.
        AuthenticationFailure: Tag verification failed.
    """
    payload = _b64(ciphertext_b64, "ciphertext")
    if nonce_b64 is None:
        if len(payload) < NONCE_LENGTH + TAG_LENGTH:
            raise StructuralCorruption("payload too short for nonce and tag")
        nonce, ciphertext = payload[:NONCE_LENGTH], payload[NONCE_LENGTH:]
    else:
        nonce, ciphertext = _b64(nonce_b64, "nonce"), payload
        if len(nonce) != NONCE_LENGTH:
            raise StructuralCorruption(f"nonce is {len(nonce)} bytes, expected {NONCE_LENGTH}")
        if len(ciphertext) < TAG_LENGTH:
            raise StructuralCorruption("ciphertext shorter than the authentication tag")

    if len(key) != KEY_LENGTH:
        raise AuthenticationFailure("key has the wrong length")

    try:
        plaintext = ChaCha20Poly1305(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise AuthenticationFailure("authentication tag mismatch") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StructuralCorruption("plaintext is not valid UTF-8") from exc


def _b64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise StructuralCorruption(f"{what} is not valid base64") from exc


# ---------------------------------------------------------------------------
# Passphrase validator
# ---------------------------------------------------------------------------


def make_validator(key: bytes) -> str:
    """Encrypt the validator marker in combined-payload form."""
    ciphertext_b64, nonce_b64 = encrypt(VALIDATOR_MARKER, key)
    combined = base64.b64decode(nonce_b64) + base64.b64decode(ciphertext_b64)
    return base64.b64encode(combined).decode("ascii")


def check_validator(validator: str, key: bytes) -> bool:
    """True when ``key`` opens the validator to the expected marker."""
    try:
        return decrypt(validator, None, key) == VALIDATOR_MARKER
    except (AuthenticationFailure, StructuralCorruption):
        return False


# ---------------------------------------------------------------------------
# Plaintext note documents
# ---------------------------------------------------------------------------


def sanitize_title(text: str) -> str:
    """One-line title: control characters blanked, whitespace collapsed."""
    cleaned = "".join(" " if not ch.isprintable() else ch for ch in text)
    cleaned = " ".join(cleaned.split())
    return cleaned or NO_CONTENT_TITLE


def title_from_body(body: str) -> str:
    for line in body.splitlines():
        if line.strip():
            return sanitize_title(line.lstrip("# "))
    return NO_CONTENT_TITLE


def encode_document(title: str, body: str) -> str:
    """Serialize the plaintext note document that gets encrypted."""
    return json.dumps({"title": title, "body": body}, ensure_ascii=False, sort_keys=True)


def parse_document(text: str) -> Optional[tuple[str, str]]:
    """Strict parse of a plaintext note document, or None."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    body = data.get("body")
    title = data.get("title", "")
    if not isinstance(body, str) or not isinstance(title, str):
        return None
    return title or title_from_body(body), body


def decode_document(text: str) -> tuple[str, str]:
    """Parse decrypted text into (title, body).

    Falls back to treating the whole text as the body.
    """
    parsed = parse_document(text)
    if parsed is not None:
        return parsed
    return title_from_body(text), text


# ---------------------------------------------------------------------------
# Legacy classification
# ---------------------------------------------------------------------------


def classify(body: str, nonce: Optional[str] = None) -> Classification:
    """Decide whether a record flagged as encrypted really is.

    Some older clients stored plaintext while setting the encrypted
    flag. Only a body that parses as a plaintext note document counts
    as a verified plaintext note. A body with no separate nonce that
    is not strict base64 is reported as ``LOOKS_PLAINTEXT``: readable,
    but unverified, so callers keep the raw text.

    Everything else, including base64 too short to hold a tag and a
    malformed body sent with a nonce, goes through decryption, where
    it ends up as a visible failed placeholder rather than a loss.
    """
    if parse_document(body) is not None:
        return Classification.LOOKS_PLAINTEXT_NOTE
    if nonce is not None:
        return Classification.LOOKS_ENCRYPTED

    try:
        base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        return Classification.LOOKS_PLAINTEXT
    return Classification.LOOKS_ENCRYPTED
