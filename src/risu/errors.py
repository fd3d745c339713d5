"""
Error taxonomy for the sync and encryption engine.

    NetworkError          retryable, never advances a cursor
    AuthError             session invalid or expired; sync pauses
    DecryptError          recovered locally as a placeholder record
    LocalIOError          the store can no longer be trusted; sync halts
    KeyMaterialError      passphrase / salt problems surfaced to the caller
    CursorError           illegal cursor use (programming error)
    SyncAborted           a pass lost its right to commit
"""

from __future__ import annotations

from typing import Optional


class RisuError(Exception):
    """Base class for every error raised by risu."""


class NetworkError(RisuError):
    """Transport failure or timeout. Retried on the next pass."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(RisuError):
    """The session is invalid or expired and needs re-authentication."""


class PaymentRequiredError(AuthError):
    """The account is not allowed to sync."""


class DecryptError(RisuError):
    """A record could not be turned back into plaintext."""

    reason = "decryption failed"


class KeyUnavailable(DecryptError):
    """No key is held for this session."""

    reason = "key unavailable"


class AuthenticationFailure(DecryptError):
    """Tag verification failed: wrong key or tampered ciphertext."""

    reason = "decryption failed"


class StructuralCorruption(DecryptError):
    """Ciphertext or nonce is malformed."""

    reason = "corrupted record"


class LocalIOError(RisuError):
    """The local store failed; consistency can no longer be assumed."""


class KeyMaterialError(RisuError):
    """Base class for passphrase and salt problems."""


class MissingSaltError(KeyMaterialError):
    """A key was requested but no salt is known on this device."""


class InvalidPassphraseError(KeyMaterialError):
    """The passphrase does not open the account validator."""


class SaltConflictError(KeyMaterialError):
    """Local and remote salts are both set and disagree."""


class CursorError(RisuError):
    """A cursor was advanced outside a transaction or moved backwards."""


class SyncAborted(RisuError):
    """The pass was cancelled, or a reset invalidated it."""
