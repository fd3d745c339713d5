"""
RecoveryHandler — turns decryption failures into visible, retryable records.

Nothing that arrives encrypted is ever dropped. Records that cannot be
read yet are stored with their ciphertext and a placeholder body:

    KeyUnavailable         -> pending_key
    AuthenticationFailure  -> failed ("decryption failed")
    StructuralCorruption   -> failed ("corrupted record")

When a key becomes available, ``rescan`` walks every pending or failed
record and retries it from the stored ciphertext. The re-scan is local
only: no timers, no network.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel

from .crypto import decode_document, decrypt
from .errors import DecryptError, KeyUnavailable
from .keys import KeyContext, KeyManager
from .models import DecryptStatus, Note
from .store import LocalStore

logger = logging.getLogger("risu.recovery")

PENDING_KEY_TITLE = "Locked note"
PENDING_KEY_BODY = "This note is encrypted. Unlock with your passphrase to read it."
FAILED_TITLE = "Unreadable note"
FAILED_BODY = "This note could not be decrypted ({reason}). It will be retried with the next key."


@dataclass
class Resolution:
    """What to store for one encrypted record."""

    status: DecryptStatus
    title: str
    body: str
    failure_reason: Optional[str] = None


class RecoveryReport(BaseModel):
    """Counters for one re-scan."""

    scanned: int = 0
    recovered: int = 0
    still_pending: int = 0
    still_failed: int = 0
    skipped: int = 0


def classify_failure(exc: DecryptError) -> tuple[DecryptStatus, Optional[str]]:
    """Map a decrypt error to the status and reason that get stored."""
    if isinstance(exc, KeyUnavailable):
        return DecryptStatus.PENDING_KEY, None
    return DecryptStatus.FAILED, exc.reason


def placeholder(status: DecryptStatus, reason: Optional[str] = None) -> tuple[str, str]:
    """Display (title, body) for a record that cannot be read."""
    if status == DecryptStatus.PENDING_KEY:
        return PENDING_KEY_TITLE, PENDING_KEY_BODY
    return FAILED_TITLE, FAILED_BODY.format(reason=reason or "decryption failed")


class RecoveryHandler:
    """Decrypts what it can and parks the rest.

    Args:
        store: LocalStore holding the records.
        key_manager: Source of the current key for ``rescan``.
    """

    def __init__(self, store: LocalStore, key_manager: KeyManager) -> None:
        self._store = store
        self._keys = key_manager
        self._scan_lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    classify_failure = staticmethod(classify_failure)

    def resolve(
        self,
        ciphertext: str,
        nonce: Optional[str],
        context: Optional[KeyContext],
    ) -> Resolution:
        """Decrypt one record, or build its placeholder.

        Args:
            ciphertext: Base64 ciphertext as stored or received.
            nonce: Base64 nonce, or None for combined payloads.
            context: Current key, or None when locked.

        Returns:
            A Resolution; never raises for decryption problems.
        """
        try:
            if context is None:
                raise KeyUnavailable("no key for this session")
            plaintext = decrypt(ciphertext, nonce, context.key)
        except DecryptError as exc:
            status, reason = classify_failure(exc)
            if status == DecryptStatus.FAILED:
                logger.warning("Record left unreadable: %s (%s)", reason, exc)
            title, body = placeholder(status, reason)
            return Resolution(status=status, title=title, body=body, failure_reason=reason)

        title, body = decode_document(plaintext)
        return Resolution(status=DecryptStatus.DECRYPTED, title=title, body=body)

    # -------------------------------------------------------------------
    # Key arrival
    # -------------------------------------------------------------------

    def attach(self, key_manager: Optional[KeyManager] = None) -> None:
        """Re-scan automatically whenever a key becomes available."""
        manager = key_manager or self._keys
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = manager.on_key_available(self.rescan)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def rescan(self, context: Optional[KeyContext] = None) -> RecoveryReport:
        """Retry every pending or failed record with a stored ciphertext.

        Bounded to the records that existed when the scan started. A
        record whose version changed while it was being decrypted (an
        edit, a newer pull) is left alone.

        Args:
            context: Key to use. Defaults to the KeyManager's current one.

        Returns:
            RecoveryReport with per-outcome counts.
        """
        report = RecoveryReport()
        ctx = context or self._keys.context()
        if ctx is None:
            logger.debug("Re-scan skipped: no key")
            return report

        with self._scan_lock:
            ceiling = self._store.current_version()
            candidates = self._store.list_by_status(
                [DecryptStatus.PENDING_KEY, DecryptStatus.FAILED]
            )
            for note in candidates:
                if note.version > ceiling:
                    break
                if context is None and self._keys.context() is not ctx:
                    logger.info("Key changed during re-scan; stopping")
                    break
                if not note.needs_recovery:
                    continue
                report.scanned += 1
                self._retry(note, ctx, report)

        logger.info(
            "Re-scan: %d scanned, %d recovered, %d pending, %d failed, %d skipped",
            report.scanned, report.recovered, report.still_pending,
            report.still_failed, report.skipped,
        )
        return report

    def _retry(self, note: Note, ctx: KeyContext, report: RecoveryReport) -> None:
        res = self.resolve(note.ciphertext, note.nonce, ctx)

        if res.status == note.decrypt_status and res.failure_reason == note.failure_reason:
            if res.status == DecryptStatus.PENDING_KEY:
                report.still_pending += 1
            else:
                report.still_failed += 1
            return

        with self._store.transaction() as txn:
            fresh = txn.get(note.id)
            if fresh is None or fresh.version != note.version:
                report.skipped += 1
                return
            fresh.title = res.title
            fresh.body = res.body
            fresh.decrypt_status = res.status
            fresh.failure_reason = res.failure_reason
            txn.put(fresh)

        if res.status == DecryptStatus.DECRYPTED:
            report.recovered += 1
        elif res.status == DecryptStatus.PENDING_KEY:
            report.still_pending += 1
        else:
            report.still_failed += 1
