"""
Reconciler — pull and push passes over the remote change feed.

Pull walks the feed after the stored pull cursor, oldest first, and for
every change writes the note and advances the cursor in one store
transaction:

    not encrypted                    -> decrypted
    flagged encrypted, note document -> plaintext_legacy (re-uploaded)
    flagged encrypted, not base64    -> plaintext_legacy (raw kept)
    encrypted, no key                -> pending_key placeholder
    encrypted, key, decrypts         -> decrypted
    encrypted, key, does not         -> failed placeholder

Push uploads dirty notes in version order, encrypted, and on each
acknowledgment clears the dirty flag and advances the push cursor.
A pass whose push was skipped for a locked key reports Offline.

One pass per collection at a time. Every commit re-checks the reset
epoch captured when the pass started, so a reset can never be undone
by a pass that was already running.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from .config import RisuConfig
from .crypto import Classification, classify, decode_document, encode_document, encrypt
from .cursors import SyncCursorTracker
from .errors import AuthError, LocalIOError, NetworkError, SyncAborted
from .events import Signal
from .feed import RemoteFeed
from .keys import KeyContext, KeyManager
from .models import (
    DecryptStatus,
    Note,
    PullReport,
    PushEnvelope,
    PushReport,
    RemoteChange,
    SyncDirection,
    SyncReport,
    SyncState,
    SyncStatus,
    utcnow,
)
from .recovery import RecoveryHandler
from .store import LocalStore, Transaction

logger = logging.getLogger("risu.reconciler")

# Pull outcomes, also the PullReport counter names.
APPLIED = "applied"
PENDING_KEY = "pending_key"
FAILED = "failed"
LEGACY = "legacy"
SKIPPED = "skipped"

# PushReport.skipped_reason values.
PUSH_DISABLED = "end-to-end encryption disabled"
PUSH_NOT_SET_UP = "end-to-end encryption not set up"
PUSH_LOCKED = "locked"

_OUTCOME_BY_STATUS = {
    DecryptStatus.DECRYPTED: APPLIED,
    DecryptStatus.PENDING_KEY: PENDING_KEY,
    DecryptStatus.FAILED: FAILED,
    DecryptStatus.PLAINTEXT_LEGACY: LEGACY,
}

_COMPARED_FIELDS = (
    "collection", "title", "body", "ciphertext", "nonce", "is_encrypted",
    "updated_at", "decrypt_status", "failure_reason", "is_deleted", "dirty",
)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class StatusSignal:
    """Latest sync status plus change notifications.

    Args:
        stale_after: Seconds after which a Synced status reads as Offline.
        is_authenticated: Returns False while logged out.
    """

    def __init__(
        self,
        stale_after: float = 600.0,
        is_authenticated: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._stale_after = timedelta(seconds=stale_after)
        self._is_authenticated = is_authenticated or (lambda: True)
        self._lock = threading.Lock()
        self._status = SyncStatus.offline()
        self.changed: Signal[SyncStatus] = Signal("sync_status")

    def publish(self, status: SyncStatus) -> None:
        with self._lock:
            self._status = status
        logger.debug("Status -> %s%s", status.state.value, f" ({status.detail})" if status.detail else "")
        self.changed.emit(status)

    def current(self) -> SyncStatus:
        """The status to show right now."""
        with self._lock:
            status = self._status
        if not self._is_authenticated():
            return SyncStatus.offline()
        if status.state == SyncState.SYNCED and utcnow() - status.at > self._stale_after:
            return SyncStatus.offline()
        return status

    def subscribe(self, callback: Callable[[SyncStatus], None]) -> Callable[[], None]:
        return self.changed.subscribe(callback)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


@dataclass
class _PassSlot:
    """Serializes passes on one collection."""

    lock: threading.Lock
    started: Optional[float] = None


class Reconciler:
    """Drives pull and push passes for one account.

    Args:
        store: LocalStore.
        feed: RemoteFeed to pull from and push to.
        key_manager: Source of the current KeyContext.
        recovery: Produces decrypted records or placeholders.
        config: Batch sizes, coalescing window, E2E switch.
        status: StatusSignal to publish to (created when omitted).
        is_authenticated: Returns False while logged out.
        cancel_event: When set, running passes stop at the next item.
    """

    def __init__(
        self,
        store: LocalStore,
        feed: RemoteFeed,
        key_manager: KeyManager,
        recovery: RecoveryHandler,
        config: Optional[RisuConfig] = None,
        status: Optional[StatusSignal] = None,
        is_authenticated: Optional[Callable[[], bool]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._keys = key_manager
        self._recovery = recovery
        self._config = config or RisuConfig()
        self._is_authenticated = is_authenticated or (lambda: True)
        self.status = status or StatusSignal(
            self._config.stale_after_seconds, self._is_authenticated
        )
        self.cursors = SyncCursorTracker(store)
        self.cancel_event = cancel_event or threading.Event()
        self._slots: dict[str, _PassSlot] = {}
        self._slots_lock = threading.Lock()

    # -------------------------------------------------------------------
    # Public passes
    # -------------------------------------------------------------------

    def sync(self, collection: Optional[str] = None, wait: bool = True) -> SyncReport:
        """Pull then push one collection.

        If another pass on the collection is running and started less
        than ``coalesce_seconds`` ago, this call returns a coalesced
        report without doing anything. Otherwise it waits its turn,
        unless ``wait`` is False.

        Raises:
            NetworkError: Remote unreachable. Status becomes Offline.
            AuthError: Session rejected. Status becomes Error.
            LocalIOError: Store failure. Status becomes Error.
            SyncAborted: Cancelled or invalidated by a reset.
        """
        collection = collection or self._config.collection
        slot = self._slot(collection)

        if not slot.lock.acquire(blocking=False):
            started = slot.started
            recent = started is not None and time.monotonic() - started < self._config.coalesce_seconds
            if recent or not wait:
                logger.debug("Sync of %s coalesced into the running pass", collection)
                return SyncReport(collection=collection, coalesced=True)
            slot.lock.acquire()

        try:
            slot.started = time.monotonic()
            return self._run(collection)
        finally:
            slot.started = None
            slot.lock.release()

    def pull(self, collection: Optional[str] = None) -> PullReport:
        """Run a pull pass alone (waits for any running pass)."""
        collection = collection or self._config.collection
        slot = self._slot(collection)
        with slot.lock:
            slot.started = time.monotonic()
            try:
                return self._pull(collection)
            finally:
                slot.started = None

    def push(self, collection: Optional[str] = None) -> PushReport:
        """Run a push pass alone (waits for any running pass)."""
        collection = collection or self._config.collection
        slot = self._slot(collection)
        with slot.lock:
            slot.started = time.monotonic()
            try:
                return self._push(collection)
            finally:
                slot.started = None

    def hold_all(self) -> list[threading.Lock]:
        """Acquire every collection lock, waiting for running passes.

        Used by reset: set ``cancel_event`` and bump the epoch first so
        running passes give up quickly. New collections cannot be
        registered until ``release_all`` is called.

        Returns:
            The held locks, to pass back to ``release_all``.
        """
        self._slots_lock.acquire()
        held = []
        try:
            for name in sorted(self._slots):
                lock = self._slots[name].lock
                lock.acquire()
                held.append(lock)
        except BaseException:
            self.release_all(held)
            raise
        return held

    def release_all(self, held: list[threading.Lock]) -> None:
        for lock in reversed(held):
            lock.release()
        self._slots_lock.release()

    def _slot(self, collection: str) -> _PassSlot:
        with self._slots_lock:
            slot = self._slots.get(collection)
            if slot is None:
                slot = self._slots[collection] = _PassSlot(lock=threading.Lock())
            return slot

    # -------------------------------------------------------------------
    # Pass driver
    # -------------------------------------------------------------------

    def _run(self, collection: str) -> SyncReport:
        if self._config.offline_mode or not self._is_authenticated():
            logger.debug("Sync of %s skipped: offline or logged out", collection)
            self.status.publish(SyncStatus.offline())
            return SyncReport(collection=collection)

        self.status.publish(SyncStatus.syncing())
        try:
            pull = self._pull(collection)
            push = self._push(collection)
        except NetworkError as exc:
            logger.warning("Sync of %s failed, remote unreachable: %s", collection, exc)
            self.status.publish(SyncStatus.offline())
            raise
        except AuthError as exc:
            logger.error("Sync of %s rejected: %s", collection, exc)
            self.status.publish(SyncStatus.error(str(exc)))
            raise
        except LocalIOError as exc:
            logger.error("Sync of %s halted, local store failed: %s", collection, exc)
            self.status.publish(SyncStatus.error(f"local storage: {exc}"))
            raise
        except SyncAborted as exc:
            logger.info("Sync of %s aborted: %s", collection, exc)
            self.status.publish(SyncStatus.offline())
            raise
        except Exception as exc:
            logger.exception("Sync of %s crashed", collection)
            self.status.publish(SyncStatus.error(f"unexpected: {exc}"))
            raise

        if push.skipped_reason == PUSH_LOCKED:
            logger.info("Sync of %s pulled only; key is locked", collection)
            self.status.publish(SyncStatus.offline())
        else:
            self.status.publish(SyncStatus.synced())
        logger.info(
            "Synced %s: pulled %d (pending %d, failed %d, legacy %d), pushed %d",
            collection, pull.applied, pull.pending_key, pull.failed, pull.legacy, push.uploaded,
        )
        return SyncReport(collection=collection, pull=pull, push=push)

    def _check_cancel(self) -> None:
        if self.cancel_event.is_set():
            raise SyncAborted("sync cancelled")

    # -------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------

    def _pull(self, collection: str) -> PullReport:
        epoch = self._store.epoch()
        after = self.cursors.get(collection, SyncDirection.PULL)
        report = PullReport(cursor=after)

        for _ in range(self._config.max_pages):
            self._check_cancel()
            page = self._feed.fetch_changes(collection, after, self._config.batch_size)
            report.pages += 1

            for change in page.changes:
                self._check_cancel()
                if change.position <= after:
                    report.skipped += 1
                    continue
                outcome = self._apply(collection, change, epoch)
                setattr(report, outcome, getattr(report, outcome) + 1)
                after = change.position

            if not page.has_more or not page.changes:
                break
        else:
            logger.info("Pull of %s stopped after %d pages; resuming next pass", collection, report.pages)

        report.cursor = after

        # A key may have arrived while pending records were being written.
        if report.pending_key and self._keys.has_key():
            self._recovery.rescan()
        return report

    def _apply(self, collection: str, change: RemoteChange, epoch: int) -> str:
        """Write one change and move the pull cursor past it, atomically."""
        candidate = self._materialize(collection, change, self._keys.context())

        with self._store.transaction() as txn:
            if not txn.check_epoch(epoch):
                raise SyncAborted("local data was reset during the pass")
            outcome = self._merge(txn, candidate)
            self.cursors.advance(txn, collection, SyncDirection.PULL, change.position)
        return outcome

    def _materialize(
        self,
        collection: str,
        change: RemoteChange,
        context: Optional[KeyContext],
    ) -> Note:
        """Build the note a remote change turns into. No store access."""
        note = Note(
            id=change.id,
            collection=collection,
            updated_at=change.updated_at,
            is_deleted=change.is_deleted,
        )

        kind = classify(change.body, change.nonce) if change.is_encrypted else None
        if kind == Classification.LOOKS_ENCRYPTED:
            res = self._recovery.resolve(change.body, change.nonce, context)
            note.title, note.body = res.title, res.body
            note.decrypt_status = res.status
            note.failure_reason = res.failure_reason
            note.ciphertext, note.nonce = change.body, change.nonce
            note.is_encrypted = True
            return note

        note.title, note.body = decode_document(change.body)
        if kind == Classification.LOOKS_PLAINTEXT_NOTE:
            logger.info("Record %s is flagged encrypted but holds a plaintext note", change.id)
            note.decrypt_status = DecryptStatus.PLAINTEXT_LEGACY
            note.dirty = True
        elif kind == Classification.LOOKS_PLAINTEXT:
            # Unverified: shown as text, raw record kept, nothing re-uploaded.
            logger.warning("Record %s is flagged encrypted but is not base64", change.id)
            note.decrypt_status = DecryptStatus.PLAINTEXT_LEGACY
            note.ciphertext, note.nonce = change.body, change.nonce
            note.is_encrypted = True
        return note

    def _merge(self, txn: Transaction, candidate: Note) -> str:
        existing = txn.get(candidate.id)
        if existing is not None:
            if existing.dirty and existing.updated_at > candidate.updated_at:
                logger.debug("Kept newer local edit of %s", candidate.id)
                return SKIPPED
            if all(getattr(existing, f) == getattr(candidate, f) for f in _COMPARED_FIELDS):
                return SKIPPED
            if (
                existing.decrypt_status == DecryptStatus.DECRYPTED
                and not candidate.decrypt_status.is_readable
                and existing.ciphertext == candidate.ciphertext
                and existing.nonce == candidate.nonce
            ):
                return SKIPPED

        txn.put(candidate)
        if candidate.is_deleted:
            return APPLIED
        return _OUTCOME_BY_STATUS[candidate.decrypt_status]

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------

    def _push(self, collection: str) -> PushReport:
        cursor = self.cursors.get(collection, SyncDirection.PUSH)
        if not self._config.e2e_enabled:
            return PushReport(cursor=cursor, skipped_reason=PUSH_DISABLED)
        ctx = self._keys.context()
        if ctx is None:
            reason = PUSH_LOCKED if self._keys.salt() else PUSH_NOT_SET_UP
            return PushReport(cursor=cursor, skipped_reason=reason)

        epoch = self._store.epoch()
        report = PushReport(cursor=cursor)

        for note in self._store.list_since(collection, cursor):
            self._check_cancel()
            document = encode_document("", "") if note.is_deleted else encode_document(note.title, note.body)
            ciphertext, nonce = encrypt(document, ctx.key)
            envelope = PushEnvelope(
                id=note.id,
                body=ciphertext,
                nonce=nonce,
                is_deleted=note.is_deleted,
                updated_at=note.updated_at,
                version=note.version,
            )
            ack = self._feed.push_change(collection, envelope)
            if ack.version != note.version:
                logger.warning(
                    "Push of %s acknowledged v%d, sent v%d", note.id, ack.version, note.version
                )

            with self._store.transaction() as txn:
                if not txn.check_epoch(epoch):
                    raise SyncAborted("local data was reset during the pass")
                if not txn.clear_dirty(note.id, note.version):
                    logger.debug("%s changed during upload; stays dirty", note.id)
                self.cursors.advance(txn, collection, SyncDirection.PUSH, note.version)

            report.uploaded += 1
            report.cursor = note.version

        return report
