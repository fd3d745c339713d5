"""
NoteApp — builds the engine for one home directory and exposes it.

Wiring:

    AuthSession --login--> KeyManager.reconcile_salt
    KeyManager  --key available--> RecoveryHandler.rescan --> SyncDaemon.trigger
    SyncDaemon  --timer/trigger--> Reconciler.sync (pull, then push)
    Reconciler  --status--> StatusSignal (read by the UI)

Note edits go straight to the LocalStore; the next pass pushes them.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import RisuConfig, load_config, resolve_home
from .crypto import DEFAULT_KDF_PARAMS, KdfParams
from .daemon import SyncDaemon
from .errors import AuthError, NetworkError, RisuError, SaltConflictError
from .feed import HttpRemoteFeed, RemoteFeed
from .keys import KeyContext, KeyManager
from .models import Note, Session, SyncDirection, SyncReport, SyncStatus
from .reconciler import Reconciler
from .recovery import RecoveryHandler, RecoveryReport
from .session import AuthSession
from .store import LocalStore

logger = logging.getLogger("risu.app")

SALT_PUBLISH_PENDING = "salt_publish_pending"


class NoteApp:
    """The local-first note store with optional encrypted sync.

    Args:
        home: Home directory (defaults to RISU_HOME).
        config: Settings (defaults to ``<home>/config.yaml``).
        feed: Remote feed. Defaults to the HTTP API at ``api_base_url``.
        kdf_params: Argon2id profile. Tests pass a cheap one.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[RisuConfig] = None,
        feed: Optional[RemoteFeed] = None,
        kdf_params: KdfParams = DEFAULT_KDF_PARAMS,
    ) -> None:
        self.home = resolve_home(home)
        self.config = config or load_config(self.home)
        self.store = LocalStore.open(self.home)
        self.session = AuthSession(self.store)
        self.keys = KeyManager(self.store, kdf_params)
        self.recovery = RecoveryHandler(self.store, self.keys)
        self.cancel_event = threading.Event()
        self.feed = feed or HttpRemoteFeed(
            self.config.api_base_url,
            self.session,
            timeout=self.config.request_timeout,
            cancel_event=self.cancel_event,
        )
        self.reconciler = Reconciler(
            self.store,
            self.feed,
            self.keys,
            self.recovery,
            config=self.config,
            is_authenticated=lambda: self.session.is_authenticated,
            cancel_event=self.cancel_event,
        )
        self.daemon = SyncDaemon(self.reconciler, self.config, before_sync=self.publish_pending_salt)
        self._reset_lock = threading.Lock()
        self.keys.on_key_available(self._on_key_available)

    # -------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------

    def notes(self, include_deleted: bool = False) -> list[Note]:
        return self.store.list_notes(self.config.collection, include_deleted)

    def save_note(
        self,
        body: str,
        note_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Note:
        """Create or overwrite a note. It is pushed on the next pass."""
        note = self.store.save_local(body, note_id=note_id, title=title, collection=self.config.collection)
        self._kick()
        return note

    def delete_note(self, note_id: str) -> Optional[Note]:
        """Tombstone a note. Returns None if it does not exist."""
        note = self.store.delete_local(note_id)
        if note is not None:
            self._kick()
        return note

    # -------------------------------------------------------------------
    # Session and keys
    # -------------------------------------------------------------------

    def login(self, session: Session) -> Optional[str]:
        """Adopt a session from the login flow and reconcile the salt.

        Returns:
            The agreed salt, or None when E2E is not set up yet.

        Raises:
            SaltConflictError: Local and account salts differ.
        """
        self.cancel_event.clear()
        self.session.login(session)
        try:
            salt = self.keys.reconcile_salt(session, publish_salt=self._publish_salt)
        except SaltConflictError as exc:
            self.reconciler.status.publish(SyncStatus.error(str(exc)))
            raise
        if salt and salt != session.salt:
            self.session.update_salt(salt)
        self._kick()
        return salt

    def logout(self) -> None:
        """Drop the key and the session; status is Offline at once."""
        with self._quiesce():
            self.keys.clear()
            self.session.logout()
            self.reconciler.status.publish(SyncStatus.offline())
        logger.info("Logged out; sync stopped")

    def unlock(self, passphrase: str) -> KeyContext:
        """Derive and install the key. Blocks for the KDF."""
        return self.keys.unlock(passphrase, self._validator())

    def unlock_async(self, passphrase: str) -> Future:
        return self.keys.unlock_async(passphrase, self._validator())

    def enable_e2e(self, passphrase: str) -> str:
        """Create the account key: new salt, validator, published first.

        Returns:
            The new salt.

        Raises:
            AuthError: Not logged in.
            KeyMaterialError: E2E already set up on this device.
        """
        if not self.session.is_authenticated:
            raise AuthError("Log in before enabling end-to-end encryption")
        salt, validator = self.keys.enable_e2e(passphrase, self.feed.publish_salt)
        self.session.update_salt(salt)
        self.session.update_validator(validator)
        return salt

    def _validator(self) -> Optional[str]:
        current = self.session.current
        return current.validator if current else None

    def _publish_salt(self, salt: str) -> None:
        try:
            self.feed.publish_salt(salt)
        except NetworkError as exc:
            logger.warning("Salt publication deferred: %s", exc)
            self.store.set_kv(SALT_PUBLISH_PENDING, "1")
            return
        self.store.delete_kv(SALT_PUBLISH_PENDING)

    def publish_pending_salt(self) -> bool:
        """Retry a salt publication that failed earlier.

        Returns:
            True if a pending publication went out.
        """
        if not self.store.get_kv(SALT_PUBLISH_PENDING) or not self.session.is_authenticated:
            return False
        salt = self.keys.salt()
        if not salt:
            self.store.delete_kv(SALT_PUBLISH_PENDING)
            return False
        self.feed.publish_salt(salt)
        self.store.delete_kv(SALT_PUBLISH_PENDING)
        self.session.update_salt(salt)
        logger.info("Deferred salt publication completed")
        return True

    def _on_key_available(self, context: KeyContext) -> RecoveryReport:
        report = self.recovery.rescan(context)
        self._kick()
        return report

    # -------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------

    def sync_now(self, wait: bool = True) -> SyncReport:
        """Run a pass on the calling thread. Errors propagate."""
        return self.reconciler.sync(self.config.collection, wait=wait)

    def status(self) -> SyncStatus:
        return self.reconciler.status.current()

    def summary(self) -> dict[str, Any]:
        """Everything ``risu status`` prints."""
        collection = self.config.collection
        return {
            "home": str(self.home),
            "status": self.status(),
            "authenticated": self.session.is_authenticated,
            "e2e_enabled": self.config.e2e_enabled,
            "salt_present": self.keys.salt() is not None,
            "unlocked": self.keys.has_key(),
            "notes": len(self.notes()),
            "pull_cursor": self.reconciler.cursors.get(collection, SyncDirection.PULL),
            "push_cursor": self.reconciler.cursors.get(collection, SyncDirection.PUSH),
            "daemon": self.daemon.state.snapshot(),
        }

    def start(self) -> None:
        self.daemon.start()

    def stop(self) -> None:
        self.daemon.stop()
        self.keys.shutdown()

    def _kick(self) -> None:
        if self.daemon.running:
            self.daemon.trigger()

    # -------------------------------------------------------------------
    # Reset
    # -------------------------------------------------------------------

    def reset_local(self, remote: bool = False) -> None:
        """Return the device to first-run state.

        Running passes are invalidated through the reset epoch and
        waited for; then notes, cursors, salt and session token are
        deleted in one transaction and the key is dropped.

        Args:
            remote: Also delete the account's remote records first
                (best effort; failures are logged).
        """
        with self._reset_lock:
            if remote:
                try:
                    self.feed.reset_remote()
                    logger.info("Remote data cleared")
                except (RisuError, NotImplementedError) as exc:
                    logger.warning("Remote reset failed, continuing locally: %s", exc)

            self.store.bump_epoch()
            with self._quiesce():
                self.store.clear_all()
                self.keys.clear()
                self.session.forget()
                self.reconciler.status.publish(SyncStatus.offline())
        logger.info("Local data reset")

    @contextlib.contextmanager
    def _quiesce(self) -> Iterator[None]:
        """Cancel and wait out running passes; hold new ones off."""
        self.cancel_event.set()
        held = self.reconciler.hold_all()
        try:
            yield
        finally:
            self.reconciler.release_all(held)
            self.cancel_event.clear()
