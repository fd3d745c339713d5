"""
KeyManager — passphrase-derived key and salt lifecycle.

The derived key only ever lives in memory, inside a KeyContext that
is created on unlock and dropped on logout or reset. The salt is
public and must be identical on every device of an account, so it is
persisted locally and reconciled with the session on login:

    local salt   session salt   action
    ----------   ------------   ------------------------------------
    none         none           nothing yet (E2E not set up)
    none         S              adopt S locally
    L            none           publish L to the account
    L            L              nothing
    L            S != L         SaltConflictError (fatal, surfaced)

Key derivation is Argon2id with a fixed cost profile (see
``risu.crypto.DEFAULT_KDF_PARAMS``) and runs on a worker thread via
``unlock_async`` so interactive input never waits on it.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from .crypto import (
    DEFAULT_KDF_PARAMS,
    KdfParams,
    check_validator,
    derive_key,
    generate_salt,
    make_validator,
)
from .errors import (
    InvalidPassphraseError,
    KeyMaterialError,
    MissingSaltError,
    SaltConflictError,
)
from .events import Signal
from .models import Session
from .store import LocalStore

logger = logging.getLogger("risu.keys")

SALT_KEY = "encryption_salt"


@dataclass(frozen=True)
class KeyContext:
    """The key for one authenticated session.

    Passed explicitly to the codec and recovery code; there is no
    process-wide key. Dropping the last reference is all it takes to
    forget it.
    """

    key: bytes = field(repr=False)
    salt: str
    generation: int


class KeyManager:
    """Owns derivation, salt reconciliation and key availability.

    Args:
        store: LocalStore holding the salt.
        kdf_params: Argon2id profile. Production code uses the default.
    """

    def __init__(self, store: LocalStore, kdf_params: KdfParams = DEFAULT_KDF_PARAMS) -> None:
        self._store = store
        self._kdf = kdf_params
        self._lock = threading.Lock()
        self._context: Optional[KeyContext] = None
        self._generation = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self.key_available: Signal[KeyContext] = Signal("key_available")

    # -------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------

    def salt(self) -> Optional[str]:
        return self._store.get_kv(SALT_KEY)

    def has_key(self) -> bool:
        with self._lock:
            return self._context is not None

    def context(self) -> Optional[KeyContext]:
        """The current key context, or None while locked."""
        with self._lock:
            return self._context

    def on_key_available(self, callback: Callable[[KeyContext], None]) -> Callable[[], None]:
        """Subscribe to key arrival. Returns an unsubscribe function."""
        return self.key_available.subscribe(callback)

    # -------------------------------------------------------------------
    # Key installation
    # -------------------------------------------------------------------

    def derive(self, passphrase: str, salt: Optional[str] = None) -> bytes:
        """Argon2id over the passphrase and the stored (or given) salt."""
        salt = salt or self.salt()
        if not salt:
            raise MissingSaltError("No encryption salt on this device")
        return derive_key(passphrase, salt, self._kdf)

    def set_key(self, key: bytes, salt: Optional[str] = None) -> KeyContext:
        """Install an already-derived key and announce it.

        Args:
            key: Raw key bytes.
            salt: Salt the key was derived with (defaults to the stored one).

        Returns:
            The new KeyContext.
        """
        with self._lock:
            self._generation += 1
            ctx = KeyContext(key=key, salt=salt or self.salt() or "", generation=self._generation)
            self._context = ctx
        logger.info("Encryption key available (generation %d)", ctx.generation)
        self.key_available.emit(ctx)
        return ctx

    def unlock(self, passphrase: str, validator: Optional[str] = None) -> KeyContext:
        """Derive the key from ``passphrase`` and install it.

        Args:
            passphrase: The user's passphrase. Never stored.
            validator: Account validator; when given, a passphrase that
                does not open it is rejected before anything changes.

        Raises:
            MissingSaltError: No salt known yet.
            InvalidPassphraseError: The validator did not open.
        """
        salt = self.salt()
        key = self.derive(passphrase, salt)
        if validator and not check_validator(validator, key):
            logger.warning("Passphrase rejected by account validator")
            raise InvalidPassphraseError("Passphrase does not match this account")
        return self.set_key(key, salt)

    def unlock_async(self, passphrase: str, validator: Optional[str] = None) -> Future:
        """Run ``unlock`` on the key-derivation worker thread."""
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="risu-kdf")
            executor = self._executor
        return executor.submit(self.unlock, passphrase, validator)

    def enable_e2e(
        self,
        passphrase: str,
        publish: Callable[[str, str], None],
    ) -> tuple[str, str]:
        """First key creation for an account.

        Generates a salt, derives the key, builds a validator and
        publishes both before anything is persisted locally, so a
        failed publish leaves the device unchanged.

        Args:
            passphrase: New passphrase.
            publish: Callable receiving (salt, validator).

        Returns:
            (salt, validator)

        Raises:
            KeyMaterialError: A salt already exists on this device.
        """
        if self.salt():
            raise KeyMaterialError("End-to-end encryption is already set up on this device")

        salt = generate_salt()
        key = derive_key(passphrase, salt, self._kdf)
        validator = make_validator(key)
        publish(salt, validator)

        self._store.set_kv(SALT_KEY, salt)
        logger.info("End-to-end encryption enabled; salt published")
        self.set_key(key, salt)
        return salt, validator

    # -------------------------------------------------------------------
    # Salt reconciliation
    # -------------------------------------------------------------------

    def reconcile_salt(
        self,
        session: Session,
        publish_salt: Optional[Callable[[str], None]] = None,
    ) -> Optional[str]:
        """Bring the local and session salts into agreement.

        Args:
            session: The freshly established session.
            publish_salt: Pushes the local salt to the account when the
                session has none.

        Returns:
            The agreed salt, or None if neither side has one.

        Raises:
            SaltConflictError: Both sides are set and differ.
        """
        local = self.salt()
        remote = session.salt

        if not local and not remote:
            logger.info("No encryption salt yet; end-to-end setup required")
            return None

        if not local:
            self._store.set_kv(SALT_KEY, remote)
            logger.info("Adopted encryption salt from session")
            ctx = self.context()
            if ctx is not None and ctx.salt != remote:
                logger.warning("Held key was derived with another salt; discarding it")
                self.clear()
            return remote

        if not remote:
            if publish_salt is None:
                logger.warning("Session has no salt and no publisher was given")
            else:
                publish_salt(local)
                logger.info("Published local encryption salt to the account")
            return local

        if local == remote:
            return local

        raise SaltConflictError(
            "Local and account encryption salts differ; refusing to guess. "
            "Reset local data or contact support."
        )

    # -------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------

    def clear(self) -> None:
        """Forget the key (logout, reset). The salt stays in the store."""
        with self._lock:
            had_key = self._context is not None
            self._context = None
            self._generation += 1
        if had_key:
            logger.info("Encryption key discarded")

    def shutdown(self) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
