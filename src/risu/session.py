"""
AuthSession — who is signed in, and with which salt.

The login transport itself lives outside this package; whatever
performs it hands the resulting Session to ``login``. The tokens and
the passphrase validator are persisted so a restart resumes without
signing in again. The salt is kept on the in-memory session only; its
durable copy belongs to the KeyManager.
"""

from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Callable, Optional

from .events import Signal
from .models import Session
from .store import LocalStore

logger = logging.getLogger("risu.session")

SESSION_KEY = "session"


class SessionEvent(str, Enum):
    LOGGED_IN = "logged_in"
    LOGGED_OUT = "logged_out"
    SALT_UPDATED = "salt_updated"


class AuthSession:
    """Session state with change notifications.

    Args:
        store: LocalStore the token is persisted in.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._session: Optional[Session] = self._load()
        self.changed: Signal[SessionEvent] = Signal("session")

    @property
    def current(self) -> Optional[Session]:
        with self._lock:
            return self._session

    @property
    def is_authenticated(self) -> bool:
        return self.current is not None

    def subscribe(self, callback: Callable[[SessionEvent], None]) -> Callable[[], None]:
        return self.changed.subscribe(callback)

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------

    def login(self, session: Session) -> None:
        """Adopt a freshly established session and persist its tokens."""
        with self._lock:
            self._session = session
        self._persist(session)
        logger.info("Logged in")
        self.changed.emit(SessionEvent.LOGGED_IN)

    def logout(self) -> None:
        """Forget the session. Listeners drop keys and stop syncing."""
        with self._lock:
            was_logged_in = self._session is not None
            self._session = None
        self._store.delete_kv(SESSION_KEY)
        if was_logged_in:
            logger.info("Logged out")
        self.changed.emit(SessionEvent.LOGGED_OUT)

    def update_salt(self, salt: str) -> None:
        """Record the account salt on the live session (after E2E setup)."""
        with self._lock:
            if self._session is None:
                logger.debug("Salt update ignored: not logged in")
                return
            self._session = self._session.model_copy(update={"salt": salt})
        self.changed.emit(SessionEvent.SALT_UPDATED)

    def update_validator(self, validator: str) -> None:
        with self._lock:
            if self._session is None:
                return
            self._session = self._session.model_copy(update={"validator": validator})
            session = self._session
        self._persist(session)

    def update_tokens(self, token: str, refresh_token: Optional[str] = None) -> None:
        """Store tokens obtained from a refresh."""
        with self._lock:
            if self._session is None:
                return
            update = {"token": token}
            if refresh_token:
                update["refresh_token"] = refresh_token
            self._session = self._session.model_copy(update=update)
            session = self._session
        self._persist(session)

    def forget(self) -> None:
        """Drop in-memory state without touching the store (after reset)."""
        with self._lock:
            self._session = None

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------

    def _persist(self, session: Session) -> None:
        data = {
            "token": session.token,
            "refresh_token": session.refresh_token,
            "validator": session.validator,
        }
        self._store.set_kv(SESSION_KEY, json.dumps(data))

    def _load(self) -> Optional[Session]:
        raw = self._store.get_kv(SESSION_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return Session(
                token=data["token"],
                refresh_token=data.get("refresh_token"),
                validator=data.get("validator"),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Stored session unreadable, ignoring: %s", exc)
            return None
