"""
LocalStore — the on-device source of truth.

A single SQLite database holds notes, sync cursors and key metadata.
Every write that must be atomic with another write (a pulled note and
the cursor that covers it, an acknowledged push and its cursor) goes
through ``transaction()``, which is the only mutual-exclusion boundary
the sync engine relies on.

Storage layout:
    ~/.risu/local.db
    ├── notes     # Note records, keyed by id
    ├── cursors   # (collection, direction) -> position
    ├── kv        # salt, session token
    └── meta      # version counter, reset epoch (survive reset)
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from .crypto import title_from_body
from .errors import LocalIOError
from .models import DEFAULT_COLLECTION, DecryptStatus, Note, SyncDirection, utcnow

logger = logging.getLogger("risu.store")

DB_FILE = "local.db"
SCAN_CHUNK = 100

_SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    id              TEXT PRIMARY KEY,
    collection      TEXT NOT NULL DEFAULT 'notes',
    title           TEXT NOT NULL DEFAULT '',
    body            TEXT NOT NULL DEFAULT '',
    ciphertext      TEXT,
    nonce           TEXT,
    is_encrypted    INTEGER NOT NULL DEFAULT 0,
    version         INTEGER NOT NULL,
    updated_at      TEXT NOT NULL,
    decrypt_status  TEXT NOT NULL DEFAULT 'decrypted',
    failure_reason  TEXT,
    is_deleted      INTEGER NOT NULL DEFAULT 0,
    dirty           INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_notes_push ON notes (collection, dirty, version);
CREATE INDEX IF NOT EXISTS idx_notes_status ON notes (decrypt_status);

CREATE TABLE IF NOT EXISTS cursors (
    collection  TEXT NOT NULL,
    direction   TEXT NOT NULL,
    position    INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (collection, direction)
);

CREATE TABLE IF NOT EXISTS kv (
    key    TEXT PRIMARY KEY,
    value  TEXT
);

CREATE TABLE IF NOT EXISTS meta (
    key    TEXT PRIMARY KEY,
    value  INTEGER NOT NULL
);
"""

_NOTE_COLUMNS = (
    "id", "collection", "title", "body", "ciphertext", "nonce", "is_encrypted",
    "version", "updated_at", "decrypt_status", "failure_reason", "is_deleted", "dirty",
)


def _row_to_note(row: sqlite3.Row) -> Note:
    return Note(
        id=row["id"],
        collection=row["collection"],
        title=row["title"],
        body=row["body"],
        ciphertext=row["ciphertext"],
        nonce=row["nonce"],
        is_encrypted=bool(row["is_encrypted"]),
        version=row["version"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
        decrypt_status=DecryptStatus(row["decrypt_status"]),
        failure_reason=row["failure_reason"],
        is_deleted=bool(row["is_deleted"]),
        dirty=bool(row["dirty"]),
    )


def _note_params(note: Note) -> tuple[Any, ...]:
    return (
        note.id,
        note.collection,
        note.title,
        note.body,
        note.ciphertext,
        note.nonce,
        int(note.is_encrypted),
        note.version,
        note.updated_at.isoformat(),
        note.decrypt_status.value,
        note.failure_reason,
        int(note.is_deleted),
        int(note.dirty),
    )


class Transaction:
    """An open write transaction on the store.

    Handed out by ``LocalStore.transaction()``; only valid inside the
    ``with`` block. The cursor tracker refuses to advance without one.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self.active = True

    # -- notes -------------------------------------------------------------

    def put(self, note: Note) -> int:
        """Upsert ``note`` with a freshly assigned version.

        The version is written back onto the passed model.
        """
        self._require_active()
        note.version = self._next_counter("version")
        placeholders = ", ".join("?" for _ in _NOTE_COLUMNS)
        assignments = ", ".join(
            f"{col} = excluded.{col}" for col in _NOTE_COLUMNS if col != "id"
        )
        self._conn.execute(
            f"INSERT INTO notes ({', '.join(_NOTE_COLUMNS)}) VALUES ({placeholders}) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}",
            _note_params(note),
        )
        return note.version

    def get(self, note_id: str) -> Optional[Note]:
        self._require_active()
        row = self._conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        return _row_to_note(row) if row else None

    def clear_dirty(self, note_id: str, version: int) -> bool:
        """Mark a note clean if it still carries ``version``.

        Returns:
            True if the note was unchanged since the upload.
        """
        self._require_active()
        cur = self._conn.execute(
            "UPDATE notes SET dirty = 0 WHERE id = ? AND version = ?",
            (note_id, version),
        )
        return cur.rowcount == 1

    # -- cursors -----------------------------------------------------------

    def get_cursor(self, collection: str, direction: SyncDirection) -> int:
        self._require_active()
        row = self._conn.execute(
            "SELECT position FROM cursors WHERE collection = ? AND direction = ?",
            (collection, direction.value),
        ).fetchone()
        return row["position"] if row else 0

    def set_cursor(self, collection: str, direction: SyncDirection, position: int) -> None:
        self._require_active()
        self._conn.execute(
            "INSERT INTO cursors (collection, direction, position) VALUES (?, ?, ?) "
            "ON CONFLICT(collection, direction) DO UPDATE SET position = excluded.position",
            (collection, direction.value, position),
        )

    def delete_cursors(self) -> None:
        self._require_active()
        self._conn.execute("DELETE FROM cursors")

    def purge(self) -> None:
        """Remove notes, cursors and kv entries. Meta counters survive."""
        self._require_active()
        self._conn.execute("DELETE FROM notes")
        self._conn.execute("DELETE FROM cursors")
        self._conn.execute("DELETE FROM kv")

    # -- kv / meta ---------------------------------------------------------

    def get_kv(self, key: str) -> Optional[str]:
        self._require_active()
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_kv(self, key: str, value: str) -> None:
        self._require_active()
        self._conn.execute("INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)", (key, value))

    def delete_kv(self, key: str) -> None:
        self._require_active()
        self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def epoch(self) -> int:
        self._require_active()
        return self._get_counter("epoch")

    def check_epoch(self, expected: int) -> bool:
        """True if no reset happened since ``expected`` was read."""
        return self.epoch() == expected

    def bump_epoch(self) -> int:
        self._require_active()
        return self._next_counter("epoch")

    def _get_counter(self, key: str) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else 0

    def _next_counter(self, key: str) -> int:
        value = self._get_counter(key) + 1
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value)
        )
        return value

    def _require_active(self) -> None:
        if not self.active:
            raise LocalIOError("transaction is no longer active")


class LocalStore:
    """Durable keyed store for notes, cursors and key metadata.

    Connections are opened per operation, so one instance can be shared
    between the UI thread and the sync daemon.

    Args:
        db_path: Path to the SQLite file.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @classmethod
    def open(cls, home: Path) -> "LocalStore":
        """Open (or create) the store inside a home directory."""
        return cls(Path(home) / DB_FILE)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_db(self) -> None:
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise LocalIOError(f"Cannot open {self.db_path}: {exc}") from exc
        try:
            conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise LocalIOError(f"Cannot create schema: {exc}") from exc
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Atomic multi-record commit.

        Commits when the block exits normally and rolls back on any
        exception. SQLite failures surface as LocalIOError.
        """
        try:
            conn = self._get_conn()
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as exc:
            raise LocalIOError(f"Cannot begin transaction: {exc}") from exc

        txn = Transaction(conn)
        try:
            yield txn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise LocalIOError(f"Transaction failed: {exc}") from exc
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            txn.active = False
            conn.close()

    @contextlib.contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise LocalIOError(f"Cannot open {self.db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise LocalIOError(f"Read failed: {exc}") from exc
        finally:
            conn.close()

    # -------------------------------------------------------------------
    # Notes
    # -------------------------------------------------------------------

    def put(self, note: Note) -> int:
        """Write a note in its own transaction. Returns the new version."""
        with self.transaction() as txn:
            return txn.put(note)

    def get(self, note_id: str) -> Optional[Note]:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        return _row_to_note(row) if row else None

    def list_since(self, collection: str, version: int) -> Iterator[Note]:
        """Lazily yield dirty notes newer than ``version``, oldest first.

        Reads in chunks with short-lived connections, so a slow consumer
        (an upload loop) never pins a read snapshot.
        """
        last = version
        while True:
            with self._reading() as conn:
                rows = conn.execute(
                    "SELECT * FROM notes WHERE collection = ? AND dirty = 1 AND version > ? "
                    "ORDER BY version LIMIT ?",
                    (collection, last, SCAN_CHUNK),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                note = _row_to_note(row)
                last = note.version
                yield note

    def list_by_status(self, statuses: Iterable[DecryptStatus]) -> Iterator[Note]:
        """Lazily yield notes in any of ``statuses``, in version order."""
        wanted = [s.value for s in statuses]
        marks = ", ".join("?" for _ in wanted)
        last = 0
        while True:
            with self._reading() as conn:
                rows = conn.execute(
                    f"SELECT * FROM notes WHERE decrypt_status IN ({marks}) AND version > ? "
                    "ORDER BY version LIMIT ?",
                    (*wanted, last, SCAN_CHUNK),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                note = _row_to_note(row)
                last = note.version
                yield note

    def list_notes(
        self,
        collection: str = DEFAULT_COLLECTION,
        include_deleted: bool = False,
    ) -> list[Note]:
        """Notes for display, most recently updated first."""
        query = "SELECT * FROM notes WHERE collection = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        query += " ORDER BY updated_at DESC"
        with self._reading() as conn:
            rows = conn.execute(query, (collection,)).fetchall()
        return [_row_to_note(r) for r in rows]

    def count_notes(self) -> int:
        with self._reading() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM notes").fetchone()
        return row["n"]

    def save_local(
        self,
        body: str,
        note_id: Optional[str] = None,
        title: Optional[str] = None,
        collection: str = DEFAULT_COLLECTION,
    ) -> Note:
        """Record a user edit: plaintext, readable, waiting to be pushed."""
        note = Note(
            collection=collection,
            title=title or title_from_body(body),
            body=body,
            updated_at=utcnow(),
            dirty=True,
        )
        if note_id:
            note.id = note_id
        self.put(note)
        logger.debug("Saved local note %s (v%d)", note.id, note.version)
        return note

    def delete_local(self, note_id: str) -> Optional[Note]:
        """Tombstone a note so the deletion is pushed like an edit."""
        with self.transaction() as txn:
            note = txn.get(note_id)
            if note is None:
                return None
            note.is_deleted = True
            note.dirty = True
            note.updated_at = utcnow()
            txn.put(note)
        logger.debug("Deleted local note %s (v%d)", note.id, note.version)
        return note

    # -------------------------------------------------------------------
    # Key/value, epoch, reset
    # -------------------------------------------------------------------

    def get_kv(self, key: str) -> Optional[str]:
        with self._reading() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_kv(self, key: str, value: str) -> None:
        with self.transaction() as txn:
            txn.set_kv(key, value)

    def delete_kv(self, key: str) -> None:
        with self.transaction() as txn:
            txn.delete_kv(key)

    def get_cursor(self, collection: str, direction: SyncDirection) -> int:
        with self._reading() as conn:
            row = conn.execute(
                "SELECT position FROM cursors WHERE collection = ? AND direction = ?",
                (collection, direction.value),
            ).fetchone()
        return row["position"] if row else 0

    def epoch(self) -> int:
        """Current reset epoch. Passes capture it and re-check on commit."""
        return self._meta("epoch")

    def current_version(self) -> int:
        """Highest version assigned so far."""
        return self._meta("version")

    def _meta(self, key: str) -> int:
        with self._reading() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else 0

    def bump_epoch(self) -> int:
        with self.transaction() as txn:
            return txn.bump_epoch()

    def clear_all(self) -> int:
        """Delete every note, cursor and kv entry in one transaction.

        The version counter is kept so versions are never reused, and
        the epoch moves forward so passes started earlier cannot commit.

        Returns:
            The new epoch.
        """
        with self.transaction() as txn:
            txn.purge()
            epoch = txn.bump_epoch()
        logger.info("Local store cleared (epoch %d)", epoch)
        return epoch
