"""
Sync cursors — how much of each change feed has been durably applied.

One cursor per (collection, direction). Pull cursors hold server feed
positions; push cursors hold the highest acknowledged local version.
A cursor only moves inside a LocalStore transaction that also wrote
whatever the new position vouches for.
"""

from __future__ import annotations

import logging

from .errors import CursorError
from .models import SyncCursor, SyncDirection
from .store import LocalStore, Transaction

logger = logging.getLogger("risu.cursors")

INITIAL_POSITION = 0


class SyncCursorTracker:
    """Monotonic, crash-safe progress markers.

    Args:
        store: The LocalStore the cursors live in.
    """

    def __init__(self, store: LocalStore) -> None:
        self._store = store

    def get(self, collection: str, direction: SyncDirection) -> int:
        """Current position, or 0 if the cursor was never advanced."""
        return self._store.get_cursor(collection, direction)

    def snapshot(self, collection: str) -> list[SyncCursor]:
        """Both cursors of a collection, for status displays."""
        return [
            SyncCursor(
                collection=collection,
                direction=direction,
                position=self._store.get_cursor(collection, direction),
            )
            for direction in SyncDirection
        ]

    def advance(
        self,
        txn: Transaction,
        collection: str,
        direction: SyncDirection,
        position: int,
    ) -> int:
        """Move a cursor forward inside ``txn``.

        Args:
            txn: Open transaction that also holds the writes this
                position covers.
            collection: Collection name.
            direction: Pull or push.
            position: New position. Equal to the current one is a no-op.

        Returns:
            The position now stored.

        Raises:
            CursorError: If ``txn`` is not an open transaction, or the
                position would move backwards.
        """
        if not isinstance(txn, Transaction) or not txn.active:
            raise CursorError("cursors can only advance inside an open store transaction")

        current = txn.get_cursor(collection, direction)
        if position < current:
            raise CursorError(
                f"{collection}/{direction.value} cursor cannot move back "
                f"from {current} to {position}"
            )
        if position > current:
            txn.set_cursor(collection, direction, position)
            logger.debug("%s/%s cursor -> %d", collection, direction.value, position)
        return position

    def reset(self, txn: Transaction) -> None:
        """Return every cursor to its initial position (reset only)."""
        if not isinstance(txn, Transaction) or not txn.active:
            raise CursorError("cursors can only be reset inside an open store transaction")
        txn.delete_cursors()
