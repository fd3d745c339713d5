"""Shared test fixtures for risu."""

from __future__ import annotations

import os
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from risu.app import NoteApp
from risu.config import RisuConfig
from risu.crypto import KdfParams, encode_document, encrypt
from risu.errors import NetworkError
from risu.feed import RemoteFeed
from risu.keys import KeyManager
from risu.models import PullPage, PushAck, PushEnvelope, RemoteChange
from risu.reconciler import Reconciler
from risu.recovery import RecoveryHandler
from risu.store import LocalStore

# Argon2id at its minimum cost; the production profile takes ~0.1s per call.
FAST_KDF = KdfParams(memory_cost=64, iterations=1, lanes=1)


class FakeFeed(RemoteFeed):
    """In-memory remote: an ordered change list per collection."""

    def __init__(self) -> None:
        self.changes: dict[str, list[RemoteChange]] = {}
        self.pushed: list[PushEnvelope] = []
        self.calls: Counter = Counter()
        self.salt: Optional[str] = None
        self.validator: Optional[str] = None
        self.fail_fetch: Optional[Exception] = None
        self.fail_push_at: Optional[int] = None
        self.fail_publish: Optional[Exception] = None
        self._position = 0

    def add(
        self,
        note_id: str,
        body: str,
        is_encrypted: bool = False,
        nonce: Optional[str] = None,
        position: Optional[int] = None,
        is_deleted: bool = False,
        updated_at: Optional[datetime] = None,
        collection: str = "notes",
    ) -> RemoteChange:
        self._position = position if position is not None else self._position + 1
        change = RemoteChange(
            id=note_id,
            is_encrypted=is_encrypted,
            body=body,
            nonce=nonce,
            position=self._position,
            updated_at=updated_at or datetime(2025, 1, 1, tzinfo=timezone.utc),
            is_deleted=is_deleted,
        )
        self.changes.setdefault(collection, []).append(change)
        return change

    def add_encrypted(self, note_id: str, key: bytes, body: str, title: str = "", **kwargs) -> RemoteChange:
        ciphertext, nonce = encrypt(encode_document(title, body), key)
        return self.add(note_id, ciphertext, is_encrypted=True, nonce=nonce, **kwargs)

    def fetch_changes(self, collection: str, after: int, limit: int) -> PullPage:
        self.calls["fetch"] += 1
        if self.fail_fetch is not None:
            raise self.fail_fetch
        newer = [c for c in self.changes.get(collection, []) if c.position > after]
        return PullPage(changes=newer[:limit], has_more=len(newer) > limit)

    def push_change(self, collection: str, envelope: PushEnvelope) -> PushAck:
        self.calls["push"] += 1
        if self.fail_push_at is not None and len(self.pushed) >= self.fail_push_at:
            raise NetworkError("connection reset")
        self.pushed.append(envelope)
        return PushAck(id=envelope.id, version=envelope.version)

    def publish_salt(self, salt: str, validator: Optional[str] = None) -> None:
        self.calls["publish_salt"] += 1
        if self.fail_publish is not None:
            raise self.fail_publish
        self.salt = salt
        if validator:
            self.validator = validator

    def reset_remote(self) -> None:
        self.calls["reset_remote"] += 1
        self.changes.clear()
        self.pushed.clear()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary risu home directory."""
    risu_home = tmp_path / ".risu"
    risu_home.mkdir()
    return risu_home


@pytest.fixture
def store(home: Path) -> LocalStore:
    return LocalStore.open(home)


@pytest.fixture
def key() -> bytes:
    return os.urandom(32)


@pytest.fixture
def keys(store: LocalStore) -> KeyManager:
    manager = KeyManager(store, FAST_KDF)
    yield manager
    manager.shutdown()


@pytest.fixture
def recovery(store: LocalStore, keys: KeyManager) -> RecoveryHandler:
    return RecoveryHandler(store, keys)


@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def config() -> RisuConfig:
    return RisuConfig(batch_size=2, max_pages=10)


@pytest.fixture
def reconciler(store, feed, keys, recovery, config) -> Reconciler:
    return Reconciler(store, feed, keys, recovery, config=config)


@pytest.fixture
def app(home: Path, feed: FakeFeed) -> NoteApp:
    note_app = NoteApp(home, config=RisuConfig(), feed=feed, kdf_params=FAST_KDF)
    yield note_app
    note_app.stop()
