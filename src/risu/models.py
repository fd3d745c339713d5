"""
Pydantic models for notes, cursors, sessions and the remote feed.

Everything the reconciler reads or writes passes through one of
these types, so field names here are the vocabulary of the engine.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_COLLECTION = "notes"


def utcnow() -> datetime:
    """Timezone-aware now, used for every timestamp the store writes."""
    return datetime.now(timezone.utc)


def new_note_id() -> str:
    return str(uuid.uuid4())


class DecryptStatus(str, Enum):
    """Per-record outcome of turning stored content into plaintext."""

    DECRYPTED = "decrypted"
    PENDING_KEY = "pending_key"
    FAILED = "failed"
    PLAINTEXT_LEGACY = "plaintext_legacy"

    @property
    def is_readable(self) -> bool:
        return self in (DecryptStatus.DECRYPTED, DecryptStatus.PLAINTEXT_LEGACY)


class SyncDirection(str, Enum):
    """Which half of the change feed a cursor tracks."""

    PULL = "pull"
    PUSH = "push"


class SyncState(str, Enum):
    """Coarse status shown to the UI layer."""

    OFFLINE = "offline"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


class Note(BaseModel):
    """A single note as held in the local store.

    ``body`` is always something that can be displayed: the plaintext
    when it is readable, otherwise a placeholder. Records that arrived
    encrypted keep ``ciphertext`` and ``nonce`` so decryption can be
    retried later without going back to the network.
    """

    id: str = Field(default_factory=new_note_id)
    collection: str = DEFAULT_COLLECTION
    title: str = ""
    body: str = ""
    ciphertext: Optional[str] = None
    nonce: Optional[str] = None
    is_encrypted: bool = False
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
    decrypt_status: DecryptStatus = DecryptStatus.DECRYPTED
    failure_reason: Optional[str] = None
    is_deleted: bool = False
    dirty: bool = False

    @property
    def needs_recovery(self) -> bool:
        """True when the record holds ciphertext that is not yet readable."""
        return (
            self.decrypt_status in (DecryptStatus.PENDING_KEY, DecryptStatus.FAILED)
            and self.ciphertext is not None
        )


class SyncCursor(BaseModel):
    """Durable progress marker for one direction of one collection."""

    collection: str
    direction: SyncDirection
    position: int = 0


class Session(BaseModel):
    """Credentials handed over by the login flow."""

    token: str
    salt: Optional[str] = None
    validator: Optional[str] = None
    refresh_token: Optional[str] = None


class RemoteChange(BaseModel):
    """One entry of the remote change feed."""

    id: str
    is_encrypted: bool = False
    body: str = ""
    nonce: Optional[str] = None
    position: int
    updated_at: datetime = Field(default_factory=utcnow)
    is_deleted: bool = False

    @field_validator("updated_at", mode="before")
    @classmethod
    def default_missing(cls, value):
        return utcnow() if value is None else value

    @field_validator("updated_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        """Servers that omit the offset mean UTC."""
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PullPage(BaseModel):
    """A bounded batch of changes, oldest first."""

    changes: list[RemoteChange] = Field(default_factory=list)
    has_more: bool = False


class PushEnvelope(BaseModel):
    """What leaves the device for one note. ``body`` is ciphertext."""

    id: str
    body: str
    nonce: Optional[str] = None
    is_encrypted: bool = True
    is_deleted: bool = False
    updated_at: datetime
    version: int


class PushAck(BaseModel):
    """Server acknowledgment of an uploaded note."""

    id: str
    version: int
    position: Optional[int] = None


class SyncStatus(BaseModel):
    """Status signal value: a state plus an optional error detail."""

    state: SyncState = SyncState.OFFLINE
    detail: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)

    @classmethod
    def offline(cls) -> "SyncStatus":
        return cls(state=SyncState.OFFLINE)

    @classmethod
    def syncing(cls) -> "SyncStatus":
        return cls(state=SyncState.SYNCING)

    @classmethod
    def synced(cls) -> "SyncStatus":
        return cls(state=SyncState.SYNCED)

    @classmethod
    def error(cls, detail: str) -> "SyncStatus":
        return cls(state=SyncState.ERROR, detail=detail)


class PullReport(BaseModel):
    """Outcome counters for one pull pass."""

    applied: int = 0
    pending_key: int = 0
    failed: int = 0
    legacy: int = 0
    skipped: int = 0
    pages: int = 0
    cursor: int = 0


class PushReport(BaseModel):
    """Outcome counters for one push pass."""

    uploaded: int = 0
    cursor: int = 0
    skipped_reason: Optional[str] = None


class SyncReport(BaseModel):
    """Combined result of a pull-then-push sync."""

    collection: str
    pull: Optional[PullReport] = None
    push: Optional[PushReport] = None
    coalesced: bool = False
