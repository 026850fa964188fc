"""
NoteSync data models -- notes, safes, repositories, settings and state.

The repository is the unit that travels: the whole note collection
is serialized, encrypted and stored as one blob in the cloud. Ids
tie independently edited copies of the same lineage together.
"""

from __future__ import annotations

import bisect
import hashlib
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .cloud.base import CloudStorageCredentials

NEWEST_SUPPORTED_REVISION = 1

DEFAULT_BACKGROUND_COLOR = "#fbf6dd"


class UnsupportedRepositoryRevisionError(Exception):
    """The repository was written by a newer version of the app."""

    def __init__(self, revision: int):
        super().__init__(
            f"Repository revision {revision} is newer than the supported "
            f"revision {NEWEST_SUPPORTED_REVISION}, please update the app."
        )
        self.revision = revision


class RepositoryFormatError(Exception):
    """The repository document could not be parsed."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Note(BaseModel):
    """A single note with its recency stamps."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    html_content: str = ""
    background_color: str = DEFAULT_BACKGROUND_COLOR
    in_recycling_bin: bool = False
    is_pinned: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    modified_at: datetime = Field(default_factory=utcnow)
    maintained_at: Optional[datetime] = None
    safe_id: Optional[uuid.UUID] = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("created_at", "modified_at", "maintained_at")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    def refresh_modified_at(self) -> None:
        """Mark the note as edited by the user."""
        self.modified_at = utcnow()

    def refresh_maintained_at(self) -> None:
        """Mark a housekeeping change that is no user edit."""
        self.maintained_at = utcnow()


class Safe(BaseModel):
    """Password protected key container that encrypts a group of notes."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    created_at: datetime = Field(default_factory=utcnow)
    modified_at: datetime = Field(default_factory=utcnow)
    maintained_at: Optional[datetime] = None
    serialized_key: Optional[str] = None

    @field_validator("created_at", "modified_at", "maintained_at")
    @classmethod
    def ensure_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class NoteRepository(BaseModel):
    """The complete note collection of one lineage."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    revision: int = NEWEST_SUPPORTED_REVISION
    order_modified_at: datetime = Field(default_factory=utcnow)
    notes: list[Note] = Field(default_factory=list)
    deleted_note_ids: list[uuid.UUID] = Field(default_factory=list)
    safes: list[Safe] = Field(default_factory=list)

    @field_validator("order_modified_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("deleted_note_ids")
    @classmethod
    def sort_tombstones(cls, value: list[uuid.UUID]) -> list[uuid.UUID]:
        return sorted(set(value))

    def is_deleted(self, note_id: uuid.UUID) -> bool:
        """Binary search in the sorted tombstone list."""
        index = bisect.bisect_left(self.deleted_note_ids, note_id)
        return index < len(self.deleted_note_ids) and self.deleted_note_ids[index] == note_id

    def delete_note(self, note_id: uuid.UUID) -> None:
        """Remove a note and leave a tombstone for the next merge."""
        self.notes = [note for note in self.notes if note.id != note_id]
        if not self.is_deleted(note_id):
            bisect.insort(self.deleted_note_ids, note_id)

    def find_note(self, note_id: uuid.UUID) -> Optional[Note]:
        return next((note for note in self.notes if note.id == note_id), None)

    def remove_unused_safes(self) -> None:
        """Drop safes that no note refers to anymore."""
        used = {note.safe_id for note in self.notes if note.safe_id is not None}
        self.safes = [safe for safe in self.safes if safe.id in used]

    def fingerprint(self) -> str:
        """Cheap change detector over identities and recency stamps.

        Content is not hashed; every user edit moves ``modified_at``
        and every housekeeping change moves ``maintained_at``.

        Returns:
            str: Hex SHA-256 digest.
        """
        def stamp(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        payload = {
            "id": str(self.id),
            "revision": self.revision,
            "order": stamp(self.order_modified_at),
            "notes": [
                [str(n.id), stamp(n.modified_at), stamp(n.maintained_at)]
                for n in self.notes
            ],
            "deleted": [str(i) for i in self.deleted_note_ids],
            "safes": [
                [str(s.id), stamp(s.modified_at), stamp(s.maintained_at)]
                for s in self.safes
            ],
        }
        return hashlib.sha256(
            json.dumps(payload, separators=(",", ":")).encode("utf-8")
        ).hexdigest()

    def to_bytes(self) -> bytes:
        """Canonical UTF-8 JSON serialization."""
        return self.model_dump_json().encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> NoteRepository:
        """Parse a serialized repository.

        The revision is checked before the full validation, so a
        document of a newer app version is reported as such and not
        as a format error.

        Raises:
            UnsupportedRepositoryRevisionError: If the revision is too new.
            RepositoryFormatError: If the document is not a repository.
        """
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RepositoryFormatError(f"Repository is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise RepositoryFormatError("Repository is not a JSON object.")

        revision = raw.get("revision")
        if isinstance(revision, int) and revision > NEWEST_SUPPORTED_REVISION:
            raise UnsupportedRepositoryRevisionError(revision)
        try:
            return cls.model_validate(raw)
        except ValidationError as exc:
            raise RepositoryFormatError(f"Invalid repository: {exc}") from exc


class AutoSyncMode(str, Enum):
    """When background synchronization may run."""

    NEVER = "never"
    COST_FREE_INTERNET_ONLY = "cost_free_internet_only"
    ALWAYS = "always"


class SettingsModel(BaseModel):
    """User settings that matter for synchronization."""

    revision: int = 1
    credentials: Optional[CloudStorageCredentials] = None
    transfer_code: Optional[str] = None
    transfer_code_history: list[str] = Field(default_factory=list)
    auto_sync_mode: AutoSyncMode = AutoSyncMode.COST_FREE_INTERNET_ONLY

    def adopt_transfer_code(self, code: str) -> None:
        """Make ``code`` the current transfer code.

        The previous code moves to the front of the history so it is
        tried first when an older cloud repository has to be opened.
        """
        if code == self.transfer_code:
            return
        history = [
            old for old in self.transfer_code_history
            if old not in (code, self.transfer_code)
        ]
        if self.transfer_code:
            history.insert(0, self.transfer_code)
        self.transfer_code = code
        self.transfer_code_history = history


class SyncState(BaseModel):
    """Outcome of the last synchronization."""

    last_fingerprint: Optional[str] = None
    last_synchronized_at: Optional[datetime] = None
    last_error: Optional[str] = None


class PendingOAuth(BaseModel):
    """An OAuth2 login that waits for the browser redirect."""

    credentials: CloudStorageCredentials
    state: str
    code_verifier: str
    created_at: datetime = Field(default_factory=utcnow)


class NoteSyncConfig(BaseModel):
    """Static configuration read from ``config.yaml``."""

    repository_file_name: str = "notesync_repository.notesync"
    encryption_algorithm: str = "chacha20_poly1305"
    compression: bool = True
    maintained_at_horizon_days: Optional[int] = None
    dropbox_client_id: Optional[str] = None
    oauth_redirect_url: str = "http://localhost:8765/notesync/oauth2redirect"
