"""Data models for the notetree server."""

import datetime
import os
import threading
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from notetree.exceptions import ErrorCode, ProtectionError


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite stores datetimes without an offset, so every value read back from
    the database passes through here.
    """
    if dt_value is None:
        return None
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Thread-safe counter for uniqueness (seeded from PID for cross-process safety)
_id_lock = threading.Lock()
_last_timestamp = 0
_counter = (os.getpid() * 7) % 1_000_000


def generate_id() -> str:
    """Generate a timestamp-based ID with guaranteed uniqueness.

    Returns:
        A string in format "YYYYMMDDTHHMMSSsssssscccccc": the UTC date and
        time, a 6-digit microsecond component and a 6-digit counter that
        separates IDs minted in the same microsecond. The counter is seeded
        from the process ID so separate processes do not collide.

    Used for notes, placements, history snapshots and images alike.
    """
    global _last_timestamp, _counter

    with _id_lock:
        now = utc_now()
        current_timestamp = int(now.timestamp() * 1_000_000)

        if current_timestamp == _last_timestamp:
            _counter += 1
        else:
            _last_timestamp = current_timestamp
            _counter = (os.getpid() * 7) % 1_000_000

        _counter %= 1_000_000

        date_time = now.strftime("%Y%m%dT%H%M%S")
        return f"{date_time}{now.microsecond:06d}{_counter:06d}"


class AuditCategory(str, Enum):
    """Kinds of events recorded in the audit log."""

    CREATE_NOTE = "CREATE"
    UPDATE_TITLE = "TITLE"
    UPDATE_CONTENT = "CONTENT"
    PROTECTED = "PROTECTED"
    CLONE_NOTE = "CLONE"
    DELETE_NOTE = "DELETE"


# Categories where a new entry replaces a recent one from the same actor
COLLAPSIBLE_CATEGORIES = frozenset(
    {AuditCategory.UPDATE_TITLE, AuditCategory.UPDATE_CONTENT}
)


class InsertTarget(str, Enum):
    """Where a new placement goes relative to its siblings."""

    INTO = "into"  # Last child of the parent
    AFTER = "after"  # Directly after an existing sibling placement


class EntityName(str, Enum):
    """Entity kinds that appear in the change feed."""

    NOTES = "notes"
    PLACEMENTS = "note_placements"
    HISTORY = "note_history"


class Note(BaseModel):
    """A note as stored. Title and text are ciphertext while protected."""

    note_id: str = Field(..., description="Unique ID of the note")
    title: str = Field(default="", description="Title (plaintext or ciphertext)")
    text: str = Field(default="", description="Body (plaintext or ciphertext)")
    is_protected: bool = Field(default=False)
    is_deleted: bool = Field(default=False)
    created_at: datetime.datetime = Field(default_factory=utc_now)
    modified_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class Placement(BaseModel):
    """One position of a note in the tree."""

    placement_id: str
    note_id: str
    parent_note_id: Optional[str] = Field(
        default=None, description="Containing note, None for roots"
    )
    position: int
    is_expanded: bool = False
    is_deleted: bool = False
    modified_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}


class HistorySnapshot(BaseModel):
    """Content of a note at the start of a snapshot interval."""

    history_id: str
    note_id: str
    title: str
    text: str
    is_protected: bool = False
    window_start: datetime.datetime
    window_end: datetime.datetime

    model_config = {"validate_assignment": True, "extra": "forbid"}


class AuditEntry(BaseModel):
    """An immutable audit log entry."""

    id: int
    category: AuditCategory
    actor_id: str
    subject_id: str
    before_value: Optional[str] = None
    after_value: Optional[str] = None
    occurred_at: datetime.datetime

    model_config = {"frozen": True}


class ChangeRecord(BaseModel):
    """A change feed entry telling replicas an entity must be re-synced."""

    id: int
    entity_name: EntityName
    entity_id: str
    synced_at: datetime.datetime

    model_config = {"frozen": True}


class NoteImage(BaseModel):
    """An image attached to a note."""

    image_id: str
    note_id: str
    name: str
    mime_type: str
    data: bytes

    model_config = {"frozen": True}


class ImagePayload(BaseModel):
    """An image supplied with a note update.

    ``data`` is either raw bytes or a base64 string; strings are decoded
    inside the update transaction so a malformed payload aborts the update.
    """

    name: str = Field(default="image")
    mime_type: str = Field(default="image/png")
    data: Union[bytes, str]


class NoteCreateRequest(BaseModel):
    """Input for creating a note under a parent."""

    title: str = Field(default="", description="Initial title")
    is_protected: bool = Field(default=False)
    # Kept as a plain string: unknown directives are rejected by the
    # placement layer with InvalidRequestError, not at construction time.
    target: str = Field(default=InsertTarget.INTO.value, description="'into' or 'after'")
    target_placement_id: Optional[str] = Field(
        default=None, description="Sibling placement, required when target is 'after'"
    )

    @field_validator("target", mode="before")
    @classmethod
    def normalise_target(cls, v):
        """Accept enum members and any casing."""
        if isinstance(v, InsertTarget):
            return v.value
        if isinstance(v, str):
            return v.strip().lower()
        return v


class NoteCandidate(BaseModel):
    """Proposed new state of a note, always given in plaintext."""

    title: str
    text: str
    is_protected: bool = False
    images: List[ImagePayload] = Field(default_factory=list)


@dataclass(frozen=True)
class CreatedNote:
    """Identifiers allocated by note creation."""

    note_id: str
    placement_id: str

    def to_dict(self) -> dict:
        return {"note_id": self.note_id, "placement_id": self.placement_id}


@dataclass(frozen=True)
class SessionContext:
    """Per-request caller context.

    Carries the actor recorded in the audit log and, when the caller has
    unlocked protected notes, the data key. Passed explicitly to every
    operation; the key is never persisted.
    """

    actor_id: str
    data_key: Optional[bytes] = field(default=None, repr=False)

    @property
    def has_data_key(self) -> bool:
        return self.data_key is not None

    def require_data_key(self) -> bytes:
        """Return the data key or fail when protected content must be touched."""
        if self.data_key is None:
            raise ProtectionError(
                "A data key is required to work with protected notes",
                code=ErrorCode.DATA_KEY_MISSING,
            )
        return self.data_key
