"""Storage layer for the notetree server."""

from notetree.storage.audit_repository import AuditRecorder
from notetree.storage.base import Repository, read_session, transaction
from notetree.storage.history_repository import HistoryRepository
from notetree.storage.note_repository import NoteRepository
from notetree.storage.option_repository import OptionRepository
from notetree.storage.placement_repository import PlacementRepository
from notetree.storage.sync_repository import ChangeTracker

__all__ = [
    "Repository",
    "transaction",
    "read_session",
    "NoteRepository",
    "PlacementRepository",
    "HistoryRepository",
    "AuditRecorder",
    "ChangeTracker",
    "OptionRepository",
]
