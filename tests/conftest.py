"""Common test fixtures for the note tree server."""

import tempfile
from pathlib import Path

import pytest

from notetree.config import config
from notetree.models.db_models import init_db
from notetree.models.schema import NoteCandidate, NoteCreateRequest, SessionContext
from notetree.services.note_service import NoteService
from tests.fakes import TEST_KEY, FakeClock


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for a file database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths and default windows (auto-restored)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_notetree.db")
    monkeypatch.setattr(config, "in_memory_db", True)
    monkeypatch.setattr(config, "history_snapshot_interval", 600)
    monkeypatch.setattr(config, "audit_collapse_window", 600)
    monkeypatch.setattr(config, "actor_id", "test-actor")
    monkeypatch.setattr(config, "data_key_hex", None)
    monkeypatch.setattr(config, "log_dir", None)
    yield config


@pytest.fixture
def engine(test_config):
    """In-memory SQLite engine with the full schema."""
    engine = init_db(in_memory=True)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def note_service(engine, clock):
    """NoteService bound to the in-memory engine and the fake clock."""
    yield NoteService(engine=engine, clock=clock)


@pytest.fixture
def context():
    """Caller context holding the test data key."""
    return SessionContext(actor_id="alice", data_key=TEST_KEY)


@pytest.fixture
def keyless_context():
    """Caller context without a data key."""
    return SessionContext(actor_id="alice")


@pytest.fixture
def make_note(note_service, context):
    """Create a note (optionally with text) and return its CreatedNote."""

    def _make(title="Note", parent=None, text=None, target="into", after=None):
        created = note_service.create_note(
            parent,
            NoteCreateRequest(title=title, target=target, target_placement_id=after),
            context,
        )
        if text is not None:
            note_service.update_note(
                created.note_id, NoteCandidate(title=title, text=text), context
            )
        return created

    return _make
