"""SQLAlchemy database models for the notetree server."""
import datetime

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer,
                        LargeBinary, String, Text, create_engine, event)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from notetree.config import config
from notetree.models.schema import utc_now

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    note_id = Column(String(64), primary_key=True)
    title = Column(Text, nullable=False, default="")
    text = Column(Text, nullable=False, default="")
    is_protected = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime, default=utc_now, nullable=False)
    modified_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(note_id='{self.note_id}', protected={self.is_protected})>"


class DBPlacement(Base):
    """Database model for one position of a note in the tree."""
    __tablename__ = "note_placements"
    placement_id = Column(String(64), primary_key=True)
    note_id = Column(String(64), ForeignKey("notes.note_id"), nullable=False, index=True)
    # NULL for root placements
    parent_note_id = Column(String(64), ForeignKey("notes.note_id"), nullable=True)
    position = Column(Integer, nullable=False)
    is_expanded = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    modified_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_note_placements_siblings", "parent_note_id", "is_deleted", "position"),
    )

    def __repr__(self) -> str:
        """Return string representation of placement."""
        return (
            f"<Placement(placement_id='{self.placement_id}', note='{self.note_id}', "
            f"parent='{self.parent_note_id}', position={self.position})>"
        )


class DBHistory(Base):
    """Database model for a history snapshot."""
    __tablename__ = "note_history"
    history_id = Column(String(64), primary_key=True)
    note_id = Column(String(64), ForeignKey("notes.note_id"), nullable=False)
    title = Column(Text, nullable=False, default="")
    text = Column(Text, nullable=False, default="")
    is_protected = Column(Boolean, nullable=False, default=False)
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_note_history_window", "note_id", "window_start"),
    )


class DBAuditEntry(Base):
    """Database model for an audit log entry."""
    __tablename__ = "audit_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String(20), nullable=False)
    actor_id = Column(String(255), nullable=False)
    # Note id for content events, placement id for deletions
    subject_id = Column(String(64), nullable=False)
    before_value = Column(Text, nullable=True)
    after_value = Column(Text, nullable=True)
    occurred_at = Column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_audit_log_recent", "category", "actor_id", "subject_id", "occurred_at"),
    )


class DBChange(Base):
    """Database model for a change feed entry."""
    __tablename__ = "sync_log"
    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_name = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False, index=True)
    synced_at = Column(DateTime, default=utc_now, nullable=False)


class DBImage(Base):
    """Database model for an image attached to a note."""
    __tablename__ = "note_images"
    image_id = Column(String(64), primary_key=True)
    note_id = Column(String(64), ForeignKey("notes.note_id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False)
    data = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=utc_now, nullable=False)


class DBOption(Base):
    """Database model for a runtime option."""
    __tablename__ = "options"
    name = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    modified_at = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)


def init_db(in_memory: bool = None):
    """Initialize the database with hardened configuration.

    File databases get WAL journaling, NORMAL synchronous mode and a small
    QueuePool with pre-ping. In-memory databases use a StaticPool so every
    session shares the single connection that holds the data.

    Returns:
        The configured SQLAlchemy engine.
    """
    if in_memory is None:
        in_memory = config.in_memory_db

    if in_memory:
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            config.get_db_url(),
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            # WAL mode: writes go to separate journal, preventing corruption on crash
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine)


def as_utc_timestamp(value: datetime.datetime) -> datetime.datetime:
    """Normalise a datetime for storage (UTC, offset dropped as SQLite does)."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return value.replace(tzinfo=None)
