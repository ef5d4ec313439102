"""Configuration module for the notetree server."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notetree import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the database
_USER_ENV = Path.home() / ".notetree" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# AES accepts 128, 192 or 256 bit keys
_VALID_KEY_LENGTHS = (16, 24, 32)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteTreeConfig(BaseModel):
    """Configuration for the notetree server."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTETREE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTETREE_DATABASE_PATH", "data/db/notetree.db")
        )
    )
    # When True, uses an in-memory SQLite database (tests, throwaway sessions)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("NOTETREE_IN_MEMORY_DB", "false")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NOTETREE_SERVER_NAME", "notetree"))
    server_version: str = Field(default=__version__)
    # Actor recorded in the audit log for requests made through the server
    actor_id: str = Field(
        default_factory=lambda: os.getenv("NOTETREE_ACTOR_ID", "notetree-server")
    )
    # Hex-encoded data key for protected notes. Never written to the database.
    data_key_hex: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTETREE_DATA_KEY") or None,
        repr=False,
    )
    # Seconds between history snapshots of the same note. Seeds the
    # `history_snapshot_time_interval` option on first start.
    history_snapshot_interval: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTETREE_HISTORY_SNAPSHOT_INTERVAL", "600")
        )
    )
    # Recent TITLE/CONTENT audits from the same actor inside this window
    # are replaced rather than appended to.
    audit_collapse_window: int = Field(
        default_factory=lambda: int(os.getenv("NOTETREE_AUDIT_COLLAPSE_WINDOW", "600"))
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("NOTETREE_LOG_DIR")) if os.getenv("NOTETREE_LOG_DIR") else None
        )
    )

    @model_validator(mode="after")
    def _validate_intervals(self) -> "NoteTreeConfig":
        """Validate interval settings and the optional data key."""
        if self.history_snapshot_interval < 0:
            raise ValueError("history_snapshot_interval must be >= 0")
        if self.audit_collapse_window < 0:
            raise ValueError("audit_collapse_window must be >= 0")
        if self.data_key_hex is not None:
            try:
                key = bytes.fromhex(self.data_key_hex)
            except ValueError as e:
                raise ValueError("NOTETREE_DATA_KEY must be hex encoded") from e
            if len(key) not in _VALID_KEY_LENGTHS:
                raise ValueError("NOTETREE_DATA_KEY must decode to 16, 24 or 32 bytes")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite:///:memory:"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_data_key(self) -> Optional[bytes]:
        """Return the configured data key, or None when protection is unavailable."""
        if self.data_key_hex is None:
            return None
        return bytes.fromhex(self.data_key_hex)


# Create a global config instance
config = NoteTreeConfig()
