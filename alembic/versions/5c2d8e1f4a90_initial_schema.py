"""Initial note tree schema

Revision ID: 5c2d8e1f4a90
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c2d8e1f4a90"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create notes, placements, history, audit, change feed, images and options."""
    op.create_table(
        "notes",
        sa.Column("note_id", sa.String(64), primary_key=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("is_protected", sa.Boolean(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_notes_is_deleted", "notes", ["is_deleted"])

    op.create_table(
        "note_placements",
        sa.Column("placement_id", sa.String(64), primary_key=True),
        sa.Column("note_id", sa.String(64), sa.ForeignKey("notes.note_id"), nullable=False),
        sa.Column("parent_note_id", sa.String(64), sa.ForeignKey("notes.note_id"), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("is_expanded", sa.Boolean(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_note_placements_note_id", "note_placements", ["note_id"])
    op.create_index(
        "ix_note_placements_siblings",
        "note_placements",
        ["parent_note_id", "is_deleted", "position"],
    )

    op.create_table(
        "note_history",
        sa.Column("history_id", sa.String(64), primary_key=True),
        sa.Column("note_id", sa.String(64), sa.ForeignKey("notes.note_id"), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("is_protected", sa.Boolean(), nullable=False),
        sa.Column("window_start", sa.DateTime(), nullable=False),
        sa.Column("window_end", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_note_history_window", "note_history", ["note_id", "window_start"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("category", sa.String(20), nullable=False),
        sa.Column("actor_id", sa.String(255), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("before_value", sa.Text(), nullable=True),
        sa.Column("after_value", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_audit_log_recent",
        "audit_log",
        ["category", "actor_id", "subject_id", "occurred_at"],
    )

    op.create_table(
        "sync_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_name", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("synced_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sync_log_entity_id", "sync_log", ["entity_id"])

    op.create_table(
        "note_images",
        sa.Column("image_id", sa.String(64), primary_key=True),
        sa.Column("note_id", sa.String(64), sa.ForeignKey("notes.note_id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("data", sa.LargeBinary(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_note_images_note_id", "note_images", ["note_id"])

    op.create_table(
        "options",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    """Drop every note tree table."""
    op.drop_table("options")
    op.drop_index("ix_note_images_note_id")
    op.drop_table("note_images")
    op.drop_index("ix_sync_log_entity_id")
    op.drop_table("sync_log")
    op.drop_index("ix_audit_log_recent")
    op.drop_table("audit_log")
    op.drop_index("ix_note_history_window")
    op.drop_table("note_history")
    op.drop_index("ix_note_placements_siblings")
    op.drop_index("ix_note_placements_note_id")
    op.drop_table("note_placements")
    op.drop_index("ix_notes_is_deleted")
    op.drop_table("notes")
