"""MCP server implementation for the note tree."""

import json
import logging
import uuid
from typing import List, Optional

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from notetree.config import config
from notetree.exceptions import CascadeError, NoteTreeError
from notetree.models.schema import (
    AuditCategory,
    ImagePayload,
    NoteCandidate,
    NoteCreateRequest,
    SessionContext,
)
from notetree.observability import metrics, timed_operation
from notetree.services.note_service import NoteService

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_TEXT_LENGTH = 1_000_000  # 1 MB


def _validate_input_lengths(
    title: Optional[str] = None, text: Optional[str] = None
) -> None:
    """Validate input string lengths at the MCP boundary."""
    if title and len(title) > MAX_TITLE_LENGTH:
        raise ValueError(
            f"Title exceeds maximum length of {MAX_TITLE_LENGTH} characters"
        )
    if text and len(text) > MAX_TEXT_LENGTH:
        raise ValueError(
            f"Text exceeds maximum length of {MAX_TEXT_LENGTH} characters"
        )


def _parse_images(images: Optional[str]) -> List[ImagePayload]:
    """Parse a JSON list of {name, mime_type, data} objects (data in base64)."""
    if not images:
        return []
    parsed = json.loads(images)
    if not isinstance(parsed, list):
        raise ValueError("images must be a JSON list")
    return [ImagePayload(**item) for item in parsed]


class NoteTreeMcpServer:
    """MCP server for the note tree."""

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by every
                    repository. Created from config when None.
        """
        self.mcp = FastMCP(config.server_name, version=config.server_version)
        self.note_service = NoteService(engine=engine)
        self.initialize()
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        if config.get_data_key() is None:
            logger.info("No data key configured; protected notes stay encrypted")
        logger.info("Note tree MCP server initialized")

    def session_context(self) -> SessionContext:
        """Context for requests arriving through this server."""
        return SessionContext(actor_id=config.actor_id, data_key=config.get_data_key())

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        # Generate a unique error ID for traceability in logs
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, CascadeError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return (
                f"Error: {error.message}. "
                f"{len(error.completed_ids)} item(s) were already processed; "
                "run the same request again to finish."
            )
        elif isinstance(error, NoteTreeError):
            # Structured domain errors - use the error code and message
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, (ValueError, ValidationError)):
            # Log full detail but return generic ref to avoid leaking internals
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            # Unexpected errors - log with full stack trace but return generic message
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="nt_create_note")
        def nt_create_note(
            title: str = "",
            parent_note_id: Optional[str] = None,
            target: str = "into",
            target_placement_id: Optional[str] = None,
            is_protected: bool = False,
        ) -> str:
            """Create a new note in the tree.
            Args:
                title: Title of the note (text starts empty)
                parent_note_id: Note to place it under (omit for a root note)
                target: "into" to append as last child, "after" to insert after a sibling
                target_placement_id: Sibling placement ID, required when target is "after"
                is_protected: Mark the note protected. The title is encrypted on the first update.
            """
            with timed_operation("nt_create_note", parent_note_id=parent_note_id) as op:
                try:
                    _validate_input_lengths(title=title)
                    request = NoteCreateRequest(
                        title=title,
                        is_protected=is_protected,
                        target=target,
                        target_placement_id=target_placement_id,
                    )
                    created = self.note_service.create_note(
                        parent_note_id, request, self.session_context()
                    )
                    op["note_id"] = created.note_id
                    return (
                        f"Note created successfully with ID: {created.note_id} "
                        f"(placement: {created.placement_id})"
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_get_note")
        def nt_get_note(note_id: str) -> str:
            """Retrieve a note by ID, decrypted when a data key is configured.
            Args:
                note_id: The ID of the note
            """
            with timed_operation("nt_get_note", note_id=note_id) as op:
                try:
                    note = self.note_service.get_note(note_id, self.session_context())
                    images = self.note_service.get_images(note_id)
                    op["found"] = True

                    result = f"# {note.title}\n"
                    result += f"ID: {note.note_id}\n"
                    result += f"Protected: {'yes' if note.is_protected else 'no'}\n"
                    if note.is_deleted:
                        result += "Deleted: yes\n"
                    result += f"Created: {note.created_at.isoformat()}\n"
                    result += f"Modified: {note.modified_at.isoformat()}\n"
                    if images:
                        names = ", ".join(f"{image.name} ({image.mime_type})" for image in images)
                        result += f"Images: {names}\n"
                    result += f"\n{note.text}\n"
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_update_note")
        def nt_update_note(
            note_id: str,
            title: str,
            text: str,
            is_protected: bool = False,
            images: Optional[str] = None,
        ) -> str:
            """Replace the title, text and protection state of a note.
            Args:
                note_id: The ID of the note
                title: New title
                text: New text
                is_protected: Store the note encrypted (needs NOTETREE_DATA_KEY)
                images: JSON list of {"name", "mime_type", "data"} objects with
                    base64 data. Replaces every image of the note; omit to remove them.
            """
            with timed_operation("nt_update_note", note_id=note_id):
                try:
                    _validate_input_lengths(title=title, text=text)
                    candidate = NoteCandidate(
                        title=title,
                        text=text,
                        is_protected=is_protected,
                        images=_parse_images(images),
                    )
                    self.note_service.update_note(note_id, candidate, self.session_context())
                    return f"Note {note_id} updated successfully"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_delete_note")
        def nt_delete_note(placement_id: str) -> str:
            """Remove a note from one place in the tree.

            The note itself, and everything under it, is deleted only when
            this was its last placement.

            Args:
                placement_id: The placement to remove
            """
            with timed_operation("nt_delete_note", placement_id=placement_id):
                try:
                    self.note_service.delete_placement(placement_id, self.session_context())
                    return f"Placement {placement_id} deleted"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_protect_note")
        def nt_protect_note(note_id: str, protect: bool = True) -> str:
            """Protect or unprotect a note, its history and all notes under it.
            Args:
                note_id: Root of the subtree
                protect: True to encrypt, False to decrypt
            """
            with timed_operation("nt_protect_note", note_id=note_id, protect=protect):
                try:
                    context = self.session_context()
                    self.note_service.protect_recursively(
                        note_id, context.data_key, protect, actor_id=context.actor_id
                    )
                    state = "protected" if protect else "unprotected"
                    return f"Note {note_id} and its subtree are now {state}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_clone_note")
        def nt_clone_note(
            note_id: str,
            parent_note_id: Optional[str] = None,
            target: str = "into",
            target_placement_id: Optional[str] = None,
        ) -> str:
            """Place an existing note at an additional location in the tree.
            Args:
                note_id: The note to place
                parent_note_id: New parent (omit for the root level)
                target: "into" or "after"
                target_placement_id: Sibling placement ID, required when target is "after"
            """
            with timed_operation("nt_clone_note", note_id=note_id) as op:
                try:
                    placement_id = self.note_service.clone_note(
                        note_id,
                        parent_note_id,
                        self.session_context(),
                        target=target,
                        target_placement_id=target_placement_id,
                    )
                    op["placement_id"] = placement_id
                    return f"Note {note_id} placed with placement ID: {placement_id}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_list_children")
        def nt_list_children(
            parent_note_id: Optional[str] = None, include_deleted: bool = False
        ) -> str:
            """List the notes directly under a note, in display order.
            Args:
                parent_note_id: The parent note (omit for root notes)
                include_deleted: Also list deleted placements
            """
            with timed_operation("nt_list_children", parent_note_id=parent_note_id) as op:
                try:
                    placements = self.note_service.list_children(
                        parent_note_id, include_deleted=include_deleted
                    )
                    op["result_count"] = len(placements)
                    if not placements:
                        return "No child notes found."

                    context = self.session_context()
                    output = f"Found {len(placements)} child note(s):\n\n"
                    for placement in placements:
                        note = self.note_service.get_note(placement.note_id, context)
                        marker = " [deleted]" if placement.is_deleted else ""
                        lock = " [protected]" if note.is_protected else ""
                        output += (
                            f"{placement.position}. {note.title or '(untitled)'}{lock}{marker}\n"
                            f"   note: {note.note_id}  placement: {placement.placement_id}\n"
                        )
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_note_history")
        def nt_note_history(note_id: str, limit: int = 10) -> str:
            """Get the history snapshots of a note, newest first.
            Args:
                note_id: The ID of the note
                limit: Maximum number of snapshots to return (default: 10)
            """
            with timed_operation("nt_note_history", note_id=note_id) as op:
                try:
                    snapshots = self.note_service.get_history(note_id, self.session_context())
                    op["version_count"] = len(snapshots)
                    if not snapshots:
                        return f"No history for note '{note_id}'."

                    selected = list(reversed(snapshots))[:limit]
                    result = f"# History for {note_id}\n\n"
                    result += f"**{len(snapshots)} snapshot(s)**\n\n"
                    result += "| # | Window start | Window end | Title |\n"
                    result += "|---|--------------|------------|-------|\n"
                    for i, snapshot in enumerate(selected, 1):
                        result += (
                            f"| {i} | {snapshot.window_start.isoformat()} | "
                            f"{snapshot.window_end.isoformat()} | {snapshot.title} |\n"
                        )
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_audit_log")
        def nt_audit_log(subject_id: str, category: Optional[str] = None) -> str:
            """Show audit entries for a note or placement.
            Args:
                subject_id: Note ID, or placement ID for deletions
                category: Optional filter (CREATE, TITLE, CONTENT, PROTECTED, CLONE, DELETE)
            """
            with timed_operation("nt_audit_log", subject_id=subject_id) as op:
                try:
                    category_enum = None
                    if category:
                        try:
                            category_enum = AuditCategory(category.upper())
                        except ValueError:
                            return f"Invalid category: {category}. Valid categories are: {', '.join(c.value for c in AuditCategory)}"

                    entries = self.note_service.get_audit_log(subject_id, category_enum)
                    op["result_count"] = len(entries)
                    if not entries:
                        return f"No audit entries for '{subject_id}'."

                    output = f"Audit log for {subject_id}:\n\n"
                    for entry in entries:
                        line = f"- {entry.occurred_at.isoformat()} {entry.category.value} by {entry.actor_id}"
                        if entry.before_value is not None or entry.after_value is not None:
                            line += f" ({entry.before_value} -> {entry.after_value})"
                        output += line + "\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_changes")
        def nt_changes(last_id: int = 0, limit: int = 100) -> str:
            """Page through the change feed used by replicas.
            Args:
                last_id: Return records after this ID (0 for the start)
                limit: Maximum number of records
            """
            with timed_operation("nt_changes", last_id=last_id) as op:
                try:
                    records = self.note_service.changes_since(last_id, limit)
                    op["result_count"] = len(records)
                    return json.dumps(
                        [
                            {
                                "id": record.id,
                                "entity_name": record.entity_name.value,
                                "entity_id": record.entity_id,
                                "synced_at": record.synced_at.isoformat(),
                            }
                            for record in records
                        ],
                        indent=2,
                    )
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="nt_metrics")
        def nt_metrics() -> str:
            """Show operation timing metrics for this server process."""
            report = metrics.get_summary()
            report["operations"] = metrics.get_metrics()
            return json.dumps(report, indent=2, default=str)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
