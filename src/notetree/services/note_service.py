"""Service layer for the note lifecycle: create, update, protect, delete."""

import datetime
import logging
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from notetree.config import config
from notetree.exceptions import (
    CascadeError,
    ErrorCode,
    InvalidRequestError,
    NoteNotFoundError,
    NoteTreeError,
    PlacementNotFoundError,
    ProtectionError,
)
from notetree.models.db_models import get_session_factory, init_db
from notetree.models.schema import (
    AuditCategory,
    AuditEntry,
    ChangeRecord,
    CreatedNote,
    HistorySnapshot,
    InsertTarget,
    Note,
    NoteCandidate,
    NoteCreateRequest,
    NoteImage,
    Placement,
    SessionContext,
    generate_id,
    utc_now,
)
from notetree.observability import traced
from notetree.services.protection import ProtectionCodec
from notetree.storage.audit_repository import AuditRecorder
from notetree.storage.base import transaction
from notetree.storage.history_repository import HistoryRepository
from notetree.storage.note_repository import NoteRepository
from notetree.storage.option_repository import (
    HISTORY_SNAPSHOT_TIME_INTERVAL,
    OptionRepository,
)
from notetree.storage.placement_repository import PlacementRepository
from notetree.storage.sync_repository import ChangeTracker

logger = logging.getLogger(__name__)


class NoteService:
    """Note lifecycle and protection engine.

    Every operation that writes more than one row runs as a transactional
    unit. The recursive operations (protect and delete) are sequences of
    units, one per note or placement, so a failure partway through leaves
    the already-converted part of the subtree committed. Both cascades
    converge when re-run, which is the recovery path.
    """

    def __init__(
        self,
        engine: Optional[Any] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        """Initialize the service.

        Args:
            engine: Pre-configured SQLAlchemy engine. Created from config
                when None.
            clock: Returns the current UTC time. Defaults to utc_now.
        """
        self.engine = engine if engine is not None else init_db()
        self.session_factory = get_session_factory(self.engine)
        self._clock = clock or utc_now

        self.notes = NoteRepository(self.session_factory)
        self.placements = PlacementRepository(self.session_factory)
        self.history = HistoryRepository(self.session_factory)
        self.audit = AuditRecorder(
            self.session_factory, collapse_window_seconds=config.audit_collapse_window
        )
        self.changes = ChangeTracker(self.session_factory)
        self.options = OptionRepository(self.session_factory)
        self.options.seed({HISTORY_SNAPSHOT_TIME_INTERVAL: config.history_snapshot_interval})

    def snapshot_interval(self) -> int:
        """Seconds between history snapshots of the same note."""
        return self.options.get_int(
            HISTORY_SNAPSHOT_TIME_INTERVAL, config.history_snapshot_interval
        )

    # =========================================================================
    # Create
    # =========================================================================

    @traced("create_note")
    def create_note(
        self,
        parent_note_id: Optional[str],
        request: NoteCreateRequest,
        context: SessionContext,
    ) -> CreatedNote:
        """Create a note and its first placement under `parent_note_id`.

        Position, sibling shift, audit, change records and both inserts
        commit together.

        Raises:
            InvalidRequestError: Unknown target directive, or a sibling
                that is not under the parent.
            PlacementNotFoundError: The 'after' sibling does not exist.
            NoteNotFoundError: The parent note does not exist.
        """
        note_id = generate_id()
        placement_id = generate_id()

        if request.is_protected:
            # Initial content is not encrypted; the first update encrypts it.
            logger.warning(
                f"Note {note_id} created with is_protected=True; "
                "its title stays plaintext until the first update"
            )

        with transaction(self.session_factory, "create_note") as session:
            now = self._clock()
            if parent_note_id is not None:
                self.notes.require(session, parent_note_id)

            position = self.placements.resolve_position(
                session,
                parent_note_id,
                request.target,
                request.target_placement_id,
                now,
            )

            self.audit.add(session, AuditCategory.CREATE_NOTE, context.actor_id, note_id, now)
            self.changes.placement_changed(session, placement_id, now)
            self.changes.note_changed(session, note_id, now)

            self.notes.insert(session, note_id, request.title, request.is_protected, now)
            self.placements.insert(
                session, placement_id, note_id, parent_note_id, position, now
            )

        logger.info(
            f"Created note {note_id} (placement {placement_id}) under "
            f"{parent_note_id or 'root'} at position {position}"
        )
        return CreatedNote(note_id=note_id, placement_id=placement_id)

    @traced("clone_note")
    def clone_note(
        self,
        note_id: str,
        parent_note_id: Optional[str],
        context: SessionContext,
        target: str = InsertTarget.INTO.value,
        target_placement_id: Optional[str] = None,
    ) -> str:
        """Place an existing note at one more location in the tree.

        Returns:
            The new placement ID.

        Raises:
            NoteNotFoundError: The note or the parent does not exist.
            InvalidRequestError: The placement would put the note inside
                itself.
        """
        placement_id = generate_id()

        with transaction(self.session_factory, "clone_note") as session:
            now = self._clock()
            self.notes.require(session, note_id)
            if parent_note_id is not None:
                self.notes.require(session, parent_note_id)
                if parent_note_id == note_id or note_id in self.placements.ancestor_note_ids(
                    session, parent_note_id
                ):
                    raise InvalidRequestError(
                        f"Cannot place note '{note_id}' inside itself",
                        field="parent_note_id",
                        value=parent_note_id,
                        code=ErrorCode.INVALID_PLACEMENT,
                    )

            position = self.placements.resolve_position(
                session, parent_note_id, target, target_placement_id, now
            )
            self.placements.insert(
                session, placement_id, note_id, parent_note_id, position, now
            )
            self.changes.placement_changed(session, placement_id, now)
            self.audit.add(
                session,
                AuditCategory.CLONE_NOTE,
                context.actor_id,
                note_id,
                now,
                after=parent_note_id,
            )

        logger.info(f"Cloned note {note_id} under {parent_note_id or 'root'} as {placement_id}")
        return placement_id

    # =========================================================================
    # Update
    # =========================================================================

    @traced("update_note")
    def update_note(
        self,
        note_id: str,
        candidate: NoteCandidate,
        context: SessionContext,
    ) -> None:
        """Write a new title/text/protection state for a note.

        The candidate is given in plaintext. When it is marked protected it
        is encrypted before anything is compared or stored; history keeps
        the plaintext captured beforehand (and is re-protected in the same
        unit). Attachments are replaced wholesale.

        Raises:
            NoteNotFoundError: Unknown note.
            ProtectionError: Protection work is needed and the context has no
                data key.
            InvalidRequestError: A malformed image payload; nothing is written.
        """
        history_title, history_text = candidate.title, candidate.text
        title, text = candidate.title, candidate.text

        if candidate.is_protected:
            codec = ProtectionCodec(context.require_data_key())
            title, text = codec.encrypt_fields(note_id, title, text)

        interval = self.snapshot_interval()

        with transaction(self.session_factory, "update_note") as session:
            now = self._clock()
            db_note = self.notes.require(session, note_id)
            baseline = NoteRepository._db_note_to_model(db_note)

            cutoff = self.history.window_cutoff(now, interval)
            existing_history_id = self.history.find_in_window(session, note_id, cutoff)
            if existing_history_id is None:
                history_id = self.history.insert(
                    session, note_id, history_title, history_text, now
                )
                self.changes.history_changed(session, history_id, now)

            self._reconcile_history(
                session,
                note_id,
                candidate.is_protected,
                lambda: ProtectionCodec(context.require_data_key()),
                now,
            )

            self.add_note_audits(
                session,
                baseline,
                note_id,
                title,
                text,
                candidate.is_protected,
                context.actor_id,
                now,
            )

            self.notes.write_content(
                session, db_note, title, text, candidate.is_protected, now
            )
            self.notes.replace_images(session, note_id, candidate.images, now)
            # Links are not persisted

            self.changes.note_changed(session, note_id, now)

        logger.debug(f"Updated note {note_id} (protected={candidate.is_protected})")

    def add_note_audits(
        self,
        session: Session,
        baseline: Optional[Note],
        note_id: str,
        title: str,
        text: str,
        is_protected: bool,
        actor_id: str,
        now: datetime.datetime,
    ) -> None:
        """Audit the differences between a stored note and its replacement.

        Values are compared as stored, ciphertext included. A missing
        baseline counts as every field changing.
        """
        if baseline is None or title != baseline.title:
            self.audit.supersede(session, AuditCategory.UPDATE_TITLE, actor_id, note_id, now)

        if baseline is None or text != baseline.text:
            self.audit.supersede(session, AuditCategory.UPDATE_CONTENT, actor_id, note_id, now)

        if baseline is None or is_protected != baseline.is_protected:
            before = baseline.is_protected if baseline is not None else None
            self.audit.add(
                session,
                AuditCategory.PROTECTED,
                actor_id,
                note_id,
                now,
                before=before,
                after=is_protected,
            )

    # =========================================================================
    # Protect
    # =========================================================================

    def _reconcile_history(
        self,
        session: Session,
        note_id: str,
        protect: bool,
        codec_factory: Callable[[], ProtectionCodec],
        now: datetime.datetime,
    ) -> int:
        """Bring every history snapshot of a note to the target protection.

        The codec is only requested when a snapshot actually needs
        converting, so unprotected notes never require a key.

        Returns:
            Number of snapshots converted.
        """
        rows = self.history.list_differing(session, note_id, protect)
        if not rows:
            return 0

        codec = codec_factory()
        for row in rows:
            title, text, _ = codec.convert(
                row.history_id, row.title, row.text, row.is_protected, protect
            )
            self.history.write_content(session, row, title, text, protect)
            self.changes.history_changed(session, row.history_id, now)
        return len(rows)

    def _protect_note_unit(
        self,
        session: Session,
        note_id: str,
        codec: ProtectionCodec,
        protect: bool,
        actor_id: str,
        now: datetime.datetime,
    ) -> Tuple[bool, List[str]]:
        """Convert one note row and its history.

        Returns:
            (whether the note row changed, child note IDs to visit next).
        """
        db_note = self.notes.require(session, note_id)
        was_protected = db_note.is_protected
        title, text, changed = codec.convert(
            note_id, db_note.title, db_note.text, was_protected, protect
        )

        if changed:
            self.notes.write_content(session, db_note, title, text, protect)
            self.changes.note_changed(session, note_id, now)
            self.audit.add(
                session,
                AuditCategory.PROTECTED,
                actor_id,
                note_id,
                now,
                before=was_protected,
                after=protect,
            )

        self._reconcile_history(session, note_id, protect, lambda: codec, now)

        # Deleted placements are followed too, so no subtree is left half converted
        return changed, self.placements.child_note_ids(session, note_id)

    @traced("protect_recursively")
    def protect_recursively(
        self,
        note_id: str,
        data_key: Optional[bytes],
        protect: bool,
        actor_id: str,
    ) -> None:
        """Protect or unprotect a note, its history and its whole subtree.

        Visits notes depth first, parent before children. Each note is one
        transactional unit and is visited once even when reachable through
        several placements.

        Raises:
            ProtectionError: No usable data key.
            NoteNotFoundError: The starting note does not exist.
            CascadeError: A unit failed after the cascade started; earlier
                units stay committed and a re-run finishes the job.
        """
        if data_key is None:
            raise ProtectionError(
                "A data key is required to change note protection",
                entity_id=note_id,
                code=ErrorCode.DATA_KEY_MISSING,
            )
        codec = ProtectionCodec(data_key)

        if self.notes.get(note_id) is None:
            raise NoteNotFoundError(note_id)

        stack = [note_id]
        visited = set()
        completed: List[str] = []
        changed_count = 0

        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)

            try:
                with transaction(self.session_factory, "protect_note") as session:
                    changed, children = self._protect_note_unit(
                        session, current, codec, protect, actor_id, self._clock()
                    )
            except NoteTreeError as e:
                logger.error(
                    f"Protection cascade from {note_id} stopped at {current} "
                    f"after {len(completed)} note(s): {e}"
                )
                raise CascadeError(
                    f"Protection cascade interrupted at note '{current}'",
                    operation="protect_recursively",
                    failed_id=current,
                    step="protect_note",
                    completed_ids=completed,
                    original_error=e,
                ) from e

            completed.append(current)
            if changed:
                changed_count += 1
            # Reversed so the first child is processed first
            stack.extend(child for child in reversed(children) if child not in visited)

        logger.info(
            f"{'Protected' if protect else 'Unprotected'} subtree of {note_id}: "
            f"{len(completed)} note(s) visited, {changed_count} changed"
        )

    # =========================================================================
    # Delete
    # =========================================================================

    def _delete_placement_unit(
        self, session: Session, placement_id: str, now: datetime.datetime
    ) -> Optional[List[str]]:
        """Soft-delete one placement and, when it was the last one, its note.

        Returns:
            Live child placement IDs to cascade into when the note was
            deleted, None when the note is still reachable elsewhere.
        """
        placement = self.placements.mark_deleted(session, placement_id, now)
        self.changes.placement_changed(session, placement_id, now)

        note_id = placement.note_id
        if self.placements.count_live_for_note(session, note_id):
            return None

        self.notes.mark_deleted(session, note_id, now)
        self.changes.note_changed(session, note_id, now)
        return self.placements.live_child_placement_ids(session, note_id)

    def _audit_deletion(self, placement_id: str, actor_id: str) -> None:
        with transaction(self.session_factory, "audit_delete") as session:
            # A re-run of an interrupted cascade must not audit twice
            if not self.audit.exists(session, AuditCategory.DELETE_NOTE, placement_id):
                self.audit.add(
                    session, AuditCategory.DELETE_NOTE, actor_id, placement_id, self._clock()
                )

    @traced("delete_placement")
    def delete_placement(self, placement_id: str, context: SessionContext) -> None:
        """Remove a placement, cascading into the subtree when it was the last.

        A note is deleted only when no live placement references it any
        more; its child placements are then deleted the same way, depth
        first. The DELETE audit for a placement is written after all of its
        children are done.

        Raises:
            PlacementNotFoundError: Unknown placement.
            CascadeError: A unit failed after the cascade started.
        """
        if self.placements.get(placement_id) is None:
            raise PlacementNotFoundError(placement_id)

        # (placement_id, children_done)
        stack: List[Tuple[str, bool]] = [(placement_id, False)]
        completed: List[str] = []
        deleted_notes = 0

        while stack:
            current, children_done = stack.pop()
            step = "audit_delete" if children_done else "delete_placement"
            try:
                if children_done:
                    self._audit_deletion(current, context.actor_id)
                    continue

                with transaction(self.session_factory, "delete_placement") as session:
                    children = self._delete_placement_unit(session, current, self._clock())
            except NoteTreeError as e:
                logger.error(
                    f"Delete cascade from {placement_id} stopped at {current} "
                    f"({step}) after {len(completed)} placement(s): {e}"
                )
                raise CascadeError(
                    f"Delete cascade interrupted at placement '{current}'",
                    operation="delete_placement",
                    failed_id=current,
                    step=step,
                    completed_ids=completed,
                    original_error=e,
                ) from e

            completed.append(current)
            if children is None:
                continue

            deleted_notes += 1
            stack.append((current, True))
            stack.extend((child, False) for child in reversed(children))

        logger.info(
            f"Deleted placement {placement_id}: {len(completed)} placement(s), "
            f"{deleted_notes} note(s)"
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get_note(
        self, note_id: str, context: Optional[SessionContext] = None, decrypt: bool = True
    ) -> Note:
        """Get a note, decrypted when it is protected and a key is available.

        The returned model keeps `is_protected` so callers can tell a
        decrypted view from a plain note.

        Raises:
            NoteNotFoundError: Unknown note.
            ProtectionError: The key does not decrypt the note.
        """
        note = self.notes.get(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        if note.is_protected and decrypt and context is not None and context.has_data_key:
            title, text = ProtectionCodec(context.data_key).decrypt_fields(
                note.note_id, note.title, note.text
            )
            note = note.model_copy(update={"title": title, "text": text})
        return note

    def get_history(
        self, note_id: str, context: Optional[SessionContext] = None, decrypt: bool = True
    ) -> List[HistorySnapshot]:
        """History snapshots of a note, oldest first, decrypted when possible."""
        if self.notes.get(note_id) is None:
            raise NoteNotFoundError(note_id)
        snapshots = self.history.list_for_note(note_id)
        if not (decrypt and context is not None and context.has_data_key):
            return snapshots

        codec = ProtectionCodec(context.data_key)
        result = []
        for snapshot in snapshots:
            if snapshot.is_protected:
                title, text = codec.decrypt_fields(
                    snapshot.history_id, snapshot.title, snapshot.text
                )
                snapshot = snapshot.model_copy(update={"title": title, "text": text})
            result.append(snapshot)
        return result

    def get_images(self, note_id: str) -> List[NoteImage]:
        return self.notes.get_images(note_id)

    def list_children(
        self, parent_note_id: Optional[str], include_deleted: bool = False
    ) -> List[Placement]:
        """Placements under a note (None for roots) in display order."""
        return self.placements.list_children(parent_note_id, include_deleted=include_deleted)

    def get_placement(self, placement_id: str) -> Placement:
        placement = self.placements.get(placement_id)
        if placement is None:
            raise PlacementNotFoundError(placement_id)
        return placement

    def get_audit_log(
        self, subject_id: str, category: Optional[AuditCategory] = None
    ) -> List[AuditEntry]:
        return self.audit.list_for_subject(subject_id, category=category)

    def changes_since(self, last_id: int = 0, limit: int = 1000) -> List[ChangeRecord]:
        """Change feed page for replicas."""
        return self.changes.changes_since(last_id, limit)
