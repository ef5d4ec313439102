"""Repository for tree placements and their sibling positions."""
import datetime
import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from notetree.exceptions import ErrorCode, InvalidRequestError, PlacementNotFoundError
from notetree.models.db_models import DBPlacement, as_utc_timestamp
from notetree.models.schema import InsertTarget, Placement, ensure_timezone_aware
from notetree.storage.base import Repository

logger = logging.getLogger(__name__)


class PlacementRepository(Repository):
    """Repository for the `note_placements` table.

    Maintains sibling order: among live placements sharing a parent, the
    `position` values are distinct and their order is display order.
    """

    @staticmethod
    def _to_model(row: DBPlacement) -> Placement:
        return Placement(
            placement_id=row.placement_id,
            note_id=row.note_id,
            parent_note_id=row.parent_note_id,
            position=row.position,
            is_expanded=row.is_expanded,
            is_deleted=row.is_deleted,
            modified_at=ensure_timezone_aware(row.modified_at),
        )

    @staticmethod
    def _parent_clause(parent_note_id: Optional[str]):
        # Roots have a NULL parent and `= NULL` never matches in SQL
        if parent_note_id is None:
            return DBPlacement.parent_note_id.is_(None)
        return DBPlacement.parent_note_id == parent_note_id

    # -- positions -----------------------------------------------------------

    def next_position_as_last_child(
        self, session: Session, parent_note_id: Optional[str]
    ) -> int:
        """Position for a new last child: max live sibling position + 1, or 0."""
        max_pos = session.scalar(
            select(func.max(DBPlacement.position)).where(
                self._parent_clause(parent_note_id),
                DBPlacement.is_deleted.is_(False),
            )
        )
        return 0 if max_pos is None else max_pos + 1

    def make_room_after(
        self,
        session: Session,
        parent_note_id: Optional[str],
        after_placement_id: str,
        now: datetime.datetime,
    ) -> int:
        """Shift the siblings following `after_placement_id` up by one.

        Must run in the same transaction as the insert that takes the freed
        position. A soft-deleted sibling still anchors the insert at its old
        position.

        Returns:
            The position directly after the given sibling.

        Raises:
            PlacementNotFoundError: If the sibling placement does not exist.
            InvalidRequestError: If it is not a child of the parent.
        """
        sibling = self.require(session, after_placement_id)
        if sibling.parent_note_id != parent_note_id:
            raise InvalidRequestError(
                f"Placement '{after_placement_id}' is not a child of "
                f"'{parent_note_id}'",
                field="target_placement_id",
                value=after_placement_id,
                code=ErrorCode.INVALID_TARGET,
            )

        shifted = session.execute(
            update(DBPlacement)
            .where(
                self._parent_clause(parent_note_id),
                DBPlacement.position > sibling.position,
                DBPlacement.is_deleted.is_(False),
            )
            .values(
                position=DBPlacement.position + 1,
                modified_at=as_utc_timestamp(now),
            )
            .execution_options(synchronize_session="fetch")
        )
        logger.debug(
            f"Shifted {shifted.rowcount} siblings after {after_placement_id} "
            f"under {parent_note_id}"
        )
        return sibling.position + 1

    def resolve_position(
        self,
        session: Session,
        parent_note_id: Optional[str],
        target: str,
        target_placement_id: Optional[str],
        now: datetime.datetime,
    ) -> int:
        """Compute the position for a new placement from an insertion directive.

        Raises:
            InvalidRequestError: For an unknown directive, or 'after' without
                a sibling placement id.
        """
        try:
            directive = InsertTarget(target)
        except ValueError:
            raise InvalidRequestError(
                f"Unknown target: {target}",
                field="target",
                value=target,
                code=ErrorCode.INVALID_TARGET,
            ) from None

        if directive == InsertTarget.INTO:
            return self.next_position_as_last_child(session, parent_note_id)

        if not target_placement_id:
            raise InvalidRequestError(
                "target_placement_id is required when target is 'after'",
                field="target_placement_id",
                code=ErrorCode.INVALID_TARGET,
            )
        return self.make_room_after(session, parent_note_id, target_placement_id, now)

    # -- rows ----------------------------------------------------------------

    def find(self, session: Session, placement_id: str) -> Optional[DBPlacement]:
        return session.scalar(
            select(DBPlacement).where(DBPlacement.placement_id == placement_id)
        )

    def require(self, session: Session, placement_id: str) -> DBPlacement:
        """Return the placement row or raise PlacementNotFoundError."""
        row = self.find(session, placement_id)
        if row is None:
            raise PlacementNotFoundError(placement_id)
        return row

    def insert(
        self,
        session: Session,
        placement_id: str,
        note_id: str,
        parent_note_id: Optional[str],
        position: int,
        now: datetime.datetime,
    ) -> DBPlacement:
        row = DBPlacement(
            placement_id=placement_id,
            note_id=note_id,
            parent_note_id=parent_note_id,
            position=position,
            is_expanded=False,
            is_deleted=False,
            modified_at=as_utc_timestamp(now),
        )
        session.add(row)
        session.flush()
        return row

    def mark_deleted(
        self, session: Session, placement_id: str, now: datetime.datetime
    ) -> DBPlacement:
        """Soft-delete a placement and return it."""
        row = self.require(session, placement_id)
        row.is_deleted = True
        row.modified_at = as_utc_timestamp(now)
        session.flush()
        return row

    def count_live_for_note(self, session: Session, note_id: str) -> int:
        """Number of non-deleted placements referencing a note."""
        return session.scalar(
            select(func.count(DBPlacement.placement_id)).where(
                DBPlacement.note_id == note_id,
                DBPlacement.is_deleted.is_(False),
            )
        )

    def live_child_placement_ids(self, session: Session, parent_note_id: str) -> List[str]:
        """IDs of the non-deleted placements directly under a note, in order."""
        return list(
            session.scalars(
                select(DBPlacement.placement_id)
                .where(
                    DBPlacement.parent_note_id == parent_note_id,
                    DBPlacement.is_deleted.is_(False),
                )
                .order_by(DBPlacement.position)
            ).all()
        )

    def child_note_ids(self, session: Session, parent_note_id: str) -> List[str]:
        """IDs of every note placed under a note, deleted placements included."""
        rows = session.scalars(
            select(DBPlacement.note_id)
            .where(DBPlacement.parent_note_id == parent_note_id)
            .order_by(DBPlacement.is_deleted, DBPlacement.position)
        ).all()
        # A note placed twice under the same parent is visited once
        return list(dict.fromkeys(rows))

    def ancestor_note_ids(self, session: Session, note_id: str) -> set:
        """Every note from which `note_id` is reachable through live placements."""
        seen = set()
        pending = [note_id]
        while pending:
            current = pending.pop()
            parents = session.scalars(
                select(DBPlacement.parent_note_id).where(
                    DBPlacement.note_id == current,
                    DBPlacement.is_deleted.is_(False),
                    DBPlacement.parent_note_id.is_not(None),
                )
            ).all()
            for parent in parents:
                if parent not in seen:
                    seen.add(parent)
                    pending.append(parent)
        return seen

    # -- reads ---------------------------------------------------------------

    def get(self, placement_id: str) -> Optional[Placement]:
        """Get a placement by ID."""
        with self._read("get_placement") as session:
            row = self.find(session, placement_id)
            return self._to_model(row) if row else None

    def list_children(
        self, parent_note_id: Optional[str], include_deleted: bool = False
    ) -> List[Placement]:
        """Placements directly under a parent (None for roots), ordered by position."""
        with self._read("list_children") as session:
            query = select(DBPlacement).where(self._parent_clause(parent_note_id))
            if not include_deleted:
                query = query.where(DBPlacement.is_deleted.is_(False))
            rows = session.scalars(
                query.order_by(DBPlacement.position, DBPlacement.placement_id)
            ).all()
            return [self._to_model(row) for row in rows]

    def list_for_note(self, note_id: str) -> List[Placement]:
        """Every placement of a note, deleted ones included."""
        with self._read("list_placements_for_note") as session:
            rows = session.scalars(
                select(DBPlacement)
                .where(DBPlacement.note_id == note_id)
                .order_by(DBPlacement.placement_id)
            ).all()
            return [self._to_model(row) for row in rows]
