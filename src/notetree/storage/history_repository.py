"""Repository for interval-bucketed note history snapshots."""
import datetime
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from notetree.exceptions import HistoryNotFoundError
from notetree.models.db_models import DBHistory, as_utc_timestamp
from notetree.models.schema import HistorySnapshot, ensure_timezone_aware, generate_id
from notetree.storage.base import Repository

logger = logging.getLogger(__name__)


class HistoryRepository(Repository):
    """Repository for the `note_history` table.

    A note gets at most one snapshot per snapshot interval: the first edit
    inside a new interval records one, later edits inside the same interval
    leave it alone. The live note row carries the latest state, so history
    grows by roughly one row per interval per note however often it is
    edited.
    """

    @staticmethod
    def _to_model(row: DBHistory) -> HistorySnapshot:
        return HistorySnapshot(
            history_id=row.history_id,
            note_id=row.note_id,
            title=row.title,
            text=row.text,
            is_protected=row.is_protected,
            window_start=ensure_timezone_aware(row.window_start),
            window_end=ensure_timezone_aware(row.window_end),
        )

    @staticmethod
    def window_cutoff(now: datetime.datetime, interval_seconds: int) -> datetime.datetime:
        """Earliest window start that still counts as the current interval."""
        return now - datetime.timedelta(seconds=interval_seconds)

    def find_in_window(
        self, session: Session, note_id: str, cutoff: datetime.datetime
    ) -> Optional[str]:
        """ID of a snapshot of the note whose window started at or after `cutoff`."""
        return session.scalar(
            select(DBHistory.history_id)
            .where(
                DBHistory.note_id == note_id,
                DBHistory.window_start >= as_utc_timestamp(cutoff),
            )
            .limit(1)
        )

    def insert(
        self,
        session: Session,
        note_id: str,
        title: str,
        text: str,
        now: datetime.datetime,
    ) -> str:
        """Insert an unprotected snapshot opening a new window at `now`.

        Protection is reconciled afterwards by the caller.

        Returns:
            The new history ID.
        """
        history_id = generate_id()
        stamp = as_utc_timestamp(now)
        session.add(
            DBHistory(
                history_id=history_id,
                note_id=note_id,
                title=title,
                text=text,
                is_protected=False,
                window_start=stamp,
                window_end=stamp,
            )
        )
        session.flush()
        logger.debug(f"Opened history window {history_id} for note {note_id}")
        return history_id

    def list_differing(
        self, session: Session, note_id: str, protect: bool
    ) -> List[DBHistory]:
        """Snapshots of the note whose protection differs from `protect`."""
        return list(
            session.scalars(
                select(DBHistory)
                .where(
                    DBHistory.note_id == note_id,
                    DBHistory.is_protected != protect,
                )
                .order_by(DBHistory.window_start)
            ).all()
        )

    def write_content(
        self,
        session: Session,
        row: DBHistory,
        title: str,
        text: str,
        is_protected: bool,
    ) -> None:
        row.title = title
        row.text = text
        row.is_protected = is_protected
        session.flush()

    # -- reads ---------------------------------------------------------------

    def get(self, history_id: str) -> HistorySnapshot:
        """Get a snapshot by ID.

        Raises:
            HistoryNotFoundError: If no such snapshot exists.
        """
        with self._read("get_history") as session:
            row = session.scalar(
                select(DBHistory).where(DBHistory.history_id == history_id)
            )
            if row is None:
                raise HistoryNotFoundError(history_id)
            return self._to_model(row)

    def list_for_note(self, note_id: str) -> List[HistorySnapshot]:
        """All snapshots of a note, oldest window first."""
        with self._read("list_history") as session:
            rows = session.scalars(
                select(DBHistory)
                .where(DBHistory.note_id == note_id)
                .order_by(DBHistory.window_start, DBHistory.history_id)
            ).all()
            return [self._to_model(row) for row in rows]
