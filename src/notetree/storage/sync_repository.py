"""Change feed for replica synchronisation."""
import datetime
import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from notetree.models.db_models import DBChange, as_utc_timestamp
from notetree.models.schema import ChangeRecord, EntityName, ensure_timezone_aware
from notetree.storage.base import Repository

logger = logging.getLogger(__name__)


class ChangeTracker(Repository):
    """Append-only log of entity changes in the `sync_log` table.

    Every mutating write enqueues one record for the entity it touched.
    Consumers page through the feed by record id.
    """

    def add(
        self,
        session: Session,
        entity_name: EntityName,
        entity_id: str,
        now: datetime.datetime,
    ) -> None:
        session.add(
            DBChange(
                entity_name=EntityName(entity_name).value,
                entity_id=entity_id,
                synced_at=as_utc_timestamp(now),
            )
        )

    def note_changed(self, session: Session, note_id: str, now: datetime.datetime) -> None:
        self.add(session, EntityName.NOTES, note_id, now)

    def placement_changed(
        self, session: Session, placement_id: str, now: datetime.datetime
    ) -> None:
        self.add(session, EntityName.PLACEMENTS, placement_id, now)

    def history_changed(
        self, session: Session, history_id: str, now: datetime.datetime
    ) -> None:
        self.add(session, EntityName.HISTORY, history_id, now)

    def changes_since(self, last_id: int = 0, limit: int = 1000) -> List[ChangeRecord]:
        """Records with an id greater than `last_id`, oldest first."""
        with self._read("changes_since") as session:
            rows = session.scalars(
                select(DBChange)
                .where(DBChange.id > last_id)
                .order_by(DBChange.id)
                .limit(limit)
            ).all()
            return [
                ChangeRecord(
                    id=row.id,
                    entity_name=EntityName(row.entity_name),
                    entity_id=row.entity_id,
                    synced_at=ensure_timezone_aware(row.synced_at),
                )
                for row in rows
            ]
