"""Audit log recording."""
import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from notetree.models.db_models import DBAuditEntry, as_utc_timestamp
from notetree.models.schema import (
    COLLAPSIBLE_CATEGORIES,
    AuditCategory,
    AuditEntry,
    ensure_timezone_aware,
)
from notetree.storage.base import Repository

logger = logging.getLogger(__name__)


def _as_audit_value(value: Any) -> Optional[str]:
    # Booleans are stored as "1"/"0" so protection flags read back unambiguously
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


class AuditRecorder(Repository):
    """Records discrete events in the `audit_log` table.

    Entries are never edited. TITLE and CONTENT entries collapse: recording
    one removes recent entries of the same category, actor and subject first,
    so rapid edits leave a single entry behind.
    """

    def __init__(self, session_factory, collapse_window_seconds: int = 600):
        super().__init__(session_factory)
        self.collapse_window_seconds = collapse_window_seconds

    def add(
        self,
        session: Session,
        category: AuditCategory,
        actor_id: str,
        subject_id: str,
        now: datetime.datetime,
        before: Any = None,
        after: Any = None,
    ) -> None:
        """Append an audit entry."""
        session.add(
            DBAuditEntry(
                category=AuditCategory(category).value,
                actor_id=actor_id,
                subject_id=subject_id,
                before_value=_as_audit_value(before),
                after_value=_as_audit_value(after),
                occurred_at=as_utc_timestamp(now),
            )
        )
        session.flush()

    def delete_recent(
        self,
        session: Session,
        category: AuditCategory,
        actor_id: str,
        subject_id: str,
        now: datetime.datetime,
    ) -> int:
        """Remove entries inside the collapse window. Returns how many went."""
        cutoff = now - datetime.timedelta(seconds=self.collapse_window_seconds)
        result = session.execute(
            delete(DBAuditEntry).where(
                DBAuditEntry.category == AuditCategory(category).value,
                DBAuditEntry.actor_id == actor_id,
                DBAuditEntry.subject_id == subject_id,
                DBAuditEntry.occurred_at >= as_utc_timestamp(cutoff),
            )
        )
        return result.rowcount or 0

    def supersede(
        self,
        session: Session,
        category: AuditCategory,
        actor_id: str,
        subject_id: str,
        now: datetime.datetime,
    ) -> None:
        """Replace any recent entry of a collapsible category with a new one."""
        if category not in COLLAPSIBLE_CATEGORIES:
            raise ValueError(f"Audit category {category} does not collapse")
        removed = self.delete_recent(session, category, actor_id, subject_id, now)
        if removed:
            logger.debug(
                f"Collapsed {removed} recent {AuditCategory(category).value} "
                f"audit(s) for {subject_id}"
            )
        self.add(session, category, actor_id, subject_id, now)

    def exists(self, session: Session, category: AuditCategory, subject_id: str) -> bool:
        """Whether any entry of the category was ever recorded for the subject."""
        found = session.scalar(
            select(DBAuditEntry.id)
            .where(
                DBAuditEntry.category == AuditCategory(category).value,
                DBAuditEntry.subject_id == subject_id,
            )
            .limit(1)
        )
        return found is not None

    # -- reads ---------------------------------------------------------------

    def list_for_subject(
        self, subject_id: str, category: Optional[AuditCategory] = None
    ) -> List[AuditEntry]:
        """Entries about a note or placement, oldest first."""
        with self._read("list_audit") as session:
            query = select(DBAuditEntry).where(DBAuditEntry.subject_id == subject_id)
            if category is not None:
                query = query.where(DBAuditEntry.category == AuditCategory(category).value)
            rows = session.scalars(query.order_by(DBAuditEntry.id)).all()
            return [
                AuditEntry(
                    id=row.id,
                    category=AuditCategory(row.category),
                    actor_id=row.actor_id,
                    subject_id=row.subject_id,
                    before_value=row.before_value,
                    after_value=row.after_value,
                    occurred_at=ensure_timezone_aware(row.occurred_at),
                )
                for row in rows
            ]
