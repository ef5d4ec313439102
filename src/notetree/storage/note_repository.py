"""Repository for note rows and their image attachments."""

import base64
import binascii
import datetime
import logging
from typing import List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from notetree.exceptions import ErrorCode, InvalidRequestError, NoteNotFoundError
from notetree.models.db_models import DBImage, DBNote, as_utc_timestamp
from notetree.models.schema import (
    ImagePayload,
    Note,
    NoteImage,
    ensure_timezone_aware,
    generate_id,
)
from notetree.storage.base import Repository

logger = logging.getLogger(__name__)


def decode_image_payload(payload: ImagePayload) -> bytes:
    """Return the raw image bytes of a payload.

    Bytes are taken as already decoded; strings must be strict base64.

    Raises:
        InvalidRequestError: If the payload is empty or not valid base64.
    """
    if isinstance(payload.data, bytes):
        raw = payload.data
    else:
        try:
            raw = base64.b64decode(payload.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidRequestError(
                f"Image '{payload.name}' is not valid base64",
                field="images",
                value=payload.name,
                code=ErrorCode.INVALID_ATTACHMENT,
            ) from e
    if not raw:
        raise InvalidRequestError(
            f"Image '{payload.name}' is empty",
            field="images",
            value=payload.name,
            code=ErrorCode.INVALID_ATTACHMENT,
        )
    return raw


class NoteRepository(Repository):
    """Repository for the `notes` table.

    Rows are written exactly as given: encryption and decryption happen in
    the service layer, so protected rows pass through here as ciphertext.
    """

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        return Note(
            note_id=db_note.note_id,
            title=db_note.title,
            text=db_note.text,
            is_protected=db_note.is_protected,
            is_deleted=db_note.is_deleted,
            created_at=ensure_timezone_aware(db_note.created_at),
            modified_at=ensure_timezone_aware(db_note.modified_at),
        )

    # -- in-session helpers (caller owns the transaction) -------------------

    def find(self, session: Session, note_id: str) -> Optional[DBNote]:
        """Return the note row or None."""
        return session.scalar(select(DBNote).where(DBNote.note_id == note_id))

    def require(self, session: Session, note_id: str) -> DBNote:
        """Return the note row.

        Raises:
            NoteNotFoundError: If no such note exists.
        """
        db_note = self.find(session, note_id)
        if db_note is None:
            raise NoteNotFoundError(note_id)
        return db_note

    def insert(
        self,
        session: Session,
        note_id: str,
        title: str,
        is_protected: bool,
        now: datetime.datetime,
    ) -> DBNote:
        """Insert a new note with empty text."""
        stamp = as_utc_timestamp(now)
        db_note = DBNote(
            note_id=note_id,
            title=title,
            text="",
            is_protected=is_protected,
            is_deleted=False,
            created_at=stamp,
            modified_at=stamp,
        )
        session.add(db_note)
        session.flush()
        return db_note

    def write_content(
        self,
        session: Session,
        db_note: DBNote,
        title: str,
        text: str,
        is_protected: bool,
        now: Optional[datetime.datetime] = None,
    ) -> None:
        """Overwrite title, text and protection flag.

        `modified_at` is stamped only when `now` is given; protection
        toggles rewrite content without counting as an edit.
        """
        db_note.title = title
        db_note.text = text
        db_note.is_protected = is_protected
        if now is not None:
            db_note.modified_at = as_utc_timestamp(now)
        session.flush()

    def mark_deleted(self, session: Session, note_id: str, now: datetime.datetime) -> None:
        """Soft-delete a note."""
        db_note = self.require(session, note_id)
        db_note.is_deleted = True
        db_note.modified_at = as_utc_timestamp(now)
        session.flush()

    def replace_images(
        self,
        session: Session,
        note_id: str,
        images: Sequence[ImagePayload],
        now: datetime.datetime,
    ) -> List[str]:
        """Delete every image of the note and insert the given set.

        Payloads are decoded before anything is deleted, but the caller's
        transaction is what guarantees no partial replacement.

        Returns:
            IDs of the inserted images.
        """
        decoded = [(payload, decode_image_payload(payload)) for payload in images]

        session.execute(delete(DBImage).where(DBImage.note_id == note_id))

        image_ids = []
        stamp = as_utc_timestamp(now)
        for payload, raw in decoded:
            image_id = generate_id()
            session.add(
                DBImage(
                    image_id=image_id,
                    note_id=note_id,
                    name=payload.name,
                    mime_type=payload.mime_type,
                    data=raw,
                    created_at=stamp,
                )
            )
            image_ids.append(image_id)
        session.flush()
        return image_ids

    # -- reads ---------------------------------------------------------------

    def get(self, note_id: str) -> Optional[Note]:
        """Get a note by ID, exactly as stored."""
        with self._read("get_note") as session:
            db_note = self.find(session, note_id)
            if db_note is None:
                return None
            return self._db_note_to_model(db_note)

    def get_images(self, note_id: str) -> List[NoteImage]:
        """Get the images attached to a note."""
        with self._read("get_images") as session:
            rows = session.scalars(
                select(DBImage)
                .where(DBImage.note_id == note_id)
                .order_by(DBImage.created_at, DBImage.image_id)
            ).all()
            return [
                NoteImage(
                    image_id=row.image_id,
                    note_id=row.note_id,
                    name=row.name,
                    mime_type=row.mime_type,
                    data=row.data,
                )
                for row in rows
            ]
