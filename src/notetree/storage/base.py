"""Transactional unit and repository base class."""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from notetree.exceptions import ErrorCode, StorageError

logger = logging.getLogger(__name__)


@contextmanager
def transaction(session_factory: sessionmaker, operation: str) -> Iterator[Session]:
    """Run a block of writes as one atomic unit.

    Commits when the block finishes and rolls back on any exception.
    Database-level failures surface as StorageError with the driver error
    attached; domain errors raised by the block propagate unchanged.

    Example:
        with transaction(factory, "create_note") as session:
            session.add(row)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Transaction '{operation}' rolled back: {e}")
        raise StorageError(
            f"Transaction failed during {operation}",
            operation=operation,
            code=ErrorCode.STORAGE_WRITE_FAILED,
            original_error=e,
        ) from e
    except Exception:
        session.rollback()
        logger.debug(f"Transaction '{operation}' rolled back")
        raise
    finally:
        session.close()


@contextmanager
def read_session(session_factory: sessionmaker, operation: str) -> Iterator[Session]:
    """Open a short-lived session for queries."""
    session = session_factory()
    try:
        yield session
    except SQLAlchemyError as e:
        raise StorageError(
            f"Read failed during {operation}",
            operation=operation,
            code=ErrorCode.STORAGE_READ_FAILED,
            original_error=e,
        ) from e
    finally:
        session.close()


class Repository:
    """Base class for repositories sharing one session factory.

    Write helpers take the caller's session so that several repositories can
    take part in the same transactional unit; read helpers open their own.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _read(self, operation: str):
        return read_session(self.session_factory, operation)
