"""Custom exceptions for the notetree server.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Lookup errors (1xxx)
    NOTE_NOT_FOUND = 1001
    PLACEMENT_NOT_FOUND = 1002
    HISTORY_NOT_FOUND = 1003

    # Request errors (2xxx)
    INVALID_REQUEST = 2001
    INVALID_TARGET = 2002
    INVALID_ATTACHMENT = 2003
    INVALID_PLACEMENT = 2004

    # Protection errors (3xxx)
    DATA_KEY_MISSING = 3001
    DATA_KEY_INVALID = 3002
    DECRYPTION_FAILED = 3003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_CONNECTION_FAILED = 4004

    # Cascade errors (45xx)
    CASCADE_INTERRUPTED = 4501

    # Concurrency errors (5xxx)
    CONFLICT = 5001


class NoteTreeError(Exception):
    """Base exception for all notetree errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INVALID_REQUEST,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(NoteTreeError):
    """Raised when a referenced note, placement or history row is absent."""


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class PlacementNotFoundError(NotFoundError):
    """Raised when a tree placement cannot be found."""

    def __init__(self, placement_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Placement with ID '{placement_id}' not found",
            code=ErrorCode.PLACEMENT_NOT_FOUND,
            details={"placement_id": placement_id}
        )
        self.placement_id = placement_id


class HistoryNotFoundError(NotFoundError):
    """Raised when a history snapshot cannot be found."""

    def __init__(self, history_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"History snapshot with ID '{history_id}' not found",
            code=ErrorCode.HISTORY_NOT_FOUND,
            details={"history_id": history_id}
        )
        self.history_id = history_id


class InvalidRequestError(NoteTreeError):
    """Raised when a request is malformed (bad target, bad attachment...)."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.INVALID_REQUEST
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class ProtectionError(InvalidRequestError):
    """Raised when protected content cannot be encrypted or decrypted.

    Covers a missing data key, a key of the wrong size and ciphertext that
    does not verify under the supplied key.
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.DATA_KEY_MISSING
    ):
        super().__init__(message, field="entity_id" if entity_id else None,
                         value=entity_id, code=code)
        self.entity_id = entity_id


class StorageError(NoteTreeError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class ConflictError(NoteTreeError):
    """Raised when concurrent writers collide.

    Sibling position races are not detected yet, so nothing in the engine
    raises this today; it is part of the public error surface.
    """

    def __init__(self, message: str, entity_id: Optional[str] = None):
        details = {"entity_id": entity_id} if entity_id else {}
        super().__init__(message, code=ErrorCode.CONFLICT, details=details)
        self.entity_id = entity_id


class CascadeError(NoteTreeError):
    """Raised when a recursive protect or delete stops partway through.

    Units committed before the failure stay committed. Re-running the same
    cascade converges because already converted entities are no-ops.

    Attributes:
        operation: Name of the cascade ("protect_recursively", "delete_placement")
        failed_id: The note or placement id whose unit failed
        step: What the failed unit was doing
        completed_ids: Ids whose units committed before the failure
        original_error: The underlying exception

    Note:
        The `details` dict contains `completed_ids` truncated to 10 items for
        safe serialization. Access `self.completed_ids` for the complete list.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        failed_id: str,
        step: str,
        completed_ids: Optional[List[str]] = None,
        original_error: Optional[Exception] = None
    ):
        completed = list(completed_ids) if completed_ids else []
        details: Dict[str, Any] = {
            "operation": operation,
            "failed_id": failed_id,
            "step": step,
            "completed_count": len(completed),
        }
        if completed:
            details["completed_ids"] = completed[:10]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=ErrorCode.CASCADE_INTERRUPTED, details=details)
        self.operation = operation
        self.failed_id = failed_id
        self.step = step
        self.completed_ids: List[str] = completed
        self.original_error = original_error
