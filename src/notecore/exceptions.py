"""Custom exceptions for notecore.

Provides a structured exception hierarchy with error codes and
machine-readable error information. The presentation layer maps these
to status messages; the core never raises bare exceptions for malformed
but well-typed input.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_CONFLICT = 1003
    NOTE_TITLE_REQUIRED = 1004

    # Tag errors (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002
    TAG_NAME_CONFLICT = 3003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    DATABASE_CORRUPTED = 4005
    DATABASE_RECOVERY_FAILED = 4006
    FTS_CORRUPTED = 4007
    STORAGE_CONTENDED = 4008
    STORAGE_CLOSED = 4009

    # Journal errors (45xx)
    JOURNAL_WRITE_FAILED = 4501
    JOURNAL_READ_FAILED = 4502

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002
    SEARCH_INVALID_REGEX = 5003

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class NoteCoreError(Exception):
    """Base exception for all notecore errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
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
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NotFoundError(NoteCoreError):
    """An id does not resolve to a live record. Recoverable, no retry."""


class NoteNotFoundError(NotFoundError):
    """Raised when a note cannot be found (or is not in the expected state)."""

    def __init__(self, note_id: int, message: Optional[str] = None):
        super().__init__(
            message or f"Note #{note_id} not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class TagNotFoundError(NotFoundError):
    """Raised when a tag (or a tag association) cannot be found."""

    def __init__(
        self,
        tag: Any,
        message: Optional[str] = None,
        note_id: Optional[int] = None,
    ):
        details: Dict[str, Any] = {"tag": tag}
        if note_id is not None:
            details["note_id"] = note_id
        super().__init__(
            message or f"Tag '{tag}' not found",
            code=ErrorCode.TAG_NOT_FOUND,
            details=details,
        )
        self.tag = tag
        self.note_id = note_id


class ConflictError(NoteCoreError):
    """Optimistic version check failed; the caller must reload and may retry."""

    def __init__(self, note_id: int, expected: Any, actual: Any):
        super().__init__(
            f"Note #{note_id} was modified since it was read",
            code=ErrorCode.NOTE_CONFLICT,
            details={
                "note_id": note_id,
                "expected_updated_at": str(expected),
                "actual_updated_at": str(actual),
            },
        )
        self.note_id = note_id
        self.expected = expected
        self.actual = actual


class TagNameConflictError(NoteCoreError):
    """A tag rename collides with an existing tag name."""

    def __init__(self, name: str, existing_tag_id: int):
        super().__init__(
            f"Tag name '{name}' is already used; merge the tags instead",
            code=ErrorCode.TAG_NAME_CONFLICT,
            details={"name": name, "existing_tag_id": existing_tag_id},
        )
        self.name = name
        self.existing_tag_id = existing_tag_id


class ValidationError(NoteCoreError):
    """Raised for malformed input such as empty titles or tag names."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class QuerySyntaxError(NoteCoreError):
    """Malformed query or regex. Surfaced with the offending fragment."""

    def __init__(
        self,
        message: str,
        fragment: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_INVALID_QUERY,
    ):
        details = {}
        if fragment is not None:
            details["fragment"] = fragment[:100]
        super().__init__(message, code=code, details=details)
        self.fragment = fragment


class StorageError(NoteCoreError):
    """Raised for storage/persistence failures (IOFailure)."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Only the last path component is exposed
            details["path_hint"] = path.replace("\\", "/").split("/")[-1]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class StorageContendedError(StorageError):
    """Another process holds an incompatible lock on the database.

    Non-fatal: the operation is postponed and the coordinator re-checks
    the lock periodically.
    """

    def __init__(
        self,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            "Database is locked by another process",
            operation=operation,
            code=ErrorCode.STORAGE_CONTENDED,
            original_error=original_error,
        )


class DatabaseCorruptionError(StorageError):
    """Raised when database or FTS corruption is detected.

    Attributes:
        recovered: Whether auto-recovery was successful
    """

    def __init__(
        self,
        message: str,
        recovered: bool = False,
        code: ErrorCode = ErrorCode.DATABASE_CORRUPTED,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation="database_check",
            code=code,
            original_error=original_error,
        )
        self.recovered = recovered
        self.details["recovered"] = recovered


class JournalWriteError(StorageError):
    """Raised when an autosave snapshot cannot be written durably."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            message,
            operation="journal_write",
            path=path,
            code=ErrorCode.JOURNAL_WRITE_FAILED,
            original_error=original_error,
        )


def is_fatal(error: BaseException) -> bool:
    """Whether an error is an unrecoverable storage fault.

    Contention is a status, not a fault; everything else under StorageError
    (corruption, IO failure, journal write failure) is fatal for the
    affected operation.
    """
    if isinstance(error, StorageContendedError):
        return False
    return isinstance(error, StorageError)
