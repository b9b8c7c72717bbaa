"""Translation of database driver errors into the notecore taxonomy."""
import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError

from notecore.exceptions import (DatabaseCorruptionError, ErrorCode,
                                 NoteCoreError, StorageContendedError,
                                 StorageError)

logger = logging.getLogger(__name__)

_CONTENDED_MARKERS = ("database is locked", "database table is locked", "busy")
_CORRUPTION_MARKERS = ("malformed", "not a database", "corrupt")


def translate_db_error(error: Exception, operation: str) -> StorageError:
    """Map a sqlite3/SQLAlchemy error to the matching StorageError subclass."""
    message = str(error).lower()
    if any(marker in message for marker in _CONTENDED_MARKERS):
        return StorageContendedError(operation=operation, original_error=error)
    if any(marker in message for marker in _CORRUPTION_MARKERS):
        return DatabaseCorruptionError(
            f"Database is unreadable during {operation}",
            original_error=error,
        )
    return StorageError(
        f"Database operation '{operation}' failed",
        operation=operation,
        code=ErrorCode.STORAGE_WRITE_FAILED,
        original_error=error,
    )


@contextmanager
def db_errors(operation: str) -> Iterator[None]:
    """Re-raise driver errors raised inside the block as notecore errors.

    Errors that are already part of the notecore taxonomy pass through.
    """
    try:
        yield
    except NoteCoreError:
        raise
    except (sqlite3.Error, SQLAlchemyError) as e:
        translated = translate_db_error(e, operation)
        if isinstance(translated, StorageContendedError):
            logger.warning(f"{operation}: database is locked by another process")
        else:
            logger.error(f"{operation} failed: {e}")
        raise translated from e
