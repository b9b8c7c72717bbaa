"""Tests for the error taxonomy and driver error translation."""
import sqlite3

import pytest

from notecore.exceptions import (ConflictError, DatabaseCorruptionError,
                                 ErrorCode, JournalWriteError,
                                 NoteNotFoundError, QuerySyntaxError,
                                 StorageContendedError, StorageError,
                                 TagNotFoundError, is_fatal)
from notecore.storage.errors import db_errors, translate_db_error


def test_to_dict():
    error = NoteNotFoundError(5)
    assert error.to_dict() == {
        "error": "NoteNotFoundError",
        "code": ErrorCode.NOTE_NOT_FOUND.value,
        "code_name": "NOTE_NOT_FOUND",
        "message": "Note #5 not found",
        "details": {"note_id": 5},
    }


def test_str_includes_code_and_details():
    error = TagNotFoundError("work", note_id=3)
    assert str(error) == "[TAG_NOT_FOUND] Tag 'work' not found (tag=work, note_id=3)"


def test_query_error_carries_fragment():
    error = QuerySyntaxError("bad", fragment="is:what")
    assert error.fragment == "is:what"
    assert error.details == {"fragment": "is:what"}


def test_storage_error_exposes_only_file_name():
    error = StorageError("failed", path="/home/user/secret/notes.db")
    assert error.details["path_hint"] == "notes.db"


def test_fatality():
    assert is_fatal(StorageError("io"))
    assert is_fatal(DatabaseCorruptionError("broken"))
    assert is_fatal(JournalWriteError("disk full"))
    assert not is_fatal(StorageContendedError("update"))
    assert not is_fatal(ConflictError(1, "a", "b"))
    assert not is_fatal(ValueError("nope"))


@pytest.mark.parametrize(
    "message,expected",
    [
        ("database is locked", StorageContendedError),
        ("database disk image is malformed", DatabaseCorruptionError),
        ("file is not a database", DatabaseCorruptionError),
        ("disk I/O error", StorageError),
    ],
)
def test_translate_db_error(message, expected):
    translated = translate_db_error(sqlite3.OperationalError(message), "update")
    assert type(translated) is expected
    assert translated.operation in ("update", "database_check")


def test_db_errors_passes_notecore_errors_through():
    with pytest.raises(NoteNotFoundError):
        with db_errors("get"):
            raise NoteNotFoundError(1)


def test_db_errors_translates_driver_errors():
    with pytest.raises(StorageContendedError) as exc_info:
        with db_errors("update"):
            raise sqlite3.OperationalError("database is locked")
    assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
