"""Record store for notes: CRUD, flags, trash lifecycle and listing.

The store assumes a single writer (the coordinator's storage worker).
Each mutating call runs in one transaction; the FTS5 mirror is kept in
sync by triggers inside that same transaction.
"""
import datetime
import logging
import sqlite3
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.orm import selectinload

from notecore.config import NoteCoreConfig
from notecore.config import config as default_config
from notecore.exceptions import (ConflictError, ErrorCode, NoteNotFoundError,
                                 StorageError, ValidationError)
from notecore.models.db_models import (DBBackup, DBNote, DBTag, get_session_factory,
                                       init_db, note_tags)
from notecore.models.schema import (BackupRecord, BulkResult, Note, NoteFilter,
                                    NotePatch, SortDirection, SortField,
                                    SortSpec, TrashStatus, ensure_timezone_aware,
                                    to_storage_datetime, utc_now)
from notecore.storage.errors import db_errors
from notecore.storage.fts_index import FtsIndex
from notecore.utils import format_remaining

logger = logging.getLogger(__name__)

SEED_NOTES = (
    (
        "Welcome to Notes",
        "# Welcome to Notes\n\nThis is your new note space. "
        "Use `notecore search` to find notes and `notecore tag` to organize them.\n",
    ),
    (
        "Search Tips",
        "# Search Tips\n\n"
        "- `tag:home milk`: notes tagged home that mention milk\n"
        "- `title:plan`: match in titles only\n"
        "- `created:2024-01-01..2024-02-01`: creation date range\n"
        "- `-draft`: exclude notes mentioning draft\n"
        "- `is:pinned`, `is:archived`, `in:trash`: state filters\n",
    ),
    ("Inbox", "Capture quick thoughts here.\n"),
)

_CHECKPOINT_MODES = ("PASSIVE", "FULL", "RESTART", "TRUNCATE")


def note_filter_clauses(note_filter: NoteFilter) -> List[Any]:
    """Translate a NoteFilter into WHERE clauses on ``notes``."""
    if note_filter.trashed:
        clauses: List[Any] = [DBNote.deleted_at.is_not(None)]
    else:
        clauses = [DBNote.deleted_at.is_(None)]
    if note_filter.archived is not None:
        clauses.append(DBNote.archived == note_filter.archived)
    if note_filter.pinned is not None:
        clauses.append(DBNote.pinned == note_filter.pinned)
    for tag_name in note_filter.tags:
        tagged = (
            select(note_tags.c.note_id)
            .join(DBTag, DBTag.id == note_tags.c.tag_id)
            .where(DBTag.name == tag_name)
        )
        clauses.append(DBNote.id.in_(tagged))
    for column, date_range in (
        (DBNote.created_at, note_filter.created),
        (DBNote.updated_at, note_filter.updated),
    ):
        if date_range.start is not None:
            clauses.append(column >= to_storage_datetime(date_range.start))
        if date_range.end is not None:
            clauses.append(column < to_storage_datetime(date_range.end))
    return clauses


def sort_clauses(sort: SortSpec) -> List[Any]:
    """ORDER BY for an explicit sort; ties always break by id ascending."""
    if sort.field == SortField.TITLE:
        col = func.lower(DBNote.title)
    elif sort.field == SortField.CREATED:
        col = DBNote.created_at
    else:
        col = DBNote.updated_at
    ordered = col.asc() if sort.direction == SortDirection.ASC else col.desc()
    return [ordered, DBNote.id.asc()]


def _clean_title(title: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValidationError(
            "Title cannot be empty", field="title", code=ErrorCode.NOTE_TITLE_REQUIRED
        )
    return cleaned


def _storage_now() -> datetime.datetime:
    return to_storage_datetime(utc_now())


class NoteStore:
    """Durable table of notes with soft delete and retention purge."""

    def __init__(self, cfg: Optional[NoteCoreConfig] = None):
        """Open (and if needed create) the database.

        Args:
            cfg: Configuration; defaults to the process-wide ``config``.
        """
        self.config = cfg or default_config
        try:
            db_path = self.config.get_db_path()
        except OSError as e:
            raise StorageError(
                "Cannot create the data directory",
                operation="open",
                path=str(self.config.database_path),
                code=ErrorCode.STORAGE_CONNECTION_FAILED,
                original_error=e,
            ) from e
        self.created_new = not db_path.exists()
        with db_errors("open"):
            self.engine = init_db(self.config)
        self.session_factory = get_session_factory(self.engine)
        self.fts = FtsIndex(self.engine, self.session_factory)
        logger.info(f"Opened note store at {db_path} (new={self.created_new})")

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _advance(previous: Optional[datetime.datetime]) -> datetime.datetime:
        """Next ``updated_at``: now, but strictly after ``previous``."""
        now = _storage_now()
        if previous is not None and now <= previous:
            now = previous + datetime.timedelta(microseconds=1)
        return now

    @staticmethod
    def _load(session: Any, note_id: int, trashed: Optional[bool] = False) -> DBNote:
        """Fetch a note row in the expected trash state or raise NotFound.

        ``trashed=None`` accepts either state.
        """
        db_note = session.get(DBNote, note_id)
        if db_note is None:
            raise NoteNotFoundError(note_id)
        if trashed is False and db_note.deleted_at is not None:
            raise NoteNotFoundError(note_id, f"Note #{note_id} is in the trash")
        if trashed is True and db_note.deleted_at is None:
            raise NoteNotFoundError(note_id, f"Note #{note_id} is not in the trash")
        return db_note

    @staticmethod
    def _check_version(
        db_note: DBNote, expected_updated_at: Optional[datetime.datetime]
    ) -> None:
        if expected_updated_at is None:
            return
        actual = ensure_timezone_aware(db_note.updated_at)
        if ensure_timezone_aware(expected_updated_at) != actual:
            raise ConflictError(db_note.id, expected_updated_at, actual)

    @staticmethod
    def _to_model(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            title=db_note.title,
            body=db_note.body or "",
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
            pinned=bool(db_note.pinned),
            archived=bool(db_note.archived),
            deleted_at=(
                ensure_timezone_aware(db_note.deleted_at)
                if db_note.deleted_at is not None
                else None
            ),
            tags=sorted(tag.name for tag in db_note.tags),
        )

    # ------------------------------------------------------------------
    # Single-note operations
    # ------------------------------------------------------------------

    def create(self, title: str, body: str = "", pinned: bool = False) -> Note:
        """Insert a note and return it with its assigned id."""
        title = _clean_title(title)
        now = _storage_now()
        with db_errors("create"):
            with self.session_factory() as session:
                db_note = DBNote(
                    title=title,
                    body=body or "",
                    created_at=now,
                    updated_at=now,
                    pinned=pinned,
                    archived=False,
                )
                session.add(db_note)
                session.flush()
                note = self._to_model(db_note)
                session.commit()
        self.fts.invalidate()
        logger.info(f"Created note #{note.id}")
        return note

    def get(self, note_id: int, include_trashed: bool = False) -> Note:
        with db_errors("get"):
            with self.session_factory() as session:
                db_note = self._load(session, note_id, None if include_trashed else False)
                return self._to_model(db_note)

    def get_many(self, note_ids: Iterable[int]) -> List[Note]:
        """Fetch several notes, keeping the order of ``note_ids``.

        Ids that do not resolve are skipped.
        """
        ids = list(note_ids)
        if not ids:
            return []
        with db_errors("get_many"):
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBNote)
                    .options(selectinload(DBNote.tags))
                    .where(DBNote.id.in_(ids))
                ).all()
                by_id = {row.id: self._to_model(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def update(
        self,
        note_id: int,
        patch: NotePatch,
        expected_updated_at: Optional[datetime.datetime] = None,
    ) -> Note:
        """Apply a title/body patch.

        Raises:
            NoteNotFoundError: The note is missing or in the trash.
            ConflictError: ``expected_updated_at`` no longer matches.
            ValidationError: The new title is empty.
        """
        title = _clean_title(patch.title) if patch.title is not None else None
        with db_errors("update"):
            with self.session_factory() as session:
                db_note = self._load(session, note_id)
                self._check_version(db_note, expected_updated_at)
                if patch.is_empty:
                    return self._to_model(db_note)
                if title is not None:
                    db_note.title = title
                if patch.body is not None:
                    db_note.body = patch.body
                db_note.updated_at = self._advance(db_note.updated_at)
                session.flush()
                note = self._to_model(db_note)
                session.commit()
        self.fts.invalidate()
        logger.debug(f"Updated note #{note_id}")
        return note

    def set_flags(
        self,
        note_id: int,
        pinned: Optional[bool] = None,
        archived: Optional[bool] = None,
    ) -> Note:
        with db_errors("set_flags"):
            with self.session_factory() as session:
                db_note = self._load(session, note_id)
                if pinned is None and archived is None:
                    return self._to_model(db_note)
                if pinned is not None:
                    db_note.pinned = pinned
                if archived is not None:
                    db_note.archived = archived
                db_note.updated_at = self._advance(db_note.updated_at)
                session.flush()
                note = self._to_model(db_note)
                session.commit()
        return note

    def soft_delete(self, note_id: int) -> Note:
        """Move a note to the trash. Flags and tags are kept for restore."""
        with db_errors("soft_delete"):
            with self.session_factory() as session:
                db_note = self._load(session, note_id)
                now = self._advance(db_note.updated_at)
                db_note.deleted_at = now
                db_note.updated_at = now
                session.flush()
                note = self._to_model(db_note)
                session.commit()
        logger.info(f"Moved note #{note_id} to trash")
        return note

    def restore(self, note_id: int) -> Note:
        with db_errors("restore"):
            with self.session_factory() as session:
                db_note = self._load(session, note_id, trashed=True)
                db_note.deleted_at = None
                db_note.updated_at = self._advance(db_note.updated_at)
                session.flush()
                note = self._to_model(db_note)
                session.commit()
        logger.info(f"Restored note #{note_id}")
        return note

    # ------------------------------------------------------------------
    # Multi-note operations
    # ------------------------------------------------------------------

    def restore_many(self, note_ids: Iterable[int]) -> BulkResult:
        """Restore several trashed notes in one transaction.

        Ids that are missing or not trashed are reported, not fatal. A
        storage fault rolls back every restore.
        """
        result = BulkResult()
        with db_errors("restore_many"):
            with self.session_factory() as session:
                for note_id in dict.fromkeys(note_ids):
                    db_note = session.get(DBNote, note_id)
                    if db_note is None:
                        result.failed[note_id] = "not found"
                        continue
                    if db_note.deleted_at is None:
                        result.failed[note_id] = "not in trash"
                        continue
                    db_note.deleted_at = None
                    db_note.updated_at = self._advance(db_note.updated_at)
                    result.succeeded.append(note_id)
                session.commit()
        logger.info(
            f"restore_many: {len(result.succeeded)} restored, {len(result.failed)} skipped"
        )
        return result

    def purge_notes(self, note_ids: Iterable[int]) -> BulkResult:
        """Permanently delete specific trashed notes in one transaction."""
        result = BulkResult()
        with db_errors("purge_notes"):
            with self.session_factory() as session:
                for note_id in dict.fromkeys(note_ids):
                    db_note = session.get(DBNote, note_id)
                    if db_note is None:
                        result.failed[note_id] = "not found"
                        continue
                    if db_note.deleted_at is None:
                        result.failed[note_id] = "not in trash"
                        continue
                    session.delete(db_note)
                    result.succeeded.append(note_id)
                session.commit()
        if result.succeeded:
            self.fts.invalidate()
        logger.info(
            f"purge_notes: {len(result.succeeded)} purged, {len(result.failed)} skipped"
        )
        return result

    def purge_expired(
        self,
        now: Optional[datetime.datetime] = None,
        retention_days: Optional[int] = None,
    ) -> int:
        """Permanently delete notes trashed more than ``retention_days`` ago.

        A retention of zero disables automatic purging.

        Returns:
            Number of notes purged.
        """
        retention = self.config.retention_days if retention_days is None else retention_days
        if retention <= 0:
            return 0
        cutoff = to_storage_datetime((now or utc_now()) - datetime.timedelta(days=retention))
        with db_errors("purge_expired"):
            with self.session_factory() as session:
                result = session.execute(
                    delete(DBNote).where(
                        DBNote.deleted_at.is_not(None), DBNote.deleted_at < cutoff
                    )
                )
                session.commit()
                count = result.rowcount or 0
        if count:
            self.fts.invalidate()
            logger.info(f"Purged {count} notes older than {retention} days from trash")
        return count

    def purge_all_trashed(self) -> int:
        with db_errors("purge_all_trashed"):
            with self.session_factory() as session:
                result = session.execute(delete(DBNote).where(DBNote.deleted_at.is_not(None)))
                session.commit()
                count = result.rowcount or 0
        if count:
            self.fts.invalidate()
        logger.info(f"Emptied trash ({count} notes)")
        return count

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(
        self,
        note_filter: Optional[NoteFilter] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Note]:
        """Notes matching a filter in an explicit order (no relevance)."""
        stmt = (
            select(DBNote)
            .options(selectinload(DBNote.tags))
            .where(*note_filter_clauses(note_filter or NoteFilter()))
            .order_by(*sort_clauses(sort or SortSpec()))
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with db_errors("list"):
            with self.session_factory() as session:
                return [self._to_model(n) for n in session.scalars(stmt).all()]

    def iter_pages(
        self,
        note_filter: Optional[NoteFilter] = None,
        sort: Optional[SortSpec] = None,
        page_size: Optional[int] = None,
    ) -> Iterator[List[Note]]:
        """Lazily yield pages of ``page_size`` notes (viewport-sized by default)."""
        size = page_size or self.config.search_limit
        offset = 0
        while True:
            page = self.list(note_filter, sort, limit=size, offset=offset)
            if page:
                yield page
            if len(page) < size:
                return
            offset += size

    def count(self, note_filter: Optional[NoteFilter] = None) -> int:
        stmt = select(func.count(DBNote.id)).where(
            *note_filter_clauses(note_filter or NoteFilter())
        )
        with db_errors("count"):
            with self.session_factory() as session:
                return int(session.scalar(stmt) or 0)

    def list_trashed(self, limit: Optional[int] = None) -> List[Note]:
        """Trashed notes, most recently trashed first."""
        stmt = (
            select(DBNote)
            .options(selectinload(DBNote.tags))
            .where(DBNote.deleted_at.is_not(None))
            .order_by(DBNote.deleted_at.desc(), DBNote.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with db_errors("list_trashed"):
            with self.session_factory() as session:
                return [self._to_model(n) for n in session.scalars(stmt).all()]

    def trash_status(
        self,
        note: Note,
        retention_days: Optional[int] = None,
        now: Optional[datetime.datetime] = None,
    ) -> Optional[TrashStatus]:
        """How long a trashed note has before automatic purge.

        Returns None for notes that are not in the trash.
        """
        if note.deleted_at is None:
            return None
        retention = self.config.retention_days if retention_days is None else retention_days
        if retention <= 0:
            return TrashStatus("Manual purge only", indefinite=True)
        purge_at = note.deleted_at + datetime.timedelta(days=retention)
        remaining = int((purge_at - (now or utc_now())).total_seconds())
        if remaining <= 0:
            return TrashStatus("Expired, purge soon", expired=True)
        return TrashStatus(format_remaining(remaining))

    # ------------------------------------------------------------------
    # Index and maintenance
    # ------------------------------------------------------------------

    def reindex(self, note_id: int) -> None:
        """Re-mirror one note into the FTS5 index."""
        with db_errors("reindex"):
            with self.session_factory() as session:
                self.fts.reindex(session, note_id)
                session.commit()

    def rebuild_index(self) -> int:
        return self.fts.rebuild()

    def check_health(self) -> Dict[str, Any]:
        """SQLite and FTS5 integrity checks.

        Returns:
            Dict with ``healthy``, ``sqlite_ok``, ``fts_ok``, ``note_count``
            and a list of ``issues``.
        """
        issues: List[str] = []
        with db_errors("check_health"):
            with self.session_factory() as session:
                row = session.execute(
                    select(func.count(DBNote.id))
                ).scalar()
                note_count = int(row or 0)
                integrity = session.connection().exec_driver_sql(
                    "PRAGMA integrity_check"
                ).fetchone()
        sqlite_ok = integrity is not None and integrity[0] == "ok"
        if not sqlite_ok:
            issues.append(f"SQLite integrity check failed: {integrity[0] if integrity else '?'}")
        fts_ok = self.fts.integrity_ok()
        if not fts_ok:
            issues.append("FTS5 index is out of sync or damaged")
        return {
            "healthy": sqlite_ok and fts_ok,
            "sqlite_ok": sqlite_ok,
            "fts_ok": fts_ok,
            "note_count": note_count,
            "issues": issues,
        }

    def checkpoint(self, mode: str = "PASSIVE") -> Tuple[int, int, int]:
        """Run a WAL checkpoint outside of any caller transaction.

        Returns:
            ``(busy, log_frames, checkpointed_frames)`` as reported by SQLite.
        """
        mode = mode.upper()
        if mode not in _CHECKPOINT_MODES:
            raise ValidationError(f"Unknown checkpoint mode {mode}", field="mode", value=mode)
        with db_errors("checkpoint"):
            with self.engine.connect() as conn:
                row = conn.exec_driver_sql(f"PRAGMA wal_checkpoint({mode})").fetchone()
                conn.commit()
        busy, log_frames, checkpointed = (int(v) for v in row)
        logger.debug(f"WAL checkpoint {mode}: busy={busy} log={log_frames} done={checkpointed}")
        return busy, log_frames, checkpointed

    def probe_writable(self) -> bool:
        """Whether a write lock can be taken right now.

        Used to re-check a contended database without blocking on it.
        """
        raw = self.engine.raw_connection()
        try:
            cursor = raw.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                cursor.execute("ROLLBACK")
            finally:
                cursor.close()
            return True
        except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                return False
            raise StorageError(
                "Lock probe failed", operation="probe", original_error=e
            ) from e
        finally:
            raw.close()

    def seed_if_empty(self) -> int:
        """Insert the welcome notes into a freshly created database.

        Returns:
            Number of notes inserted.
        """
        if not (self.created_new and self.config.seed_notes):
            return 0
        self.created_new = False
        if self.count(NoteFilter(archived=None)) or self.count(NoteFilter(trashed=True, archived=None)):
            return 0
        now = _storage_now()
        with db_errors("seed"):
            with self.session_factory() as session:
                for title, body in SEED_NOTES:
                    session.add(DBNote(title=title, body=body, created_at=now, updated_at=now))
                session.commit()
        self.fts.invalidate()
        logger.info("Seeded first-run notes")
        return len(SEED_NOTES)

    # ------------------------------------------------------------------
    # Backup records
    # ------------------------------------------------------------------

    def record_backup(self, path: str, created_at: Optional[datetime.datetime] = None) -> BackupRecord:
        with db_errors("record_backup"):
            with self.session_factory() as session:
                row = DBBackup(path=path, created_at=to_storage_datetime(created_at or utc_now()))
                session.add(row)
                session.flush()
                record = BackupRecord(
                    id=row.id, created_at=ensure_timezone_aware(row.created_at), path=row.path
                )
                session.commit()
        return record

    def list_backup_records(self) -> List[BackupRecord]:
        with db_errors("list_backups"):
            with self.session_factory() as session:
                rows = session.scalars(
                    select(DBBackup).order_by(DBBackup.created_at.desc(), DBBackup.id.desc())
                ).all()
                return [
                    BackupRecord(
                        id=r.id, created_at=ensure_timezone_aware(r.created_at), path=r.path
                    )
                    for r in rows
                ]
