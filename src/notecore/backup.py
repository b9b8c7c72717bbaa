"""Database backups written on clean shutdown (and on demand).

Backups use SQLite's online backup API so they are consistent even while
the WAL holds uncheckpointed frames, are gzip-compressed, rotated by
count, and recorded in the ``backups`` table.
"""
import gzip
import logging
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from notecore.exceptions import ErrorCode, StorageError
from notecore.models.schema import BackupRecord
from notecore.storage.note_store import NoteStore

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "notes_"


class BackupManager:
    """Creates, rotates and lists backups of the note database.

    Args:
        store: The open record store (its database is the backup source).
        backup_dir: Target directory; defaults to the configured one.
        max_backups: Backup files kept on disk (0 keeps all).
    """

    def __init__(
        self,
        store: NoteStore,
        backup_dir: Optional[Path] = None,
        max_backups: Optional[int] = None,
    ):
        self.store = store
        self.backup_dir = Path(backup_dir) if backup_dir else store.config.get_backup_dir()
        self.max_backups = store.config.max_backups if max_backups is None else max_backups

    def backup_database(self, compress: bool = True, label: Optional[str] = None) -> BackupRecord:
        """Write a backup and record it.

        Args:
            compress: Gzip the copy
            label: Optional label included in the filename

        Returns:
            The new backup record.

        Raises:
            StorageError: The backup could not be written.
        """
        db_path = self.store.config.get_db_path()
        now = datetime.now(timezone.utc)
        label_part = f"_{label}" if label else ""
        ext = ".db.gz" if compress else ".db"
        backup_path = self.backup_dir / f"{BACKUP_PREFIX}{now.strftime('%Y%m%dT%H%M%S%f')}{label_part}{ext}"

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            if compress:
                temp_path = backup_path.with_suffix("")
                self._sqlite_backup(db_path, temp_path)
                self._gzip_file(temp_path, backup_path)
                temp_path.unlink()
            else:
                self._sqlite_backup(db_path, backup_path)
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Database backup failed: {e}", exc_info=True)
            raise StorageError(
                "Database backup failed",
                operation="backup",
                path=str(backup_path),
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        size_mb = backup_path.stat().st_size / (1024 * 1024)
        logger.info(f"Database backup created: {backup_path} ({size_mb:.2f} MB)")
        record = self.store.record_backup(str(backup_path), now)
        self._rotate_backups()
        return record

    @staticmethod
    def _sqlite_backup(source: Path, dest: Path) -> None:
        source_conn = sqlite3.connect(str(source))
        dest_conn = sqlite3.connect(str(dest))
        try:
            source_conn.backup(dest_conn)
        finally:
            dest_conn.close()
            source_conn.close()

    @staticmethod
    def _gzip_file(source: Path, dest: Path) -> None:
        with open(source, "rb") as f_in:
            with gzip.open(dest, "wb", compresslevel=6) as f_out:
                shutil.copyfileobj(f_in, f_out)

    def _backup_files(self) -> List[Path]:
        """Backup files on disk, newest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.db*"), key=lambda p: p.name, reverse=True)

    def _rotate_backups(self) -> int:
        """Remove backup files beyond ``max_backups``.

        Rows in the ``backups`` table are history and stay.
        """
        if self.max_backups <= 0:
            return 0
        removed = 0
        for backup in self._backup_files()[self.max_backups:]:
            try:
                backup.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"Could not remove old backup {backup}: {e}")
        if removed:
            logger.info(f"Rotated {removed} old backup(s)")
        return removed

    def list_backups(self) -> List[Dict[str, Any]]:
        """Recorded backups, newest first, with on-disk status."""
        backups = []
        for record in self.store.list_backup_records():
            path = Path(record.path)
            exists = path.exists()
            backups.append({
                "id": record.id,
                "path": record.path,
                "created_at": record.created_at.isoformat(),
                "exists": exists,
                "size_bytes": path.stat().st_size if exists else 0,
            })
        return backups
