"""Storage access coordinator.

The database handle is owned by one dedicated worker thread. Callers on
the asyncio loop submit requests; the worker executes them strictly in
submission order and hands results back through futures, so the loop never
blocks on SQLite and no two writes ever race.

Between requests the worker runs periodic WAL checkpoints and, while the
database is contended by another process, re-checks the lock.
"""
import asyncio
import datetime
import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from notecore.backup import BackupManager
from notecore.config import NoteCoreConfig
from notecore.config import config as default_config
from notecore.exceptions import ErrorCode, NoteCoreError, StorageContendedError, StorageError
from notecore.models.schema import (BackupRecord, BulkResult, MergeReport, Note,
                                    NoteFilter, NotePatch, SearchHit, SortSpec,
                                    Tag)
from notecore.observability import MetricsCollector, timed_operation
from notecore.services.search_service import SearchService
from notecore.storage.note_store import NoteStore
from notecore.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)

_STOP = object()


class StorageCoordinator:
    """Single storage worker with an asyncio-facing request API.

    Args:
        cfg: Configuration; defaults to the process-wide ``config``
        metrics: Collector for per-operation timings; one writing to the
            configured metrics file is created when omitted
    """

    def __init__(
        self,
        cfg: Optional[NoteCoreConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = cfg or default_config
        self.metrics = metrics or MetricsCollector(self.config.get_metrics_file())
        self.contended = False
        self.store: Optional[NoteStore] = None
        self.tags: Optional[TagRepository] = None
        self.search_service: Optional[SearchService] = None
        self.backups: Optional[BackupManager] = None

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker and wait until the store is open.

        Raises:
            StorageError: The database could not be opened.
        """
        if self.running:
            return
        self._ready.clear()
        self._startup_error = None
        self._closed = False
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="notecore-storage"
        )
        self._thread.start()
        self._ready.wait()
        if self._startup_error is not None:
            self._thread.join()
            self._thread = None
            raise self._startup_error

    def _open_components(self) -> None:
        self.store = NoteStore(self.config)
        self.tags = TagRepository(self.store.session_factory)
        self.search_service = SearchService(self.store, self.config)
        self.backups = BackupManager(self.store)

    def _run(self) -> None:
        try:
            self._open_components()
        except Exception as e:
            logger.error(f"Storage worker failed to start: {e}")
            self._startup_error = e
            self._ready.set()
            return
        self._ready.set()
        logger.info("Storage worker started")

        interval = self.config.checkpoint_interval_s or None
        try:
            while True:
                try:
                    item = self._queue.get(timeout=interval)
                except queue.Empty:
                    self._idle_tick()
                    continue
                if item is _STOP:
                    break
                self._execute(*item)
        finally:
            self.store.close()
            logger.info("Storage worker stopped")

    def _execute(
        self, operation: str, fn: Callable[..., Any], args: Tuple, kwargs: Dict, future: Future
    ) -> None:
        if not future.set_running_or_notify_cancel():
            logger.debug(f"Skipping cancelled request {operation}")
            return
        try:
            with timed_operation(self.metrics, operation):
                result = fn(*args, **kwargs)
        except StorageContendedError as e:
            if not self.contended:
                logger.warning(f"Database contended during {operation}; writes postponed")
            self.contended = True
            future.set_exception(e)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    def _idle_tick(self) -> None:
        """Maintenance between requests: lock re-check and WAL checkpoint."""
        try:
            if self.contended:
                if not self.store.probe_writable():
                    return
                self.contended = False
                logger.info("Database lock released; writes resumed")
            with timed_operation(self.metrics, "checkpoint"):
                self.store.checkpoint("PASSIVE")
        except StorageContendedError:
            self.contended = True
        except NoteCoreError as e:
            logger.error(f"Idle maintenance failed: {e}")

    def submit(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Queue ``fn(*args, **kwargs)`` for the worker.

        ``fn`` runs on the worker thread, after every previously submitted
        request.
        """
        if self._closed or not self.running:
            raise StorageError(
                "Storage worker is not running",
                operation=operation,
                code=ErrorCode.STORAGE_CONNECTION_FAILED,
            )
        future: Future = Future()
        self._queue.put((operation, fn, args, kwargs, future))
        return future

    async def call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Submit a request and await its result without blocking the loop.

        Cancelling the awaiting task drops the request if the worker has
        not started it yet.
        """
        return await asyncio.wrap_future(self.submit(operation, fn, *args, **kwargs))

    def close(self, backup: bool = False) -> Optional[BackupRecord]:
        """Drain the queue, optionally back up, stop the worker, save metrics.

        A failed backup is logged and re-raised after the worker stops.
        """
        if not self.running:
            return None
        record = None
        error: Optional[BaseException] = None
        if backup:
            try:
                record = self.submit("backup", lambda: self.backups.backup_database()).result()
            except StorageError as e:
                logger.error(f"Backup on exit failed: {e}")
                error = e
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join()
        self._thread = None
        self.metrics.save()
        if error is not None:
            raise error
        return record

    # ------------------------------------------------------------------
    # Record store
    # ------------------------------------------------------------------

    async def create_note(self, title: str, body: str = "", pinned: bool = False) -> Note:
        return await self.call("create", lambda: self.store.create(title, body, pinned))

    async def get_note(self, note_id: int, include_trashed: bool = False) -> Note:
        return await self.call("get", lambda: self.store.get(note_id, include_trashed))

    async def update_note(
        self,
        note_id: int,
        patch: NotePatch,
        expected_updated_at: Optional[datetime.datetime] = None,
    ) -> Note:
        return await self.call(
            "update", lambda: self.store.update(note_id, patch, expected_updated_at)
        )

    async def set_flags(
        self, note_id: int, pinned: Optional[bool] = None, archived: Optional[bool] = None
    ) -> Note:
        return await self.call("set_flags", lambda: self.store.set_flags(note_id, pinned, archived))

    async def soft_delete(self, note_id: int) -> Note:
        return await self.call("soft_delete", lambda: self.store.soft_delete(note_id))

    async def restore(self, note_id: int) -> Note:
        return await self.call("restore", lambda: self.store.restore(note_id))

    async def restore_many(self, note_ids: Iterable[int]) -> BulkResult:
        ids = list(note_ids)
        return await self.call("restore_many", lambda: self.store.restore_many(ids))

    async def purge_notes(self, note_ids: Iterable[int]) -> BulkResult:
        ids = list(note_ids)
        return await self.call("purge_notes", lambda: self.store.purge_notes(ids))

    async def purge_expired(self, now: Optional[datetime.datetime] = None) -> int:
        return await self.call("purge_expired", lambda: self.store.purge_expired(now))

    async def purge_all_trashed(self) -> int:
        return await self.call("purge_all_trashed", lambda: self.store.purge_all_trashed())

    async def list_notes(
        self,
        note_filter: Optional[NoteFilter] = None,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Note]:
        return await self.call(
            "list", lambda: self.store.list(note_filter, sort, limit=limit, offset=offset)
        )

    async def list_trashed(self, limit: Optional[int] = None) -> List[Note]:
        return await self.call("list_trashed", lambda: self.store.list_trashed(limit))

    async def seed_if_empty(self) -> int:
        return await self.call("seed", lambda: self.store.seed_if_empty())

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self, query: str, limit: Optional[int] = None, regex: bool = False
    ) -> List[SearchHit]:
        return await self.call(
            "search", lambda: self.search_service.search(query, limit=limit, regex=regex)
        )

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    async def add_tag(self, note_id: int, name: str) -> Tag:
        return await self.call("tag_add", lambda: self.tags.add(note_id, name))

    async def remove_tag(self, note_id: int, name: str) -> None:
        return await self.call("tag_remove", lambda: self.tags.remove(note_id, name))

    async def rename_tag(self, tag_id: int, new_name: str) -> Tag:
        return await self.call("tag_rename", lambda: self.tags.rename(tag_id, new_name))

    async def merge_tags(self, target: str, sources: Iterable[str]) -> MergeReport:
        names = list(sources)
        return await self.call("tag_merge", lambda: self.tags.merge(target, names))

    async def delete_tag(self, tag_id: int) -> int:
        return await self.call("tag_delete", lambda: self.tags.delete(tag_id))

    async def get_tag_by_name(self, name: str) -> Optional[Tag]:
        return await self.call("tag_get", lambda: self.tags.get_by_name(name))

    async def list_tags(self, include_trashed: bool = False) -> List[Tag]:
        return await self.call("tag_list", lambda: self.tags.list_with_counts(include_trashed))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def check_health(self) -> Dict[str, Any]:
        return await self.call("check_health", lambda: self.store.check_health())

    async def rebuild_index(self) -> int:
        return await self.call("rebuild_index", lambda: self.store.rebuild_index())

    async def checkpoint(self, mode: str = "PASSIVE") -> Tuple[int, int, int]:
        return await self.call("checkpoint", lambda: self.store.checkpoint(mode))

    async def backup(self, label: Optional[str] = None) -> BackupRecord:
        return await self.call("backup", lambda: self.backups.backup_database(label=label))

    async def list_backups(self) -> List[Dict[str, Any]]:
        return await self.call("list_backups", lambda: self.backups.list_backups())

    async def recheck_lock(self) -> bool:
        """Probe the lock now instead of waiting for the next idle tick."""

        def probe() -> bool:
            writable = self.store.probe_writable()
            self.contended = not writable
            return writable

        return await self.call("probe", probe)
