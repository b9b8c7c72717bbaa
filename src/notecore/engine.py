"""Top-level wiring of the note core.

NoteEngine owns the storage coordinator, the autosave journal and the
live search session, and runs the startup and shutdown sequences.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from notecore.config import NoteCoreConfig
from notecore.config import config as default_config
from notecore.coordinator import StorageCoordinator
from notecore.exceptions import DatabaseCorruptionError, NoteNotFoundError, is_fatal
from notecore.journal.autosave import (AutosaveScheduler, DraftSession,
                                       RecoveryEntry, list_recovery)
from notecore.journal.snapshots import SnapshotJournal
from notecore.live_search import LiveSearch
from notecore.models.schema import BackupRecord, Note, NotePatch
from notecore.observability import configure_logging

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"


@dataclass
class StartupReport:
    """What happened while opening the store."""

    health: Dict[str, Any] = field(default_factory=dict)
    index_rebuilt: bool = False
    seeded: int = 0
    purged: int = 0
    pruned_snapshots: int = 0
    recovery: List[RecoveryEntry] = field(default_factory=list)


class NoteEngine:
    """Config, storage worker, journal and live search in one place.

    Typical use from an event loop::

        engine = NoteEngine(cfg)
        report = await engine.startup()
        ...
        await engine.shutdown()
    """

    def __init__(self, cfg: Optional[NoteCoreConfig] = None, log_to_file: bool = True):
        self.config = cfg or default_config
        self.log_to_file = log_to_file
        self.coordinator = StorageCoordinator(self.config)
        self.journal = SnapshotJournal(
            self.config.get_journal_dir(), self.config.snapshot_retention_hours
        )
        self.autosave = AutosaveScheduler(self.journal, self.config, commit=self._commit_session)
        self.live_search = LiveSearch(self.coordinator)
        self.recovery: List[RecoveryEntry] = []

    async def startup(self) -> StartupReport:
        """Open the store and run the startup maintenance.

        Raises:
            DatabaseCorruptionError: The base tables fail the integrity
                check (a damaged search index is rebuilt instead).
        """
        if self.log_to_file:
            configure_logging(self.config.get_log_dir())
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.coordinator.start)

        report = StartupReport()
        report.health = await self.coordinator.check_health()
        if not report.health["sqlite_ok"]:
            await loop.run_in_executor(None, self.coordinator.close)
            raise DatabaseCorruptionError(
                "Note database failed its integrity check: "
                + "; ".join(report.health["issues"])
            )
        if not report.health["fts_ok"]:
            logger.warning("Search index damaged; rebuilding")
            await self.coordinator.rebuild_index()
            report.index_rebuilt = True

        report.seeded = await self.coordinator.seed_if_empty()
        await loop.run_in_executor(None, self.journal.cleanup_temp)
        report.pruned_snapshots = await loop.run_in_executor(None, self.journal.prune)
        if self.config.crash_recovery:
            self.recovery = await loop.run_in_executor(None, list_recovery, self.journal)
            report.recovery = list(self.recovery)
            if self.recovery:
                logger.info(f"{len(self.recovery)} draft(s) available for recovery")
        report.purged = await self.coordinator.purge_expired()
        return report

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    async def _commit_session(self, session: DraftSession, title: str, body: str) -> Note:
        """Write a draft to the record store (create for new drafts)."""
        if session.note_id is None:
            return await self.coordinator.create_note(title.strip() or UNTITLED, body)
        patch = NotePatch(title=title if title.strip() else None, body=body)
        return await self.coordinator.update_note(
            session.note_id, patch, expected_updated_at=session.base_updated_at
        )

    async def open_note(self, note_id: int) -> DraftSession:
        note = await self.coordinator.get_note(note_id)
        return self.autosave.open(note)

    def new_draft(self) -> DraftSession:
        return self.autosave.open()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def commit_recovered(self, entry: RecoveryEntry) -> Note:
        """Apply a recovered draft to the record store.

        The draft replaces the note's current content. If the note no
        longer exists the draft becomes a new note. The snapshot is only
        superseded once the commit succeeded.
        """
        snapshot = entry.snapshot
        session = DraftSession.resume(self.journal, snapshot)
        title = snapshot.title.strip()
        note: Optional[Note] = None
        if snapshot.note_id is not None:
            patch = NotePatch(title=title or None, body=snapshot.body)
            try:
                note = await self.coordinator.update_note(snapshot.note_id, patch)
            except NoteNotFoundError:
                logger.warning(
                    f"Note #{snapshot.note_id} for recovered draft is gone; creating a new note"
                )
        if note is None:
            note = await self.coordinator.create_note(title or UNTITLED, snapshot.body)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, session.mark_committed, session.revision, note)
        self.recovery = [e for e in self.recovery if e.key != entry.key]
        logger.info(f"Recovered draft {entry.key} into note #{note.id}")
        return note

    async def discard_recovered(self, entry: RecoveryEntry) -> bool:
        loop = asyncio.get_running_loop()
        removed = await loop.run_in_executor(None, self.journal.discard, entry.snapshot)
        self.recovery = [e for e in self.recovery if e.key != entry.key]
        return removed

    async def discard_all_recovered(self) -> int:
        loop = asyncio.get_running_loop()
        count = await loop.run_in_executor(None, self.journal.discard_all)
        self.recovery = []
        return count

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> Optional[BackupRecord]:
        """Flush drafts, stop the worker and write the exit backup."""
        self.live_search.cancel()
        await self.autosave.flush_all(commit=False)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.coordinator.close(backup=self.config.backup_on_exit)
        )

    def fatal_shutdown(self, error: BaseException) -> None:
        """Last-chance journal flush before an unrecoverable error propagates.

        Always re-raises ``error``.
        """
        logger.critical(f"Fatal storage error: {error}")
        try:
            flushed = self.autosave.flush_all_sync()
        except Exception as flush_error:
            logger.critical(f"Final journal flush failed: {flush_error}")
            raise error
        logger.info(f"Final flush wrote {flushed} snapshot(s)")
        raise error

    async def guard(self, awaitable: Any) -> Any:
        """Await a storage call, running the fatal path for storage faults."""
        try:
            return await awaitable
        except Exception as e:
            if is_fatal(e):
                self.fatal_shutdown(e)
            raise
