"""Debounced autosave sessions and startup recovery.

Each open edit has a DraftSession moving through
``CLEAN -> DIRTY -> DEBOUNCING -> SNAPSHOTTED -> CLEAN``. The
AutosaveScheduler arms the debounce timers on the asyncio loop and does
the file writes in an executor so the loop never blocks on disk.
"""
import asyncio
import datetime
import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from notecore.config import NoteCoreConfig
from notecore.models.schema import Note, utc_now
from notecore.journal.snapshots import (Snapshot, SnapshotJournal, draft_key,
                                        note_key)
from notecore.utils import build_recovery_preview, format_relative_age

logger = logging.getLogger(__name__)


class DraftState(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    DEBOUNCING = "debouncing"
    SNAPSHOTTED = "snapshotted"


class DraftSession:
    """State of one open edit buffer.

    Every edit bumps ``revision``. A flush writes the current revision at
    most once: a flush racing a write of the same revision blocks until
    that write is durable and then returns None, so a debounce timer
    racing an explicit save produces a single snapshot.
    """

    def __init__(
        self,
        journal: SnapshotJournal,
        note_id: Optional[int] = None,
        title: str = "",
        body: str = "",
        base_updated_at: Optional[datetime.datetime] = None,
        draft_id: Optional[str] = None,
    ):
        self.journal = journal
        self.note_id = note_id
        self.draft_id = draft_id or (None if note_id is not None else uuid.uuid4().hex[:12])
        self.title = title
        self.body = body
        self.base_updated_at = base_updated_at
        self.state = DraftState.CLEAN
        self.revision = 0
        self.snapshot_revision = 0
        self.committed_revision = 0
        self.last_snapshot: Optional[Snapshot] = None
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()

    @property
    def key(self) -> str:
        if self.note_id is not None:
            return note_key(self.note_id)
        return draft_key(self.draft_id)

    def edit(self, body: Optional[str] = None, title: Optional[str] = None) -> int:
        """Apply an edit to the buffer. Returns the new revision."""
        with self._lock:
            if body is not None:
                self.body = body
            if title is not None:
                self.title = title
            self.revision += 1
            if self.state in (DraftState.CLEAN, DraftState.SNAPSHOTTED):
                self.state = DraftState.DIRTY
            return self.revision

    def mark_debouncing(self) -> None:
        with self._lock:
            if self.state == DraftState.DIRTY:
                self.state = DraftState.DEBOUNCING

    def content(self) -> Tuple[int, str, str]:
        """``(revision, title, body)`` read atomically."""
        with self._lock:
            return self.revision, self.title, self.body

    def flush(self) -> Optional[Snapshot]:
        """Write the current buffer to the journal if it is not written yet.

        Blocking; the scheduler calls it from an executor thread.

        Raises:
            JournalWriteError: The snapshot could not be made durable; the
                session stays dirty.
        """
        with self._lock:
            if self.revision <= self.snapshot_revision:
                return None
        # A write of this revision may be in flight; wait for it to be durable
        with self._write_lock:
            with self._lock:
                revision = self.revision
                if revision <= self.snapshot_revision:
                    return None
                title, body, key = self.title, self.body, self.key
            snapshot = self.journal.write(
                key,
                body,
                title=title,
                note_id=self.note_id,
                draft_id=self.draft_id,
                base_updated_at=self.base_updated_at,
            )
            with self._lock:
                self.snapshot_revision = revision
                self.last_snapshot = snapshot
                if self.revision == revision:
                    self.state = DraftState.SNAPSHOTTED
        return snapshot

    def save_now(self) -> Optional[Snapshot]:
        """Explicit save: flush immediately, skipping the debounce wait."""
        return self.flush()

    def mark_committed(self, revision: int, note: Note) -> None:
        """Record that ``revision`` is durable in the record store.

        A draft for a new note adopts the created note's id. Snapshots up
        to the committed revision are superseded; if the buffer changed
        since, the session stays dirty.
        """
        with self._lock:
            old_key = self.key
            if self.note_id is None:
                self.note_id = note.id
            self.base_updated_at = note.updated_at
            self.committed_revision = max(self.committed_revision, revision)
            snapshot = self.last_snapshot
            covered = snapshot is not None and self.snapshot_revision <= revision
            if self.revision <= revision:
                self.state = DraftState.CLEAN
        if covered:
            self.journal.mark_superseded(old_key, snapshot.generation)
        if old_key != self.key:
            self.journal.mark_superseded(old_key)

    @property
    def is_clean(self) -> bool:
        return self.state == DraftState.CLEAN

    @classmethod
    def resume(cls, journal: SnapshotJournal, snapshot: Snapshot) -> "DraftSession":
        """Reopen a recovered snapshot as a pending edit.

        The buffer is already durable, so the session starts SNAPSHOTTED
        and only needs to be committed.
        """
        session = cls(
            journal,
            note_id=snapshot.note_id,
            title=snapshot.title,
            body=snapshot.body,
            base_updated_at=snapshot.base_updated_at,
            draft_id=snapshot.draft_id,
        )
        session.revision = 1
        session.snapshot_revision = 1
        session.last_snapshot = snapshot
        session.state = DraftState.SNAPSHOTTED
        return session


CommitFn = Callable[[DraftSession, str, str], Awaitable[Note]]


class AutosaveScheduler:
    """Debounce timers and commits for open DraftSessions.

    Args:
        journal: The snapshot journal
        cfg: Configuration (``debounce_ms``, ``autosave_enabled``)
        commit: Coroutine that writes ``(session, title, body)`` to the
            record store and returns the stored note
    """

    def __init__(
        self,
        journal: SnapshotJournal,
        cfg: NoteCoreConfig,
        commit: Optional[CommitFn] = None,
    ):
        self.journal = journal
        self.config = cfg
        self._commit = commit
        self._sessions: Dict[str, DraftSession] = {}
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._commit_locks: Dict[int, asyncio.Lock] = {}
        self.last_error: Optional[BaseException] = None

    @property
    def sessions(self) -> List[DraftSession]:
        return list(self._sessions.values())

    def open(self, note: Optional[Note] = None) -> DraftSession:
        """Start (or return) the edit session for a note, or a new draft."""
        if note is not None:
            existing = self._sessions.get(note_key(note.id))
            if existing is not None:
                return existing
            session = DraftSession(
                self.journal,
                note_id=note.id,
                title=note.title,
                body=note.body,
                base_updated_at=note.updated_at,
            )
        else:
            session = DraftSession(self.journal)
        self._sessions[session.key] = session
        return session

    def adopt(self, session: DraftSession) -> DraftSession:
        """Track a session created elsewhere (e.g. a resumed snapshot)."""
        self._sessions[session.key] = session
        return session

    def close(self, session: DraftSession) -> None:
        self._cancel_timer(session)
        self._commit_locks.pop(id(session), None)
        self._sessions.pop(session.key, None)

    def _cancel_timer(self, session: DraftSession) -> None:
        handle = self._timers.pop(id(session), None)
        if handle is not None:
            handle.cancel()

    def edit(
        self, session: DraftSession, body: Optional[str] = None, title: Optional[str] = None
    ) -> None:
        """Apply an edit and (re)arm the debounce timer. Must run on the loop."""
        session.edit(body=body, title=title)
        self._cancel_timer(session)
        loop = asyncio.get_running_loop()
        delay = self.config.debounce_ms / 1000.0
        self._timers[id(session)] = loop.call_later(delay, self._on_timer, session)
        session.mark_debouncing()

    def _on_timer(self, session: DraftSession) -> None:
        self._timers.pop(id(session), None)
        task = asyncio.get_running_loop().create_task(self._debounced_flush(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _debounced_flush(self, session: DraftSession) -> None:
        try:
            await self.flush(session, commit=self.config.autosave_enabled)
        except Exception as e:
            # No caller awaits a timer task; keep the error for the presentation layer
            self.last_error = e
            logger.error(f"Autosave for {session.key} failed: {e}")

    async def flush(self, session: DraftSession, commit: bool = False) -> Optional[Snapshot]:
        """Snapshot the session off the loop, then optionally commit it."""
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(None, session.flush)
        if commit:
            await self.commit(session)
        return snapshot

    async def save_now(self, session: DraftSession) -> Optional[Snapshot]:
        """Explicit save: snapshot immediately and commit to the store."""
        self._cancel_timer(session)
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(None, session.save_now)
        await self.commit(session)
        return snapshot

    async def commit(self, session: DraftSession) -> Optional[Note]:
        """Write the session's content to the record store.

        Commits for one session run one at a time, so a debounce commit
        racing an explicit save writes the revision once. Returns None when
        there is nothing new to commit or no commit function is configured.
        """
        if self._commit is None:
            return None
        lock = self._commit_locks.setdefault(id(session), asyncio.Lock())
        async with lock:
            revision, title, body = session.content()
            if revision <= session.committed_revision:
                return None
            old_key = session.key
            note = await self._commit(session, title, body)
            session.mark_committed(revision, note)
            if old_key != session.key:
                self._sessions.pop(old_key, None)
                self._sessions[session.key] = session
            return note

    async def flush_all(self, commit: bool = False) -> int:
        """Flush every open session (used on clean shutdown)."""
        count = 0
        for session in self.sessions:
            self._cancel_timer(session)
            if await self.flush(session, commit=commit) is not None:
                count += 1
        return count

    def flush_all_sync(self) -> int:
        """Blocking flush of every session, for a fatal shutdown path."""
        count = 0
        for session in self.sessions:
            self._cancel_timer(session)
            if session.flush() is not None:
                count += 1
        return count


@dataclass
class RecoveryEntry:
    """A recoverable draft as shown at startup."""

    snapshot: Snapshot
    age: str
    preview: List[str]

    @property
    def key(self) -> str:
        return self.snapshot.key

    @property
    def is_new_note(self) -> bool:
        return self.snapshot.note_id is None


def list_recovery(
    journal: SnapshotJournal, now: Optional[datetime.datetime] = None
) -> List[RecoveryEntry]:
    """Live snapshots with their relative age and a content preview."""
    now = now or utc_now()
    return [
        RecoveryEntry(
            snapshot=s,
            age=format_relative_age(s.created_at, now),
            preview=build_recovery_preview(s.body),
        )
        for s in journal.pending()
    ]
