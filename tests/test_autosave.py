"""Tests for draft sessions, the debounced autosave scheduler and recovery listing."""
import asyncio
import itertools
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from notecore.journal.autosave import (AutosaveScheduler, DraftSession,
                                       DraftState, list_recovery)
from notecore.journal.snapshots import SnapshotJournal, note_key
from notecore.models.schema import Note


class SlowJournal(SnapshotJournal):
    """Journal whose writes take long enough for a second flush to race them."""

    def write(self, *args, **kwargs):
        time.sleep(0.1)
        return super().write(*args, **kwargs)


def _note(note_id=1, title="Title", body=""):
    return Note(id=note_id, title=title, body=body)


async def wait_until(condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestDraftSession:
    def test_edit_marks_dirty(self, journal):
        session = DraftSession(journal, note_id=1, title="T", body="")
        assert session.state == DraftState.CLEAN
        assert session.edit(body="hello") == 1
        assert session.state == DraftState.DIRTY

    def test_flush_writes_once_per_revision(self, journal):
        session = DraftSession(journal, note_id=1)
        session.edit(body="hello")
        snapshot = session.flush()
        assert snapshot is not None and snapshot.body == "hello"
        assert session.state == DraftState.SNAPSHOTTED
        assert session.flush() is None
        assert len(journal.all()) == 1

    def test_concurrent_flushes_produce_one_snapshot(self, journal):
        session = DraftSession(journal, note_id=1)
        session.edit(body="racing")
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: session.flush(), range(4)))
        assert sum(1 for r in results if r is not None) == 1
        assert len(journal.all()) == 1

    def test_new_edit_supersedes_previous_snapshot(self, journal):
        session = DraftSession(journal, note_id=1)
        session.edit(body="v1")
        session.flush()
        session.edit(body="v2")
        assert session.state == DraftState.DIRTY
        session.save_now()
        assert [s.body for s in journal.pending()] == ["v2"]

    def test_commit_supersedes_and_cleans(self, journal):
        session = DraftSession(journal, note_id=1)
        revision = session.edit(body="v1")
        session.flush()
        committed = _note(1, body="v1")
        session.mark_committed(revision, committed)
        assert session.is_clean
        assert session.base_updated_at == committed.updated_at
        assert journal.pending() == []

    def test_commit_of_older_revision_keeps_session_dirty(self, journal):
        session = DraftSession(journal, note_id=1)
        old_revision = session.edit(body="v1")
        session.flush()
        session.edit(body="v2")
        session.mark_committed(old_revision, _note(1, body="v1"))
        assert session.state == DraftState.DIRTY
        # v1 is in the store now, v2 still needs a snapshot
        assert journal.pending() == []
        assert session.flush().body == "v2"

    def test_new_draft_adopts_note_id(self, journal):
        session = DraftSession(journal)
        assert session.key.startswith("new-")
        revision = session.edit(title="Fresh", body="content")
        session.flush()
        session.mark_committed(revision, _note(7, title="Fresh", body="content"))
        assert session.note_id == 7
        assert session.key == note_key(7)
        assert journal.pending() == []

    def test_resume_from_snapshot(self, journal):
        snapshot = journal.write(note_key(3), "recovered", title="T", note_id=3)
        session = DraftSession.resume(journal, snapshot)
        assert session.state == DraftState.SNAPSHOTTED
        assert session.body == "recovered"
        assert session.flush() is None


def _recording_commit():
    calls = []
    ids = itertools.count(100)

    async def commit(session, title, body):
        calls.append((session.key, title, body))
        note_id = session.note_id if session.note_id is not None else next(ids)
        return Note(id=note_id, title=title or "Untitled", body=body)

    return calls, commit


class TestScheduler:
    @pytest.mark.anyio
    async def test_debounce_coalesces_rapid_edits(self, journal, test_config):
        cfg = test_config.model_copy(update={"autosave_enabled": False})
        scheduler = AutosaveScheduler(journal, cfg)
        session = scheduler.open(_note(1))
        for i in range(5):
            scheduler.edit(session, body=f"typing {i}")
        assert session.state == DraftState.DEBOUNCING
        await wait_until(lambda: session.state == DraftState.SNAPSHOTTED)
        assert len(journal.all()) == 1
        assert journal.pending()[0].body == "typing 4"

    @pytest.mark.anyio
    async def test_debounce_commits_when_autosave_enabled(self, journal, test_config):
        calls, commit = _recording_commit()
        scheduler = AutosaveScheduler(journal, test_config, commit=commit)
        session = scheduler.open(_note(1))
        scheduler.edit(session, body="autosaved")
        await wait_until(lambda: calls and session.is_clean)
        assert calls == [("note-1", "Title", "autosaved")]
        assert journal.pending() == []

    @pytest.mark.anyio
    async def test_save_now_skips_debounce(self, journal, test_config):
        calls, commit = _recording_commit()
        cfg = test_config.model_copy(update={"debounce_ms": 60_000})
        scheduler = AutosaveScheduler(journal, cfg, commit=commit)
        session = scheduler.open()
        scheduler.edit(session, title="Draft", body="saved explicitly")
        snapshot = await scheduler.save_now(session)
        assert snapshot.body == "saved explicitly"
        assert calls == [(snapshot.key, "Draft", "saved explicitly")]
        assert session.note_id == 100
        assert [s.key for s in scheduler.sessions] == [note_key(100)]
        assert journal.pending() == []

    @pytest.mark.anyio
    async def test_save_waits_for_debounce_write(self, journal, test_config):
        slow_journal = SlowJournal(journal.directory, retention_hours=24)
        on_disk_at_commit = []

        async def commit(session, title, body):
            on_disk_at_commit.append([s.body for s in slow_journal.pending()])
            return Note(id=1, title=title, body=body)

        scheduler = AutosaveScheduler(slow_journal, test_config, commit=commit)
        session = scheduler.open(_note(1))
        session.edit(body="v1")
        debounce = asyncio.ensure_future(scheduler.flush(session))
        await asyncio.sleep(0.02)  # debounce write is holding the write lock
        assert await scheduler.save_now(session) is None
        await debounce
        assert on_disk_at_commit == [["v1"]]
        assert len(slow_journal.all()) == 1

    @pytest.mark.anyio
    async def test_racing_commits_write_once(self, journal, test_config):
        calls = []

        async def slow_commit(session, title, body):
            calls.append(body)
            await asyncio.sleep(0.02)
            return Note(id=100, title=title or "Untitled", body=body)

        scheduler = AutosaveScheduler(journal, test_config, commit=slow_commit)
        session = scheduler.open()
        session.edit(title="Race", body="once")
        await asyncio.gather(scheduler._debounced_flush(session), scheduler.save_now(session))
        assert calls == ["once"]
        assert scheduler.last_error is None
        assert [s.key for s in scheduler.sessions] == [note_key(100)]

    @pytest.mark.anyio
    async def test_commit_without_changes_is_skipped(self, journal, test_config):
        calls, commit = _recording_commit()
        scheduler = AutosaveScheduler(journal, test_config, commit=commit)
        session = scheduler.open(_note(1))
        assert await scheduler.commit(session) is None
        assert calls == []

    @pytest.mark.anyio
    async def test_failed_autosave_is_recorded(self, journal, test_config):
        async def failing_commit(session, title, body):
            raise RuntimeError("store offline")

        scheduler = AutosaveScheduler(journal, test_config, commit=failing_commit)
        session = scheduler.open(_note(1))
        scheduler.edit(session, body="kept on disk")
        await wait_until(lambda: scheduler.last_error is not None)
        assert journal.pending()[0].body == "kept on disk"

    @pytest.mark.anyio
    async def test_flush_all(self, journal, test_config):
        cfg = test_config.model_copy(update={"debounce_ms": 60_000})
        scheduler = AutosaveScheduler(journal, cfg)
        a = scheduler.open(_note(1))
        b = scheduler.open(_note(2))
        scheduler.edit(a, body="a")
        scheduler.edit(b, body="b")
        assert await scheduler.flush_all() == 2
        assert sorted(s.body for s in journal.pending()) == ["a", "b"]

    def test_flush_all_sync(self, journal, test_config):
        scheduler = AutosaveScheduler(journal, test_config)
        session = scheduler.open(_note(1))
        session.edit(body="last words")
        assert scheduler.flush_all_sync() == 1
        assert journal.pending()[0].body == "last words"

    def test_open_returns_existing_session(self, journal, test_config):
        scheduler = AutosaveScheduler(journal, test_config)
        assert scheduler.open(_note(1)) is scheduler.open(_note(1))


def test_list_recovery(journal):
    journal.write(note_key(1), "line one\n\nline two", title="T", note_id=1)
    journal.write("new-abc", "", draft_id="abc")
    entries = list_recovery(journal)
    assert [e.key for e in entries] == ["new-abc", "note-1"]
    assert entries[0].is_new_note
    assert entries[0].preview == ["(empty draft)"]
    assert entries[1].preview == ["line one", "line two"]
    assert entries[1].age == "just now"
