"""Tests for the storage coordinator's worker, ordering and contention handling."""
import asyncio
import sqlite3
import threading

import pytest

from notecore.coordinator import StorageCoordinator
from notecore.exceptions import (NoteNotFoundError, QuerySyntaxError,
                                 StorageContendedError, StorageError)
from notecore.models.schema import NotePatch


@pytest.mark.anyio
async def test_requests_run_on_the_worker_thread(coordinator):
    name = await coordinator.call("whoami", lambda: threading.current_thread().name)
    assert name == "notecore-storage"
    assert name != threading.current_thread().name


@pytest.mark.anyio
async def test_create_then_read_observes_write(coordinator):
    note = await coordinator.create_note("Groceries", "milk")
    fetched = await coordinator.get_note(note.id)
    assert fetched == note


@pytest.mark.anyio
async def test_requests_execute_in_submission_order(coordinator):
    order = []
    futures = [
        coordinator.submit(f"step{i}", order.append, i) for i in range(20)
    ]
    await asyncio.gather(*(asyncio.wrap_future(f) for f in futures))
    assert order == list(range(20))


@pytest.mark.anyio
async def test_concurrent_updates_are_serialized(coordinator):
    note = await coordinator.create_note("Counter", "0")
    await asyncio.gather(
        *(coordinator.update_note(note.id, NotePatch(body=str(i))) for i in range(10))
    )
    # gather schedules in argument order, so the last submitted wins
    assert (await coordinator.get_note(note.id)).body == "9"


@pytest.mark.anyio
async def test_errors_propagate_to_caller(coordinator):
    with pytest.raises(NoteNotFoundError):
        await coordinator.get_note(404)
    with pytest.raises(QuerySyntaxError):
        await coordinator.search("is:bogus")


@pytest.mark.anyio
async def test_search_and_tags_through_coordinator(coordinator):
    note = await coordinator.create_note("Trip", "pack the passport")
    await coordinator.add_tag(note.id, "Travel")
    hits = await coordinator.search("tag:travel passport")
    assert [h.note.id for h in hits] == [note.id]
    tags = await coordinator.list_tags()
    assert [(t.name, t.note_count) for t in tags] == [("travel", 1)]


@pytest.mark.anyio
async def test_contention_sets_status_and_recovers(coordinator, test_config):
    note = await coordinator.create_note("Locked", "body")
    other = sqlite3.connect(str(test_config.get_db_path()), isolation_level=None)
    try:
        other.execute("BEGIN IMMEDIATE")
        with pytest.raises(StorageContendedError):
            await coordinator.update_note(note.id, NotePatch(body="blocked"))
        assert coordinator.contended is True
        assert await coordinator.recheck_lock() is False
    finally:
        other.execute("ROLLBACK")
        other.close()
    assert await coordinator.recheck_lock() is True
    assert coordinator.contended is False


@pytest.mark.anyio
async def test_idle_ticks_checkpoint(coordinator):
    await coordinator.create_note("a")
    await asyncio.sleep(0.3)
    assert coordinator.metrics.snapshot()["checkpoint"]["count"] >= 1


@pytest.mark.anyio
async def test_metrics_recorded_per_operation(coordinator):
    await coordinator.create_note("a")
    with pytest.raises(NoteNotFoundError):
        await coordinator.get_note(99)
    stats = coordinator.metrics.snapshot()
    assert stats["create"]["count"] == 1
    assert stats["get"]["error_count"] == 1


def test_close_with_backup_and_metrics(test_config):
    coord = StorageCoordinator(test_config)
    coord.start()
    coord.submit("create", lambda: coord.store.create("Backed up")).result()
    record = coord.close(backup=True)
    assert record is not None
    assert record.path.endswith(".db.gz")
    assert test_config.get_metrics_file().exists()
    assert not coord.running
    with pytest.raises(StorageError):
        coord.submit("create", lambda: None)


def test_start_failure_is_raised(test_config, temp_dir):
    blocker = temp_dir / "occupied"
    blocker.write_text("x")
    cfg = test_config.model_copy(update={"database_path": blocker / "notes.db"})
    coord = StorageCoordinator(cfg)
    with pytest.raises(StorageError):
        coord.start()
    assert not coord.running
