"""Common test fixtures for the note store."""

import tempfile
from pathlib import Path

import pytest

from notecore.config import NoteCoreConfig
from notecore.coordinator import StorageCoordinator
from notecore.journal.snapshots import SnapshotJournal
from notecore.services.search_service import SearchService
from notecore.storage.note_store import NoteStore
from notecore.storage.tag_repository import TagRepository


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dir():
    """Temporary base directory for the database, journal and backups."""
    with tempfile.TemporaryDirectory() as base_dir:
        yield Path(base_dir)


@pytest.fixture
def test_config(temp_dir):
    """Config rooted in the temp directory with timers shortened for tests."""
    return NoteCoreConfig(
        base_dir=temp_dir,
        database_path=Path("data/test_notes.db"),
        journal_dir=Path("state/autosave"),
        backup_dir=Path("backups"),
        log_dir=Path("state/logs"),
        metrics_file=Path("state/metrics.json"),
        seed_notes=False,
        backup_on_exit=False,
        debounce_ms=20,
        live_search_debounce_ms=10,
        checkpoint_interval_s=0.05,
        fuzzy_threshold=0.4,
        retention_days=30,
    )


@pytest.fixture
def note_store(test_config):
    """Open a record store on a fresh database."""
    store = NoteStore(test_config)
    yield store
    store.close()


@pytest.fixture
def tag_repository(note_store):
    return TagRepository(note_store.session_factory)


@pytest.fixture
def search_service(note_store):
    return SearchService(note_store)


@pytest.fixture
def journal(test_config):
    return SnapshotJournal(test_config.get_journal_dir(), retention_hours=24)


@pytest.fixture
def coordinator(test_config):
    """A started storage coordinator, stopped after the test."""
    coord = StorageCoordinator(test_config)
    coord.start()
    yield coord
    coord.close()
