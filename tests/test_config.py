"""Tests for configuration defaults, env overrides and validation."""
from pathlib import Path

import pytest

from notecore.config import NoteCoreConfig


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("NOTECORE_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("NOTECORE_RETENTION_DAYS", "7")
    monkeypatch.setenv("NOTECORE_FUZZY_THRESHOLD", "0.25")
    monkeypatch.setenv("NOTECORE_AUTOSAVE_ENABLED", "false")
    cfg = NoteCoreConfig()
    assert cfg.base_dir == tmp_path
    assert cfg.retention_days == 7
    assert cfg.fuzzy_threshold == 0.25
    assert cfg.autosave_enabled is False


def test_relative_paths_resolve_against_base_dir(tmp_path):
    cfg = NoteCoreConfig(base_dir=tmp_path, database_path=Path("data/notes.db"))
    assert cfg.get_db_path() == tmp_path / "data" / "notes.db"
    assert (tmp_path / "data").is_dir()
    assert cfg.get_db_url() == f"sqlite:///{tmp_path / 'data' / 'notes.db'}"


def test_absolute_paths_are_kept(tmp_path):
    cfg = NoteCoreConfig(base_dir=tmp_path / "base", journal_dir=tmp_path / "journal")
    assert cfg.get_journal_dir() == tmp_path / "journal"


@pytest.mark.parametrize(
    "field,value",
    [
        ("fuzzy_threshold", 1.5),
        ("fuzzy_threshold", -0.1),
        ("search_limit", 0),
        ("retention_days", -1),
        ("snapshot_retention_hours", -5),
        ("checkpoint_interval_s", 0),
    ],
)
def test_out_of_range_values_rejected(field, value):
    with pytest.raises(ValueError):
        NoteCoreConfig(**{field: value})


def test_zero_retention_is_allowed():
    cfg = NoteCoreConfig(retention_days=0, snapshot_retention_hours=0)
    assert cfg.retention_days == 0
    assert cfg.snapshot_retention_hours == 0
