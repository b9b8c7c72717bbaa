"""Configuration module for notecore."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the data directory
_USER_ENV = Path.home() / ".notecore" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NoteCoreConfig(BaseModel):
    """Configuration for the note store core."""

    # Base directory; relative paths below are resolved against it
    base_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTECORE_BASE_DIR", str(Path.home() / ".notecore"))
        )
    )
    # Storage location
    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTECORE_DATABASE_PATH", "data/notes.db"))
    )
    journal_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTECORE_JOURNAL_DIR", "state/autosave"))
    )
    backup_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTECORE_BACKUP_DIR", "backups"))
    )
    log_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTECORE_LOG_DIR", "state/logs"))
    )
    metrics_file: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTECORE_METRICS_FILE", "state/metrics.json")
        )
    )

    # Search
    # 0.0 disables fuzzy variants, 1.0 accepts any vocabulary term
    fuzzy_threshold: float = Field(
        default_factory=lambda: float(os.getenv("NOTECORE_FUZZY_THRESHOLD", "0.4"))
    )
    # Default result limit, sized to the visible viewport
    search_limit: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_SEARCH_LIMIT", "50"))
    )
    live_search_debounce_ms: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_LIVE_SEARCH_DEBOUNCE_MS", "120"))
    )

    # Trash retention in days (0 = only explicit purge)
    retention_days: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_RETENTION_DAYS", "30"))
    )

    # Autosave journal
    debounce_ms: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_DEBOUNCE_MS", "800"))
    )
    autosave_enabled: bool = Field(
        default_factory=lambda: _env_bool("NOTECORE_AUTOSAVE_ENABLED", "true")
    )
    crash_recovery: bool = Field(
        default_factory=lambda: _env_bool("NOTECORE_CRASH_RECOVERY", "true")
    )
    # Superseded snapshots older than this are pruned (0 = manual discard only)
    snapshot_retention_hours: int = Field(
        default_factory=lambda: int(
            os.getenv("NOTECORE_SNAPSHOT_RETENTION_HOURS", str(24 * 7))
        )
    )

    # SQLite tuning
    wal_autocheckpoint: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_WAL_AUTOCHECKPOINT", "1000"))
    )
    checkpoint_interval_s: float = Field(
        default_factory=lambda: float(os.getenv("NOTECORE_CHECKPOINT_INTERVAL_S", "30"))
    )
    busy_timeout_ms: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_BUSY_TIMEOUT_MS", "250"))
    )

    # Insert the welcome notes when a new database file is created
    seed_notes: bool = Field(
        default_factory=lambda: _env_bool("NOTECORE_SEED_NOTES", "true")
    )

    # Backups
    backup_on_exit: bool = Field(
        default_factory=lambda: _env_bool("NOTECORE_BACKUP_ON_EXIT", "true")
    )
    max_backups: int = Field(
        default_factory=lambda: int(os.getenv("NOTECORE_MAX_BACKUPS", "10"))
    )

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _validate_ranges(self) -> "NoteCoreConfig":
        """Reject option values outside their documented ranges."""
        if not 0.0 <= self.fuzzy_threshold <= 1.0:
            raise ValueError("fuzzy_threshold must be between 0.0 and 1.0")
        if self.search_limit < 1:
            raise ValueError("search_limit must be >= 1")
        for name in (
            "retention_days",
            "snapshot_retention_hours",
            "debounce_ms",
            "live_search_debounce_ms",
            "wal_autocheckpoint",
            "busy_timeout_ms",
            "max_backups",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.checkpoint_interval_s <= 0:
            raise ValueError("checkpoint_interval_s must be > 0")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_path(self) -> Path:
        """Get the absolute database path, creating its parent directory."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        return f"sqlite:///{self.get_db_path()}"

    def get_journal_dir(self) -> Path:
        return self.get_absolute_path(self.journal_dir)

    def get_backup_dir(self) -> Path:
        return self.get_absolute_path(self.backup_dir)

    def get_log_dir(self) -> Path:
        return self.get_absolute_path(self.log_dir)

    def get_metrics_file(self) -> Path:
        return self.get_absolute_path(self.metrics_file)


# Create a global config instance
config = NoteCoreConfig()
