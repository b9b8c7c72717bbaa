"""On-disk snapshot journal.

One JSON file per snapshot, named ``<key>--<generation>.<state>.json``
where ``key`` is ``note-<id>`` or ``new-<draft id>``, ``generation`` is a
zero-padded microsecond timestamp and ``state`` is ``live`` or
``superseded``. Files are written to ``*.tmp``, fsynced and atomically
renamed into place, so a crash never leaves a half-written snapshot.
"""
import datetime
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from notecore.exceptions import JournalWriteError
from notecore.models.schema import ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)

LIVE = "live"
SUPERSEDED = "superseded"
_SUFFIXES = {f".{LIVE}.json": LIVE, f".{SUPERSEDED}.json": SUPERSEDED}


def note_key(note_id: int) -> str:
    return f"note-{note_id}"


def draft_key(draft_id: str) -> str:
    return f"new-{draft_id}"


class Snapshot(BaseModel):
    """A serialized draft.

    ``path`` and ``state`` describe the file and are not stored in it.
    """

    key: str
    generation: int
    note_id: Optional[int] = None
    draft_id: Optional[str] = None
    title: str = ""
    body: str = ""
    base_updated_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)

    path: Optional[Path] = Field(default=None, exclude=True)
    state: str = Field(default=LIVE, exclude=True)

    @property
    def is_live(self) -> bool:
        return self.state == LIVE

    @property
    def file_stem(self) -> str:
        return f"{self.key}--{self.generation:020d}"


def _parse_name(name: str) -> Optional[tuple]:
    """``(key, generation, state)`` for a snapshot filename, else None."""
    for suffix, state in _SUFFIXES.items():
        if name.endswith(suffix):
            stem = name[: -len(suffix)]
            key, sep, generation = stem.rpartition("--")
            if sep and generation.isdigit():
                return key, int(generation), state
    return None


class SnapshotJournal:
    """Directory of draft snapshots.

    Args:
        directory: Journal directory (created on demand)
        retention_hours: Age after which superseded snapshots are pruned;
            0 keeps them until discarded by hand
    """

    def __init__(self, directory: Path, retention_hours: int = 168):
        self.directory = Path(directory)
        self.retention_hours = retention_hours
        self._lock = threading.Lock()
        self._last_generation: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _next_generation(self, key: str) -> int:
        generation = time.time_ns() // 1000
        last = self._last_generation.get(key)
        if last is None:
            existing = [s.generation for s in self._scan() if s.key == key]
            last = max(existing, default=0)
        if generation <= last:
            generation = last + 1
        self._last_generation[key] = generation
        return generation

    def _fsync_directory(self) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self.directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def write(
        self,
        key: str,
        body: str,
        title: str = "",
        note_id: Optional[int] = None,
        draft_id: Optional[str] = None,
        base_updated_at: Optional[datetime.datetime] = None,
    ) -> Snapshot:
        """Durably write a new live snapshot for ``key``.

        Any previous live snapshot for the same key becomes superseded
        once the new one is in place.

        Raises:
            JournalWriteError: The snapshot could not be made durable.
        """
        with self._lock:
            snapshot = Snapshot(
                key=key,
                generation=self._next_generation(key),
                note_id=note_id,
                draft_id=draft_id,
                title=title,
                body=body,
                base_updated_at=base_updated_at,
            )
            final = self.directory / f"{snapshot.file_stem}.{LIVE}.json"
            tmp = final.with_name(final.name + ".tmp")
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                with open(tmp, "w", encoding="utf-8") as f:
                    f.write(snapshot.model_dump_json())
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, final)
                self._fsync_directory()
            except OSError as e:
                logger.error(f"Snapshot write failed for {key}: {e}")
                raise JournalWriteError(
                    f"Could not write draft snapshot for {key}",
                    path=str(final),
                    original_error=e,
                ) from e
            snapshot.path = final

            for older in self._scan():
                if older.key == key and older.is_live and older.generation < snapshot.generation:
                    self._rename_state(older, SUPERSEDED)
        logger.debug(f"Wrote snapshot {final.name}")
        return snapshot

    def _rename_state(self, snapshot: Snapshot, state: str) -> None:
        target = self.directory / f"{snapshot.file_stem}.{state}.json"
        try:
            os.replace(snapshot.path, target)
        except FileNotFoundError:
            return
        except OSError as e:
            raise JournalWriteError(
                f"Could not update snapshot {snapshot.path.name}",
                path=str(snapshot.path),
                original_error=e,
            ) from e
        snapshot.path = target
        snapshot.state = state

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _load(self, path: Path, state: str) -> Optional[Snapshot]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            snapshot = Snapshot.model_validate(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, PydanticValidationError) as e:
            logger.warning(f"Skipping unreadable snapshot {path.name}: {e}")
            return None
        snapshot.path = path
        snapshot.state = state
        snapshot.created_at = ensure_timezone_aware(snapshot.created_at)
        return snapshot

    def _scan(self) -> List[Snapshot]:
        if not self.directory.is_dir():
            return []
        snapshots = []
        for path in self.directory.iterdir():
            parsed = _parse_name(path.name)
            if parsed is None:
                continue
            snapshot = self._load(path, parsed[2])
            if snapshot is not None:
                snapshots.append(snapshot)
        snapshots.sort(key=lambda s: (s.key, s.generation))
        return snapshots

    def all(self) -> List[Snapshot]:
        """Every readable snapshot, live and superseded."""
        with self._lock:
            return self._scan()

    def pending(self) -> List[Snapshot]:
        """Newest live snapshot per key, most recent first."""
        with self._lock:
            newest: Dict[str, Snapshot] = {}
            for snapshot in self._scan():
                if snapshot.is_live:
                    newest[snapshot.key] = snapshot
        return sorted(newest.values(), key=lambda s: s.generation, reverse=True)

    def live_for(self, key: str) -> Optional[Snapshot]:
        for snapshot in self.pending():
            if snapshot.key == key:
                return snapshot
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mark_superseded(self, key: str, up_to_generation: Optional[int] = None) -> int:
        """Supersede the live snapshots of ``key``.

        Args:
            key: Snapshot key
            up_to_generation: Only supersede snapshots at or below this
                generation (newer drafts stay live)

        Returns:
            Number of snapshots superseded.
        """
        count = 0
        with self._lock:
            for snapshot in self._scan():
                if snapshot.key != key or not snapshot.is_live:
                    continue
                if up_to_generation is not None and snapshot.generation > up_to_generation:
                    continue
                self._rename_state(snapshot, SUPERSEDED)
                count += 1
        if count:
            logger.debug(f"Superseded {count} snapshot(s) for {key}")
        return count

    def discard(self, snapshot: Snapshot) -> bool:
        """Delete one snapshot file. Returns False if it was already gone."""
        with self._lock:
            try:
                os.remove(snapshot.path)
            except FileNotFoundError:
                return False
            except OSError as e:
                raise JournalWriteError(
                    f"Could not discard snapshot {snapshot.path.name}",
                    path=str(snapshot.path),
                    original_error=e,
                ) from e
        logger.info(f"Discarded snapshot {snapshot.path.name}")
        return True

    def discard_key(self, key: str) -> int:
        """Delete every live snapshot for ``key``."""
        return sum(1 for s in self.pending() if s.key == key and self.discard(s))

    def discard_all(self) -> int:
        """Delete every live snapshot. Returns the number removed."""
        count = 0
        for snapshot in self.all():
            if snapshot.is_live and self.discard(snapshot):
                count += 1
        return count

    def prune(self, now: Optional[datetime.datetime] = None) -> int:
        """Delete superseded snapshots older than the retention window.

        Live snapshots are never pruned. A retention of zero disables
        pruning.
        """
        if self.retention_hours <= 0:
            return 0
        cutoff = (now or utc_now()) - datetime.timedelta(hours=self.retention_hours)
        count = 0
        for snapshot in self.all():
            if not snapshot.is_live and snapshot.created_at < cutoff:
                if self.discard(snapshot):
                    count += 1
        if count:
            logger.info(f"Pruned {count} superseded snapshot(s)")
        return count

    def cleanup_temp(self) -> int:
        """Remove ``*.tmp`` files left by a crash mid-write."""
        if not self.directory.is_dir():
            return 0
        count = 0
        for path in self.directory.glob("*.tmp"):
            try:
                path.unlink()
                count += 1
            except FileNotFoundError:
                continue
        if count:
            logger.info(f"Removed {count} orphaned snapshot temp file(s)")
        return count
