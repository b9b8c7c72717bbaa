"""Logging setup and per-operation metrics for the storage worker.

Every request the coordinator executes is wrapped in ``timed_operation``
so that counts, durations and the last error per operation are available
for diagnostics and persisted on shutdown.
"""
import json
import logging
import os
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_configured_files: set = set()


def configure_logging(
    log_dir: Union[str, Path],
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = False,
) -> Path:
    """Attach a rotating file handler to the ``notecore`` logger hierarchy.

    Calling it twice for the same directory does not duplicate handlers.

    Args:
        log_dir: Directory for ``notecore.log`` and its rotations
        level: Logging level for the hierarchy
        max_bytes: Size at which the log file is rotated
        backup_count: Number of rotated files kept
        console: Also log to stderr

    Returns:
        Path to the log file
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "notecore.log"

    root_logger = logging.getLogger("notecore")
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    key = str(log_file.resolve())
    if key not in _configured_files:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        _configured_files.add(key)

    if console and not any(
        type(h) is logging.StreamHandler for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.debug(f"Logging configured: {log_file}")
    return log_file


@dataclass
class OperationStats:
    """Running statistics for one operation name."""

    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0
    last_error: Optional[str] = None


class MetricsCollector:
    """Thread-safe per-operation counters.

    The storage worker records into it; the event loop may read a
    snapshot at any time.
    """

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self.metrics_file = Path(metrics_file) if metrics_file else None

    def record(
        self, operation: str, duration_ms: float, error: Optional[str] = None
    ) -> None:
        with self._lock:
            stats = self._stats[operation]
            stats.count += 1
            stats.total_ms += duration_ms
            stats.max_ms = max(stats.max_ms, duration_ms)
            if error is not None:
                stats.error_count += 1
                stats.last_error = error

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Return a copy of the current statistics keyed by operation."""
        with self._lock:
            return {
                name: {
                    "count": s.count,
                    "error_count": s.error_count,
                    "avg_ms": round(s.total_ms / s.count, 3) if s.count else 0.0,
                    "max_ms": round(s.max_ms, 3),
                    "last_error": s.last_error,
                }
                for name, s in self._stats.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)

    def save(self) -> bool:
        """Write the snapshot to ``metrics_file`` atomically.

        Returns:
            True if the file was written, False when no file is configured
            or the write failed (the failure is logged).
        """
        if self.metrics_file is None:
            return False
        data = {
            "started_at": self._started.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": self.snapshot(),
        }
        tmp = self.metrics_file.with_suffix(".tmp")
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.metrics_file)
            return True
        except OSError as e:
            logger.error(f"Failed to save metrics to {self.metrics_file}: {e}")
            return False


@contextmanager
def timed_operation(
    collector: MetricsCollector, operation: str, **context: Any
) -> Iterator[Dict[str, Any]]:
    """Time a block, log start/end with a correlation id and record metrics.

    Example:
        with timed_operation(metrics, "search", query=q) as op:
            hits = service.search(q)
            op["result_count"] = len(hits)
    """
    correlation_id = uuid.uuid4().hex[:8]
    info: Dict[str, Any] = {}
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    start = time.perf_counter()
    error_msg = None
    try:
        yield info
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        collector.record(operation, duration_ms, error_msg)
        status = "OK" if error_msg is None else f"ERROR: {error_msg}"
        result_str = ", ".join(f"{k}={v}" for k, v in info.items())
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) "
            f"[{status}] {result_str}"
        )
