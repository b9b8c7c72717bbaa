"""
notecore - storage, search and crash-recovery engine for a terminal note store.

The package owns the durable record of notes and tags, answers structured and
fuzzy search queries, keeps the tag graph consistent under rename/merge/delete,
and journals in-progress edits so that no draft is lost across a crash.

Storage work runs on a single worker thread; callers talk to it through an
asyncio-facing coordinator.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notecore")
except PackageNotFoundError:
    __version__ = "0.3.0"
