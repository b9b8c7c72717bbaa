"""Domain models for the note store."""

import datetime
import re
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

Span = Tuple[int, int]


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive values; everything stored is UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def to_storage_datetime(dt_value: datetime.datetime) -> datetime.datetime:
    """Convert to the naive-UTC form kept in the database."""
    return ensure_timezone_aware(dt_value).astimezone(timezone.utc).replace(tzinfo=None)


class Note(BaseModel):
    """A note as read from the record store."""

    id: int = Field(..., description="Store-assigned id, immutable")
    title: str = Field(..., description="Non-empty title")
    body: str = Field(default="", description="Body text, may be empty")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    pinned: bool = False
    archived: bool = False
    deleted_at: Optional[datetime.datetime] = Field(
        default=None, description="Set while the note is in the trash"
    )
    tags: List[str] = Field(default_factory=list)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        """Validate that the title is not empty."""
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


class Tag(BaseModel):
    """A tag with its case-normalized unique name."""

    id: int
    name: str
    note_count: Optional[int] = None

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return self.name


class NotePatch(BaseModel):
    """Partial update of a note's text fields."""

    title: Optional[str] = None
    body: Optional[str] = None

    model_config = {"extra": "forbid"}

    @property
    def is_empty(self) -> bool:
        return self.title is None and self.body is None


@dataclass(frozen=True)
class DateRange:
    """Half-open ``[start, end)`` interval; either side may be open."""

    start: Optional[datetime.datetime] = None
    end: Optional[datetime.datetime] = None

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def intersect(self, other: "DateRange") -> "DateRange":
        """Narrow to the overlap of two ranges (latest start, earliest end)."""
        start = self.start
        if other.start is not None and (start is None or other.start > start):
            start = other.start
        end = self.end
        if other.end is not None and (end is None or other.end < end):
            end = other.end
        return DateRange(start, end)

    def contains(self, value: datetime.datetime) -> bool:
        value = ensure_timezone_aware(value)
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value >= self.end:
            return False
        return True


class SortField(str, Enum):
    UPDATED = "updated"
    CREATED = "created"
    TITLE = "title"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class SortSpec:
    """Explicit ordering for non-search views. Ties break by id ascending."""

    field: SortField = SortField.UPDATED
    direction: SortDirection = SortDirection.DESC


@dataclass(frozen=True)
class NoteFilter:
    """Relational filters for listing and search.

    ``archived`` and ``pinned`` are tri-state: ``None`` means "either".
    By default only live, unarchived notes are visible.
    """

    trashed: bool = False
    archived: Optional[bool] = False
    pinned: Optional[bool] = None
    tags: Tuple[str, ...] = ()
    created: DateRange = DateRange()
    updated: DateRange = DateRange()


@dataclass
class ParsedQuery:
    """A raw query split into free text and qualifiers.

    Attributes:
        raw: The original query text
        terms: Sanitized free-text terms (title or body)
        title_terms: Free-text terms scoped to the title
        negated: Terms that exclude matching notes
        tags: Normalized tag names, all required
        created: Creation date range
        updated: Last-update date range
        pinned: ``True`` when ``is:pinned`` was given
        archived: ``True`` when ``is:archived`` was given
        trashed: ``True`` when ``in:trash`` was given
        regex: Compiled pattern in regex mode, else None
    """

    raw: str = ""
    terms: List[str] = field(default_factory=list)
    title_terms: List[str] = field(default_factory=list)
    negated: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created: DateRange = DateRange()
    updated: DateRange = DateRange()
    pinned: bool = False
    archived: bool = False
    trashed: bool = False
    regex: Optional["re.Pattern[str]"] = None

    @property
    def has_text(self) -> bool:
        return bool(self.terms or self.title_terms)

    @property
    def has_filters(self) -> bool:
        return bool(
            self.tags
            or self.pinned
            or self.archived
            or self.trashed
            or not self.created.is_open
            or not self.updated.is_open
        )

    @property
    def is_empty(self) -> bool:
        """No text, no negations and no regex: a plain listing."""
        return not (self.has_text or self.negated or self.regex is not None)

    def to_filter(self) -> NoteFilter:
        return NoteFilter(
            trashed=self.trashed,
            archived=True if self.archived else (None if self.trashed else False),
            pinned=True if self.pinned else None,
            tags=tuple(self.tags),
            created=self.created,
            updated=self.updated,
        )


@dataclass
class SearchHit:
    """One ranked search result.

    ``score`` is higher-is-better; ``spans`` maps ``"title"``/``"body"`` to
    sorted, non-overlapping ``(start, end)`` character offsets.
    """

    note: Note
    score: float
    spans: Dict[str, List[Span]] = field(default_factory=dict)
    snippet: Optional[str] = None


class SkipReason(str, Enum):
    EMPTY = "empty"
    DUPLICATE = "duplicate"
    TARGET = "same as target"
    MISSING = "no such tag"


@dataclass(frozen=True)
class SkippedName:
    name: str
    reason: SkipReason


@dataclass
class MergeReport:
    """Outcome of a tag merge.

    Attributes:
        target: The tag that received the associations
        merged: Source names that were consolidated and deleted
        skipped: Source names that were ignored, with the reason
        reassigned: Associations re-pointed to the target
        deduplicated: Associations dropped because the note already had the target
    """

    target: Tag
    merged: List[str] = field(default_factory=list)
    skipped: List[SkippedName] = field(default_factory=list)
    reassigned: int = 0
    deduplicated: int = 0


@dataclass
class BulkResult:
    """Per-target outcome of a multi-note operation."""

    succeeded: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


@dataclass(frozen=True)
class TrashStatus:
    label: str
    expired: bool = False
    indefinite: bool = False


class BackupRecord(BaseModel):
    id: int
    created_at: datetime.datetime
    path: str

    model_config = {"frozen": True}
