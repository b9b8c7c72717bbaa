"""Utility functions for notecore."""

import datetime
from typing import List, Optional

TAG_NAME_MAX_LEN = 64


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use with ``ESCAPE '\\'``

    Example:
        >>> escape_like_pattern("100% done")
        '100\\% done'
    """
    escape_table = str.maketrans({"\\": "\\\\", "%": "\\%", "_": "\\_"})
    return value.translate(escape_table)


def normalize_tag_name(name: str) -> str:
    """Case-normalize a tag name: strip, casefold, truncate.

    A leading ``#`` is dropped so ``#home`` and ``home`` name the same tag.
    Returns an empty string for names with no content; callers decide
    whether that is an error or a skip.
    """
    cleaned = name.strip()
    if cleaned.startswith("#"):
        cleaned = cleaned[1:].strip()
    return cleaned.casefold()[:TAG_NAME_MAX_LEN]


def sanitize_term(term: str) -> str:
    """Keep alphanumerics and ``-_./`` from a free-text search term.

    Any other character becomes a word break, so ``Q&A`` yields ``Q A``:
    the same pieces the index tokenizer stores for it.
    """
    cleaned = "".join(c if c.isalnum() or c in "-_./" else " " for c in term)
    return " ".join(cleaned.split())


def build_snippet(body: str, fallback_lines: int = 2, width: int = 160) -> Optional[str]:
    """First non-empty lines of a body joined on one line, truncated.

    Used by the CLI when no index snippet is available.
    """
    segments = []
    for line in body.splitlines()[:fallback_lines]:
        trimmed = line.strip()
        if trimmed:
            segments.append(trimmed)
    if not segments:
        return None
    return " ".join(segments)[:width]


def build_recovery_preview(
    body: str, max_lines: int = 4, max_cols: int = 80
) -> List[str]:
    """Content preview for a recoverable draft.

    Blank lines are skipped and long lines end with an ellipsis.
    """
    preview: List[str] = []
    for line in body.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        snippet = trimmed[:max_cols]
        if len(trimmed) > max_cols:
            snippet += "…"
        preview.append(snippet)
        if len(preview) == max_lines:
            break
    if not preview:
        preview.append("(empty draft)")
    return preview


def format_relative_age(
    then: datetime.datetime, now: Optional[datetime.datetime] = None
) -> str:
    """Render an age like ``just now``, ``5m ago``, ``3h ago`` or ``2d ago``.

    Anything ten days or older falls back to an RFC 3339 timestamp.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    diff = (now - then).total_seconds()
    if diff < 45:
        return "just now"
    if diff < 90 * 60:
        return f"{max(int(diff // 60), 1)}m ago"
    if diff < 36 * 3600:
        return f"{max(int(diff // 3600), 1)}h ago"
    if diff < 10 * 86400:
        return f"{max(int(diff // 86400), 1)}d ago"
    return format_timestamp(then)


def format_timestamp(value: datetime.datetime) -> str:
    """RFC 3339 rendering with second precision and a ``Z`` suffix for UTC."""
    text = value.replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


def format_remaining(seconds: int) -> str:
    """Human label for the time left before a trashed note is purged.

    Partial hours and minutes round up, so a note never shows ``0m left``.
    """
    if seconds >= 2 * 86400:
        return f"{seconds // 86400}d left"
    if seconds >= 86400:
        days = seconds // 86400
        hours = (seconds % 86400 + 3599) // 3600
        return f"{days}d {hours}h left" if hours else f"{days}d left"
    if seconds >= 3600:
        return f"{(seconds + 3599) // 3600}h left"
    return f"{(seconds + 59) // 60}m left"
