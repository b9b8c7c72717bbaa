"""Highlight spans and snippets for search results."""
import re
from typing import Dict, Iterable, List, Optional

from notecore.models.schema import Note, Span


def _token_pattern(token: str) -> str:
    return r"[\W_]+".join(re.escape(word) for word in token.split())


def build_highlight_regex(tokens: Iterable[str]) -> Optional["re.Pattern[str]"]:
    """One case-insensitive alternation over the tokens.

    Tokens are deduplicated case-insensitively and ordered longest first,
    so ``note`` wins over ``not`` inside ``notebook``. A token made of
    several words (``Q A`` from ``Q&A``) matches them separated by any run
    of non-word characters.
    """
    unique = []
    seen = set()
    for token in tokens:
        if not token or not token.strip():
            continue
        key = token.casefold()
        if key not in seen:
            seen.add(key)
            unique.append(token)
    if not unique:
        return None
    unique.sort(key=len, reverse=True)
    return re.compile("|".join(_token_pattern(t) for t in unique), re.IGNORECASE)


def find_spans(text: str, pattern: Optional["re.Pattern[str]"]) -> List[Span]:
    """Non-overlapping ``(start, end)`` offsets of pattern matches.

    Empty matches are dropped.
    """
    if pattern is None or not text:
        return []
    return [(m.start(), m.end()) for m in pattern.finditer(text) if m.end() > m.start()]


def note_spans(
    note: Note,
    body_pattern: Optional["re.Pattern[str]"],
    title_pattern: Optional["re.Pattern[str]"] = None,
) -> Dict[str, List[Span]]:
    """Spans per field; fields without a match are omitted."""
    spans = {}
    title = find_spans(note.title, title_pattern or body_pattern)
    if title:
        spans["title"] = title
    body = find_spans(note.body, body_pattern)
    if body:
        spans["body"] = body
    return spans


def snippet_around(text: str, spans: List[Span], width: int = 160) -> Optional[str]:
    """A single-line excerpt of ``text`` centered on the first span."""
    if not spans or not text:
        return None
    start, end = spans[0]
    lead = max(0, (width - (end - start)) // 3)
    begin = max(0, start - lead)
    excerpt = text[begin:begin + width]
    excerpt = " ".join(excerpt.split())
    if begin > 0:
        excerpt = "…" + excerpt
    if begin + width < len(text):
        excerpt += "…"
    return excerpt
