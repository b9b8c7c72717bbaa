"""Parsing of search query text into free text and qualifiers.

Recognized tokens (whitespace separated):

- ``tag:<name>``: note must carry the tag (repeatable, all required)
- ``title:<term>``: free text matched against titles only
- ``created:<from>..<to>`` / ``updated:<from>..<to>``: ``YYYY-MM-DD`` dates,
  either side may be empty, a single date means that whole day
- ``-<term>``: exclude notes containing the term
- ``is:pinned``, ``is:archived``, ``in:trash``: state filters
- anything else: a free-text term

Regex mode is chosen by the caller, not inline: the non-qualifier tokens
are then joined into a single case-insensitive pattern.
"""
import datetime
import logging
import re
from typing import Optional, Tuple

from notecore.exceptions import ErrorCode, QuerySyntaxError
from notecore.models.schema import DateRange, ParsedQuery
from notecore.utils import normalize_tag_name, sanitize_term

logger = logging.getLogger(__name__)

_STATE_QUALIFIERS = {
    "is:pinned": "pinned",
    "is:archived": "archived",
    "in:trash": "trashed",
}


def _parse_day(value: str) -> Optional[Tuple[datetime.datetime, datetime.datetime]]:
    """``[midnight, next midnight)`` in UTC for a ``YYYY-MM-DD`` string."""
    try:
        day = datetime.datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return None
    start = day.replace(tzinfo=datetime.timezone.utc)
    return start, start + datetime.timedelta(days=1)


def parse_date_range(spec: str) -> DateRange:
    """Parse the value of a ``created:``/``updated:`` qualifier.

    Unparsable or missing sides are left open; this never raises.
    """
    if ".." not in spec:
        day = _parse_day(spec)
        return DateRange(*day) if day else DateRange()
    start_text, _, end_text = spec.partition("..")
    start_day = _parse_day(start_text) if start_text else None
    end_day = _parse_day(end_text) if end_text else None
    return DateRange(
        start_day[0] if start_day else None,
        end_day[1] if end_day else None,
    )


def _free_term(raw: str) -> Optional[str]:
    term = sanitize_term(raw)
    if not any(c.isalnum() for c in term):
        return None
    return term


def parse_query(text: str, regex: bool = False) -> ParsedQuery:
    """Split raw query text into a ParsedQuery.

    Args:
        text: The query as typed
        regex: Treat the non-qualifier text as one regular expression

    Raises:
        QuerySyntaxError: Unknown ``is:``/``in:`` qualifier, or an invalid
            pattern in regex mode.
    """
    query = ParsedQuery(raw=text)
    pattern_parts = []

    for raw in text.split():
        lowered = raw.lower()
        if lowered.startswith("tag:"):
            name = normalize_tag_name(raw[4:])
            if name and name not in query.tags:
                query.tags.append(name)
            continue
        if lowered.startswith("title:"):
            term = _free_term(raw[6:])
            if term and not regex:
                query.title_terms.append(term)
            continue
        if lowered.startswith("created:"):
            query.created = query.created.intersect(parse_date_range(raw[8:]))
            continue
        if lowered.startswith("updated:"):
            query.updated = query.updated.intersect(parse_date_range(raw[8:]))
            continue
        if lowered in _STATE_QUALIFIERS:
            setattr(query, _STATE_QUALIFIERS[lowered], True)
            continue
        if lowered.startswith(("is:", "in:")):
            raise QuerySyntaxError(f"Unknown qualifier '{raw}'", fragment=raw)

        if regex:
            pattern_parts.append(raw)
            continue
        if raw.startswith("-") and len(raw) > 1:
            term = _free_term(raw[1:])
            if term:
                query.negated.append(term)
            continue
        term = _free_term(raw)
        if term:
            query.terms.append(term)

    if regex and pattern_parts:
        pattern = " ".join(pattern_parts)
        try:
            query.regex = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise QuerySyntaxError(
                f"Invalid regular expression: {e.msg}",
                fragment=pattern,
                code=ErrorCode.SEARCH_INVALID_REGEX,
            ) from e

    logger.debug(
        f"Parsed query {text!r}: terms={query.terms} title={query.title_terms} "
        f"negated={query.negated} tags={query.tags} regex={bool(query.regex)}"
    )
    return query
