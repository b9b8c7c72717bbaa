"""Query execution: fuzzy expansion, ranked retrieval, regex scans.

Qualifiers only filter; relevance comes from the free-text terms alone.
Every path is bounded by the result limit.
"""
import logging
from typing import Dict, List, Optional, Union

from rapidfuzz import fuzz, process

from notecore.config import NoteCoreConfig
from notecore.models.schema import Note, ParsedQuery, SearchHit, SortSpec
from notecore.services.highlight import (build_highlight_regex, note_spans,
                                         snippet_around)
from notecore.services.query_parser import parse_query
from notecore.storage.fts_index import quote_term
from notecore.storage.note_store import NoteStore, note_filter_clauses

logger = logging.getLogger(__name__)

# Terms shorter than this are only matched literally and by prefix
MIN_FUZZY_TERM_LEN = 3
# Notes fetched per batch when scanning for a regex
REGEX_BATCH_SIZE = 200
# Candidates a regex scan examines, unless the result limit is larger
REGEX_SCAN_LIMIT = 200


class SearchService:
    """Runs parsed queries against the record store and its FTS5 mirror."""

    def __init__(self, store: NoteStore, cfg: Optional[NoteCoreConfig] = None):
        self.store = store
        self.config = cfg or store.config
        self.fts = store.fts

    def fuzzy_variants(self, term: str, limit: int) -> List[str]:
        """Indexed terms within the fuzzy threshold of ``term``.

        ``fuzzy_threshold`` is the tolerated dissimilarity: 0.0 disables
        fuzzy matching, 1.0 accepts any indexed term. At most ``limit``
        variants are returned, best first.
        """
        threshold = self.config.fuzzy_threshold
        if threshold <= 0 or len(term) < MIN_FUZZY_TERM_LEN or not term.isalnum():
            return []
        if not self.fts.available:
            return []
        needle = term.casefold()
        matches = process.extract(
            needle,
            self.fts.vocabulary(),
            scorer=fuzz.ratio,
            score_cutoff=(1.0 - threshold) * 100,
            limit=limit + 1,
        )
        return [choice for choice, _score, _idx in matches if choice != needle][:limit]

    @staticmethod
    def _term_expression(term: str, variants: List[str]) -> str:
        """Literal phrase, prefix and fuzzy variants OR-ed together."""
        quoted = quote_term(term)
        alternatives = [quoted, f"{quoted}*"] + [quote_term(v) for v in variants]
        return "(" + " OR ".join(alternatives) + ")"

    def build_match_expression(
        self, query: ParsedQuery, variants: Dict[str, List[str]]
    ) -> Optional[str]:
        """FTS5 expression: terms AND-ed, each term's variants OR-ed."""
        clauses = [self._term_expression(t, variants.get(t, [])) for t in query.terms]
        clauses += [
            "title : " + self._term_expression(t, variants.get(t, []))
            for t in query.title_terms
        ]
        return " AND ".join(clauses) if clauses else None

    def search(
        self,
        query: Union[str, ParsedQuery],
        limit: Optional[int] = None,
        regex: bool = False,
    ) -> List[SearchHit]:
        """Run a query and return ranked hits with highlight spans.

        Args:
            query: Raw query text or an already parsed query
            limit: Maximum hits; defaults to the viewport-sized ``search_limit``
            regex: Regex mode, only used when ``query`` is raw text

        Raises:
            QuerySyntaxError: Malformed query text (raised before any
                index access).
        """
        parsed = query if isinstance(query, ParsedQuery) else parse_query(query, regex=regex)
        limit = self.config.search_limit if limit is None else limit
        if limit < 1:
            return []

        if parsed.regex is not None:
            return self._regex_search(parsed, limit)
        if parsed.is_empty:
            notes = self.store.list(parsed.to_filter(), SortSpec(), limit=limit)
            return [SearchHit(note=n, score=0.0) for n in notes]

        variants = {
            term: self.fuzzy_variants(term, limit)
            for term in dict.fromkeys(parsed.terms + parsed.title_terms)
        }
        match_expr = self.build_match_expression(parsed, variants)
        negated_expr = " OR ".join(quote_term(t) for t in parsed.negated) or None
        ranked = self.fts.search(
            match_expr,
            note_filter_clauses(parsed.to_filter()),
            limit,
            negated_expr=negated_expr,
            fallback_terms=parsed.terms + parsed.title_terms,
            fallback_negated=parsed.negated,
        )
        notes = self.store.get_many(note_id for note_id, _ in ranked)
        scores = dict(ranked)

        body_tokens = list(parsed.terms)
        for term in parsed.terms:
            body_tokens += variants.get(term, [])
        title_tokens = body_tokens + list(parsed.title_terms)
        for term in parsed.title_terms:
            title_tokens += variants.get(term, [])
        body_pattern = build_highlight_regex(body_tokens)
        title_pattern = build_highlight_regex(title_tokens)

        hits = [self._hit(n, scores[n.id], body_pattern, title_pattern) for n in notes]
        logger.debug(f"Search {parsed.raw!r} returned {len(hits)} hits")
        return hits

    @staticmethod
    def _hit(note: Note, score: float, body_pattern, title_pattern=None) -> SearchHit:
        spans = note_spans(note, body_pattern, title_pattern)
        return SearchHit(
            note=note,
            score=score,
            spans=spans,
            snippet=snippet_around(note.body, spans.get("body", [])),
        )

    def _regex_search(self, parsed: ParsedQuery, limit: int) -> List[SearchHit]:
        """Match the pattern against the newest filtered notes.

        At most ``max(limit, REGEX_SCAN_LIMIT)`` candidates are examined, so
        the cost follows the viewport rather than the corpus; matches older
        than that window are not returned.
        """
        pattern = parsed.regex
        scan_limit = max(limit, REGEX_SCAN_LIMIT)
        page_size = min(REGEX_BATCH_SIZE, scan_limit)
        hits: List[SearchHit] = []
        scanned = 0
        for page in self.store.iter_pages(parsed.to_filter(), SortSpec(), page_size):
            for note in page:
                scanned += 1
                if pattern.search(note.title) or pattern.search(note.body):
                    hits.append(self._hit(note, 0.0, pattern))
                    if len(hits) >= limit:
                        logger.debug(f"Regex scan stopped at limit after {scanned} notes")
                        return hits
                if scanned >= scan_limit:
                    logger.debug(f"Regex scan window of {scan_limit} exhausted, {len(hits)} matches")
                    return hits
        logger.debug(f"Regex scan covered {scanned} notes, {len(hits)} matches")
        return hits
