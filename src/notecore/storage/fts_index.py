"""FTS5 full-text mirror of the notes table.

Encapsulates ranked matching, vocabulary lookup for fuzzy expansion,
graceful degradation to a LIKE scan, and corruption recovery.
"""
import logging
import sqlite3
from typing import Any, Callable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, column, literal_column, not_, or_, select, table, text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError

from notecore.models.db_models import DBNote, rebuild_fts_index
from notecore.storage.errors import db_errors, translate_db_error
from notecore.utils import escape_like_pattern

logger = logging.getLogger(__name__)

notes_fts = table("notes_fts", column("rowid"), column("title"), column("body"))

# bm25 is lower-is-better; callers get higher-is-better scores
_BM25 = literal_column("bm25(notes_fts)")
_MATCH = literal_column("notes_fts")


def quote_term(term: str) -> str:
    """Quote a term as an FTS5 string (double quotes doubled)."""
    return '"' + term.replace('"', '""') + '"'


class FtsIndex:
    """FTS5 index access with graceful degradation.

    Args:
        engine: SQLAlchemy engine used for database access.
        session_factory: Callable returning a context-manager session.
    """

    def __init__(self, engine: Any, session_factory: Callable) -> None:
        self.engine = engine
        self._session_factory = session_factory
        self.available: bool = True
        self._vocabulary: Optional[List[str]] = None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reindex(self, session: Any, note_id: int) -> None:
        """Re-mirror one note inside the caller's transaction.

        Idempotent: the previous entry (if any) is replaced, and a note
        that no longer exists leaves no entry behind.
        """
        session.execute(text("DELETE FROM notes_fts WHERE rowid = :id"), {"id": note_id})
        session.execute(
            text(
                "INSERT INTO notes_fts(rowid, title, body) "
                "SELECT id, title, body FROM notes WHERE id = :id"
            ),
            {"id": note_id},
        )
        self.invalidate()

    def rebuild(self) -> int:
        """Rebuild the FTS5 mirror from the notes table."""
        with db_errors("rebuild_index"):
            count = rebuild_fts_index(self.engine)
        self.invalidate()
        self.available = True
        logger.info(f"FTS5 index rebuilt with {count} notes")
        return count

    def invalidate(self) -> None:
        """Drop the cached vocabulary after indexed text changed."""
        self._vocabulary = None

    def integrity_ok(self) -> bool:
        try:
            with self._session_factory() as session:
                session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                )
            return True
        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            logger.warning(f"FTS5 integrity check failed: {e}")
            return False

    def reset_availability(self) -> bool:
        """Re-enable FTS5 after manual repair."""
        self.available = self.integrity_ok()
        return self.available

    # ------------------------------------------------------------------
    # Vocabulary
    # ------------------------------------------------------------------

    def vocabulary(self) -> List[str]:
        """All indexed terms, cached until the next text mutation."""
        if self._vocabulary is None:
            with db_errors("vocabulary"):
                with self._session_factory() as session:
                    rows = session.execute(
                        text("SELECT term FROM notes_fts_vocab")
                    ).fetchall()
            self._vocabulary = [row[0] for row in rows]
        return self._vocabulary

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    def search(
        self,
        match_expr: Optional[str],
        clauses: Sequence[Any],
        limit: int,
        negated_expr: Optional[str] = None,
        fallback_terms: Sequence[str] = (),
        fallback_negated: Sequence[str] = (),
        _retry: bool = True,
    ) -> List[Tuple[int, float]]:
        """Ranked ``(note_id, score)`` pairs for a MATCH expression.

        Args:
            match_expr: FTS5 expression for positive terms, or None to
                rank purely by recency.
            clauses: Relational filters on ``notes`` joined to the candidates.
            limit: Maximum number of results.
            negated_expr: FTS5 expression whose matches are excluded.
            fallback_terms: Plain terms for the LIKE fallback.
            fallback_negated: Plain negated terms for the LIKE fallback.

        Returns:
            Pairs ordered by score descending, then note id ascending.
        """
        if not self.available:
            return self._fallback_search(fallback_terms, fallback_negated, clauses, limit)

        if match_expr:
            stmt = (
                select(DBNote.id, _BM25)
                .select_from(DBNote.__table__.join(notes_fts, notes_fts.c.rowid == DBNote.id))
                .where(_MATCH.op("MATCH")(match_expr))
                .order_by(_BM25.asc(), DBNote.id.asc())
            )
        else:
            stmt = select(DBNote.id, literal_column("0.0")).order_by(
                DBNote.updated_at.desc(), DBNote.id.asc()
            )
        if negated_expr:
            excluded = select(notes_fts.c.rowid).where(
                _MATCH.op("MATCH")(negated_expr)
            ).correlate(None)
            stmt = stmt.where(DBNote.id.not_in(excluded))
        stmt = stmt.where(*clauses).limit(limit)

        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).fetchall()
            return [(row[0], -float(row[1] or 0.0)) for row in rows]

        except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise translate_db_error(e, "search") from e
            logger.warning(f"FTS5 query failed for {match_expr!r}: {e}. Using fallback search.")
            return self._fallback_search(fallback_terms, fallback_negated, clauses, limit)

        except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
            message = str(e).lower()
            if _retry and ("malformed" in message or "corrupt" in message):
                logger.error(f"FTS5 corruption detected: {e}. Attempting auto-rebuild...")
                if self._attempt_recovery():
                    return self.search(
                        match_expr, clauses, limit, negated_expr,
                        fallback_terms, fallback_negated, _retry=False,
                    )
                logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
                self.available = False
            return self._fallback_search(fallback_terms, fallback_negated, clauses, limit)

    def _fallback_search(
        self,
        terms: Sequence[str],
        negated: Sequence[str],
        clauses: Sequence[Any],
        limit: int,
    ) -> List[Tuple[int, float]]:
        """LIKE-based search used when FTS5 is unavailable.

        Every term must appear in the title or body; title hits rank higher.
        """
        def contains(term: str):
            # words of one term in order, with anything between them
            pattern = "%" + "%".join(escape_like_pattern(w) for w in term.split()) + "%"
            return or_(
                DBNote.title.ilike(pattern, escape="\\"),
                DBNote.body.ilike(pattern, escape="\\"),
            )

        stmt = select(DBNote.id, DBNote.title).where(*clauses)
        if terms:
            stmt = stmt.where(and_(*(contains(t) for t in terms)))
        for term in negated:
            stmt = stmt.where(not_(contains(term)))
        stmt = stmt.order_by(DBNote.updated_at.desc(), DBNote.id.asc()).limit(limit)

        with db_errors("fallback_search"):
            with self._session_factory() as session:
                rows = session.execute(stmt).fetchall()

        results = []
        for note_id, title in rows:
            lowered = (title or "").lower()
            title_hits = sum(1 for t in terms if t.lower() in lowered)
            results.append((note_id, float(1 + title_hits) if terms else 0.0))
        results.sort(key=lambda r: -r[1])
        logger.debug(f"Fallback search returned {len(results)} results")
        return results

    def _attempt_recovery(self) -> bool:
        try:
            self.rebuild()
            return True
        except Exception as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False
