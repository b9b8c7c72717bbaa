"""Tag mutation engine: associations, rename, merge and delete.

Every operation is a single transaction, so a failure mid-merge leaves
either the pre-merge or the post-merge tag graph.
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, insert, select, text

from notecore.exceptions import (ErrorCode, NoteNotFoundError,
                                 TagNameConflictError, TagNotFoundError,
                                 ValidationError)
from notecore.models.db_models import DBNote, DBTag, note_tags
from notecore.models.schema import MergeReport, SkippedName, SkipReason, Tag
from notecore.storage.errors import db_errors
from notecore.utils import normalize_tag_name

logger = logging.getLogger(__name__)


def _require_name(raw: str) -> str:
    name = normalize_tag_name(raw or "")
    if not name:
        raise ValidationError(
            "Tag name cannot be empty", field="tag", value=raw, code=ErrorCode.TAG_INVALID
        )
    return name


class TagRepository:
    """Repository for tags and note/tag associations.

    Args:
        session_factory: SQLAlchemy session factory for database operations.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Internal helpers (run inside the caller's session)
    # ------------------------------------------------------------------

    @staticmethod
    def _get_or_create(session, name: str) -> DBTag:
        # INSERT OR IGNORE keeps creation idempotent under the unique index
        session.execute(text("INSERT OR IGNORE INTO tags (name) VALUES (:name)"), {"name": name})
        return session.scalar(select(DBTag).where(DBTag.name == name))

    @staticmethod
    def _live_note(session, note_id: int) -> DBNote:
        db_note = session.get(DBNote, note_id)
        if db_note is None or db_note.deleted_at is not None:
            raise NoteNotFoundError(note_id)
        return db_note

    @staticmethod
    def _note_ids_for(session, tag_id: int) -> List[int]:
        return list(
            session.scalars(select(note_tags.c.note_id).where(note_tags.c.tag_id == tag_id))
        )

    # ------------------------------------------------------------------
    # Associations
    # ------------------------------------------------------------------

    def add(self, note_id: int, tag_name: str) -> Tag:
        """Tag a note, creating the tag if needed.

        Adding an association that already exists is a no-op.

        Raises:
            NoteNotFoundError: The note is missing or in the trash.
            ValidationError: The name is empty after normalization.
        """
        name = _require_name(tag_name)
        with db_errors("tag_add"):
            with self.session_factory() as session:
                self._live_note(session, note_id)
                db_tag = self._get_or_create(session, name)
                session.execute(
                    text(
                        "INSERT OR IGNORE INTO note_tags (note_id, tag_id) "
                        "VALUES (:note_id, :tag_id)"
                    ),
                    {"note_id": note_id, "tag_id": db_tag.id},
                )
                tag = Tag(id=db_tag.id, name=db_tag.name)
                session.commit()
        logger.debug(f"Tagged note #{note_id} with '{name}'")
        return tag

    def remove(self, note_id: int, tag_name: str) -> None:
        """Remove a tag from a note.

        Raises:
            NoteNotFoundError: The note is missing or in the trash.
            TagNotFoundError: The note does not carry that tag.
        """
        name = _require_name(tag_name)
        with db_errors("tag_remove"):
            with self.session_factory() as session:
                self._live_note(session, note_id)
                tag_id = session.scalar(select(DBTag.id).where(DBTag.name == name))
                if tag_id is None:
                    raise TagNotFoundError(name, note_id=note_id)
                result = session.execute(
                    delete(note_tags).where(
                        note_tags.c.note_id == note_id, note_tags.c.tag_id == tag_id
                    )
                )
                if not result.rowcount:
                    raise TagNotFoundError(
                        name,
                        message=f"Note #{note_id} is not tagged '{name}'",
                        note_id=note_id,
                    )
                session.commit()
        logger.debug(f"Removed tag '{name}' from note #{note_id}")

    # ------------------------------------------------------------------
    # Graph mutations
    # ------------------------------------------------------------------

    def rename(self, tag_id: int, new_name: str) -> Tag:
        """Rename a tag.

        Renaming to the current name is a no-op. Use ``merge`` to
        consolidate two existing tags.

        Raises:
            TagNotFoundError: No tag has this id.
            TagNameConflictError: Another tag already uses the new name.
        """
        name = _require_name(new_name)
        with db_errors("tag_rename"):
            with self.session_factory() as session:
                db_tag = session.get(DBTag, tag_id)
                if db_tag is None:
                    raise TagNotFoundError(tag_id)
                if db_tag.name != name:
                    existing = session.scalar(select(DBTag.id).where(DBTag.name == name))
                    if existing is not None:
                        raise TagNameConflictError(name, existing)
                    old_name = db_tag.name
                    db_tag.name = name
                    logger.info(f"Renamed tag '{old_name}' to '{name}'")
                tag = Tag(id=db_tag.id, name=db_tag.name)
                session.commit()
        return tag

    def merge(self, target_name: str, source_names: Iterable[str]) -> MergeReport:
        """Fold source tags into a target tag in one transaction.

        Each source's associations are re-pointed to the target (dropping
        those the note already had) and the source tag is deleted. Empty,
        duplicate, self-referential and unknown source names are skipped
        and reported instead of failing the merge. The target is created
        if it does not exist yet. Running the same merge twice leaves the
        same associations.

        Raises:
            ValidationError: The target name is empty.
        """
        target = _require_name(target_name)
        with db_errors("tag_merge"):
            with self.session_factory() as session:
                target_tag = self._get_or_create(session, target)
                report = MergeReport(target=Tag(id=target_tag.id, name=target_tag.name))
                seen = set()
                for raw in source_names:
                    name = normalize_tag_name(raw or "")
                    if not name:
                        report.skipped.append(SkippedName(raw or "", SkipReason.EMPTY))
                        continue
                    if name in seen:
                        report.skipped.append(SkippedName(name, SkipReason.DUPLICATE))
                        continue
                    seen.add(name)
                    if name == target:
                        report.skipped.append(SkippedName(name, SkipReason.TARGET))
                        continue
                    source = session.scalar(select(DBTag).where(DBTag.name == name))
                    if source is None:
                        report.skipped.append(SkippedName(name, SkipReason.MISSING))
                        continue

                    note_ids = set(self._note_ids_for(session, source.id))
                    already = set(self._note_ids_for(session, target_tag.id))
                    moved = sorted(note_ids - already)
                    if moved:
                        session.execute(
                            insert(note_tags),
                            [{"note_id": n, "tag_id": target_tag.id} for n in moved],
                        )
                    session.execute(delete(note_tags).where(note_tags.c.tag_id == source.id))
                    session.execute(delete(DBTag).where(DBTag.id == source.id))
                    report.merged.append(name)
                    report.reassigned += len(moved)
                    report.deduplicated += len(note_ids) - len(moved)
                session.commit()
        logger.info(
            f"Merged {report.merged} into '{target}' "
            f"({report.reassigned} moved, {len(report.skipped)} skipped)"
        )
        return report

    def delete(self, tag_id: int) -> int:
        """Delete a tag and all of its associations.

        Returns:
            Number of associations removed.
        """
        with db_errors("tag_delete"):
            with self.session_factory() as session:
                db_tag = session.get(DBTag, tag_id)
                if db_tag is None:
                    raise TagNotFoundError(tag_id)
                detached = session.scalar(
                    select(func.count()).select_from(note_tags).where(note_tags.c.tag_id == tag_id)
                ) or 0
                # note_tags rows go with the tag through ON DELETE CASCADE
                session.execute(delete(DBTag).where(DBTag.id == tag_id))
                session.commit()
        logger.info(f"Deleted tag #{tag_id} ({detached} associations)")
        return int(detached)

    def delete_unused(self) -> int:
        """Delete tags that are not associated with any notes.

        Returns:
            Number of tags deleted.
        """
        with db_errors("tag_delete_unused"):
            with self.session_factory() as session:
                used = select(note_tags.c.tag_id).distinct()
                result = session.execute(delete(DBTag).where(DBTag.id.not_in(used)))
                session.commit()
                return int(result.rowcount or 0)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, tag_id: int) -> Tag:
        with db_errors("tag_get"):
            with self.session_factory() as session:
                db_tag = session.get(DBTag, tag_id)
                if db_tag is None:
                    raise TagNotFoundError(tag_id)
                return Tag(id=db_tag.id, name=db_tag.name)

    def get_by_name(self, tag_name: str) -> Optional[Tag]:
        """Look up a tag by (normalized) name."""
        name = normalize_tag_name(tag_name or "")
        if not name:
            return None
        with db_errors("tag_get"):
            with self.session_factory() as session:
                db_tag = session.scalar(select(DBTag).where(DBTag.name == name))
                if db_tag is None:
                    return None
                return Tag(id=db_tag.id, name=db_tag.name)

    def list_all(self) -> List[Tag]:
        with db_errors("tag_list"):
            with self.session_factory() as session:
                rows = session.scalars(select(DBTag).order_by(DBTag.name)).all()
                return [Tag(id=t.id, name=t.name) for t in rows]

    def list_with_counts(self, include_trashed: bool = False) -> List[Tag]:
        """All tags with the number of notes carrying each.

        Trashed notes are not counted unless ``include_trashed`` is set.
        """
        join_on = DBNote.id == note_tags.c.note_id
        if not include_trashed:
            join_on = join_on & DBNote.deleted_at.is_(None)
        stmt = (
            select(DBTag.id, DBTag.name, func.count(DBNote.id))
            .select_from(DBTag)
            .outerjoin(note_tags, DBTag.id == note_tags.c.tag_id)
            .outerjoin(DBNote, join_on)
            .group_by(DBTag.id, DBTag.name)
            .order_by(DBTag.name)
        )
        with db_errors("tag_list"):
            with self.session_factory() as session:
                return [
                    Tag(id=tag_id, name=name, note_count=count)
                    for tag_id, name, count in session.execute(stmt).all()
                ]

    def tags_for_note(self, note_id: int) -> List[Tag]:
        with db_errors("tag_list"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(DBTag.id, DBTag.name)
                    .join(note_tags, DBTag.id == note_tags.c.tag_id)
                    .where(note_tags.c.note_id == note_id)
                    .order_by(DBTag.name)
                ).all()
                return [Tag(id=tag_id, name=name) for tag_id, name in rows]

