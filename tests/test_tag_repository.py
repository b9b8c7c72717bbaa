"""Tests for tag associations and tag graph mutations."""
import pytest

from notecore.exceptions import (NoteNotFoundError, TagNameConflictError,
                                 TagNotFoundError, ValidationError)
from notecore.models.schema import SkipReason


@pytest.fixture
def notes(note_store):
    return [note_store.create(f"Note {i}") for i in range(3)]


def _names(tag_repository, note_id):
    return [t.name for t in tag_repository.tags_for_note(note_id)]


class TestAssociations:
    def test_add_creates_normalized_tag(self, tag_repository, notes):
        tag = tag_repository.add(notes[0].id, "  #Work ")
        assert tag.name == "work"
        assert _names(tag_repository, notes[0].id) == ["work"]

    def test_add_is_idempotent(self, tag_repository, notes):
        first = tag_repository.add(notes[0].id, "work")
        second = tag_repository.add(notes[0].id, "WORK")
        assert first.id == second.id
        assert _names(tag_repository, notes[0].id) == ["work"]
        assert len(tag_repository.list_all()) == 1

    def test_tags_show_on_note(self, note_store, tag_repository, notes):
        tag_repository.add(notes[0].id, "b")
        tag_repository.add(notes[0].id, "a")
        assert note_store.get(notes[0].id).tags == ["a", "b"]

    def test_add_to_trashed_note_fails(self, note_store, tag_repository, notes):
        note_store.soft_delete(notes[0].id)
        with pytest.raises(NoteNotFoundError):
            tag_repository.add(notes[0].id, "work")

    def test_empty_name_rejected(self, tag_repository, notes):
        with pytest.raises(ValidationError):
            tag_repository.add(notes[0].id, " # ")

    def test_remove(self, tag_repository, notes):
        tag_repository.add(notes[0].id, "work")
        tag_repository.remove(notes[0].id, "Work")
        assert _names(tag_repository, notes[0].id) == []

    def test_remove_missing_association(self, tag_repository, notes):
        tag_repository.add(notes[1].id, "work")
        with pytest.raises(TagNotFoundError):
            tag_repository.remove(notes[0].id, "work")
        with pytest.raises(TagNotFoundError):
            tag_repository.remove(notes[0].id, "nonexistent")

    def test_tag_add_does_not_change_updated_at(self, note_store, tag_repository, notes):
        before = note_store.get(notes[0].id).updated_at
        tag_repository.add(notes[0].id, "work")
        assert note_store.get(notes[0].id).updated_at == before


class TestRename:
    def test_rename(self, tag_repository, notes):
        tag = tag_repository.add(notes[0].id, "wrk")
        renamed = tag_repository.rename(tag.id, "Work")
        assert renamed.id == tag.id
        assert renamed.name == "work"
        assert _names(tag_repository, notes[0].id) == ["work"]

    def test_rename_collision_is_rejected(self, tag_repository, notes):
        a = tag_repository.add(notes[0].id, "a")
        b = tag_repository.add(notes[1].id, "b")
        with pytest.raises(TagNameConflictError) as exc_info:
            tag_repository.rename(a.id, "B")
        assert exc_info.value.existing_tag_id == b.id
        assert _names(tag_repository, notes[0].id) == ["a"]

    def test_rename_to_same_name_is_noop(self, tag_repository, notes):
        tag = tag_repository.add(notes[0].id, "work")
        assert tag_repository.rename(tag.id, "WORK").name == "work"

    def test_rename_unknown_tag(self, tag_repository):
        with pytest.raises(TagNotFoundError):
            tag_repository.rename(42, "anything")


class TestMerge:
    def test_merge_repoints_and_deduplicates(self, tag_repository, notes):
        tag_repository.add(notes[0].id, "project")
        tag_repository.add(notes[0].id, "proj")
        tag_repository.add(notes[1].id, "proj")
        tag_repository.add(notes[2].id, "prj")

        report = tag_repository.merge("Project", ["proj", "prj"])

        assert report.target.name == "project"
        assert report.merged == ["proj", "prj"]
        assert report.reassigned == 2
        assert report.deduplicated == 1
        assert report.skipped == []
        for note in notes:
            assert _names(tag_repository, note.id) == ["project"]
        assert [t.name for t in tag_repository.list_all()] == ["project"]

    def test_merge_skips_and_reports(self, tag_repository, notes):
        tag_repository.add(notes[0].id, "proj")
        report = tag_repository.merge("project", ["proj", "PROJ", "", "project", "ghost"])
        assert report.merged == ["proj"]
        reasons = {(s.name, s.reason) for s in report.skipped}
        assert reasons == {
            ("proj", SkipReason.DUPLICATE),
            ("", SkipReason.EMPTY),
            ("project", SkipReason.TARGET),
            ("ghost", SkipReason.MISSING),
        }

    def test_merge_creates_missing_target(self, tag_repository, notes):
        tag_repository.add(notes[0].id, "old")
        report = tag_repository.merge("new", ["old"])
        assert report.target.name == "new"
        assert _names(tag_repository, notes[0].id) == ["new"]

    def test_merge_is_idempotent(self, tag_repository, notes):
        tag_repository.add(notes[0].id, "a")
        tag_repository.add(notes[1].id, "b")
        tag_repository.merge("a", ["b"])
        before = {n.id: _names(tag_repository, n.id) for n in notes}
        again = tag_repository.merge("a", ["b"])
        assert again.merged == []
        assert {n.id: _names(tag_repository, n.id) for n in notes} == before


class TestDeleteAndCounts:
    def test_delete_cascades_associations(self, tag_repository, notes):
        tag = tag_repository.add(notes[0].id, "work")
        tag_repository.add(notes[1].id, "work")
        assert tag_repository.delete(tag.id) == 2
        assert _names(tag_repository, notes[0].id) == []
        assert tag_repository.get_by_name("work") is None

    def test_delete_unknown_tag(self, tag_repository):
        with pytest.raises(TagNotFoundError):
            tag_repository.delete(7)

    def test_counts_exclude_trashed_notes(self, note_store, tag_repository, notes):
        tag_repository.add(notes[0].id, "work")
        tag_repository.add(notes[1].id, "work")
        note_store.soft_delete(notes[1].id)
        counts = {t.name: t.note_count for t in tag_repository.list_with_counts()}
        assert counts == {"work": 1}
        with_trash = tag_repository.list_with_counts(include_trashed=True)
        assert with_trash[0].note_count == 2

    def test_purge_removes_associations(self, note_store, tag_repository, notes):
        tag_repository.add(notes[0].id, "work")
        note_store.soft_delete(notes[0].id)
        note_store.purge_all_trashed()
        assert tag_repository.list_with_counts(include_trashed=True)[0].note_count == 0
        assert tag_repository.delete_unused() == 1
