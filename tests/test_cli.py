"""Tests for the command-line interface."""
import io

import pytest

from notecore.journal.snapshots import SnapshotJournal, draft_key
from notecore.main import build_parser, main
from notecore.storage.note_store import NoteStore


@pytest.fixture
def run(test_config, monkeypatch, capsys):
    monkeypatch.delenv("NOTECORE_BASE_DIR", raising=False)
    monkeypatch.delenv("NOTECORE_DATABASE_PATH", raising=False)

    def _run(*argv):
        code = main(list(argv), cfg=test_config)
        out, err = capsys.readouterr()
        return code, out, err

    return _run


def test_new_and_search(run):
    code, out, _ = run("new", "Groceries", "--body", "buy milk", "--pin")
    assert code == 0
    assert out.strip() == "Created note #1"

    code, out, _ = run("search", "milk")
    assert code == 0
    lines = out.splitlines()
    assert lines[0] == "#1  Groceries  [PINNED]"
    assert lines[1].startswith("    updated ")
    assert lines[1].endswith("Z")
    assert "buy milk" in lines[2]


def test_new_reads_body_from_stdin(run, monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("from stdin"))
    run("new", "Piped")
    _, out, _ = run("search", "stdin")
    assert "#1  Piped" in out


def test_search_without_matches(run):
    code, out, _ = run("search", "nothing")
    assert code == 0
    assert out.strip() == "No matches found."


@pytest.mark.parametrize(
    "query,message",
    [
        ("   ", "Search query cannot be empty"),
        ("!!! ???", "Search query must contain terms or filters"),
    ],
)
def test_search_rejects_empty_query(run, query, message):
    code, out, err = run("search", query)
    assert code == 1
    assert out == ""
    assert err.startswith(f"Error: [VALIDATION_FAILED] {message}")


def test_search_with_only_filters(run):
    run("new", "Pinned", "--body", "x", "--pin")
    run("new", "Plain", "--body", "y")
    _, out, _ = run("search", "is:pinned")
    assert out.splitlines()[0] == "#1  Pinned  [PINNED]"
    assert "Plain" not in out


def test_tag_workflow(run):
    run("new", "Trip", "--body", "passport")
    assert run("tag", "add", "1", "Travel")[1].strip() == "Tagged #1 with #travel"

    _, out, _ = run("search", "tag:travel")
    assert "    tags    #travel" in out

    assert run("tag", "list")[1].strip() == "#travel  (1)"
    assert run("tag", "rename", "travel", "trips")[1].strip() == "Renamed #travel to #trips"

    run("new", "Hike", "--body", "boots")
    run("tag", "add", "2", "outdoors")
    _, out, _ = run("tag", "merge", "trips", "outdoors", "ghost")
    assert out.splitlines()[0] == "Merged 1 tag(s) into #trips (1 reassigned, 0 deduplicated)"
    assert "skipped 'ghost': no such tag" in out

    assert run("tag", "delete", "trips")[1].strip() == "Deleted #trips (2 note(s) untagged)"


def test_errors_exit_nonzero(run):
    run("new", "Trip", "--body", "x")
    code, _, err = run("tag", "remove", "1", "missing")
    assert code == 1
    assert err.startswith("Error: [TAG_NOT_FOUND]")

    code, _, err = run("search", "is:weird")
    assert code == 1
    assert "[SEARCH_INVALID_QUERY]" in err


def test_trash_commands(run, test_config):
    run("new", "Doomed", "--body", "x")
    store = NoteStore(test_config)
    store.soft_delete(1)
    store.close()

    _, out, _ = run("trash", "list")
    assert out.startswith("#1  Doomed  (")
    assert out.strip().endswith("d left)")
    assert run("trash", "restore", "1", "7")[1].splitlines() == [
        "Restored #1",
        "Skipped #7: not found",
    ]
    assert run("trash", "purge", "--all")[1].strip() == "Purged 0 note(s)"


def test_recover_commands(run, test_config):
    SnapshotJournal(test_config.get_journal_dir()).write(
        draft_key("abc"), "lost thought", title="Idea", draft_id="abc"
    )
    _, out, _ = run("recover", "list")
    assert out.splitlines() == ["new-abc  (new note, just now)", "    lost thought"]
    assert run("recover", "restore", "new-abc")[1].strip() == "Recovered new-abc into note #1"
    assert run("recover", "list")[1].strip() == "No drafts to recover."


def test_recover_discard_needs_key(run, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run("recover", "discard")
    assert exc_info.value.code == 2
    assert "needs a KEY or --all" in capsys.readouterr().err


def test_backup_command(run):
    code, out, _ = run("backup")
    assert code == 0
    assert out.startswith("Backup written to ")


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
