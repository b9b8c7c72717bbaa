#!/usr/bin/env python
"""Command-line entry point for the note store."""
import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from notecore import __version__
from notecore.config import NoteCoreConfig
from notecore.config import config as default_config
from notecore.engine import NoteEngine
from notecore.exceptions import NoteCoreError, TagNotFoundError, ValidationError
from notecore.models.schema import Note, SearchHit
from notecore.services.query_parser import parse_query
from notecore.utils import build_snippet, format_timestamp

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notecore", description="Local note store")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--base-dir",
        help="Data directory",
        type=str,
        default=os.environ.get("NOTECORE_BASE_DIR"),
    )
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTECORE_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTECORE_LOG_LEVEL", "WARNING"),
    )
    commands = parser.add_subparsers(dest="command", required=True)

    new = commands.add_parser("new", help="Create a note")
    new.add_argument("title")
    new.add_argument("--body", help="Note body (read from stdin when omitted)")
    new.add_argument("--pin", action="store_true", help="Pin the new note")

    search = commands.add_parser("search", help="Search notes")
    search.add_argument("query", nargs="+")
    search.add_argument("--regex", action="store_true", help="Treat free text as a regex")
    search.add_argument("--limit", type=int, default=None)

    tag = commands.add_parser("tag", help="Manage tags")
    tag_commands = tag.add_subparsers(dest="tag_command", required=True)
    tag_add = tag_commands.add_parser("add", help="Tag a note")
    tag_add.add_argument("note_id", type=int)
    tag_add.add_argument("name")
    tag_remove = tag_commands.add_parser("remove", help="Untag a note")
    tag_remove.add_argument("note_id", type=int)
    tag_remove.add_argument("name")
    tag_list = tag_commands.add_parser("list", help="List tags with note counts")
    tag_list.add_argument("--include-trashed", action="store_true")
    tag_rename = tag_commands.add_parser("rename", help="Rename a tag")
    tag_rename.add_argument("old")
    tag_rename.add_argument("new")
    tag_merge = tag_commands.add_parser("merge", help="Merge tags into a target")
    tag_merge.add_argument("target")
    tag_merge.add_argument("sources", nargs="+")
    tag_delete = tag_commands.add_parser("delete", help="Delete a tag")
    tag_delete.add_argument("name")

    trash = commands.add_parser("trash", help="Trash management")
    trash_commands = trash.add_subparsers(dest="trash_command", required=True)
    trash_commands.add_parser("list", help="List trashed notes")
    trash_restore = trash_commands.add_parser("restore", help="Restore trashed notes")
    trash_restore.add_argument("note_ids", type=int, nargs="+")
    trash_purge = trash_commands.add_parser("purge", help="Permanently delete trashed notes")
    trash_purge.add_argument("note_ids", type=int, nargs="*")
    trash_purge.add_argument("--all", action="store_true", help="Empty the whole trash")

    recover = commands.add_parser("recover", help="Recover unsaved drafts")
    recover_commands = recover.add_subparsers(dest="recover_command", required=True)
    recover_commands.add_parser("list", help="List recoverable drafts")
    recover_restore = recover_commands.add_parser("restore", help="Restore a draft")
    recover_restore.add_argument("key")
    recover_discard = recover_commands.add_parser("discard", help="Discard drafts")
    recover_discard.add_argument("key", nargs="?", help="Draft key (required unless --all)")
    recover_discard.add_argument("--all", action="store_true", help="Discard every draft")

    commands.add_parser("backup", help="Write a database backup now")
    return parser


def update_config(args: argparse.Namespace, cfg: NoteCoreConfig) -> NoteCoreConfig:
    """Apply command line overrides to the config."""
    if args.base_dir:
        cfg.base_dir = Path(args.base_dir)
    if args.database_path:
        cfg.database_path = Path(args.database_path)
    return cfg


def format_note(note: Note, snippet: Optional[str] = None) -> List[str]:
    """Result block for one note."""
    header = f"#{note.id}  {note.title}"
    if note.pinned:
        header += "  [PINNED]"
    if note.archived:
        header += "  [ARCHIVED]"
    lines = [header, f"    updated {format_timestamp(note.updated_at)}"]
    if note.tags:
        lines.append("    tags    " + " ".join(f"#{t}" for t in note.tags))
    text = snippet or build_snippet(note.body)
    if text:
        lines.append(f"    {text}")
    return lines


def format_hits(hits: Sequence[SearchHit]) -> List[str]:
    if not hits:
        return ["No matches found."]
    lines: List[str] = []
    for hit in hits:
        lines.extend(format_note(hit.note, hit.snippet))
    return lines


async def _resolve_tag_id(engine: NoteEngine, name: str) -> int:
    tag = await engine.coordinator.get_tag_by_name(name)
    if tag is None:
        raise TagNotFoundError(name)
    return tag.id


async def run_command(args: argparse.Namespace, engine: NoteEngine) -> List[str]:
    """Execute a parsed command and return the output lines."""
    coordinator = engine.coordinator

    if args.command == "new":
        body = args.body if args.body is not None else sys.stdin.read()
        note = await coordinator.create_note(args.title, body, pinned=args.pin)
        return [f"Created note #{note.id}"]

    if args.command == "search":
        text = " ".join(args.query).strip()
        if not text:
            raise ValidationError("Search query cannot be empty", field="query")
        parsed = parse_query(text, regex=args.regex)
        if parsed.is_empty and not parsed.has_filters:
            raise ValidationError(
                "Search query must contain terms or filters", field="query", value=text
            )
        hits = await coordinator.search(text, limit=args.limit, regex=args.regex)
        return format_hits(hits)

    if args.command == "tag":
        if args.tag_command == "add":
            tag = await coordinator.add_tag(args.note_id, args.name)
            return [f"Tagged #{args.note_id} with #{tag.name}"]
        if args.tag_command == "remove":
            await coordinator.remove_tag(args.note_id, args.name)
            return [f"Removed #{args.name} from #{args.note_id}"]
        if args.tag_command == "list":
            tags = await coordinator.list_tags(include_trashed=args.include_trashed)
            if not tags:
                return ["No tags."]
            return [f"#{t.name}  ({t.note_count})" for t in tags]
        if args.tag_command == "rename":
            tag_id = await _resolve_tag_id(engine, args.old)
            tag = await coordinator.rename_tag(tag_id, args.new)
            return [f"Renamed #{args.old} to #{tag.name}"]
        if args.tag_command == "merge":
            report = await coordinator.merge_tags(args.target, args.sources)
            lines = [
                f"Merged {len(report.merged)} tag(s) into #{report.target.name} "
                f"({report.reassigned} reassigned, {report.deduplicated} deduplicated)"
            ]
            lines += [f"  skipped {s.name!r}: {s.reason.value}" for s in report.skipped]
            return lines
        if args.tag_command == "delete":
            tag_id = await _resolve_tag_id(engine, args.name)
            detached = await coordinator.delete_tag(tag_id)
            return [f"Deleted #{args.name} ({detached} note(s) untagged)"]

    if args.command == "trash":
        if args.trash_command == "list":
            notes = await coordinator.list_trashed()
            if not notes:
                return ["Trash is empty."]
            lines = []
            for note in notes:
                status = coordinator.store.trash_status(note)
                lines.append(f"#{note.id}  {note.title}  ({status.label})")
            return lines
        if args.trash_command == "restore":
            result = await coordinator.restore_many(args.note_ids)
            lines = [f"Restored #{i}" for i in result.succeeded]
            lines += [f"Skipped #{i}: {reason}" for i, reason in result.failed.items()]
            return lines
        if args.trash_command == "purge":
            if args.all:
                count = await coordinator.purge_all_trashed()
                return [f"Purged {count} note(s)"]
            if not args.note_ids:
                return ["Nothing to purge; pass note ids or --all."]
            result = await coordinator.purge_notes(args.note_ids)
            lines = [f"Purged #{i}" for i in result.succeeded]
            lines += [f"Skipped #{i}: {reason}" for i, reason in result.failed.items()]
            return lines

    if args.command == "recover":
        entries = engine.recovery
        if args.recover_command == "list":
            if not entries:
                return ["No drafts to recover."]
            lines = []
            for entry in entries:
                target = "new note" if entry.is_new_note else f"note #{entry.snapshot.note_id}"
                lines.append(f"{entry.key}  ({target}, {entry.age})")
                lines += [f"    {line}" for line in entry.preview]
            return lines
        if args.recover_command == "restore":
            entry = next((e for e in entries if e.key == args.key), None)
            if entry is None:
                return [f"No draft {args.key}."]
            note = await engine.commit_recovered(entry)
            return [f"Recovered {args.key} into note #{note.id}"]
        if args.recover_command == "discard":
            if args.all:
                count = await engine.discard_all_recovered()
                return [f"Discarded {count} draft(s)"]
            entry = next((e for e in entries if e.key == args.key), None)
            if entry is None:
                return [f"No draft {args.key}."]
            await engine.discard_recovered(entry)
            return [f"Discarded {args.key}"]

    if args.command == "backup":
        record = await coordinator.backup()
        return [f"Backup written to {record.path}"]

    raise ValueError(f"Unknown command {args.command}")


async def _main_async(args: argparse.Namespace, cfg: NoteCoreConfig) -> List[str]:
    engine = NoteEngine(cfg)
    await engine.startup()
    try:
        return await run_command(args, engine)
    finally:
        await engine.shutdown()


def main(argv: Optional[Sequence[str]] = None, cfg: Optional[NoteCoreConfig] = None) -> int:
    """Run the CLI. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "recover" and args.recover_command == "discard":
        if not args.key and not args.all:
            parser.error("recover discard needs a KEY or --all")
    cfg = update_config(args, cfg or default_config)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING))

    try:
        lines = asyncio.run(_main_async(args, cfg))
    except NoteCoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
