"""Tests for text and time formatting helpers."""
import datetime

from notecore.utils import (build_recovery_preview, build_snippet,
                            escape_like_pattern, format_relative_age,
                            format_remaining, format_timestamp,
                            normalize_tag_name, sanitize_term)

NOW = datetime.datetime(2024, 5, 20, 12, 0, tzinfo=datetime.timezone.utc)


def test_escape_like_pattern():
    assert escape_like_pattern("100%_\\") == "100\\%\\_\\\\"


def test_normalize_tag_name():
    assert normalize_tag_name("  #Work ") == "work"
    assert normalize_tag_name("#") == ""
    assert len(normalize_tag_name("x" * 100)) == 64


def test_sanitize_term():
    assert sanitize_term("don't!") == "don t"
    assert sanitize_term("Q&A") == "Q A"
    assert sanitize_term("!?") == ""
    assert sanitize_term("v1.2-beta/x_y") == "v1.2-beta/x_y"


def test_build_snippet():
    assert build_snippet("\n  first  \nsecond\nthird") == "first"
    assert build_snippet("first\nsecond") == "first second"
    assert build_snippet("   ") is None


def test_recovery_preview_truncates():
    preview = build_recovery_preview("a" * 100 + "\n\nb\nc\nd\ne", max_lines=4, max_cols=80)
    assert preview[0] == "a" * 80 + "…"
    assert preview[1:] == ["b", "c", "d"]


def test_relative_age():
    ago = lambda **kw: format_relative_age(NOW - datetime.timedelta(**kw), NOW)  # noqa: E731
    assert ago(seconds=10) == "just now"
    assert ago(minutes=5) == "5m ago"
    assert ago(hours=3) == "3h ago"
    assert ago(days=2) == "2d ago"
    assert ago(days=12) == "2024-05-08T12:00:00Z"


def test_format_timestamp():
    assert format_timestamp(NOW.replace(microsecond=123)) == "2024-05-20T12:00:00Z"


def test_format_remaining():
    assert format_remaining(3 * 86400) == "3d left"
    assert format_remaining(86400 + 3600) == "1d 1h left"
    assert format_remaining(86400) == "1d left"
    assert format_remaining(3601) == "2h left"
    assert format_remaining(61) == "2m left"
