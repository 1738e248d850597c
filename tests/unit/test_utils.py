"""Unit tests for todo id and timestamp helpers."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from todo_mcp.errors import InvalidInputError, MalformedTodoError
from todo_mcp.utils import (
    format_timestamp,
    now,
    parse_date,
    parse_timestamp,
    slugify,
    stamp_entry,
)

SLUG_SHAPE = re.compile(r"^[a-z0-9][a-z0-9-]{0,49}$")


class TestSlugify:
    """Test cases for deriving ids from task text."""

    def test_simple_task(self):
        """Test a plain sentence becomes a dashed lowercase id."""
        assert slugify("Implement authentication") == "implement-authentication"

    def test_punctuation_and_separators(self):
        """Test punctuation is dropped and separators collapse to one dash."""
        assert slugify("Fix: login (bug) / retry") == "fix-login-bug-retry"
        assert slugify("snake_case and\ttabs") == "snake-case-and-tabs"

    def test_non_ascii_letters_are_removed(self):
        """Test characters outside a-z0-9 disappear."""
        assert slugify("Café déjà vu") == "caf-dj-vu"

    def test_leading_and_trailing_dashes_are_trimmed(self):
        """Test surrounding dashes never survive."""
        assert slugify("  --hello--  ") == "hello"

    def test_long_task_is_truncated(self):
        """Test ids are capped at fifty characters without a trailing dash."""
        slug = slugify("word " * 30)
        assert len(slug) <= 50
        assert not slug.endswith("-")
        assert SLUG_SHAPE.match(slug)

    def test_empty_result_falls_back(self):
        """Test a task with no usable characters still gets an id."""
        assert slugify("!!! ???") == "todo"
        assert slugify("") == "todo"

    def test_idempotent(self):
        """Test slugging a slug changes nothing."""
        for task in ("Implement authentication", "Phase 2: API -- cleanup", "x" * 70, "__init__"):
            slug = slugify(task)
            assert slugify(slug) == slug
            assert SLUG_SHAPE.match(slug)
            assert "--" not in slug


class TestTimestamps:
    """Test cases for timestamp parsing and formatting."""

    def test_canonical_format(self):
        """Test the canonical write format is accepted."""
        assert parse_timestamp("2025-01-29 02:55:00") == datetime(2025, 1, 29, 2, 55)

    def test_utc_suffix_keeps_wall_clock(self):
        """Test a trailing Z is accepted without shifting the time."""
        assert parse_timestamp("2025-01-29T02:55:00Z") == datetime(2025, 1, 29, 2, 55)

    def test_offset_is_dropped(self):
        """Test an explicit offset is parsed and then discarded."""
        assert parse_timestamp("2025-01-29T02:55:00+05:00") == datetime(2025, 1, 29, 2, 55)

    def test_fractional_seconds(self):
        """Test fractional seconds are parsed and truncated."""
        assert parse_timestamp("2025-01-29T02:55:00.250Z") == datetime(2025, 1, 29, 2, 55)

    def test_date_only(self):
        """Test a bare date parses to midnight."""
        assert parse_timestamp("2025-01-29") == datetime(2025, 1, 29)

    def test_datetime_objects(self):
        """Test values already decoded by YAML are normalized."""
        aware = datetime(2025, 1, 29, 2, 55, 0, 123, tzinfo=timezone.utc)
        assert parse_timestamp(aware) == datetime(2025, 1, 29, 2, 55)

    def test_empty_values(self):
        """Test empty input means no timestamp."""
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("   ") is None

    def test_unparseable_value_names_field(self):
        """Test the error message names the offending field."""
        with pytest.raises(MalformedTodoError, match="failed to parse started timestamp"):
            parse_timestamp("yesterday", "started")

    def test_format_timestamp(self):
        """Test canonical rendering and the empty case."""
        assert format_timestamp(datetime(2025, 3, 4, 5, 6, 7)) == "2025-03-04 05:06:07"
        assert format_timestamp(None) == ""

    def test_now_has_no_microseconds(self):
        """Test the clock is truncated to whole seconds."""
        current = now()
        assert current.microsecond == 0
        assert abs(datetime.now() - current) < timedelta(seconds=5)

    def test_stamp_entry(self):
        """Test results entries get a bracketed timestamp prefix."""
        assert stamp_entry("all green", datetime(2025, 1, 2, 3, 4, 5)) == "[2025-01-02 03:04:05] all green"


class TestParseDate:
    """Test cases for date filter bounds."""

    def test_valid_date(self):
        """Test a YYYY-MM-DD bound parses."""
        assert parse_date("2025-02-03", "date_from").isoformat() == "2025-02-03"

    def test_invalid_date(self):
        """Test malformed bounds are rejected with the field name."""
        with pytest.raises(InvalidInputError, match="invalid date_to format"):
            parse_date("2025-13-01", "date_to")
