"""Identifier and timestamp helpers."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Optional

from .errors import InvalidInputError, MalformedTodoError

CANONICAL_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_SLUG_LENGTH = 50
DEFAULT_SLUG = "todo"

_SLUG_DASH_CHARS = str.maketrans({c: "-" for c in " _/\\\n\r\t"})
_SLUG_DROP_CHARS = str.maketrans({c: None for c in ":()[]{}\"'`~!@#$%^&*+=|;,<>?"})
_SLUG_INVALID = re.compile(r"[^a-z0-9-]")
_SLUG_DASH_RUN = re.compile(r"-{2,}")

_RFC3339_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)

# Tried in order; the first one that parses wins.
_TIMESTAMP_FORMATS = (
    CANONICAL_FORMAT,
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
    "rfc3339",
    "%Y-%m-%d",
)


def slugify(task: str) -> str:
    """Derive a todo id from a free-text task description."""
    slug = task.replace("\x00", "").lower()
    slug = slug.translate(_SLUG_DASH_CHARS).translate(_SLUG_DROP_CHARS)
    slug = _SLUG_INVALID.sub("", slug)
    slug = _SLUG_DASH_RUN.sub("-", slug).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or DEFAULT_SLUG


def now() -> datetime:
    """Current local time truncated to whole seconds."""
    return datetime.now().replace(microsecond=0)


def format_timestamp(value: Optional[datetime]) -> str:
    """Render a timestamp in canonical form; ``None`` renders as an empty string."""
    if value is None:
        return ""
    return value.strftime(CANONICAL_FORMAT)


def parse_timestamp(value: Any, field: str = "timestamp") -> Optional[datetime]:
    """Parse any accepted timestamp literal into a naive datetime.

    Offsets are dropped after parsing so the wall-clock reading stored in the
    file is what callers see. Empty values yield ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None, microsecond=0)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if not text:
        return None

    for fmt in _TIMESTAMP_FORMATS:
        if fmt == "rfc3339":
            if not _RFC3339_PATTERN.match(text):
                continue
            try:
                return datetime.fromisoformat(text).replace(tzinfo=None, microsecond=0)
            except ValueError:
                continue
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    raise MalformedTodoError(f"failed to parse {field} timestamp: {text!r}")


def stamp_entry(content: str, at: Optional[datetime] = None) -> str:
    """Prefix a results-log entry with ``[YYYY-MM-DD HH:MM:SS]``."""
    return f"[{format_timestamp(at or now())}] {content}"


def parse_date(value: str, field: str) -> date:
    """Parse a ``YYYY-MM-DD`` filter bound."""
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError:
        raise InvalidInputError(f"invalid {field} format: expected YYYY-MM-DD, got {value!r}") from None
