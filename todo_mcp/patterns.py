"""Hints for todo titles that look like parts of a larger piece of work."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional

from .models import PatternHint, Todo

_PHASE_PATTERN = re.compile(r"^phase\s+(\d+(?:\.\d+)?)\b", re.IGNORECASE)
_PART_PATTERN = re.compile(r"^part\s+(\d+)(?:\s+of\s+\d+)?\b", re.IGNORECASE)
_STEP_PATTERN = re.compile(r"^step\s+(\d+)\b", re.IGNORECASE)
_NUMBERED_PATTERNS = (
    re.compile(r"^\[(\d+)\]\s+"),
    re.compile(r"^(\d+)\.\s+"),
    re.compile(r"^(\d+)\)\s+"),
)

_PREFIX_SEPARATORS = (":", " - ", " — ")
_MAX_PREFIX_LENGTH = 30


def detect_pattern(title: str) -> Optional[PatternHint]:
    """Recognise phase, part, step and numbered titles."""
    title = title.strip()

    match = _PHASE_PATTERN.match(title)
    if match:
        return PatternHint(
            pattern="phase",
            suggested_type="phase",
            message="This looks like a phase. Consider using type 'phase'.",
            number=match.group(1),
        )

    match = _PART_PATTERN.match(title)
    if match:
        return PatternHint(
            pattern="part",
            suggested_type="phase",
            message="This looks like a multi-part task. Consider using type 'phase'.",
            number=match.group(1),
        )

    match = _STEP_PATTERN.match(title)
    if match:
        return PatternHint(
            pattern="step",
            suggested_type="subtask",
            message="This looks like a step. Consider using type 'subtask'.",
            number=match.group(1),
        )

    for pattern in _NUMBERED_PATTERNS:
        match = pattern.match(title)
        if match:
            return PatternHint(
                pattern="numbered",
                suggested_type="subtask",
                message="This looks like a numbered task. Consider using type 'subtask'.",
                number=match.group(1),
            )

    return None


def title_prefix(title: str) -> str:
    """Grouping key of a title: its pattern kind or the text before a separator."""
    title = title.strip()
    if _PHASE_PATTERN.match(title):
        return "Phase"
    if _PART_PATTERN.match(title):
        return "Part"
    if _STEP_PATTERN.match(title):
        return "Step"
    if any(p.match(title) for p in _NUMBERED_PATTERNS):
        return "Numbered"

    for separator in _PREFIX_SEPARATORS:
        index = title.find(separator)
        if index > 0:
            prefix = title[:index].strip()
            if len(prefix) < _MAX_PREFIX_LENGTH:
                return prefix
    return ""


def find_similar(todos: Iterable[Todo], title: str) -> List[str]:
    """Ids of todos whose title shares ``title``'s prefix (case-insensitive)."""
    prefix = title_prefix(title).lower()
    if not prefix:
        return []
    return [
        todo.id
        for todo in todos
        if todo.id and title_prefix(todo.task).lower() == prefix
    ]
