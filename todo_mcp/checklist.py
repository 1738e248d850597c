"""Checklist parsing and the tri-state toggle."""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from .models import ChecklistItem

PENDING_MARKERS = ("[ ]",)
IN_PROGRESS_MARKERS = ("[>]", "[-]", "[~]")
COMPLETED_MARKERS = ("[x]", "[X]")

VALID_PREFIXES = tuple(f"- {m}" for m in PENDING_MARKERS + IN_PROGRESS_MARKERS + COMPLETED_MARKERS)

_MARKER_STATUS: Dict[str, str] = {
    **{m: "pending" for m in PENDING_MARKERS},
    **{m: "in_progress" for m in IN_PROGRESS_MARKERS},
    **{m: "completed" for m in COMPLETED_MARKERS},
}

# pending -> in progress -> completed -> pending
_NEXT_MARKER: Dict[str, str] = {
    "[ ]": "[>]",
    "[>]": "[x]",
    "[-]": "[x]",
    "[~]": "[x]",
    "[x]": "[ ]",
    "[X]": "[ ]",
}

_ITEM_LINE_PATTERN = re.compile(r"^(?P<prefix>\s*)- (?P<mark>\[[ xX>~-]\])(?P<rest>.*)$")


def parse_checklist(text: str) -> List[ChecklistItem]:
    """Every checkbox line with non-empty text, in document order."""
    items = []
    for line in text.splitlines():
        match = _ITEM_LINE_PATTERN.match(line)
        if not match:
            continue
        item_text = match.group("rest").strip()
        if item_text:
            items.append(ChecklistItem(text=item_text, status=_MARKER_STATUS[match.group("mark")]))
    return items


def toggle_item(body: str, item_text: str) -> Tuple[str, Optional[str]]:
    """Advance the first item whose text equals ``item_text`` to its next state.

    Returns the new body and the item's new status, or the unchanged body and
    ``None`` when no item matches. Only the matched line is rewritten.
    """
    wanted = item_text.strip()
    lines = body.split("\n")
    for index, line in enumerate(lines):
        match = _ITEM_LINE_PATTERN.match(line)
        if not match or match.group("rest").strip() != wanted:
            continue
        new_marker = _NEXT_MARKER[match.group("mark")]
        lines[index] = f"{match.group('prefix')}- {new_marker} {wanted}"
        return "\n".join(lines), _MARKER_STATUS[new_marker]
    return body, None
