"""Section schemas, ordering and inference for todo bodies.

A todo body is a preamble (``# Task: ...``) followed by ``##`` sections. Each
section may be declared in frontmatter with one of six schemas; every schema
has a validator and a metrics extractor registered in ``SCHEMA_REGISTRY``.
Records without declared sections get the same mapping inferred from their
headings.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .checklist import COMPLETED_MARKERS, IN_PROGRESS_MARKERS, PENDING_MARKERS, VALID_PREFIXES
from .errors import InvalidInputError, SchemaViolationError
from .models import SectionDefinition

HEADING_PREFIX = "## "
CODE_FENCE = "```"

SCHEMA_RESEARCH = "research"
SCHEMA_STRATEGY = "strategy"
SCHEMA_CHECKLIST = "checklist"
SCHEMA_TEST_CASES = "test_cases"
SCHEMA_RESULTS = "results"
SCHEMA_FREEFORM = "freeform"

DEFAULT_CUSTOM_ORDER = 100


# ------------------------------------------------------------------
# Validators and metrics
# ------------------------------------------------------------------

def _accept_any(content: str) -> Optional[str]:
    return None


def _validate_checklist(content: str) -> Optional[str]:
    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed:
            continue
        if trimmed.startswith(VALID_PREFIXES):
            continue
        if trimmed.startswith("- ["):
            return "invalid checkbox syntax"
        return "non-checklist content found"
    return None


def _fence_lines(content: str) -> int:
    return sum(1 for line in content.splitlines() if line.lstrip().startswith(CODE_FENCE))


def _validate_test_cases(content: str) -> Optional[str]:
    fences = _fence_lines(content)
    if fences < 2:
        return "no code blocks found"
    if fences % 2:
        return "unbalanced code fence"
    return None


def _research_metrics(content: str) -> Dict[str, Any]:
    return {"word_count": len(content.split())}


def _strategy_metrics(content: str) -> Dict[str, Any]:
    return {"sections": content.count("###")}


def _checklist_metrics(content: str) -> Dict[str, Any]:
    completed = in_progress = pending = 0
    for line in content.splitlines():
        trimmed = line.strip()
        if trimmed.startswith(tuple(f"- {m}" for m in COMPLETED_MARKERS)):
            completed += 1
        elif trimmed.startswith(tuple(f"- {m}" for m in IN_PROGRESS_MARKERS)):
            in_progress += 1
        elif trimmed.startswith(tuple(f"- {m}" for m in PENDING_MARKERS)):
            pending += 1
    return {
        "completed": completed,
        "in_progress": in_progress,
        "pending": pending,
        "total": completed + in_progress + pending,
    }


def _test_cases_metrics(content: str) -> Dict[str, Any]:
    return {"code_blocks": _fence_lines(content) // 2}


def _results_metrics(content: str) -> Dict[str, Any]:
    entries = sum(1 for line in content.splitlines() if line.strip().startswith("["))
    return {"entries": entries}


def _freeform_metrics(content: str) -> Dict[str, Any]:
    return {"length": len(content.encode("utf-8"))}


@dataclass(frozen=True, slots=True)
class SchemaHandler:
    """Validator and metrics extractor for one schema."""

    name: str
    validate: Callable[[str], Optional[str]]
    metrics: Callable[[str], Dict[str, Any]]


SCHEMA_REGISTRY: Dict[str, SchemaHandler] = {
    SCHEMA_RESEARCH: SchemaHandler(SCHEMA_RESEARCH, _accept_any, _research_metrics),
    SCHEMA_STRATEGY: SchemaHandler(SCHEMA_STRATEGY, _accept_any, _strategy_metrics),
    SCHEMA_CHECKLIST: SchemaHandler(SCHEMA_CHECKLIST, _validate_checklist, _checklist_metrics),
    SCHEMA_TEST_CASES: SchemaHandler(SCHEMA_TEST_CASES, _validate_test_cases, _test_cases_metrics),
    SCHEMA_RESULTS: SchemaHandler(SCHEMA_RESULTS, _accept_any, _results_metrics),
    SCHEMA_FREEFORM: SchemaHandler(SCHEMA_FREEFORM, _accept_any, _freeform_metrics),
}


def get_schema(name: str) -> SchemaHandler:
    """Look up a schema handler, rejecting unknown names."""
    try:
        return SCHEMA_REGISTRY[name]
    except KeyError:
        raise InvalidInputError(
            f"invalid schema '{name}': expected one of {', '.join(SCHEMA_REGISTRY)}"
        ) from None


def validate_content(section_key: str, schema: str, content: str) -> None:
    """Raise ``SchemaViolationError`` if ``content`` breaks the schema's rule."""
    rule = get_schema(schema).validate(content)
    if rule:
        raise SchemaViolationError(section_key, rule)


def compute_metrics(schema: str, content: str) -> Dict[str, Any]:
    return get_schema(schema).metrics(content)


# ------------------------------------------------------------------
# Standard sections
# ------------------------------------------------------------------

# heading literal -> (key, schema)
STANDARD_SECTIONS: Dict[str, Tuple[str, str]] = {
    "## Findings & Research": ("findings", SCHEMA_RESEARCH),
    "## Web Searches": ("web_searches", SCHEMA_RESEARCH),
    "## Test Strategy": ("test_strategy", SCHEMA_STRATEGY),
    "## Test List": ("test_list", SCHEMA_CHECKLIST),
    "## Test Cases": ("tests", SCHEMA_TEST_CASES),
    "## Maintainability Analysis": ("maintainability", SCHEMA_FREEFORM),
    "## Test Results Log": ("test_results", SCHEMA_RESULTS),
    "## Checklist": ("checklist", SCHEMA_CHECKLIST),
    "## Working Scratchpad": ("scratchpad", SCHEMA_FREEFORM),
}

DEFAULT_SECTION_LAYOUT = (
    "## Findings & Research",
    "## Web Searches",
    "## Test Strategy",
    "## Test List",
    "## Test Cases",
    "## Test Results Log",
    "## Checklist",
    "## Working Scratchpad",
)


def default_sections() -> Dict[str, SectionDefinition]:
    """Section definitions given to every newly created todo."""
    sections: Dict[str, SectionDefinition] = {}
    for order, title in enumerate(DEFAULT_SECTION_LAYOUT, start=1):
        key, schema = STANDARD_SECTIONS[title]
        sections[key] = SectionDefinition(title=title, order=order, schema=schema)
    return sections


_KEY_DROP_CHARS = str.maketrans({c: None for c in "()[]{}:;,.!?'\""})
_KEY_UNDERSCORE_CHARS = str.maketrans({c: "_" for c in "/\\- "})
_KEY_UNDERSCORE_RUN = re.compile(r"_{2,}")


def section_key_from_title(title: str) -> str:
    """Derive a section key from a heading such as ``## Security Analysis``."""
    text = title.strip()
    if text.startswith(HEADING_PREFIX):
        text = text[len(HEADING_PREFIX):]
    key = text.strip().lower().replace("&", "and")
    key = key.translate(_KEY_DROP_CHARS).translate(_KEY_UNDERSCORE_CHARS)
    key = _KEY_UNDERSCORE_RUN.sub("_", key)
    return key.strip("_")


def title_from_key(key: str) -> str:
    """Default heading for a section added by key only."""
    return HEADING_PREFIX + " ".join(part.capitalize() for part in key.split("_") if part)


# ------------------------------------------------------------------
# Body structure
# ------------------------------------------------------------------

def section_titles(sections: Optional[Dict[str, SectionDefinition]]) -> List[str]:
    return [section.title for section in (sections or {}).values()]


def heading_lines(lines: List[str], titles: Optional[Iterable[str]] = None) -> List[int]:
    """Indexes of the ``##`` lines that start a section.

    Headings inside fenced code blocks are content. A standard or declared
    section title (``titles``) closes a fence left open above it, so one
    unbalanced fence cannot hide the sections that follow.
    """
    known = set(STANDARD_SECTIONS)
    known.update(title.rstrip() for title in titles or ())

    indexes: List[int] = []
    in_fence = False
    for index, line in enumerate(lines):
        if line.lstrip().startswith(CODE_FENCE):
            in_fence = not in_fence
            continue
        if not line.startswith(HEADING_PREFIX):
            continue
        if in_fence and line.rstrip() not in known:
            continue
        in_fence = False
        indexes.append(index)
    return indexes


def _trim_blank(lines: List[str]) -> Tuple[int, int]:
    """``(start, end)`` of ``lines`` without leading and trailing blank lines."""
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return start, end


def _strip_blank(lines: List[str]) -> List[str]:
    start, end = _trim_blank(lines)
    return lines[start:end]


def _find_section(lines: List[str], title: str, titles: Optional[Iterable[str]]) -> Optional[Tuple[int, int]]:
    """Line range ``[heading, next heading)`` of the first section titled ``title``."""
    headings = heading_lines(lines, titles)
    for position, index in enumerate(headings):
        if lines[index].rstrip() == title.rstrip():
            stop = headings[position + 1] if position + 1 < len(headings) else len(lines)
            return index, stop
    return None


def split_body(body: str, titles: Optional[Iterable[str]] = None) -> Tuple[str, List[Tuple[str, str]]]:
    """Split a body into its preamble and ``(heading, content)`` blocks.

    Content has surrounding blank lines removed.
    """
    lines = body.split("\n")
    headings = heading_lines(lines, titles)
    first = headings[0] if headings else len(lines)

    blocks: List[Tuple[str, str]] = []
    for position, index in enumerate(headings):
        stop = headings[position + 1] if position + 1 < len(headings) else len(lines)
        blocks.append((lines[index].rstrip(), "\n".join(_strip_blank(lines[index + 1:stop]))))
    return "\n".join(_strip_blank(lines[:first])), blocks


def join_body(preamble: str, blocks: Iterable[Tuple[str, str]]) -> str:
    """Inverse of ``split_body``: one blank line between every part."""
    parts = [preamble.strip("\n")] if preamble.strip("\n") else []
    for heading, content in blocks:
        parts.append(f"{heading}\n\n{content}" if content else heading)
    return "\n\n".join(parts) + "\n"


def extract_section(body: str, title: str, titles: Optional[Iterable[str]] = None) -> Optional[str]:
    """Content under the first heading equal to ``title``; ``None`` if absent."""
    lines = body.split("\n")
    span = _find_section(lines, title, titles)
    if span is None:
        return None
    return "\n".join(_strip_blank(lines[span[0] + 1:span[1]]))


def replace_section(body: str, title: str, content: str, titles: Optional[Iterable[str]] = None) -> str:
    """Return ``body`` with the content under ``title`` replaced in place.

    Only the lines between the heading and the next section change, and the
    blank lines framing the old content are kept. A missing section is
    appended at the end of the body.
    """
    new_lines = _strip_blank(content.split("\n"))
    lines = body.split("\n")
    span = _find_section(lines, title, titles)

    if span is None:
        block = "\n".join([title.rstrip(), ""] + new_lines) if new_lines else title.rstrip()
        text = body.rstrip()
        return f"{text}\n\n{block}\n" if text else f"{block}\n"

    heading, stop = span
    old = lines[heading + 1:stop]
    start, end = _trim_blank(old)
    if start == end:
        # empty section
        if not new_lines:
            return body
        section = [""] + new_lines + (old or [""])
    elif new_lines:
        section = old[:start] + new_lines + old[end:]
    else:
        section = old[end:] or old[:start]
    return "\n".join(lines[:heading + 1] + section + lines[stop:])


def reorder_body(body: str, sections: Dict[str, SectionDefinition]) -> str:
    """Re-render ``body`` with declared sections in their declared order.

    Headings without a declaration keep their relative order after the
    declared ones.
    """
    preamble, blocks = split_body(body, section_titles(sections))
    by_title = {}
    for heading, content in blocks:
        by_title.setdefault(heading, content)

    ordered: List[Tuple[str, str]] = []
    seen = set()
    for _, section in ordered_sections(sections):
        title = section.title.rstrip()
        if title in seen:
            continue
        seen.add(title)
        ordered.append((title, by_title.get(title, "")))
    for heading, content in blocks:
        if heading not in seen:
            seen.add(heading)
            ordered.append((heading, content))
    return join_body(preamble, ordered)


def ordered_sections(sections: Dict[str, SectionDefinition]) -> List[Tuple[str, SectionDefinition]]:
    """Stable sort by ``order``, ties broken by key."""
    return sorted(sections.items(), key=lambda item: (item[1].order, item[0]))


def infer_sections(body: str) -> Dict[str, SectionDefinition]:
    """Build section definitions from the ``##`` headings of a legacy body."""
    _, blocks = split_body(body)
    sections: Dict[str, SectionDefinition] = {}
    for heading, _content in blocks:
        if heading in STANDARD_SECTIONS:
            key, schema = STANDARD_SECTIONS[heading]
            custom = False
        else:
            key = section_key_from_title(heading)
            schema = SCHEMA_FREEFORM
            custom = True
        if not key or key in sections:
            continue
        sections[key] = SectionDefinition(
            title=heading,
            order=len(sections) + 1,
            schema=schema,
            custom=custom,
        )
    return sections


def validate_required(sections: Dict[str, SectionDefinition], body: str) -> None:
    """Ensure every required section's heading is present in ``body``."""
    for key, section in ordered_sections(sections):
        if section.required and section.title not in body:
            raise SchemaViolationError(key, f"missing required section: {section.title}")


def refresh_metrics(sections: Dict[str, SectionDefinition], body: str) -> None:
    """Recompute the metrics of every declared section in place."""
    contents: Dict[str, str] = {}
    for heading, content in split_body(body, section_titles(sections))[1]:
        contents.setdefault(heading, content)
    for section in sections.values():
        content = contents.get(section.title.rstrip(), "")
        if section.schema not in SCHEMA_REGISTRY:
            continue
        section.metadata.update(compute_metrics(section.schema, content))


def section_contents(sections: Dict[str, SectionDefinition], body: str) -> Dict[str, str]:
    """Map section key to its current content, in section order."""
    _, blocks = split_body(body, section_titles(sections))
    by_title: Dict[str, str] = {}
    for heading, content in blocks:
        by_title.setdefault(heading, content)
    return {
        key: by_title.get(section.title.rstrip(), "")
        for key, section in ordered_sections(sections)
    }
