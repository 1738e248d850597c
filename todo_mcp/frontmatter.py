"""Reading and writing the ``---`` fenced YAML header of todo files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import MalformedTodoError
from .models import SectionDefinition, Todo
from .sections import SCHEMA_REGISTRY, ordered_sections
from .utils import parse_timestamp

FENCE = "---"
TASK_PREFIX = "# Task: "

KNOWN_KEYS = ("todo_id", "started", "completed", "status", "priority", "type", "parent_id", "tags", "sections")


def split_frontmatter(text: str) -> Tuple[str, str]:
    """Return ``(yaml_text, body)``; raise if the fences are missing."""
    text = text.lstrip("\ufeff")
    if not text.startswith(FENCE + "\n"):
        raise MalformedTodoError("missing frontmatter: file must start with '---'")

    end = text.find("\n" + FENCE + "\n", len(FENCE))
    if end != -1:
        return text[len(FENCE) + 1:end], text[end + len(FENCE) + 2:]
    if text.rstrip("\n").endswith("\n" + FENCE):
        stripped = text.rstrip("\n")
        return stripped[len(FENCE) + 1:-len(FENCE) - 1], ""
    raise MalformedTodoError("unclosed frontmatter: missing closing '---'")


def load_payload(yaml_text: str) -> Dict[str, Any]:
    """Parse the YAML header into a mapping."""
    try:
        data = yaml.safe_load(yaml_text) if yaml_text.strip() else {}
    except yaml.YAMLError as e:
        raise MalformedTodoError(f"invalid YAML frontmatter: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise MalformedTodoError("invalid YAML frontmatter: expected a mapping")
    return data


def task_from_body(body: str) -> str:
    for line in body.splitlines():
        if line.startswith(TASK_PREFIX):
            return line[len(TASK_PREFIX):].strip()
    return ""


def _decode_tags(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(tag) for tag in value]
    raise MalformedTodoError("invalid tags field: expected a list of strings")


def _decode_sections(value: Any) -> Optional[Dict[str, SectionDefinition]]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MalformedTodoError("invalid sections field: expected a mapping")

    sections: Dict[str, SectionDefinition] = {}
    for key, raw in value.items():
        if not isinstance(raw, dict):
            raise MalformedTodoError(f"invalid definition for section '{key}'")
        try:
            section = SectionDefinition.from_dict(raw)
        except (TypeError, ValueError) as e:
            raise MalformedTodoError(f"invalid definition for section '{key}': {e}") from e
        if section.schema not in SCHEMA_REGISTRY:
            raise MalformedTodoError(f"invalid schema type '{section.schema}' for section '{key}'")
        sections[str(key)] = section
    return sections


def decode(text: str, path: Optional[Path] = None) -> Todo:
    """Parse a todo file into a ``Todo``.

    Declared sections are returned as-is; ``sections`` stays ``None`` for
    records that do not declare any.
    """
    yaml_text, body = split_frontmatter(text)
    data = load_payload(yaml_text)

    todo_id = str(data.get("todo_id") or (path.stem if path else ""))
    if not todo_id:
        raise MalformedTodoError("missing todo_id field")

    started = parse_timestamp(data.get("started"), "started")
    if started is None:
        raise MalformedTodoError("failed to parse started timestamp: field is empty")

    return Todo(
        id=todo_id,
        task=task_from_body(body),
        started=started,
        completed=parse_timestamp(data.get("completed"), "completed"),
        status=str(data.get("status") or "pending"),
        priority=str(data.get("priority") or "medium"),
        type=str(data.get("type") or ""),
        parent_id=str(data.get("parent_id") or ""),
        tags=_decode_tags(data.get("tags")),
        sections=_decode_sections(data.get("sections")),
        body=body,
        extra={k: v for k, v in data.items() if k not in KNOWN_KEYS},
        path=path,
    )


def encode(todo: Todo) -> str:
    """Serialize a ``Todo`` with keys in their canonical order."""
    payload: Dict[str, Any] = {
        "todo_id": todo.id,
        "started": todo.started,
        "completed": todo.completed if todo.completed is not None else "",
        "status": todo.status,
        "priority": todo.priority,
        "type": todo.type,
    }
    if todo.parent_id:
        payload["parent_id"] = todo.parent_id
    if todo.tags:
        payload["tags"] = list(todo.tags)
    if todo.sections is not None:
        payload["sections"] = {key: section.to_dict() for key, section in ordered_sections(todo.sections)}
    for key, value in todo.extra.items():
        if key not in payload:
            payload[key] = value

    body = todo.body
    if todo.task and not task_from_body(body):
        body = f"{TASK_PREFIX}{todo.task}\n\n{body}"

    header = yaml.safe_dump(payload, sort_keys=False, default_flow_style=False, allow_unicode=True)
    return f"{FENCE}\n{header}{FENCE}\n{body}"
