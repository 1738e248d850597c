"""Parent/child structure of todos and its text rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from .models import Todo
from .store import PARENTED_TYPES

_STATUS_RANK = {"in_progress": 0, "pending": 1, "blocked": 2, "completed": 3}
_PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}

STATUS_MARKERS = {"completed": "[✓]", "in_progress": "[→]", "blocked": "[✗]"}
BRANCH = "├── "
LAST_BRANCH = "└── "
VERTICAL = "│   "
SPACE = "    "


@dataclass
class TodoNode:
    """A todo and the nodes of its children."""

    todo: Todo
    children: List["TodoNode"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.todo.summary()
        data["children"] = [child.to_dict() for child in self.children]
        return data

    def depth(self) -> int:
        return 1 + max((child.depth() for child in self.children), default=0)


def _sort_key(node: TodoNode) -> Tuple[int, int, str]:
    todo = node.todo
    return (_STATUS_RANK.get(todo.status, 4), _PRIORITY_RANK.get(todo.priority, 3), todo.id)


def has_cycle(todo_id: str, parent_id: str, by_id: Dict[str, Todo]) -> bool:
    """Whether following parents up from ``parent_id`` leads back to ``todo_id``."""
    seen = set()
    current = parent_id
    while current and current not in seen:
        if current == todo_id:
            return True
        seen.add(current)
        parent = by_id.get(current)
        if parent is None:
            return False
        current = parent.parent_id
    return False


def build_hierarchy(todos: Iterable[Todo]) -> Tuple[List[TodoNode], List[Todo]]:
    """Arrange todos under their parents.

    Returns ``(roots, orphans)``. A ``phase`` or ``subtask`` whose parent is
    missing, or any todo whose parent chain loops back to itself, is an
    orphan; other todos with a missing parent are shown as roots. Siblings
    are sorted by status, then priority, then id.
    """
    todos = list(todos)
    by_id = {todo.id: todo for todo in todos}
    nodes = {todo.id: TodoNode(todo) for todo in todos}

    roots: List[TodoNode] = []
    orphans: List[Todo] = []
    for todo in todos:
        node = nodes[todo.id]
        if not todo.parent_id:
            roots.append(node)
        elif todo.parent_id in nodes:
            if has_cycle(todo.id, todo.parent_id, by_id):
                orphans.append(todo)
            else:
                nodes[todo.parent_id].children.append(node)
        elif todo.type in PARENTED_TYPES:
            orphans.append(todo)
        else:
            roots.append(node)

    roots.sort(key=_sort_key)
    for node in nodes.values():
        node.children.sort(key=_sort_key)
    orphans.sort(key=lambda todo: todo.id)
    return roots, orphans


def hierarchy_issues(todos: Iterable[Todo]) -> List[str]:
    """Describe orphaned phases and subtasks, parent cycles and phases without a parent."""
    todos = list(todos)
    by_id = {todo.id: todo for todo in todos}
    issues = []

    for todo in todos:
        if todo.type in PARENTED_TYPES and todo.parent_id and todo.parent_id not in by_id:
            issues.append(f"Orphaned {todo.type} '{todo.id}' references non-existent parent '{todo.parent_id}'")
    for todo in todos:
        if todo.parent_id and has_cycle(todo.id, todo.parent_id, by_id):
            issues.append(f"Circular reference detected: '{todo.id}' -> '{todo.parent_id}'")
    for todo in todos:
        if todo.type in PARENTED_TYPES and not todo.parent_id:
            issues.append(f"{todo.type} '{todo.id}' should have a parent_id")

    return issues


def format_line(todo: Todo) -> str:
    parts = [STATUS_MARKERS.get(todo.status, "[ ]"), f"{todo.id}: {todo.task}"]
    if todo.priority == "high":
        parts.append("[HIGH]")
    elif todo.priority == "low":
        parts.append("[LOW]")
    if todo.type in PARENTED_TYPES or todo.type == "multi-phase":
        parts.append(f"[{todo.type}]")
    return " ".join(parts)


def _format_node(lines: List[str], node: TodoNode, prefix: str, is_last: bool, is_root: bool) -> None:
    branch = "" if is_root else prefix + (LAST_BRANCH if is_last else BRANCH)
    lines.append(branch + format_line(node.todo))

    child_prefix = "" if is_root else prefix + (SPACE if is_last else VERTICAL)
    for index, child in enumerate(node.children):
        _format_node(lines, child, child_prefix, index == len(node.children) - 1, False)


def format_tree(roots: List[TodoNode], orphans: List[Todo]) -> str:
    """Render roots as an ASCII tree, followed by any orphans."""
    lines: List[str] = []
    for index, root in enumerate(roots):
        _format_node(lines, root, "", index == len(roots) - 1, True)

    if orphans:
        if lines:
            lines.append("")
        lines.append("ORPHANED PHASES/SUBTASKS (need parent assignment):")
        for orphan in orphans:
            lines.append(f"  {format_line(orphan)} [parent: {orphan.parent_id}]")

    return "\n".join(lines) + "\n" if lines else ""
