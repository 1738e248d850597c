"""MCP server exposing todo records as tools."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from todo_mcp.hierarchy import format_tree
from todo_mcp.service import TodoService
from todo_mcp.todo_logging import performance_monitor, setup_logging

mcp = FastMCP("todo-mcp")


ROOT_ENV = "TODO_MCP_ROOT"
LOG_LEVEL_ENV = "TODO_MCP_LOG_LEVEL"
LOG_FILE_ENV = "TODO_MCP_LOG_FILE"

STORAGE_DIR = ".claude"

_services: Dict[Path, TodoService] = {}
_services_lock = threading.Lock()


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    return Path.cwd().resolve()


def _service(root: Optional[str]) -> TodoService:
    resolved = _resolve_root(root)
    with _services_lock:
        service = _services.get(resolved)
        if service is None:
            storage = resolved / STORAGE_DIR
            service = TodoService(
                storage / "todos",
                index_path=storage / "index" / "todos.bleve",
                templates_dir=storage / "templates",
            )
            _services[resolved] = service
        return service


def _close_services() -> None:
    with _services_lock:
        for service in _services.values():
            service.close()
        _services.clear()


def _metadata(
    status: Optional[str],
    priority: Optional[str],
    type: Optional[str],
    tags: Optional[List[str]],
    parent_id: Optional[str] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    if status:
        metadata["status"] = status
    if priority:
        metadata["priority"] = priority
    if type:
        metadata["type"] = type
    if tags is not None:
        metadata["tags"] = tags
    if parent_id:
        metadata["parent_id"] = parent_id
    return metadata


@mcp.tool()
def todo_create(
    task: str,
    priority: str = "high",
    type: str = "feature",
    template: Optional[str] = None,
    parent_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a new todo record with the standard sections (or from a named template).
    Returns the new id; ids are derived from the task text and suffixed with -2, -3... on collision.
    Types 'phase' and 'subtask' require parent_id."""

    service = _service(root)
    todo = service.create_todo(task, priority, type, template=template, parent_id=parent_id)
    result: Dict[str, Any] = {**todo.summary(), "path": str(todo.path)}

    hint = service.pattern_hint(task)
    if hint:
        result["hint"] = hint.to_dict()
        result["similar"] = [todo_id for todo_id in service.similar_todos(task) if todo_id != todo.id]
    return result


@mcp.tool()
def todo_read(
    id: Optional[str] = None,
    filter_status: str = "all",
    filter_priority: str = "all",
    filter_days: int = 0,
    format: str = "full",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Read one todo by id, or list active todos filtered by status, priority and age in days.
    format='full' includes the Markdown body; format='list' returns summaries only;
    format='tree' nests todos under their parents and renders an ASCII tree."""

    service = _service(root)
    if format not in ("full", "list", "tree"):
        raise ValueError(f"Invalid format '{format}': expected 'full', 'list' or 'tree'.")

    if id:
        todo = service.read_todo(id)
        data = todo.to_dict(include_body=format == "full")
        data["test_coverage"] = service.test_coverage(id)
        data["checklist"] = [item.to_dict() for item in service.checklist_items(id)]
        data["children"] = [child.id for child in service.children(id)]
        return data

    if format == "tree":
        hierarchy = service.hierarchy(filter_status, filter_priority, filter_days)
        roots, orphans = hierarchy["roots"], hierarchy["orphans"]
        return {
            "count": hierarchy["count"],
            "depth": max((node.depth() for node in roots), default=0),
            "tree": format_tree(roots, orphans),
            "roots": [node.to_dict() for node in roots],
            "orphans": [todo.summary() for todo in orphans],
            "issues": hierarchy["issues"],
        }

    todos = service.list_todos(filter_status, filter_priority, filter_days)
    return {
        "count": len(todos),
        "todos": [t.to_dict(include_body=False) if format == "full" else t.summary() for t in todos],
    }


@mcp.tool()
def todo_update(
    id: str,
    section: str = "",
    operation: str = "append",
    content: str = "",
    status: Optional[str] = None,
    priority: Optional[str] = None,
    type: Optional[str] = None,
    tags: Optional[List[str]] = None,
    parent_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Update a todo section (append, prepend, replace, or toggle a checklist item)
    and/or its status, priority, type, tags and parent. Setting status='completed' stamps the completion time."""

    service = _service(root)
    todo = service.update_todo(
        id,
        section_key=section,
        mode=operation,
        content=content,
        metadata=_metadata(status, priority, type, tags, parent_id),
    )
    result = todo.summary()
    if section and todo.sections and section in todo.sections:
        result["section"] = section
        result["metrics"] = dict(todo.sections[section].metadata)
    return result


@mcp.tool()
def todo_search(
    query: str = "",
    status: Optional[str] = None,
    priority: Optional[str] = None,
    type: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 20,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Full-text search across todos. Wrap the query in double quotes for an exact phrase.
    Filters combine with AND; dates use YYYY-MM-DD and are inclusive. limit is capped at 100."""

    service = _service(root)
    filters = {
        "status": status,
        "priority": priority,
        "type": type,
        "date_from": date_from,
        "date_to": date_to,
    }
    hits = service.search_todos(query, {k: v for k, v in filters.items() if v}, limit)
    return {"query": query, "count": len(hits), "results": [hit.to_dict() for hit in hits]}


@mcp.tool()
def todo_archive(
    id: str,
    completed: Optional[str] = None,
    cascade: bool = False,
    root: Optional[str] = None,
) -> Dict[str, str]:
    """Archive a todo under archive/YYYY/MM/DD/ (date taken from its start time).
    The completion timestamp is set to `completed` or now if the todo has none.
    Todos with unfinished children are refused; cascade=True archives completed children first."""

    service = _service(root)
    destination = service.archive_todo(id, completed, cascade=cascade)
    return {"id": id, "archive_path": str(destination)}


@mcp.tool()
def todo_template(
    template: Optional[str] = None,
    task: Optional[str] = None,
    priority: str = "high",
    type: str = "feature",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """List available templates, or create a todo from one when both template and task are given."""

    service = _service(root)
    if not template:
        return {"templates": service.list_templates()}
    if not task:
        raise ValueError("A task is required to create a todo from a template.")

    todo = service.create_todo(task, priority, type, template=template)
    return {**todo.summary(), "path": str(todo.path), "template": template}


@mcp.tool()
def todo_stats(period: str = "all", root: Optional[str] = None) -> Dict[str, Any]:
    """Completion statistics for active todos: counts by status, type and priority,
    completion rates and average completion time. period is all, week, month or quarter."""

    service = _service(root)
    stats = service.stats(period).to_dict()
    stats["performance"] = {name: performance_monitor.summary(name) for name in sorted(performance_monitor.metrics)}
    return stats


@mcp.tool()
def todo_clean(operation: str = "archive_old", days: int = 90, root: Optional[str] = None) -> Dict[str, Any]:
    """Maintenance: 'archive_old' archives completed todos finished more than `days` days ago;
    'find_duplicates' groups todos whose task text is identical."""

    service = _service(root)
    if operation == "archive_old":
        count = service.archive_old_completed(days)
        return {"operation": operation, "days": days, "archived": count}
    if operation == "find_duplicates":
        groups = service.find_duplicate_todos()
        return {"operation": operation, "duplicates": groups, "count": len(groups)}
    raise ValueError(f"Invalid operation '{operation}': expected 'archive_old' or 'find_duplicates'.")


@mcp.tool()
def todo_sections(id: str, key: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """List a todo's sections in display order with their schema and metrics,
    or return the content of one section when key is given."""

    service = _service(root)
    if key:
        return {"id": id, "key": key, "content": service.section_content(id, key)}
    return {"id": id, "sections": service.list_sections(id)}


@mcp.tool()
def todo_add_section(
    id: str,
    key: str,
    title: Optional[str] = None,
    schema: str = "freeform",
    required: bool = False,
    order: Optional[int] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Add a custom section. schema is one of research, strategy, checklist, test_cases, results, freeform."""

    service = _service(root)
    section = service.add_section(id, key, title, schema, required, order)
    return {"id": id, "key": key, "section": section.to_dict()}


@mcp.tool()
def todo_reorder_sections(id: str, order: Dict[str, int], root: Optional[str] = None) -> Dict[str, Any]:
    """Change section display order, e.g. {"checklist": 1, "findings": 2}."""

    service = _service(root)
    return {"id": id, "sections": service.reorder_sections(id, order)}


@mcp.tool()
def todo_link(parent_id: str, child_id: str, link_type: str = "parent-child", root: Optional[str] = None) -> Dict[str, Any]:
    """Link two todos. Only the 'parent-child' link type is supported: it sets the child's parent_id."""

    if link_type != "parent-child":
        raise ValueError(f"Unsupported link type '{link_type}': expected 'parent-child'.")
    service = _service(root)
    service.read_todo(parent_id)
    child = service.update_todo(child_id, metadata={"parent_id": parent_id})
    return {"parent_id": parent_id, "child_id": child.id, "link_type": link_type}


@mcp.resource("todo://todos")
def resource_todos() -> str:
    """Resource view listing the active todos of the default root."""

    try:
        service = _service(None)
    except ValueError as e:
        return str(e)

    todos = service.list_todos()
    if not todos:
        return "No active todos."

    lines = ["Active Todos"]
    for todo in todos:
        lines.append(f"- {todo.id} [{todo.status}/{todo.priority}] {todo.task}")
    return "\n".join(lines)


def main() -> None:
    log_file = os.getenv(LOG_FILE_ENV)
    setup_logging(os.getenv(LOG_LEVEL_ENV, "INFO").upper(), Path(log_file) if log_file else None)
    try:
        mcp.run(transport="stdio")
    finally:
        _close_services()


if __name__ == "__main__":
    main()
