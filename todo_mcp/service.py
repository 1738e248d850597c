"""Service facade coordinating the todo store, search index and templates."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .checklist import parse_checklist
from .hierarchy import build_hierarchy, hierarchy_issues
from .models import ChecklistItem, PatternHint, SearchHit, SectionDefinition, Todo, TodoStats
from .patterns import detect_pattern, find_similar
from .search import DEFAULT_LIMIT, SearchEngine
from .sections import SCHEMA_CHECKLIST, ordered_sections, section_contents
from .stats import StatsEngine
from .store import TodoStore
from .templates import TemplateEngine
from .todo_logging import (
    log_error_with_context,
    log_operation,
    log_performance,
    log_todo_archived,
    log_todo_created,
    log_todo_updated,
)
from .utils import format_timestamp, now, slugify


class TodoService:
    """The single entry point used by the MCP tools.

    Mutations run under the store's directory lock so the file on disk and
    the search index change together.
    """

    def __init__(
        self,
        base_dir: Path | str,
        index_path: Optional[Path | str] = None,
        templates_dir: Optional[Path | str] = None,
    ):
        import logging

        logger = logging.getLogger("todo_mcp.service")

        self.store = TodoStore(base_dir)
        self.index_path = Path(index_path) if index_path else self.store.base_dir.parent / "index" / "todos.bleve"
        self.templates = TemplateEngine(templates_dir or self.store.base_dir / "templates")
        self.stats_engine = StatsEngine(self.store)
        self.lock = self.store.lock
        self.search_engine = SearchEngine(self.index_path, self.store)

        logger.info(
            f"Todo service ready at {self.store.base_dir} "
            f"({self.search_engine.indexed_count()} todos indexed)"
        )

    @property
    def base_dir(self) -> Path:
        return self.store.base_dir

    def close(self) -> None:
        self.search_engine.close()

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    @log_performance("service_create_todo")
    def create_todo(
        self,
        task: str,
        priority: str = "high",
        todo_type: str = "feature",
        *,
        template: Optional[str] = None,
        tags: Optional[List[str]] = None,
        parent_id: Optional[str] = None,
    ) -> Todo:
        """Create a todo, optionally from a named template, and index it."""
        import logging

        logger = logging.getLogger("todo_mcp.service")

        try:
            with log_operation("service_create_todo", task=task, template=template):
                with self.lock:
                    body = None
                    if template:
                        body = self.templates.render(template, {
                            "task": task,
                            "priority": priority,
                            "type": todo_type,
                            "id": self.store.unique_id(slugify(" ".join(task.split()))),
                            "started": format_timestamp(now()),
                        })
                    todo = self.store.create(task, priority, todo_type, body=body, tags=tags, parent_id=parent_id)
                    self.search_engine.index_todo(todo)

                log_todo_created(todo.id, priority=todo.priority, type=todo.type, template=template, parent_id=todo.parent_id)
                return todo
        except Exception as e:
            logger.error(f"Failed to create todo '{task}': {e}")
            log_error_with_context(e, {"operation": "service_create_todo", "task": task, "template": template})
            raise

    def read_todo(self, todo_id: str) -> Todo:
        return self.store.read(todo_id)

    def list_todos(self, status: str = "", priority: str = "", days: int = 0) -> List[Todo]:
        return self.store.list(status=status, priority=priority, days=days)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_todo(
        self,
        todo_id: str,
        section_key: str = "",
        mode: str = "append",
        content: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Todo:
        """Update a section and/or frontmatter fields, then re-index."""
        with self.lock:
            todo = self.store.update(todo_id, section_key, mode, content, metadata)
            self.search_engine.index_todo(todo)
        log_todo_updated(todo_id, section=section_key or None, mode=mode, status=todo.status)
        return todo

    def archive_todo(self, todo_id: str, override_completed: Any = None, cascade: bool = False) -> Path:
        """Move a todo into the archive and drop it from the index.

        With ``cascade`` its completed descendants are archived first.
        """
        with self.lock:
            if cascade:
                archived = self.store.archive_with_children(todo_id, override_completed)
            else:
                archived = [(todo_id, self.store.archive(todo_id, override_completed))]
            for archived_id, _ in archived:
                self.search_engine.delete(archived_id)
        for archived_id, destination in archived:
            log_todo_archived(archived_id, str(destination), cascade=cascade)
        return archived[-1][1]

    def archive_old_completed(self, days: int = 90) -> int:
        """Archive completed todos finished more than ``days`` days ago."""
        with self.lock:
            archived = self.store.archive_old_completed(days)
            for todo_id in archived:
                self.search_engine.delete(todo_id)
        for todo_id in archived:
            log_todo_archived(todo_id, str(self.store.archive_dir), batch=True)
        return len(archived)

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def list_sections(self, todo_id: str) -> List[Dict[str, Any]]:
        return self.store.list_sections(todo_id)

    def add_section(
        self,
        todo_id: str,
        key: str,
        title: Optional[str] = None,
        schema: str = "freeform",
        required: bool = False,
        order: Optional[int] = None,
    ) -> SectionDefinition:
        with self.lock:
            section = self.store.add_section(todo_id, key, title, schema, required, order)
            self.search_engine.index_todo(self.store.read(todo_id))
        log_todo_updated(todo_id, section=key, mode="add_section")
        return section

    def reorder_sections(self, todo_id: str, orders: Mapping[str, Any]) -> List[Dict[str, Any]]:
        with self.lock:
            sections = self.store.reorder_sections(todo_id, orders)
            self.search_engine.index_todo(self.store.read(todo_id))
        log_todo_updated(todo_id, mode="reorder_sections")
        return sections

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search_todos(
        self,
        query: str = "",
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[SearchHit]:
        return self.search_engine.search(query, filters, limit)

    def children(self, todo_id: str) -> List[Todo]:
        self.store.read(todo_id)
        return self.store.children(todo_id)

    def hierarchy(self, status: str = "", priority: str = "", days: int = 0) -> Dict[str, Any]:
        """Active todos arranged under their parents, with any structural issues."""
        todos = self.store.list(status=status, priority=priority, days=days)
        roots, orphans = build_hierarchy(todos)
        return {
            "count": len(todos),
            "roots": roots,
            "orphans": orphans,
            "issues": hierarchy_issues(todos),
        }

    def section_content(self, todo_id: str, key: str) -> str:
        return self.store.section_content(todo_id, key)

    def find_duplicate_todos(self) -> List[List[str]]:
        return self.store.find_duplicates()

    def list_templates(self) -> List[Dict[str, Any]]:
        return self.templates.describe()

    def stats(self, period: str = "all") -> TodoStats:
        return self.stats_engine.generate(period)

    def test_coverage(self, todo_id: str) -> float:
        return self.stats_engine.test_coverage(todo_id)

    def checklist_items(self, todo_id: str) -> List[ChecklistItem]:
        """Items of every checklist-schema section, in section order."""
        todo = self.store.read(todo_id)
        contents = section_contents(todo.sections, todo.body)
        items: List[ChecklistItem] = []
        for key, section in ordered_sections(todo.sections):
            if section.schema == SCHEMA_CHECKLIST:
                items.extend(parse_checklist(contents.get(key, "")))
        return items

    def pattern_hint(self, task: str) -> Optional[PatternHint]:
        return detect_pattern(task)

    def similar_todos(self, task: str) -> List[str]:
        return find_similar(self.store.list(), task)
