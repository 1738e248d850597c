"""File-backed storage for todo records.

Every record lives in ``<base_dir>/<id>.md``. Archived records move to
``<base_dir.parent>/archive/YYYY/MM/DD/<id>.md`` using the record's start date.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

from .checklist import toggle_item
from .errors import (
    ConflictError,
    InvalidInputError,
    MalformedTodoError,
    TodoError,
    TodoNotFoundError,
)
from .frontmatter import TASK_PREFIX, decode, encode
from .models import VALID_PRIORITIES, VALID_STATUSES, SectionDefinition, Todo
from .sections import (
    DEFAULT_CUSTOM_ORDER,
    HEADING_PREFIX,
    SCHEMA_CHECKLIST,
    SCHEMA_RESULTS,
    STANDARD_SECTIONS,
    default_sections,
    extract_section,
    get_schema,
    infer_sections,
    join_body,
    ordered_sections,
    refresh_metrics,
    reorder_body,
    replace_section,
    section_contents,
    section_titles,
    title_from_key,
    validate_content,
    validate_required,
)
from .todo_logging import log_error_with_context, log_operation, log_performance
from .utils import now, parse_timestamp, slugify, stamp_entry

logger = logging.getLogger("todo_mcp.store")

UPDATE_MODES = ("append", "prepend", "replace", "toggle")
PARENTED_TYPES = ("phase", "subtask")
_TODO_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_DIRECTORY_LOCKS: Dict[Path, threading.RLock] = {}
_DIRECTORY_LOCKS_GUARD = threading.Lock()


def directory_lock(path: Path) -> threading.RLock:
    """The process-wide write lock for one base directory."""
    key = Path(path).resolve()
    with _DIRECTORY_LOCKS_GUARD:
        lock = _DIRECTORY_LOCKS.get(key)
        if lock is None:
            lock = _DIRECTORY_LOCKS[key] = threading.RLock()
        return lock


def write_atomic(path: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class TodoStore:
    """CRUD, listing and archival over a directory of todo files."""

    def __init__(self, base_dir: Path | str, *, create: bool = True):
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.archive_dir = self.base_dir.parent / "archive"
        if create:
            self.base_dir.mkdir(parents=True, exist_ok=True)
        self.lock = directory_lock(self.base_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def todo_path(self, todo_id: str) -> Path:
        if not todo_id or not todo_id.strip():
            raise InvalidInputError("Todo ID cannot be empty")
        if not _TODO_ID_PATTERN.match(todo_id) or ".." in todo_id:
            raise InvalidInputError(f"invalid todo id '{todo_id}'")
        return self.base_dir / f"{todo_id}.md"

    def archive_path_for(self, todo: Todo) -> Path:
        started = todo.started or now()
        return self.archive_dir / started.strftime("%Y") / started.strftime("%m") / started.strftime("%d") / f"{todo.id}.md"

    def iter_paths(self) -> Iterator[Path]:
        """Todo files directly under the base directory, sorted by name."""
        if not self.base_dir.is_dir():
            raise TodoNotFoundError(str(self.base_dir), f"todo directory not found: {self.base_dir}")
        yield from sorted(p for p in self.base_dir.glob("*.md") if p.is_file())

    # ------------------------------------------------------------------
    # Create / read / save
    # ------------------------------------------------------------------

    def unique_id(self, base_id: str) -> str:
        candidate = base_id
        suffix = 2
        while self.todo_path(candidate).exists():
            candidate = f"{base_id}-{suffix}"
            suffix += 1
        return candidate

    @staticmethod
    def canonical_body(task: str, sections: Dict[str, SectionDefinition]) -> str:
        return join_body(f"{TASK_PREFIX}{task}", [(s.title, "") for _, s in ordered_sections(sections)])

    @log_performance("create_todo")
    def create(
        self,
        task: str,
        priority: str = "high",
        todo_type: str = "feature",
        *,
        body: Optional[str] = None,
        tags: Optional[List[str]] = None,
        parent_id: Optional[str] = None,
    ) -> Todo:
        """Create a new todo and write it to disk.

        ``phase`` and ``subtask`` todos need an existing ``parent_id``.
        """
        task = " ".join((task or "").split())
        if not task:
            raise InvalidInputError("Task cannot be empty")
        priority = (priority or "high").strip().lower()
        if priority not in VALID_PRIORITIES:
            raise InvalidInputError(f"invalid priority '{priority}': expected one of {', '.join(VALID_PRIORITIES)}")
        todo_type = (todo_type or "feature").strip() or "feature"
        parent_id = (parent_id or "").strip()
        if todo_type in PARENTED_TYPES and not parent_id:
            raise InvalidInputError(f"type '{todo_type}' requires parent_id to be specified")

        try:
            with log_operation("create_todo", task=task, priority=priority, type=todo_type):
                with self.lock:
                    if parent_id:
                        self.check_parent(None, parent_id)
                    todo_id = self.unique_id(slugify(task))
                    if body is None:
                        sections = default_sections()
                        text = self.canonical_body(task, sections)
                    else:
                        text = body if TASK_PREFIX in body else f"{TASK_PREFIX}{task}\n\n{body.lstrip()}"
                        sections = infer_sections(text) or default_sections()
                        text = reorder_body(text, sections)
                    refresh_metrics(sections, text)

                    todo = Todo(
                        id=todo_id,
                        task=task,
                        started=now(),
                        status="in_progress",
                        priority=priority,
                        type=todo_type,
                        parent_id=parent_id,
                        tags=list(tags or []),
                        sections=sections,
                        body=text,
                    )
                    self.save(todo)

                logger.info(f"Created todo '{todo_id}'")
                return todo
        except Exception as e:
            logger.error(f"Failed to create todo for task '{task}': {e}")
            log_error_with_context(e, {"operation": "create_todo", "task": task, "priority": priority})
            raise

    def load(self, path: Path) -> Todo:
        """Parse one file; sections are inferred for legacy records."""
        try:
            todo = decode(path.read_text(encoding="utf-8"), path)
        except MalformedTodoError as e:
            raise MalformedTodoError(f"todo '{path.stem}': {e}") from e
        if todo.sections is None:
            todo.sections = infer_sections(todo.body)
            refresh_metrics(todo.sections, todo.body)
        return todo

    def read(self, todo_id: str) -> Todo:
        """Return the record stored under ``todo_id``."""
        path = self.todo_path(todo_id)
        if not path.exists():
            raise TodoNotFoundError(todo_id)
        return self.load(path)

    def save(self, todo: Todo) -> Path:
        issues = todo.validate()
        if issues:
            raise InvalidInputError(f"cannot save todo '{todo.id}': {'; '.join(issues)}")
        path = self.todo_path(todo.id)
        with self.lock:
            write_atomic(path, encode(todo))
        todo.path = path
        return path

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    @log_performance("update_todo")
    def update(
        self,
        todo_id: str,
        section_key: str = "",
        mode: str = "append",
        content: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Todo:
        """Rewrite one section and/or frontmatter fields of an existing todo.

        Nothing is written when validation fails.
        """
        mode = (mode or "append").strip().lower()
        if mode not in UPDATE_MODES:
            raise InvalidInputError(f"invalid operation '{mode}': expected one of {', '.join(UPDATE_MODES)}")
        if not section_key and content:
            raise InvalidInputError("content requires a section to update")

        try:
            with log_operation("update_todo", todo_id=todo_id, section=section_key, mode=mode):
                with self.lock:
                    todo = self.read(todo_id)
                    if metadata:
                        self._apply_metadata(todo, metadata)
                    if section_key:
                        self._apply_section(todo, section_key, mode, content)

                    self._sync_completed(todo)
                    validate_required(todo.sections, todo.body)
                    refresh_metrics(todo.sections, todo.body)
                    self.save(todo)

                logger.info(f"Updated todo '{todo_id}'")
                return todo
        except Exception as e:
            logger.error(f"Failed to update todo '{todo_id}': {e}")
            log_error_with_context(e, {
                "operation": "update_todo",
                "todo_id": todo_id,
                "section": section_key,
                "mode": mode,
            })
            raise

    def _apply_metadata(self, todo: Todo, metadata: Mapping[str, Any]) -> None:
        for key, value in metadata.items():
            if value is None or value == "":
                continue
            if key == "status":
                status = str(value).strip().lower()
                if status not in VALID_STATUSES:
                    raise InvalidInputError(f"invalid status '{value}': expected one of {', '.join(VALID_STATUSES)}")
                todo.status = status
            elif key == "priority":
                priority = str(value).strip().lower()
                if priority not in VALID_PRIORITIES:
                    raise InvalidInputError(f"invalid priority '{value}': expected one of {', '.join(VALID_PRIORITIES)}")
                todo.priority = priority
            elif key == "type":
                todo.type = str(value).strip()
            elif key == "tags":
                todo.tags = [value] if isinstance(value, str) else [str(tag) for tag in value]
            elif key == "completed":
                todo.completed = parse_timestamp(value, "completed")
            elif key == "parent_id":
                todo.parent_id = self.check_parent(todo.id, str(value))
            elif key in ("todo_id", "started", "sections"):
                raise InvalidInputError(f"field '{key}' cannot be updated")
            else:
                todo.extra[key] = value

    def check_parent(self, todo_id: Optional[str], parent_id: str) -> str:
        """Return ``parent_id`` if it names an active todo that is not a descendant of ``todo_id``."""
        parent_id = parent_id.strip()
        if todo_id and parent_id == todo_id:
            raise InvalidInputError(f"todo '{todo_id}' cannot be its own parent")
        try:
            ancestor = self.read(parent_id)
        except TodoNotFoundError:
            raise InvalidInputError(f"parent todo not found: {parent_id}") from None

        seen: Set[str] = {parent_id}
        while todo_id and ancestor.parent_id and ancestor.parent_id not in seen:
            if ancestor.parent_id == todo_id:
                raise InvalidInputError(f"circular parent reference: '{todo_id}' -> '{parent_id}'")
            seen.add(ancestor.parent_id)
            try:
                ancestor = self.read(ancestor.parent_id)
            except TodoNotFoundError:
                break
        return parent_id

    def _apply_section(self, todo: Todo, key: str, mode: str, content: str) -> None:
        section = todo.sections.get(key)
        if section is None:
            raise InvalidInputError(f"section not found: '{key}'")
        titles = section_titles(todo.sections)
        current = extract_section(todo.body, section.title, titles) or ""

        if mode == "toggle":
            if section.schema != SCHEMA_CHECKLIST:
                raise InvalidInputError(
                    f"invalid operation 'toggle' for section '{key}': only checklist sections can be toggled"
                )
            new_content, status = toggle_item(current, content)
            if status is None:
                raise InvalidInputError(f"checklist item not found in section '{key}': '{content.strip()}'")
            logger.debug(f"Toggled '{content.strip()}' in '{todo.id}' to {status}")
        else:
            if content.strip():
                validate_content(key, section.schema, content)
            entry = content.strip("\n")
            if mode == "append" and section.schema == SCHEMA_RESULTS and entry.strip():
                entry = stamp_entry(entry)

            if mode == "replace" or not current.strip():
                new_content = entry
            elif mode == "append":
                new_content = current.rstrip() + "\n" + entry if entry else current
            else:
                new_content = entry + "\n" + current.lstrip("\n") if entry else current

        todo.body = replace_section(todo.body, section.title, new_content, titles)

    @staticmethod
    def _sync_completed(todo: Todo) -> None:
        if todo.status == "completed" and todo.completed is None:
            todo.completed = now()
        elif todo.status != "completed" and todo.completed is not None:
            todo.completed = None

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(self, status: str = "", priority: str = "", days: int = 0) -> List[Todo]:
        """Active todos matching the filters, newest first.

        ``""`` or ``"all"`` disables a filter; ``days > 0`` keeps todos started
        within the last ``days`` days. Malformed files are skipped.
        """
        status = (status or "").strip().lower()
        priority = (priority or "").strip().lower()
        cutoff = now() - timedelta(days=days) if days and days > 0 else None

        todos: List[Todo] = []
        for path in self.iter_paths():
            try:
                todo = self.load(path)
            except MalformedTodoError as e:
                logger.warning(f"Skipping malformed todo file {path.name}: {e}")
                continue
            if status not in ("", "all") and todo.status != status:
                continue
            if priority not in ("", "all") and todo.priority != priority:
                continue
            if cutoff is not None and (todo.started is None or todo.started < cutoff):
                continue
            todos.append(todo)

        todos.sort(key=lambda t: (t.started or datetime.min, t.id), reverse=True)
        return todos

    def find_duplicates(self) -> List[List[str]]:
        """Groups of ids whose tasks are equal after trimming and lowercasing."""
        groups: Dict[str, List[str]] = {}
        for todo in self.list():
            key = todo.task.strip().lower()
            if key:
                groups.setdefault(key, []).append(todo.id)
        return sorted(sorted(ids) for ids in groups.values() if len(ids) > 1)

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    def children(self, todo_id: str) -> List[Todo]:
        """Active todos whose ``parent_id`` is ``todo_id``."""
        return [todo for todo in self.list() if todo.parent_id == todo_id]

    def _check_no_active_children(self, todo_id: str) -> None:
        active = sorted(child.id for child in self.children(todo_id) if child.status != "completed")
        if active:
            raise ConflictError(
                f"cannot archive todo '{todo_id}': has {len(active)} active children ({', '.join(active)})"
            )

    @log_performance("archive_todo")
    def archive(self, todo_id: str, override_completed: Any = None) -> Path:
        """Mark a todo completed and move it under the dated archive tree.

        A todo with children that are not completed cannot be archived.
        """
        try:
            with log_operation("archive_todo", todo_id=todo_id):
                with self.lock:
                    todo = self.read(todo_id)
                    self._check_no_active_children(todo_id)
                    source = todo.path
                    if todo.completed is None:
                        todo.completed = parse_timestamp(override_completed, "completed") or now()
                    todo.status = "completed"

                    destination = self.archive_path_for(todo)
                    write_atomic(destination, encode(todo))
                    source.unlink()
                    todo.path = destination

                logger.info(f"Archived todo '{todo_id}' to {destination}")
                return destination
        except Exception as e:
            logger.error(f"Failed to archive todo '{todo_id}': {e}")
            log_error_with_context(e, {"operation": "archive_todo", "todo_id": todo_id})
            raise

    def archive_with_children(self, todo_id: str, override_completed: Any = None) -> List[Tuple[str, Path]]:
        """Archive the completed descendants of a todo, then the todo itself.

        Returns ``(id, archive path)`` pairs, children first. Raises
        ``ConflictError`` at the first todo that still has active children.
        """
        archived: List[Tuple[str, Path]] = []
        with self.lock:
            self.read(todo_id)
            self._archive_tree(todo_id, override_completed, archived, set())
        return archived

    def _archive_tree(
        self,
        todo_id: str,
        override_completed: Any,
        archived: List[Tuple[str, Path]],
        seen: Set[str],
    ) -> None:
        seen.add(todo_id)
        self._check_no_active_children(todo_id)
        for child in self.children(todo_id):
            if child.id not in seen:
                self._archive_tree(child.id, None, archived, seen)
        archived.append((todo_id, self.archive(todo_id, override_completed)))

    def archive_old_completed(self, days: int) -> List[str]:
        """Archive completed todos finished more than ``days`` days ago.

        ``days <= 0`` archives every completed todo. Todos that fail to
        archive are logged and skipped; the archived ids are returned.
        """
        cutoff = now() - timedelta(days=days) if days and days > 0 else None
        archived: List[str] = []
        for todo in self.list(status="completed"):
            finished = todo.completed or todo.started
            if cutoff is not None and finished is not None and finished > cutoff:
                continue
            try:
                self.archive(todo.id)
            except (OSError, TodoError) as e:
                logger.warning(f"Skipping todo '{todo.id}' during archive pass: {e}")
                continue
            archived.append(todo.id)
        return archived

    # ------------------------------------------------------------------
    # Section management
    # ------------------------------------------------------------------

    def list_sections(self, todo_id: str) -> List[Dict[str, Any]]:
        """Declared (or inferred) sections in render order with their metrics."""
        todo = self.read(todo_id)
        contents = section_contents(todo.sections, todo.body)
        result = []
        for key, section in ordered_sections(todo.sections):
            entry = {"key": key, **section.to_dict()}
            entry["metadata"] = dict(section.metadata)
            entry["has_content"] = bool(contents.get(key, "").strip())
            result.append(entry)
        return result

    def add_section(
        self,
        todo_id: str,
        key: str,
        title: Optional[str] = None,
        schema: str = "freeform",
        required: bool = False,
        order: Optional[int] = None,
    ) -> SectionDefinition:
        """Declare a new section and add its heading to the body."""
        key = (key or "").strip()
        if not re.fullmatch(r"[a-z0-9][a-z0-9_]*", key):
            raise InvalidInputError(f"invalid section key '{key}': use lowercase letters, digits and underscores")
        get_schema(schema)
        if title:
            title = title.strip()
            if not title.startswith(HEADING_PREFIX):
                title = HEADING_PREFIX + title.lstrip("# ")
        else:
            title = title_from_key(key)

        with self.lock:
            todo = self.read(todo_id)
            if key in todo.sections:
                raise ConflictError(f"section '{key}' already exists in todo '{todo_id}'")
            if any(s.title == title for s in todo.sections.values()):
                raise ConflictError(f"a section titled '{title}' already exists in todo '{todo_id}'")

            section = SectionDefinition(
                title=title,
                order=DEFAULT_CUSTOM_ORDER if order is None else int(order),
                schema=schema,
                required=bool(required),
                custom=STANDARD_SECTIONS.get(title, (None,))[0] != key,
            )
            todo.sections[key] = section
            titles = section_titles(todo.sections)
            appended = extract_section(todo.body, title, titles) is None
            if appended:
                todo.body = replace_section(todo.body, title, "", titles)
            if not appended or ordered_sections(todo.sections)[-1][0] != key:
                todo.body = reorder_body(todo.body, todo.sections)
            refresh_metrics(todo.sections, todo.body)
            self.save(todo)

        logger.info(f"Added section '{key}' to todo '{todo_id}'")
        return section

    def reorder_sections(self, todo_id: str, orders: Mapping[str, Any]) -> List[Dict[str, Any]]:
        """Assign new orders and re-render the body in that order."""
        if not orders:
            raise InvalidInputError("section order mapping cannot be empty")

        with self.lock:
            todo = self.read(todo_id)
            for key in orders:
                if key not in todo.sections:
                    raise InvalidInputError(f"section not found: '{key}'")
            for key, value in orders.items():
                try:
                    todo.sections[key].order = int(value)
                except (TypeError, ValueError):
                    raise InvalidInputError(f"invalid order '{value}' for section '{key}'") from None
            todo.body = reorder_body(todo.body, todo.sections)
            self.save(todo)

        logger.info(f"Reordered sections of todo '{todo_id}'")
        return self.list_sections(todo_id)

    def section_content(self, todo_id: str, key: str) -> str:
        todo = self.read(todo_id)
        section = todo.sections.get(key)
        if section is None:
            raise InvalidInputError(f"section not found: '{key}'")
        return extract_section(todo.body, section.title, section_titles(todo.sections)) or ""
