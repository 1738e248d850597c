"""Error types raised by the todo store, search index and facade.

Validation problems subclass ``ValueError`` and missing records subclass
``FileNotFoundError`` so callers that only know the built-in exceptions keep
working. Filesystem errors are never wrapped; they propagate as ``OSError``.
"""

from __future__ import annotations

from typing import Optional


class TodoError(Exception):
    """Base class for all todo-mcp errors."""


class TodoNotFoundError(TodoError, FileNotFoundError):
    """No record (or directory) exists under the requested id."""

    def __init__(self, todo_id: str, message: Optional[str] = None):
        self.todo_id = todo_id
        super().__init__(message or f"todo '{todo_id}' not found")


class TemplateNotFoundError(TodoNotFoundError):
    """No template file exists under the requested name."""

    def __init__(self, name: str):
        super().__init__(name, f"template '{name}' not found")


class MalformedTodoError(TodoError, ValueError):
    """Frontmatter is missing, unclosed, unparseable or holds a bad field value."""


class SchemaViolationError(TodoError, ValueError):
    """Section content does not satisfy its schema."""

    def __init__(self, section: str, rule: str):
        self.section = section
        self.rule = rule
        super().__init__(f"section '{section}' failed validation: {rule}")


class InvalidInputError(TodoError, ValueError):
    """Caller supplied an empty, unknown or out-of-range value."""


class ConflictError(TodoError):
    """An entity with the same key already exists."""


class SearchIndexError(TodoError):
    """The search index could not be opened, rebuilt or queried."""
