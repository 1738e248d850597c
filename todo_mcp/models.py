"""Data models for todo-mcp.

Todo records, their section definitions, checklist items, search hits,
templates and aggregate statistics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .utils import format_timestamp

VALID_STATUSES = ("pending", "in_progress", "completed", "blocked")
VALID_PRIORITIES = ("high", "medium", "low")


@dataclass(slots=True)
class SectionDefinition:
    """Declared shape of one ``##`` section of a todo body."""

    title: str
    order: int
    schema: str
    required: bool = False
    custom: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "title": self.title,
            "order": self.order,
            "schema": self.schema,
            "required": self.required,
            "custom": self.custom,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SectionDefinition":
        return cls(
            title=str(data.get("title", "")),
            order=int(data.get("order", 0) or 0),
            schema=str(data.get("schema", "freeform") or "freeform"),
            required=bool(data.get("required", False)),
            custom=bool(data.get("custom", False)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(slots=True)
class ChecklistItem:
    """A ``- [m] text`` line."""

    text: str
    status: str

    def to_dict(self) -> Dict[str, str]:
        return {"text": self.text, "status": self.status}


@dataclass(slots=True)
class Todo:
    """Snapshot of a todo record as stored on disk."""

    id: str
    task: str
    started: Optional[datetime]
    status: str = "in_progress"
    priority: str = "high"
    type: str = "feature"
    completed: Optional[datetime] = None
    parent_id: str = ""
    tags: List[str] = field(default_factory=list)
    sections: Optional[Dict[str, SectionDefinition]] = None
    body: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)
    path: Optional[Path] = None

    def to_dict(self, include_body: bool = True) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data: Dict[str, Any] = {
            "id": self.id,
            "task": self.task,
            "started": format_timestamp(self.started),
            "completed": format_timestamp(self.completed),
            "status": self.status,
            "priority": self.priority,
            "type": self.type,
            "tags": list(self.tags),
        }
        if self.parent_id:
            data["parent_id"] = self.parent_id
        if self.sections is not None:
            data["sections"] = {key: section.to_dict() for key, section in self.sections.items()}
        if self.extra:
            data["extra"] = dict(self.extra)
        if include_body:
            data["body"] = self.body
        if self.path is not None:
            data["path"] = str(self.path)
        return data

    def summary(self) -> Dict[str, Any]:
        """Short form used by list responses."""
        return {
            "id": self.id,
            "task": self.task,
            "status": self.status,
            "priority": self.priority,
            "type": self.type,
            "started": format_timestamp(self.started),
            "completed": format_timestamp(self.completed),
            "parent_id": self.parent_id,
        }

    def validate(self) -> List[str]:
        """Validate the record and return any issues."""
        issues = []

        if not self.id:
            issues.append("Todo ID is required")
        if not self.task:
            issues.append("Task is required")
        if self.status not in VALID_STATUSES:
            issues.append(f"Invalid status: {self.status}")
        if self.priority not in VALID_PRIORITIES:
            issues.append(f"Invalid priority: {self.priority}")
        if self.status == "completed" and self.completed is None:
            issues.append("Completed todos need a completed timestamp")
        if self.status != "completed" and self.completed is not None:
            issues.append("Only completed todos may carry a completed timestamp")
        if self.parent_id and self.parent_id == self.id:
            issues.append("A todo cannot be its own parent")

        return issues


@dataclass(slots=True)
class SearchHit:
    """One ranked search result."""

    id: str
    task: str
    status: str
    score: float
    priority: str = ""
    type: str = ""
    started: str = ""
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task": self.task,
            "status": self.status,
            "score": round(self.score, 4),
            "priority": self.priority,
            "type": self.type,
            "started": self.started,
            "snippet": self.snippet,
        }


@dataclass(slots=True)
class Template:
    """A named todo template loaded from the templates directory."""

    name: str
    description: str
    variables: List[str]
    content: str
    path: Optional[Path] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "variables": list(self.variables),
        }


@dataclass(slots=True)
class PatternHint:
    """Suggestion derived from a recognisable todo title."""

    pattern: str
    suggested_type: str
    message: str
    number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "pattern": self.pattern,
            "suggested_type": self.suggested_type,
            "message": self.message,
        }
        if self.number is not None:
            data["number"] = self.number
        return data


@dataclass(slots=True)
class TodoStats:
    """Aggregate statistics over the active todos."""

    period: str = "all"
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    blocked: int = 0
    pending: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_priority: Dict[str, int] = field(default_factory=dict)
    completion_rate_by_type: Dict[str, float] = field(default_factory=dict)
    completion_rate_by_priority: Dict[str, float] = field(default_factory=dict)
    average_completion_hours: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "total": self.total,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "blocked": self.blocked,
            "pending": self.pending,
            "by_type": dict(self.by_type),
            "by_priority": dict(self.by_priority),
            "completion_rate_by_type": dict(self.completion_rate_by_type),
            "completion_rate_by_priority": dict(self.completion_rate_by_priority),
            "average_completion_hours": self.average_completion_hours,
            "overall_completion_rate": self.get_completion_rate(),
        }

    def get_completion_rate(self) -> float:
        """Completion rate as a percentage, rounded to one decimal."""
        if self.total == 0:
            return 0.0
        return round(self.completed / self.total * 100, 1)
