"""Aggregate statistics over active todos."""

from __future__ import annotations

import re
from datetime import timedelta
from typing import Dict, Iterable, List

from .errors import InvalidInputError
from .models import Todo, TodoStats
from .sections import extract_section
from .store import TodoStore
from .utils import now

PERIOD_DAYS: Dict[str, int] = {"all": 0, "week": 7, "month": 30, "quarter": 90}

_CHECKED_PATTERN = re.compile(r"- \[[xX]\]")
_UNCHECKED_PATTERN = re.compile(r"- \[ \]")


def _rate(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part / whole * 100, 1)


class StatsEngine:
    """Compute completion statistics from a ``TodoStore``."""

    def __init__(self, store: TodoStore):
        self.store = store

    def todos_for_period(self, period: str = "all") -> List[Todo]:
        period = (period or "all").strip().lower()
        if period not in PERIOD_DAYS:
            raise InvalidInputError(f"invalid period '{period}': expected one of {', '.join(PERIOD_DAYS)}")
        todos = self.store.list()
        days = PERIOD_DAYS[period]
        if days:
            cutoff = now() - timedelta(days=days)
            todos = [t for t in todos if t.started is not None and t.started >= cutoff]
        return todos

    def generate(self, period: str = "all") -> TodoStats:
        todos = self.todos_for_period(period)
        stats = TodoStats(period=(period or "all").strip().lower())

        totals_by_type: Dict[str, int] = {}
        done_by_type: Dict[str, int] = {}
        totals_by_priority: Dict[str, int] = {}
        done_by_priority: Dict[str, int] = {}

        for todo in todos:
            stats.total += 1
            if todo.status == "completed":
                stats.completed += 1
            elif todo.status == "in_progress":
                stats.in_progress += 1
            elif todo.status == "blocked":
                stats.blocked += 1
            elif todo.status == "pending":
                stats.pending += 1

            todo_type = todo.type or "unknown"
            priority = todo.priority or "medium"
            totals_by_type[todo_type] = totals_by_type.get(todo_type, 0) + 1
            totals_by_priority[priority] = totals_by_priority.get(priority, 0) + 1
            if todo.status == "completed":
                done_by_type[todo_type] = done_by_type.get(todo_type, 0) + 1
                done_by_priority[priority] = done_by_priority.get(priority, 0) + 1

        stats.by_type = totals_by_type
        stats.by_priority = totals_by_priority
        stats.completion_rate_by_type = {
            key: _rate(done_by_type.get(key, 0), total) for key, total in totals_by_type.items()
        }
        stats.completion_rate_by_priority = {
            key: _rate(done_by_priority.get(key, 0), total) for key, total in totals_by_priority.items()
        }
        stats.average_completion_hours = self.average_completion_hours(todos)
        return stats

    @staticmethod
    def average_completion_hours(todos: Iterable[Todo]) -> float:
        """Mean started-to-completed duration of completed todos, in hours."""
        durations = [
            (todo.completed - todo.started).total_seconds()
            for todo in todos
            if todo.status == "completed" and todo.started and todo.completed
        ]
        durations = [seconds for seconds in durations if seconds > 0]
        if not durations:
            return 0.0
        return round(sum(durations) / len(durations) / 3600, 2)

    def test_coverage(self, todo_id: str) -> float:
        """Percentage of checked items in the Test List (or Test Cases) section."""
        todo = self.store.read(todo_id)
        section = extract_section(todo.body, "## Test List")
        if not section:
            section = extract_section(todo.body, "## Test Cases")
        if not section:
            return 0.0

        checked = len(_CHECKED_PATTERN.findall(section))
        unchecked = len(_UNCHECKED_PATTERN.findall(section))
        return _rate(checked, checked + unchecked)
