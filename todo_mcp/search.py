"""Persistent full-text index over todo records.

The index is a SQLite database (file ``store`` inside the index directory)
with an FTS5 table holding the searchable text and a plain table holding the
filterable fields. It is reconciled with the todo directory every time it is
opened and rebuilt from scratch if the existing database cannot be read.
"""

from __future__ import annotations

import logging
import re
import shutil
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidInputError, MalformedTodoError, SearchIndexError
from .models import SearchHit, Todo
from .sections import infer_sections, section_contents
from .store import TodoStore
from .todo_logging import log_index_rebuilt, log_operation, log_performance
from .utils import format_timestamp, parse_date

logger = logging.getLogger("todo_mcp.search")

INDEX_FILE_NAME = "store"
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
FILTER_KEYS = ("status", "priority", "type", "date_from", "date_to")

# bm25 weights, in column order: id, task, findings, tests, content
_BM25_WEIGHTS = (0.0, 3.0, 1.5, 1.0, 0.5)
_FINDINGS_SECTIONS = ("findings", "web_searches")
_TESTS_SECTIONS = ("test_list", "tests")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS todos (
    id TEXT PRIMARY KEY,
    task TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT '',
    priority TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT '',
    started TEXT NOT NULL DEFAULT '',
    indexed_at TEXT NOT NULL DEFAULT ''
);

CREATE VIRTUAL TABLE IF NOT EXISTS todos_fts USING fts5(
    id UNINDEXED,
    task,
    findings,
    tests,
    content,
    tokenize = 'unicode61 remove_diacritics 2'
);

CREATE INDEX IF NOT EXISTS idx_todos_status ON todos(status);
CREATE INDEX IF NOT EXISTS idx_todos_started ON todos(started);
"""

_UNSAFE_QUERY_CHARS = re.compile(r"[^A-Za-z0-9 _-]")


def sanitize_query(query: str) -> str:
    """Reduce a free-text query to letters, digits, spaces, ``-`` and ``_``."""
    query = query.strip()
    if len(query) > 1 and query.startswith("/") and query.endswith("/"):
        query = query[1:-1]
    query = _UNSAFE_QUERY_CHARS.sub(" ", query)
    return " ".join(query.split())


def build_match_expression(query: str) -> Optional[str]:
    """FTS5 MATCH expression for ``query``, or ``None`` when nothing is left.

    ``"..."`` searches for the exact phrase; otherwise any term may match and
    ranking decides the order.
    """
    stripped = (query or "").strip()
    if len(stripped) > 1 and stripped.startswith('"') and stripped.endswith('"'):
        phrase = sanitize_query(stripped[1:-1])
        return f'"{phrase}"' if phrase else None

    terms = sanitize_query(stripped).split()
    if not terms:
        return None
    return " OR ".join(f'"{term}"' for term in terms)


def document_fields(todo: Todo) -> Dict[str, str]:
    """Searchable text of one todo, split by weighted field."""
    sections = todo.sections if todo.sections is not None else infer_sections(todo.body)
    contents = section_contents(sections, todo.body)
    content = "\n\n".join(text for text in contents.values() if text)
    if not content:
        content = todo.body
    return {
        "task": todo.task,
        "findings": "\n\n".join(contents.get(key, "") for key in _FINDINGS_SECTIONS).strip(),
        "tests": "\n\n".join(contents.get(key, "") for key in _TESTS_SECTIONS).strip(),
        "content": content,
    }


class SearchEngine:
    """Full-text search over one todo directory."""

    def __init__(self, index_path: Path | str, store: TodoStore):
        self.index_path = Path(index_path).expanduser().resolve()
        self.db_path = self.index_path / INDEX_FILE_NAME
        self.store = store
        self._write_lock = threading.Lock()
        self._db: Optional[sqlite3.Connection] = None
        self.rebuilt = False
        self.open()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open (or rebuild) the index and reconcile it with the todo directory."""
        with self._write_lock:
            try:
                self._connect()
            except (sqlite3.DatabaseError, OSError) as e:
                logger.warning(f"Search index at {self.index_path} is unreadable ({e}); rebuilding")
                self._close_connection()
                self._recreate(e)

        self.reconcile()
        if self.rebuilt:
            log_index_rebuilt(str(self.index_path), self.indexed_count())

    def _connect(self) -> None:
        if self.index_path.exists() and not self.index_path.is_dir():
            raise sqlite3.DatabaseError(f"index path {self.index_path} is not a directory")
        self.index_path.mkdir(parents=True, exist_ok=True)

        db = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)
        try:
            db.row_factory = sqlite3.Row
            check = db.execute("PRAGMA quick_check").fetchone()
            if check is None or check[0] != "ok":
                raise sqlite3.DatabaseError(f"integrity check failed: {check[0] if check else 'no result'}")
            db.execute("PRAGMA journal_mode=WAL")
            db.execute("PRAGMA synchronous=NORMAL")
            db.executescript(_SCHEMA)
            db.execute("SELECT COUNT(*) FROM todos_fts").fetchone()
        except BaseException:
            db.close()
            raise
        self._db = db
        logger.info(f"Search index opened: {self.db_path}")

    def _recreate(self, cause: Exception) -> None:
        try:
            if self.index_path.is_dir():
                shutil.rmtree(self.index_path)
            elif self.index_path.exists():
                self.index_path.unlink()
            self._connect()
        except (sqlite3.DatabaseError, OSError) as e:
            raise SearchIndexError(
                f"search index at {self.index_path} is corrupt and could not be rebuilt: {e} (original error: {cause})"
            ) from e
        self.rebuilt = True

    def _close_connection(self) -> None:
        if self._db is not None:
            try:
                self._db.close()
            finally:
                self._db = None

    def close(self) -> None:
        with self._write_lock:
            self._close_connection()

    def __enter__(self) -> "SearchEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def db(self) -> sqlite3.Connection:
        if self._db is None:
            raise SearchIndexError(f"search index at {self.index_path} is closed")
        return self._db

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    @log_performance("reconcile_index")
    def reconcile(self) -> Dict[str, int]:
        """Re-index every todo file and drop entries whose file is gone."""
        with log_operation("reconcile_index", index_path=str(self.index_path)):
            todos: List[Todo] = []
            skipped = 0
            if self.store.base_dir.is_dir():
                for path in self.store.iter_paths():
                    try:
                        todos.append(self.store.load(path))
                    except MalformedTodoError as e:
                        logger.warning(f"Not indexing malformed todo file {path.name}: {e}")
                        skipped += 1

            keep = {todo.id for todo in todos}
            with self._write_lock:
                db = self.db
                db.execute("BEGIN IMMEDIATE")
                try:
                    stale = [row["id"] for row in db.execute("SELECT id FROM todos") if row["id"] not in keep]
                    for todo_id in stale:
                        self._delete_rows(db, todo_id)
                    for todo in todos:
                        self._write_rows(db, todo)
                    db.execute("COMMIT")
                except BaseException:
                    db.execute("ROLLBACK")
                    raise

            logger.info(f"Reconciled search index: {len(todos)} indexed, {len(stale)} removed, {skipped} skipped")
            return {"indexed": len(todos), "removed": len(stale), "skipped": skipped}

    def index_todo(self, todo: Todo) -> None:
        """Insert or replace one todo's document."""
        with self._write_lock:
            db = self.db
            db.execute("BEGIN IMMEDIATE")
            try:
                self._write_rows(db, todo)
                db.execute("COMMIT")
            except BaseException:
                db.execute("ROLLBACK")
                raise

    def delete(self, todo_id: str) -> None:
        with self._write_lock:
            db = self.db
            db.execute("BEGIN IMMEDIATE")
            try:
                self._delete_rows(db, todo_id)
                db.execute("COMMIT")
            except BaseException:
                db.execute("ROLLBACK")
                raise

    @staticmethod
    def _delete_rows(db: sqlite3.Connection, todo_id: str) -> None:
        db.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
        db.execute("DELETE FROM todos_fts WHERE id = ?", (todo_id,))

    @staticmethod
    def _write_rows(db: sqlite3.Connection, todo: Todo) -> None:
        fields = document_fields(todo)
        SearchEngine._delete_rows(db, todo.id)
        db.execute(
            """
            INSERT INTO todos (id, task, status, priority, type, started, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                todo.id,
                todo.task,
                todo.status,
                todo.priority,
                todo.type,
                format_timestamp(todo.started),
                format_timestamp(datetime.now().replace(microsecond=0)),
            ),
        )
        db.execute(
            "INSERT INTO todos_fts (id, task, findings, tests, content) VALUES (?, ?, ?, ?, ?)",
            (todo.id, fields["task"], fields["findings"], fields["tests"], fields["content"]),
        )

    def indexed_count(self) -> int:
        return int(self.db.execute("SELECT COUNT(*) FROM todos").fetchone()[0])

    def indexed_ids(self) -> List[str]:
        return [row[0] for row in self.db.execute("SELECT id FROM todos ORDER BY id")]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _filter_clauses(filters: Optional[Mapping[str, Any]]) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for key, value in (filters or {}).items():
            if key not in FILTER_KEYS:
                raise InvalidInputError(f"unknown search filter '{key}': expected one of {', '.join(FILTER_KEYS)}")
            if value is None or str(value).strip() == "":
                continue
            value = str(value).strip()
            if key in ("status", "priority", "type"):
                if value.lower() == "all":
                    continue
                clauses.append(f"t.{key} = ?")
                params.append(value.lower() if key != "type" else value)
            elif key == "date_from":
                clauses.append("t.started >= ?")
                params.append(f"{parse_date(value, 'date_from'):%Y-%m-%d} 00:00:00")
            else:
                clauses.append("t.started <= ?")
                params.append(f"{parse_date(value, 'date_to'):%Y-%m-%d} 23:59:59")
        return clauses, params

    @log_performance("search_todos")
    def search(
        self,
        query: str = "",
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[SearchHit]:
        """Ranked hits for ``query`` restricted by ``filters``."""
        limit = DEFAULT_LIMIT if not limit or limit <= 0 else min(int(limit), MAX_LIMIT)
        clauses, params = self._filter_clauses(filters)
        match = build_match_expression(query)
        if match is None and not clauses:
            return []

        if match is not None:
            where = " AND ".join(["todos_fts MATCH ?"] + clauses)
            sql = f"""
                SELECT t.id, t.task, t.status, t.priority, t.type, t.started,
                       bm25(todos_fts, {', '.join(str(w) for w in _BM25_WEIGHTS)}) AS score,
                       snippet(todos_fts, -1, '[', ']', '...', 12) AS snippet
                FROM todos_fts JOIN todos t ON t.id = todos_fts.id
                WHERE {where}
                ORDER BY score ASC, t.started DESC, t.id ASC
                LIMIT ?
            """
            args = [match] + params + [limit]
        else:
            sql = f"""
                SELECT t.id, t.task, t.status, t.priority, t.type, t.started,
                       0.0 AS score, '' AS snippet
                FROM todos t
                WHERE {' AND '.join(clauses)}
                ORDER BY t.started DESC, t.id ASC
                LIMIT ?
            """
            args = params + [limit]

        reader = self._reader()
        try:
            rows = reader.execute(sql, args).fetchall()
        except sqlite3.OperationalError as e:
            raise SearchIndexError(f"search index query failed: {e}") from e
        finally:
            reader.close()

        return [
            SearchHit(
                id=row["id"],
                task=row["task"],
                status=row["status"],
                score=-float(row["score"]) if match is not None else 0.0,
                priority=row["priority"],
                type=row["type"],
                started=row["started"],
                snippet=row["snippet"] or "",
            )
            for row in rows
        ]

    def _reader(self) -> sqlite3.Connection:
        if self._db is None:
            raise SearchIndexError(f"search index at {self.index_path} is closed")
        reader = sqlite3.connect(str(self.db_path), check_same_thread=False)
        reader.row_factory = sqlite3.Row
        return reader
