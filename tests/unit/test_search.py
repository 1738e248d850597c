"""Unit tests for the full-text search index."""

from datetime import datetime

import pytest

from todo_mcp.errors import InvalidInputError
from todo_mcp.search import (
    INDEX_FILE_NAME,
    SearchEngine,
    build_match_expression,
    sanitize_query,
)
from todo_mcp.store import TodoStore


@pytest.fixture
def store(tmp_path):
    return TodoStore(tmp_path / "todos")


@pytest.fixture
def engine(store, tmp_path):
    search = SearchEngine(tmp_path / "index", store)
    yield search
    search.close()


def _create(store, engine, task, findings=None, status=None):
    todo = store.create(task)
    if findings:
        todo = store.update(todo.id, "findings", "append", findings)
    if status:
        todo = store.update(todo.id, metadata={"status": status})
    engine.index_todo(todo)
    return todo


class TestQueryParsing:
    """Test cases for turning user input into index queries."""

    def test_sanitize_query(self):
        """Test special characters become spaces and regex slashes are dropped."""
        assert sanitize_query("auth* AND (login)") == "auth AND login"
        assert sanitize_query("/token-refresh/") == "token-refresh"
        assert sanitize_query("   ") == ""

    def test_terms_are_ored(self):
        """Test plain queries match any term."""
        assert build_match_expression("login token") == '"login" OR "token"'

    def test_quoted_phrase(self):
        """Test a quoted query is an exact phrase."""
        assert build_match_expression('"login flow"') == '"login flow"'

    def test_nothing_left(self):
        """Test queries made only of punctuation produce no expression."""
        assert build_match_expression("!!! ???") is None
        assert build_match_expression('""') is None


class TestIndexLifecycle:
    """Test cases for opening, reconciling and rebuilding the index."""

    def test_open_indexes_existing_files(self, store, tmp_path):
        """Test opening indexes every todo file already on disk."""
        for task in ("One", "Two", "Three"):
            store.create(task)

        with SearchEngine(tmp_path / "index", store) as engine:
            assert engine.indexed_count() == 3
            assert engine.indexed_ids() == ["one", "three", "two"]

    def test_reopen_drops_removed_files(self, store, tmp_path):
        """Test entries whose file disappeared are removed on open."""
        keep = store.create("Keep")
        gone = store.create("Gone")
        with SearchEngine(tmp_path / "index", store):
            pass
        gone.path.unlink()

        with SearchEngine(tmp_path / "index", store) as engine:
            assert engine.indexed_ids() == [keep.id]

    def test_reopen_sees_edits_made_outside(self, store, tmp_path):
        """Test a file edited by hand while closed is re-indexed on open."""
        todo = store.create("Cache layer")
        with SearchEngine(tmp_path / "index", store) as engine:
            assert engine.search("memcached") == []
        text = todo.path.read_text(encoding="utf-8")
        todo.path.write_text(text.replace("## Findings & Research\n", "## Findings & Research\n\nTry memcached\n"), encoding="utf-8")

        with SearchEngine(tmp_path / "index", store) as engine:
            assert [hit.id for hit in engine.search("memcached")] == [todo.id]
            assert engine.indexed_count() == 1

    def test_malformed_files_are_not_indexed(self, store, tmp_path):
        """Test broken files are skipped during reconciliation."""
        store.create("Valid")
        (store.base_dir / "broken.md").write_text("---\nunclosed", encoding="utf-8")

        with SearchEngine(tmp_path / "index", store) as engine:
            assert engine.indexed_ids() == ["valid"]

    def test_corrupt_index_is_rebuilt(self, store, tmp_path):
        """Test garbage in the index file triggers a rebuild."""
        store.create("Survivor")
        index_dir = tmp_path / "index"
        index_dir.mkdir()
        (index_dir / INDEX_FILE_NAME).write_bytes(b"this is not a database" * 64)

        with SearchEngine(index_dir, store) as engine:
            assert engine.rebuilt is True
            assert engine.indexed_count() == 1
            assert [hit.id for hit in engine.search("survivor")] == ["survivor"]

    def test_index_path_that_is_a_file(self, store, tmp_path):
        """Test a stray file at the index location is replaced."""
        store.create("Anything")
        index_path = tmp_path / "index"
        index_path.write_bytes(b"\x00\x01garbage")

        with SearchEngine(index_path, store) as engine:
            assert engine.rebuilt is True
            assert engine.indexed_count() == 1


class TestSearch:
    """Test cases for queries and filters."""

    def test_term_search(self, store, engine):
        """Test a term matches task and section text."""
        by_task = _create(store, engine, "Implement authentication")
        by_findings = _create(store, engine, "Harden API", findings="Use authentication tokens")
        _create(store, engine, "Write docs")

        hits = engine.search("authentication")
        assert {hit.id for hit in hits} == {by_task.id, by_findings.id}
        assert all(hit.score > 0 for hit in hits)

    def test_any_term_matches(self, store, engine):
        """Test multi-word queries return todos matching either word."""
        a = _create(store, engine, "Cache warmup")
        b = _create(store, engine, "Queue retries")
        _create(store, engine, "Unrelated")

        assert {hit.id for hit in engine.search("cache queue")} == {a.id, b.id}

    def test_phrase_search(self, store, engine):
        """Test quoted queries require the words together."""
        exact = _create(store, engine, "Fix login flow")
        _create(store, engine, "Flow of login events")

        assert [hit.id for hit in engine.search('"login flow"')] == [exact.id]

    def test_task_matches_rank_first(self, store, engine):
        """Test a match in the task outranks a match in the findings."""
        for task in ("Alpha", "Beta", "Gamma", "Delta", "Epsilon"):
            _create(store, engine, task)
        in_findings = _create(
            store,
            engine,
            "Tune indexes",
            findings="Checked the slow query log and the database statistics for the reporting jobs",
        )
        in_task = _create(store, engine, "Database migration")

        hits = engine.search("database")
        assert [hit.id for hit in hits] == [in_task.id, in_findings.id]

    def test_status_filter(self, store, engine):
        """Test filters narrow term matches."""
        a = _create(store, engine, "Auth login")
        b = _create(store, engine, "Auth logout")
        _create(store, engine, "Auth tokens", status="completed")

        hits = engine.search("auth", {"status": "in_progress"}, 10)
        assert {hit.id for hit in hits} == {a.id, b.id}

    def test_filters_without_query(self, store, engine):
        """Test filters alone list matching todos, newest first."""
        done = _create(store, engine, "Done thing", status="completed")
        _create(store, engine, "Open thing")

        hits = engine.search("", {"status": "completed"})
        assert [hit.id for hit in hits] == [done.id]
        assert hits[0].score == 0.0

    def test_date_filters(self, store, engine):
        """Test date bounds are inclusive whole days."""
        old = store.create("Legacy cleanup")
        old.started = datetime(2024, 3, 15, 23, 30)
        store.save(old)
        engine.index_todo(old)
        _create(store, engine, "Recent cleanup")

        assert [h.id for h in engine.search("cleanup", {"date_to": "2024-03-15"})] == [old.id]
        assert [h.id for h in engine.search("cleanup", {"date_from": "2024-03-15", "date_to": "2024-03-15"})] == [old.id]
        assert old.id not in {h.id for h in engine.search("cleanup", {"date_from": "2024-03-16"})}

    def test_empty_query_without_filters(self, store, engine):
        """Test nothing is returned when there is nothing to match."""
        _create(store, engine, "Something")
        assert engine.search("") == []
        assert engine.search("???") == []

    def test_limit(self, store, engine):
        """Test the limit caps the result count."""
        for n in range(5):
            _create(store, engine, f"Report {n}")
        assert len(engine.search("report", limit=2)) == 2

    def test_special_characters_do_not_break_queries(self, store, engine):
        """Test query syntax characters are treated as separators."""
        todo = _create(store, engine, "Parse config")
        assert [h.id for h in engine.search('config" OR (*')] == [todo.id]

    def test_invalid_filters(self, engine):
        """Test unknown filters and bad dates are rejected."""
        with pytest.raises(InvalidInputError, match="unknown search filter"):
            engine.search("x", {"owner": "me"})
        with pytest.raises(InvalidInputError, match="invalid date_from format"):
            engine.search("x", {"date_from": "yesterday"})

    def test_delete(self, store, engine):
        """Test deleted todos no longer match."""
        todo = _create(store, engine, "Temporary work")
        engine.delete(todo.id)

        assert engine.search("temporary") == []
        assert engine.indexed_count() == 0
