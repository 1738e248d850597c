"""Integration tests for the MCP tool functions in main.py."""

import pytest

import main
from todo_mcp.errors import TodoNotFoundError


@pytest.fixture
def root(tmp_path, monkeypatch):
    monkeypatch.delenv(main.ROOT_ENV, raising=False)
    yield str(tmp_path)
    main._close_services()


class TestRootResolution:
    """Test cases for locating the project root."""

    def test_explicit_root(self, root):
        """Test todos are stored under .claude/todos of the given root."""
        result = main.todo_create("Implement authentication", root=root)
        assert result["path"].endswith(".claude/todos/implement-authentication.md")

    def test_missing_root(self, tmp_path):
        """Test a root that does not exist is rejected."""
        with pytest.raises(ValueError, match="does not exist"):
            main.todo_stats(root=str(tmp_path / "missing"))

    def test_environment_root(self, root, monkeypatch):
        """Test the environment variable is used when no root is passed."""
        monkeypatch.setenv(main.ROOT_ENV, root)
        main.todo_create("From environment")

        assert main.todo_read(root=root)["count"] == 1


class TestTodoTools:
    """Test cases for the todo tools."""

    def test_create_and_read(self, root):
        """Test a created todo can be read in full and summary form."""
        created = main.todo_create("Write release notes", priority="low", type="documentation", root=root)
        assert created["id"] == "write-release-notes"
        assert "hint" not in created

        full = main.todo_read(id=created["id"], root=root)
        assert full["priority"] == "low"
        assert full["body"].startswith("# Task: Write release notes")
        assert full["test_coverage"] == 0.0
        assert full["checklist"] == []

        listed = main.todo_read(format="list", root=root)
        assert listed["count"] == 1
        assert "body" not in listed["todos"][0]

    def test_create_returns_pattern_hint(self, root):
        """Test phase titles come back with a hint and similar todos."""
        main.todo_create("Phase 1: groundwork", root=root)
        result = main.todo_create("Phase 2: build", root=root)

        assert result["hint"]["suggested_type"] == "phase"
        assert result["similar"] == ["phase-1-groundwork"]

    def test_update_section_and_metadata(self, root):
        """Test section content and metadata are updated together."""
        todo_id = main.todo_create("Ship search", root=root)["id"]
        main.todo_update(todo_id, section="checklist", operation="replace", content="- [ ] index\n- [ ] query", root=root)

        result = main.todo_update(todo_id, section="checklist", operation="toggle", content="index", priority="medium", root=root)

        assert result["priority"] == "medium"
        assert result["metrics"] == {"completed": 0, "in_progress": 1, "pending": 1, "total": 2}

    def test_read_filters(self, root):
        """Test list filters are applied."""
        done = main.todo_create("Done already", root=root)["id"]
        main.todo_create("Not yet", root=root)
        main.todo_update(done, status="completed", root=root)

        result = main.todo_read(filter_status="completed", root=root)
        assert [t["id"] for t in result["todos"]] == [done]

    def test_invalid_format(self, root):
        """Test unknown read formats are rejected."""
        with pytest.raises(ValueError, match="Invalid format"):
            main.todo_read(format="xml", root=root)

    def test_search(self, root):
        """Test search results carry id, task, status and score."""
        main.todo_create("Authentication flow", root=root)
        main.todo_create("Unrelated chore", root=root)

        result = main.todo_search("authentication", status="in_progress", root=root)
        assert result["count"] == 1
        assert set(result["results"][0]) >= {"id", "task", "status", "score"}

    def test_archive(self, root):
        """Test archiving moves the todo out of the active list."""
        todo_id = main.todo_create("Archive via tool", root=root)["id"]
        result = main.todo_archive(todo_id, root=root)

        assert "/.claude/archive/" in result["archive_path"]
        assert main.todo_read(root=root)["count"] == 0
        with pytest.raises(TodoNotFoundError):
            main.todo_read(id=todo_id, root=root)

    def test_clean(self, root):
        """Test both maintenance operations."""
        main.todo_create("Same task", root=root)
        main.todo_create("Same task", root=root)

        duplicates = main.todo_clean("find_duplicates", root=root)
        assert duplicates["duplicates"] == [["same-task", "same-task-2"]]
        assert main.todo_clean("archive_old", days=30, root=root)["archived"] == 0
        with pytest.raises(ValueError, match="Invalid operation"):
            main.todo_clean("vacuum", root=root)

    def test_stats(self, root):
        """Test statistics come back as a dictionary."""
        main.todo_create("Count me", root=root)
        stats = main.todo_stats(root=root)

        assert stats["total"] == 1
        assert stats["overall_completion_rate"] == 0.0
        assert stats["performance"]["service_create_todo_duration"]["count"] >= 1

    def test_tree_format(self, root):
        """Test the tree view nests children and reports its depth."""
        parent = main.todo_create("Launch v2", type="multi-phase", root=root)["id"]
        child = main.todo_create("Phase 1: schema", type="phase", parent_id=parent, root=root)["id"]

        tree = main.todo_read(format="tree", root=root)
        assert tree["count"] == 2
        assert tree["depth"] == 2
        assert tree["tree"] == f"[→] {parent}: Launch v2 [HIGH] [multi-phase]\n└── [→] {child}: Phase 1: schema [HIGH] [phase]\n"
        assert tree["roots"][0]["children"][0]["id"] == child
        assert tree["orphans"] == []
        assert tree["issues"] == []
        assert main.todo_read(id=parent, root=root)["children"] == [child]

    def test_phase_needs_parent(self, root):
        """Test a phase created without a parent is refused."""
        with pytest.raises(ValueError, match="requires parent_id"):
            main.todo_create("Phase 3: polish", type="phase", root=root)

    def test_link_and_cascade_archive(self, root):
        """Test linking a child and archiving the finished pair together."""
        parent = main.todo_create("Release", root=root)["id"]
        child = main.todo_create("Changelog", root=root)["id"]

        linked = main.todo_link(parent, child, root=root)
        assert linked == {"parent_id": parent, "child_id": child, "link_type": "parent-child"}
        with pytest.raises(ValueError, match="Unsupported link type"):
            main.todo_link(parent, child, link_type="blocks", root=root)

        main.todo_update(child, status="completed", root=root)
        result = main.todo_archive(parent, cascade=True, root=root)
        assert result["archive_path"].endswith("release.md")
        assert main.todo_read(root=root)["count"] == 0


class TestTemplateAndSectionTools:
    """Test cases for template and section tools."""

    def test_templates(self, root, tmp_path):
        """Test listing templates and creating from one."""
        templates = tmp_path / ".claude" / "templates"
        templates.mkdir(parents=True)
        (templates / "spike.md").write_text(
            "---\ntemplate_name: spike\ndescription: Time-boxed research\nvariables: [task]\n---\n"
            "# Task: {{.task}}\n\n## Findings & Research\n\n## Decision\n",
            encoding="utf-8",
        )

        assert main.todo_template(root=root)["templates"][0]["name"] == "spike"
        created = main.todo_template(template="spike", task="Evaluate FTS5", type="research", root=root)
        assert created["id"] == "evaluate-fts5"
        assert created["template"] == "spike"
        with pytest.raises(ValueError, match="task is required"):
            main.todo_template(template="spike", root=root)

    def test_sections(self, root):
        """Test listing, adding and reordering sections."""
        todo_id = main.todo_create("Section tools", root=root)["id"]

        added = main.todo_add_section(todo_id, "risks", title="Risks & Mitigations", root=root)
        assert added["section"]["title"] == "## Risks & Mitigations"

        reordered = main.todo_reorder_sections(todo_id, {"risks": 0}, root=root)
        assert reordered["sections"][0]["key"] == "risks"
        assert [s["key"] for s in main.todo_sections(todo_id, root=root)["sections"]][0] == "risks"

        main.todo_update(todo_id, "risks", "append", "Rate limits", root=root)
        content = main.todo_sections(todo_id, key="risks", root=root)
        assert content == {"id": todo_id, "key": "risks", "content": "Rate limits"}


class TestTodoResource:
    """Test cases for the todo://todos resource."""

    def test_resource_lists_active_todos(self, root, monkeypatch):
        """Test the resource renders the default root's todos."""
        monkeypatch.setenv(main.ROOT_ENV, root)
        assert main.resource_todos() == "No active todos."

        main.todo_create("Visible in resource", root=root)
        text = main.resource_todos()
        assert text.splitlines()[0] == "Active Todos"
        assert "visible-in-resource [in_progress/high] Visible in resource" in text
