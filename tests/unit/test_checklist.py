"""Unit tests for checklist parsing and toggling."""

from todo_mcp.checklist import parse_checklist, toggle_item


class TestParseChecklist:
    """Test cases for reading checklist items."""

    def test_statuses_from_markers(self):
        """Test every marker maps to its tri-state status."""
        text = "- [ ] write\n- [>] review\n- [~] refactor\n- [-] deploy\n- [x] plan\n- [X] scope"
        items = parse_checklist(text)

        assert [item.text for item in items] == ["write", "review", "refactor", "deploy", "plan", "scope"]
        assert [item.status for item in items] == [
            "pending",
            "in_progress",
            "in_progress",
            "in_progress",
            "completed",
            "completed",
        ]

    def test_ignores_other_lines(self):
        """Test prose, empty items and plain bullets are skipped."""
        items = parse_checklist("Intro text\n- plain bullet\n- [ ]\n  - [ ] nested item\n")

        assert len(items) == 1
        assert items[0].text == "nested item"


class TestToggleItem:
    """Test cases for the pending -> in progress -> completed cycle."""

    def test_full_cycle(self):
        """Test three toggles bring the item back to pending."""
        body = "- [ ] Task two\n- [x] Task three"

        body, status = toggle_item(body, "Task two")
        assert body == "- [>] Task two\n- [x] Task three"
        assert status == "in_progress"

        body, status = toggle_item(body, "Task two")
        assert body == "- [x] Task two\n- [x] Task three"
        assert status == "completed"

        body, status = toggle_item(body, "Task two")
        assert body == "- [ ] Task two\n- [x] Task three"
        assert status == "pending"

    def test_alternate_in_progress_markers_complete(self):
        """Test [-] and [~] advance to completed."""
        assert toggle_item("- [-] a", "a") == ("- [x] a", "completed")
        assert toggle_item("- [~] a", "a") == ("- [x] a", "completed")

    def test_missing_item_leaves_body(self):
        """Test an unknown item returns the body untouched."""
        body = "- [ ] one\n- [ ] two"
        assert toggle_item(body, "three") == (body, None)

    def test_only_first_match_changes(self):
        """Test duplicates after the first match are left alone."""
        body = "- [ ] same\n- [ ] same"
        new_body, _ = toggle_item(body, "same")
        assert new_body == "- [>] same\n- [ ] same"

    def test_indentation_and_surrounding_lines_are_kept(self):
        """Test only the marker of the matched line changes."""
        body = "Notes first\n\n  - [ ] nested\n- [ ] other\n"
        new_body, status = toggle_item(body, " nested ")

        assert status == "in_progress"
        before, after = body.split("\n"), new_body.split("\n")
        changed = [i for i, (a, b) in enumerate(zip(before, after)) if a != b]
        assert changed == [2]
        assert after[2] == "  - [>] nested"
