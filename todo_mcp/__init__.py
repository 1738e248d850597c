"""todo-mcp - Markdown todo records with schema-aware sections and full-text search."""

# No imports at package level to avoid circular import issues
# Import modules directly where needed

__all__ = [
    "checklist",
    "errors",
    "frontmatter",
    "models",
    "patterns",
    "search",
    "sections",
    "service",
    "stats",
    "store",
    "templates",
    "todo_logging",
    "utils",
]
