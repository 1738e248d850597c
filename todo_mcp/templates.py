"""Todo templates stored as frontmatter documents with ``{{.Var}}`` placeholders."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping

from .errors import InvalidInputError, MalformedTodoError, TemplateNotFoundError
from .frontmatter import load_payload, split_frontmatter
from .models import Template

logger = logging.getLogger("todo_mcp.templates")

_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_TEMPLATE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class TemplateEngine:
    """Load, list and render templates from one directory."""

    def __init__(self, templates_dir: Path | str):
        self.templates_dir = Path(templates_dir).expanduser().resolve()

    def template_path(self, name: str) -> Path:
        if not name or not _TEMPLATE_NAME_PATTERN.match(name):
            raise InvalidInputError(f"invalid template name '{name}'")
        return self.templates_dir / f"{name}.md"

    def list(self) -> List[str]:
        """Names of all templates; empty when the directory does not exist."""
        if not self.templates_dir.is_dir():
            return []
        return sorted(p.stem for p in self.templates_dir.glob("*.md") if p.is_file())

    def describe(self) -> List[Dict[str, Any]]:
        described = []
        for name in self.list():
            try:
                described.append(self.load(name).to_dict())
            except (MalformedTodoError, InvalidInputError) as e:
                logger.warning(f"Skipping unreadable template '{name}': {e}")
        return described

    def load(self, name: str) -> Template:
        path = self.template_path(name)
        if not path.exists():
            raise TemplateNotFoundError(name)

        try:
            yaml_text, content = split_frontmatter(path.read_text(encoding="utf-8"))
            data = load_payload(yaml_text)
        except MalformedTodoError as e:
            raise MalformedTodoError(f"invalid template format for '{name}': {e}") from e

        declared = str(data.get("template_name") or "")
        if declared != name:
            raise InvalidInputError(
                f"template name mismatch: file '{name}' contains template '{declared}'"
            )

        variables = data.get("variables") or []
        if isinstance(variables, str):
            variables = [variables]

        return Template(
            name=declared,
            description=str(data.get("description") or ""),
            variables=[str(v) for v in variables],
            content=content,
            path=path,
        )

    @staticmethod
    def placeholders(content: str) -> List[str]:
        seen: List[str] = []
        for match in _PLACEHOLDER_PATTERN.finditer(content):
            if match.group(1) not in seen:
                seen.append(match.group(1))
        return seen

    def execute(self, template: Template, variables: Mapping[str, Any]) -> str:
        """Substitute every placeholder; unknown names are an error."""
        missing = [name for name in self.placeholders(template.content) if name not in variables]
        if missing:
            raise InvalidInputError(
                f"template '{template.name}' uses undefined variable(s): {', '.join(missing)}"
            )
        return _PLACEHOLDER_PATTERN.sub(lambda m: str(variables[m.group(1)]), template.content)

    def render(self, name: str, variables: Mapping[str, Any]) -> str:
        return self.execute(self.load(name), variables)
