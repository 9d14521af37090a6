"""Template rendering for config fragments and web server files."""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Sequence

import jinja2

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_SUFFIX = ".j2"


class TemplateError(Exception):
    """A template is missing or failed to render."""
    pass


class TemplateRenderer(ABC):
    """Renders a named template with variables to text."""

    @abstractmethod
    def render(self, template_id: str, variables: dict[str, Any]) -> str:
        """Render ``template_id`` with ``variables``."""
        pass


class Jinja2Renderer(TemplateRenderer):
    """Render templates with Jinja2.

    Templates are looked up in ``search_path`` first and then in the
    built-in template directory, so a site can override any single file.
    Undefined variables are errors.
    """

    def __init__(self, search_path: Optional[Sequence[str]] = None):
        paths = [str(p) for p in (search_path or [])]
        paths.append(str(BUILTIN_TEMPLATE_DIR))
        self.environment = jinja2.Environment(
            loader=jinja2.FileSystemLoader(paths),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )

    def render(self, template_id: str, variables: dict[str, Any]) -> str:
        name = template_id if template_id.endswith(TEMPLATE_SUFFIX) else template_id + TEMPLATE_SUFFIX
        try:
            template = self.environment.get_template(name)
            return template.render(**variables)
        except jinja2.TemplateNotFound:
            raise TemplateError(f"Template not found: {template_id}") from None
        except jinja2.TemplateError as e:
            raise TemplateError(f"Failed to render {template_id}: {e}") from e


class StaticRenderer(TemplateRenderer):
    """Renderer backed by a dict of template_id -> format string.

    Useful for tests and for sites that keep fragments inline in YAML.
    """

    def __init__(self, templates: dict[str, str]):
        self.templates = dict(templates)

    def render(self, template_id: str, variables: dict[str, Any]) -> str:
        if template_id not in self.templates:
            raise TemplateError(f"Template not found: {template_id}")
        try:
            return self.templates[template_id].format(**variables)
        except (KeyError, IndexError) as e:
            raise TemplateError(f"Failed to render {template_id}: missing {e}") from e
