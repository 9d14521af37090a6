"""Template rendering collaborator."""
from .renderer import (
    TemplateRenderer,
    Jinja2Renderer,
    StaticRenderer,
    TemplateError,
    BUILTIN_TEMPLATE_DIR,
)

__all__ = [
    "TemplateRenderer",
    "Jinja2Renderer",
    "StaticRenderer",
    "TemplateError",
    "BUILTIN_TEMPLATE_DIR",
]
