"""Template registry components."""

from lyra_notify.templates.registry import (
    DEFAULT_TEMPLATES,
    TemplateRegistry,
    render,
)

__all__ = [
    "DEFAULT_TEMPLATES",
    "TemplateRegistry",
    "render",
]
