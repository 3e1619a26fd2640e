"""Sorter program rendering from script templates."""

from sorter_control.program.slots import CategorySlots, SlotMap
from sorter_control.program.template_engine import (
    DEFAULT_MARKER,
    ScriptTemplateEngine,
    load_template,
    render_template,
)

__all__ = [
    "CategorySlots",
    "DEFAULT_MARKER",
    "ScriptTemplateEngine",
    "SlotMap",
    "load_template",
    "render_template",
]
