"""Sorter program rendering -- slot substitution inside a script template.

The template is plain robot script text containing declaration lines
such as::

    global SortRedToOrder=False
    global RedRemaining=0

A *slot* is the region after a declaration marker up to the end of its
line.  Rendering overwrites that region with a new literal and leaves
every other byte of the template untouched.

Substitution rules:
    - The marker for slot ``X`` is ``marker.replace("{name}", "X")``,
      by default ``global X=``.  Lookup is exact (case and spacing).
    - The first occurrence of the marker is used.  A marker that occurs
      more than once is undefined; a warning is logged.
    - The region ends before the next ``\\n`` (a ``\\r`` directly in
      front of it is kept) or at end of text.
    - All slots are located in the *original* template before anything
      is written, so substitution order never matters and a missing
      slot fails without producing output.

Value formatting:
    ``bool`` renders as ``True`` / ``False``, ``int`` as decimal text,
    ``str`` verbatim (pose expressions arrive pre-formatted).
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Mapping

from sorter_control.errors import TemplateError
from sorter_control.orders.model import ProgramParameters
from sorter_control.program.slots import SlotMap

logger = logging.getLogger(__name__)

DEFAULT_MARKER = "global {name}="
"""Declaration marker of the robot script language."""

SlotValue = bool | int | str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_value(value: SlotValue) -> str:
    """Render a slot value as script literal text."""
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    raise TemplateError(
        f"Unsupported slot value type {type(value).__name__}: {value!r}"
    )


def _check_marker(marker: str) -> None:
    if marker.count("{name}") != 1:
        raise ValueError(
            f"Marker must contain '{{name}}' exactly once, got {marker!r}"
        )


def _region_end(text: str, start: int) -> int:
    newline = text.find("\n", start)
    if newline < 0:
        return len(text)
    if newline > start and text[newline - 1] == "\r":
        return newline - 1
    return newline


def locate_slot(
    text: str, name: str, marker: str = DEFAULT_MARKER,
) -> tuple[int, int] | None:
    """Return ``(start, end)`` of the value region for *name*.

    ``None`` when the marker is absent.
    """
    token = marker.replace("{name}", name)
    index = text.find(token)
    if index < 0:
        return None
    start = index + len(token)
    end = _region_end(text, start)
    if text.find(token, index + 1) >= 0:
        logger.warning(
            "Slot '%s' is declared more than once; using the first "
            "declaration", name,
        )
    return start, end


def load_template(path: str | Path) -> str:
    """Read a template resource.

    Raises
    ------
    TemplateError
        If the file is missing or unreadable.
    """
    path = Path(path)
    try:
        # newline="" keeps \r\n exactly as stored
        with open(path, "r", encoding="utf-8", newline="") as fh:
            return fh.read()
    except FileNotFoundError as exc:
        raise TemplateError(f"Template not found: {path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise TemplateError(f"Cannot read template {path}: {exc}") from exc


def render_template(
    text: str,
    slots: Mapping[str, SlotValue],
    marker: str = DEFAULT_MARKER,
) -> str:
    """Substitute *slots* into *text*.

    Parameters
    ----------
    text : str
        Template text.
    slots : Mapping[str, SlotValue]
        Slot name to new value.  Empty mapping returns *text* unchanged.
    marker : str
        Declaration marker containing ``{name}``.

    Returns
    -------
    str
        Rendered program.

    Raises
    ------
    TemplateError
        If any slot is absent, two slots share a region, or a value has
        an unsupported type.  Nothing is returned in that case.
    """
    _check_marker(marker)

    regions: list[tuple[int, int, str, str]] = []
    missing: list[str] = []
    for name, value in slots.items():
        found = locate_slot(text, name, marker)
        if found is None:
            missing.append(name)
            continue
        regions.append((found[0], found[1], name, format_value(value)))

    if missing:
        raise TemplateError(
            f"Slot(s) not found in template: {', '.join(missing)}"
        )

    regions.sort()
    for (_, prev_end, prev_name, _), (start, _, name, _) in zip(
        regions, regions[1:],
    ):
        if start < prev_end:
            raise TemplateError(
                f"Slots '{prev_name}' and '{name}' overlap on one line"
            )

    pieces: list[str] = []
    pos = 0
    for start, end, _, literal in regions:
        pieces.append(text[pos:start])
        pieces.append(literal)
        pos = end
    pieces.append(text[pos:])
    return "".join(pieces)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ScriptTemplateEngine:
    """Render sorter programs from one template.

    Parameters
    ----------
    template_text : str
        Template source.
    marker : str
        Declaration marker containing ``{name}``.
    slot_map : SlotMap | None
        Category / pose slot table used by :meth:`render_parameters`.
        Defaults to :meth:`SlotMap.default`.
    source : str | Path | None
        Where the template came from (for log messages only).

    Examples
    --------
    >>> engine = ScriptTemplateEngine("global RedRemaining=0\\n")
    >>> engine.render({"RedRemaining": 3})
    'global RedRemaining=3\\n'
    """

    def __init__(
        self,
        template_text: str,
        *,
        marker: str = DEFAULT_MARKER,
        slot_map: SlotMap | None = None,
        source: str | Path | None = None,
    ) -> None:
        _check_marker(marker)
        self._template = template_text
        self._marker = marker
        self._slot_map = slot_map if slot_map is not None else SlotMap.default()
        self._source = str(source) if source is not None else "<string>"

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        marker: str = DEFAULT_MARKER,
        slot_map: SlotMap | None = None,
    ) -> ScriptTemplateEngine:
        """Load the template at *path*.

        Raises
        ------
        TemplateError
            If the file cannot be read.
        """
        text = load_template(path)
        logger.info("Loaded program template %s (%d bytes)", path, len(text))
        return cls(text, marker=marker, slot_map=slot_map, source=path)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def template(self) -> str:
        return self._template

    @property
    def marker(self) -> str:
        return self._marker

    @property
    def slot_map(self) -> SlotMap:
        return self._slot_map

    def slot_names(self) -> list[str]:
        """Names of all declarations in the template, in file order."""
        prefix, suffix = self._marker.split("{name}")
        pattern = re.compile(re.escape(prefix) + r"(\w+)" + re.escape(suffix))
        return [m.group(1) for m in pattern.finditer(self._template)]

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, slots: Mapping[str, SlotValue]) -> str:
        """Render the template with an explicit slot mapping."""
        program = render_template(self._template, slots, self._marker)
        logger.debug(
            "Rendered %s with %d slot(s) (%d bytes)",
            self._source, len(slots), len(program),
        )
        return program

    def render_parameters(self, params: ProgramParameters) -> str:
        """Render the template for one order's parameters.

        Pose slots are substituted only when the corresponding
        override is set; otherwise the template default is kept.
        """
        return self.render(self._slot_map.to_slot_values(params))
