"""Build the Microsoft.VSTS.TCM.Steps XML for ADO test cases."""

from __future__ import annotations

import html
import re
from typing import TYPE_CHECKING

from .transformations import unescape_text

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import TestStep

_LINE_BREAK_TAGS = re.compile(r"<br\s*/?>|</p>|</div>|</li>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_CONTROL_CHARS = re.compile(r"[\x00-\x09\x0B\x0C\x0E-\x1F\x7F]")


def clean_step_text(text: str | None) -> str:
    """Reduce Rally step HTML to plain text, keeping line breaks."""
    if not text or not text.strip():
        return ""
    value = html.unescape(unescape_text(text))
    value = _LINE_BREAK_TAGS.sub("\n", value)
    value = _ANY_TAG.sub("", value)
    value = re.sub(r"\r\n|\r", "\n", value).strip()
    value = re.sub(r"\n{3,}", "\n\n", value)
    return _CONTROL_CHARS.sub("", value)


def _parameterized(text: str) -> str:
    # ADO stores each step as escaped HTML inside the XML element
    inner = f"<DIV><P>{html.escape(text or ' ', quote=False)}</P></DIV>"
    return f'<parameterizedString isformatted="true">{html.escape(inner, quote=False)}</parameterizedString>'


def build_steps_xml(steps: Sequence[TestStep]) -> str:
    """Render test steps, ordered by index, as ADO Steps XML.

    Returns an empty string when there are no steps.
    """
    if not steps:
        return ""
    ordered = sorted(steps, key=lambda s: s.index)
    parts = [f'<steps id="0" last="{len(ordered)}">']
    for number, step in enumerate(ordered, start=1):
        action = clean_step_text(step.input) or " "
        expected = clean_step_text(step.expected_result) or " "
        parts.append(f'<step id="{number}" type="ActionStep">')
        parts.append(_parameterized(action))
        parts.append(_parameterized(expected))
        parts.append("<description/>")
        parts.append("</step>")
    parts.append("</steps>")
    return "".join(parts)


def count_steps(steps_xml: str | None) -> int:
    """Number of <step> elements in an ADO Steps value."""
    if not steps_xml:
        return 0
    return len(re.findall(r"<step\b", steps_xml))
