"""Field value transformations from Rally vocabulary to Azure DevOps values.

Every function here is pure: the only inputs are the raw value and, where
needed, the run-wide TransformContext. User resolution returns the source actor
alongside the resolved value so the caller can collect actors per item.
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger: logging.Logger = logging.getLogger(__name__)

ADO_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

_STORY_STATES: dict[str, str] = {
    "refining": "New",
    "defined": "New",
    "in-progress": "Active",
    "completed": "Resolved",
    "accepted": "Closed",
}

_DEFECT_STATES: dict[str, str] = {
    "submitted": "New",
    "ready": "New",
    "defined": "New",
    "open": "Active",
    "in-progress": "Active",
    "reopened": "Active",
    "blocked": "Active",
    "fixed": "Resolved",
    "completed": "Resolved",
    "verified": "Closed",
    "closed": "Closed",
}

_TASK_STATES: dict[str, str] = {
    "defined": "New",
    "new": "New",
    "ready": "New",
    "in-progress": "Active",
    "in progress": "Active",
    "open": "Active",
    "active": "Active",
    "completed": "Closed",
    "done": "Closed",
    "closed": "Closed",
    "removed": "Removed",
}

_TEST_CASE_STATES: dict[str, str] = {
    "design": "Ready",
    "defined": "Ready",
    "new": "Ready",
    "in-progress": "Ready",
    "in progress": "Ready",
    "ready": "Ready",
    "active": "Ready",
    "completed": "Closed",
    "closed": "Closed",
    "done": "Closed",
}

_PORTFOLIO_STATES: dict[str, str] = {
    "open": "New",
    "defined": "New",
    "in-progress": "Active",
    "active": "Active",
    "done": "Closed",
    "completed": "Closed",
    "closed": "Closed",
}

_DEFAULT_STATES: dict[str, str] = {
    "defined": "New",
    "ready": "New",
    "in-progress": "Active",
    "blocked": "Active",
    "completed": "Resolved",
    "accepted": "Closed",
}

STATE_TABLES: dict[str, dict[str, str]] = {
    "Story": _STORY_STATES,
    "Defect": _DEFECT_STATES,
    "Task": _TASK_STATES,
    "TestCase": _TEST_CASE_STATES,
    "Feature": _PORTFOLIO_STATES,
    "Epic": _PORTFOLIO_STATES,
}

_PRIORITY_MAP: dict[str, int] = {
    "resolve immediately": 1,
    "critical": 1,
    "1": 1,
    "p1": 1,
    "high attention": 2,
    "high": 2,
    "2": 2,
    "p2": 2,
    "normal": 3,
    "medium": 3,
    "3": 3,
    "p3": 3,
    "low": 4,
    "4": 4,
    "p4": 4,
}

SEVERITY_LEVELS: tuple[str, ...] = ("1 - Critical", "2 - High", "3 - Medium", "4 - Low")

_SEVERITY_MAP: dict[str, str] = {
    "crash/data loss": "1 - Critical",
    "major problem": "2 - High",
    "minor problem": "3 - Medium",
    "cosmetic": "4 - Low",
    "critical": "1 - Critical",
    "high": "2 - High",
    "medium": "3 - Medium",
    "low": "4 - Low",
    "blocker": "1 - Critical",
    "major": "2 - High",
    "minor": "3 - Medium",
    "trivial": "4 - Low",
    "1": "1 - Critical",
    "2": "2 - High",
    "3": "3 - Medium",
    "4": "4 - Low",
}

_SEVERITY_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("crash", "critical", "blocker"), "1 - Critical"),
    (("major", "high"), "2 - High"),
    (("minor", "medium"), "3 - Medium"),
    (("cosmetic", "trivial", "low"), "4 - Low"),
)

_HTML_TAG_RE = re.compile(r"</?[a-zA-Z][^>]*>")
_COLOR_MARKUP_RE = re.compile(r"\{color:([^}]+)\}(.*?)\{color\}", re.DOTALL)
_UNICODE_ESCAPE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class TransformContext:
    """Run-wide settings consumed by the transformations.

    Built once from the mapping configuration and passed explicitly.
    """

    default_ado_project: str = ""
    iteration_root: str = ""
    migration_user_email: str | None = None
    user_mappings: Mapping[str, str] = field(default_factory=dict)
    email_domain_rewrites: Mapping[str, str] = field(default_factory=dict)
    area_path_mappings: Mapping[str, str] = field(default_factory=dict)


def unescape_text(value: str) -> str:
    """Decode literal \\uXXXX sequences that Rally leaves in some text fields."""
    return _UNICODE_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), value)


def format_date(value: Any) -> Any:
    """Format a date as ADO expects it: UTC with millisecond precision and a Z suffix."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Could not parse date value '{value}', passing it through unchanged")
            return value
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    dt = dt.astimezone(UTC)
    return dt.strftime(ADO_DATE_FORMAT)[:-3] + "Z"


def transform_state(raw_state: str | None, item_type: str) -> str:
    """Map a Rally lifecycle state to the ADO state for the item's type."""
    if raw_state is None or not str(raw_state).strip():
        return "New"
    table = STATE_TABLES.get(item_type, _DEFAULT_STATES)
    mapped = table.get(str(raw_state).strip().lower())
    if mapped:
        return mapped
    fallback = "Ready" if item_type == "TestCase" else "New"
    logger.warning(f"No state mapping for '{raw_state}' on {item_type}, using '{fallback}'")
    return fallback


def map_priority(value: Any) -> int | None:
    """Map a Rally priority to ADO's 1-4 integer priority, or None if it cannot be determined."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.lower() in _PRIORITY_MAP:
        return _PRIORITY_MAP[text.lower()]
    try:
        return min(max(int(text), 1), 4)
    except ValueError:
        pass
    lowered = text.lower()
    if "urgent" in lowered or "critical" in lowered:
        return 1
    if "high" in lowered:
        return 2
    if "normal" in lowered or "medium" in lowered:
        return 3
    if "low" in lowered:
        return 4
    return None


def map_severity(value: Any) -> str:
    """Map a Rally severity to one of ADO's "N - Label" severity values."""
    text = "" if value is None else str(value).strip()
    exact = _SEVERITY_MAP.get(text.lower())
    if exact:
        return exact
    if " - " in text:
        # "2 - Major Problem" style values
        exact = _SEVERITY_MAP.get(text.split(" - ", 1)[1].strip().lower())
        if exact:
            return exact
    match = re.match(r"^\s*([1-4])\s*[-\s]", text)
    if match:
        return SEVERITY_LEVELS[int(match.group(1)) - 1]
    lowered = text.lower()
    for keywords, severity in _SEVERITY_KEYWORDS:
        if any(k in lowered for k in keywords):
            return severity
    logger.warning(f"Could not map severity '{value}', using '3 - Medium'")
    return "3 - Medium"


def map_enum(value: Any, field_name: str) -> Any:
    """Map an enumerated value based on the field it belongs to (priority or severity)."""
    name = field_name.lower()
    if "priority" in name:
        return map_priority(value)
    if "severity" in name:
        return map_severity(value)
    return value


def _extract_user(value: Any) -> str | None:
    if isinstance(value, Mapping):
        for key in ("EmailAddress", "Email", "UserName", "_refObjectName", "DisplayName", "Name"):
            if value.get(key):
                return str(value[key])
        return None
    text = str(value).strip().replace('"', "")
    return text or None


def resolve_user(value: Any, context: TransformContext) -> tuple[str | None, str | None]:
    """Resolve a Rally user to an ADO identity.

    Order: explicit user mapping, email domain rewrite, email as-is, then the
    configured migration user for non-email identities.

    Returns:
        (resolved ADO identity or None, raw source actor or None)
    """
    if value is None:
        return None, None
    actor = _extract_user(value)
    if actor is None:
        return None, None

    lowered_mappings = {k.lower(): v for k, v in context.user_mappings.items()}
    mapped = lowered_mappings.get(actor.lower())
    if mapped:
        return mapped, actor

    if _EMAIL_RE.match(actor):
        local, domain = actor.rsplit("@", 1)
        for source_domain, target_domain in context.email_domain_rewrites.items():
            if domain.lower() == source_domain.lower():
                return f"{local}@{target_domain}", actor
        return actor, actor

    if context.migration_user_email:
        logger.debug(f"User '{actor}' has no email, assigning migration user {context.migration_user_email}")
        return context.migration_user_email, actor
    return None, actor


def collection_to_string(value: Any) -> str | None:
    """Flatten a list of values (or Rally objects) into a comma separated string."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return str(value.get("_refObjectName") or value.get("Name") or "")
    if isinstance(value, Iterable):
        parts = [collection_to_string(v) for v in value if v is not None]
        return ", ".join(p for p in parts if p)
    return str(value)


def format_rally_id(formatted_id: str, name: str) -> str:
    """Title carrying the Rally identifier, e.g. "[US123] Login page"."""
    if formatted_id:
        return f"[{formatted_id}] {name}"
    return name


def _object_name(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Mapping):
        name = value.get("Name") or value.get("_refObjectName")
        return str(name) if name else None
    text = str(value).strip()
    return text or None


def project_to_area(value: Any, context: TransformContext, default: str | None = None) -> str:
    """Map a Rally project to an ADO area path.

    Uses the configured area path mappings, trying the full project name and
    then the part before a "|" separator; otherwise the default.
    """
    fallback = default or context.default_ado_project
    name = _object_name(value)
    if not name:
        return fallback
    if name in context.area_path_mappings:
        return context.area_path_mappings[name]
    if "|" in name:
        short_name = name.split("|", 1)[0].strip()
        if short_name in context.area_path_mappings:
            return context.area_path_mappings[short_name]
    return fallback


def iteration_to_path(value: Any, context: TransformContext) -> str | None:
    """Map a Rally iteration to an ADO iteration path under the configured root."""
    name = _object_name(value)
    if not name:
        return None
    root = context.iteration_root or context.default_ado_project
    cleaned = name.replace("/", " ").replace("\\", " ").strip()
    return f"{root}\\{cleaned}" if root else cleaned


def looks_like_html(text: str) -> bool:
    return bool(_HTML_TAG_RE.search(text))


def html_preserve(value: Any) -> str:
    """Render Rally text as ADO HTML.

    Text that already contains markup passes through. Plain text is escaped,
    `{color:x}...{color}` becomes a colored span and newlines become <br/>.
    """
    if value is None:
        return ""
    raw = unescape_text(str(value))
    if not raw.strip():
        return ""
    if looks_like_html(raw):
        return raw

    parts: list[str] = []
    last = 0
    for match in _COLOR_MARKUP_RE.finditer(raw):
        parts.append(html.escape(raw[last : match.start()], quote=False))
        color = html.escape(match.group(1), quote=True)
        parts.append(f"<span style='color:{color}'>{html.escape(match.group(2), quote=False)}</span>")
        last = match.end()
    parts.append(html.escape(raw[last:], quote=False))
    body = "".join(parts).replace("\r\n", "<br/>").replace("\n", "<br/>")
    return f"<div>{body}</div>"


def html_append(base: Any, extra: Any) -> str:
    """Append extra text beneath existing HTML, separated by a horizontal rule."""
    appended = html_preserve(extra)
    base_html = "" if base is None else str(base)
    if not appended:
        return base_html
    if not base_html.strip():
        return appended
    return f"{base_html}<hr/>{appended}"
