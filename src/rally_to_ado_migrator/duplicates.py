"""Duplicate detection and field diffing against existing ADO work items."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

from .field_mapping import TAGS_FIELD, cross_reference_tags, split_tags

if TYPE_CHECKING:
    from .models import SourceItem
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

SYSTEM_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "System.Id",
        "System.Rev",
        "System.CreatedBy",
        "System.CreatedDate",
        "System.ChangedBy",
        "System.ChangedDate",
        "System.AuthorizedDate",
        "System.RevisedDate",
        "System.WorkItemType",
        "System.TeamProject",
        "System.AreaId",
        "System.NodeName",
        "System.AreaLevel1",
        "System.AreaLevel2",
        "System.AreaLevel3",
        "System.AreaLevel4",
    }
)

HTML_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "System.Description",
        "Microsoft.VSTS.TCM.ReproSteps",
        "Microsoft.VSTS.TCM.SystemInfo",
        "Microsoft.VSTS.TCM.Steps",
    }
)

NUMERIC_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "Microsoft.VSTS.Scheduling.StoryPoints",
        "Microsoft.VSTS.Scheduling.OriginalEstimate",
        "Microsoft.VSTS.Scheduling.RemainingWork",
        "Microsoft.VSTS.Scheduling.CompletedWork",
        "Microsoft.VSTS.Common.Priority",
        "Microsoft.VSTS.Common.StackRank",
    }
)

NUMERIC_TOLERANCE: Final[float] = 0.001

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


@dataclass
class ExistingItem:
    """An ADO work item that already corresponds to a Rally item."""

    target_id: int
    fields: dict[str, Any]
    matched_tag: str


def find_existing(target: TargetSystem, item: SourceItem) -> ExistingItem | None:
    """Find the ADO work item created for `item` by an earlier run.

    Looks up the ObjectID cross-reference tag first, then the FormattedID tag.
    Titles are never used: they are mutable and not unique.
    """
    formatted_tag, object_tag = cross_reference_tags(item)
    for tag in (object_tag, formatted_tag):
        found = target.find_by_tag(tag)
        if found is None:
            continue
        target_id, fields = found
        # WIQL CONTAINS is a substring match; make sure the tag is really there
        if fields and "System.Tags" in fields:
            present = {t.lower() for t in split_tags(fields.get(TAGS_FIELD))}
            if tag.lower() not in present:
                logger.warning(f"Work item {target_id} matched tag search '{tag}' but does not carry the tag")
                continue
        logger.debug(f"{item.label} already exists as work item {target_id} (tag {tag})")
        return ExistingItem(target_id=target_id, fields=fields or {}, matched_tag=tag)
    return None


def _is_date_field(name: str) -> bool:
    short = name.rsplit(".", 1)[-1]
    return "Date" in short or "Time" in short


def _is_numeric_field(name: str) -> bool:
    short = name.rsplit(".", 1)[-1]
    return name in NUMERIC_FIELDS or "Estimate" in short or "Points" in short


def _identity(value: Any) -> str:
    # ADO returns identities as objects; compare on the unique name
    if isinstance(value, dict):
        return str(value.get("uniqueName") or value.get("displayName") or "")
    return str(value)


def _as_date(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.date().isoformat()
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return None


def _html_text(value: Any) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", str(value))).strip()


def values_equal(name: str, current: Any, desired: Any) -> bool:
    """Compare a current ADO value with a desired value using per-field normalization."""
    if current is None and desired is None:
        return True
    if desired is None:
        return True
    if current is None:
        return False

    if name == TAGS_FIELD:
        # Tags added on the ADO side do not count as a difference
        current_tags = {t.lower() for t in split_tags(current)}
        return all(t.lower() in current_tags for t in split_tags(desired))

    if name in HTML_FIELDS:
        return _html_text(current) == _html_text(desired)

    if _is_date_field(name):
        current_date, desired_date = _as_date(current), _as_date(desired)
        if current_date is not None and desired_date is not None:
            return current_date == desired_date

    if _is_numeric_field(name):
        try:
            return abs(float(current) - float(desired)) < NUMERIC_TOLERANCE
        except (TypeError, ValueError):
            pass

    return _identity(current).strip() == _identity(desired).strip()


def union_tags(current: Any, desired: Any) -> str:
    """Current tags followed by the desired tags they lack, joined for ADO."""
    tags = split_tags(current)
    seen = {t.lower() for t in tags}
    for tag in split_tags(desired):
        if tag.lower() not in seen:
            tags.append(tag)
            seen.add(tag.lower())
    return ";".join(tags)


def diff_fields(current: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Return the desired fields whose value differs from the current ADO value.

    Fields missing from `current` are always included. Read-only system fields
    are never included. Fields present only in `current` are left alone, and a
    changed tag set is returned as its union with the current tags, so the
    diff never removes anything from the target.
    """
    changed: dict[str, Any] = {}
    for name, value in desired.items():
        if name in SYSTEM_FIELDS:
            continue
        if name not in current:
            if value is not None:
                changed[name] = value
            continue
        if not values_equal(name, current[name], value):
            changed[name] = union_tags(current[name], value) if name == TAGS_FIELD else value
    return changed
