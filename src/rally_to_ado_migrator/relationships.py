"""Work item relation data structures and detection logic."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Final
from urllib.parse import parse_qs, unquote, urlparse

logger: logging.Logger = logging.getLogger(__name__)

PARENT_RELATION: Final[str] = "System.LinkTypes.Hierarchy-Reverse"
TESTED_BY_RELATION: Final[str] = "Microsoft.VSTS.Common.TestedBy-Forward"
ATTACHMENT_RELATION: Final[str] = "AttachedFile"

_WORK_ITEM_ID_RE = re.compile(r"/workItems/(\d+)", re.IGNORECASE)

LINK_STAT_KEYS: Final[tuple[str, ...]] = (
    "Parent-Child Links",
    "Test Case Links",
    "Failed Links",
    "Skipped (No Parent)",
    "Skipped (Parent Not Migrated)",
    "Skipped (Child Not Migrated)",
)


@dataclass
class RelationInfo:
    """A relation of an ADO work item pointing to another work item."""

    rel: str
    target_id: int
    url: str


def relation_target_id(relation: dict[str, Any]) -> int | None:
    """Extract the work item id a relation points to, if it points to a work item."""
    match = _WORK_ITEM_ID_RE.search(str(relation.get("url", "")))
    if match is None:
        return None
    return int(match.group(1))


def work_item_relations(relations: list[dict[str, Any]], rel: str) -> list[RelationInfo]:
    """Relations of one type that point to work items."""
    found: list[RelationInfo] = []
    for relation in relations:
        if str(relation.get("rel", "")).lower() != rel.lower():
            continue
        target_id = relation_target_id(relation)
        if target_id is not None:
            found.append(RelationInfo(rel=rel, target_id=target_id, url=str(relation.get("url", ""))))
    return found


def find_parent(relations: list[dict[str, Any]]) -> int | None:
    """Id of the parent work item, if a parent link exists."""
    parents = work_item_relations(relations, PARENT_RELATION)
    return parents[0].target_id if parents else None


def has_relation(relations: list[dict[str, Any]], rel: str, target_id: int) -> bool:
    return any(r.target_id == target_id for r in work_item_relations(relations, rel))


def attachment_name(relation: dict[str, Any]) -> str | None:
    """File name of an AttachedFile relation.

    Prefers `attributes.name`, falling back to the `fileName` query parameter
    of the attachment URL.
    """
    attributes = relation.get("attributes") or {}
    name = attributes.get("name")
    if name:
        return str(name)
    query = parse_qs(urlparse(str(relation.get("url", ""))).query)
    for key, values in query.items():
        if key.lower() == "filename" and values:
            return unquote(values[0])
    return None


def attached_file_names(relations: list[dict[str, Any]]) -> set[str]:
    """Lower-cased names of files already attached to a work item."""
    names: set[str] = set()
    for relation in relations:
        if str(relation.get("rel", "")) != ATTACHMENT_RELATION:
            continue
        name = attachment_name(relation)
        if name:
            names.add(name.lower())
    return names


def empty_link_stats() -> dict[str, int]:
    return dict.fromkeys(LINK_STAT_KEYS, 0)
