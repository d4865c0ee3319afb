"""Ordering of work items so that parents are always created before children."""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Final

from .exceptions import HierarchyCycleError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .models import SourceItem

logger: logging.Logger = logging.getLogger(__name__)

TYPE_PRIORITY: Final[dict[str, int]] = {
    "Epic": 1,
    "Feature": 2,
    "Story": 3,
    "Defect": 3,
    "Task": 4,
    "TestCase": 5,
}
UNKNOWN_TYPE_PRIORITY: Final[int] = 99

# Parent chains deeper than this are treated as cycles
MAX_HIERARCHY_DEPTH: Final[int] = 64


def sort_key(item: SourceItem) -> tuple[int, str, str]:
    return (TYPE_PRIORITY.get(item.type, UNKNOWN_TYPE_PRIORITY), item.formatted_id, item.id)


def sort_by_hierarchy(items: Iterable[SourceItem], *, strict: bool = False) -> list[SourceItem]:
    """Order items so that each item's parent (when present in the set) comes first.

    Siblings are ordered by type tier (Epic < Feature < Story/Defect < Task <
    TestCase) and then by FormattedID. The result is deterministic for a given
    input set.

    Args:
        items: Items to order; duplicates by id are collapsed
        strict: Raise on cyclic parent references instead of dropping the edge

    Raises:
        HierarchyCycleError: If `strict` and the parent references form a cycle
    """
    by_id: dict[str, SourceItem] = {}
    for item in items:
        by_id.setdefault(item.id, item)

    ordered: list[SourceItem] = []
    emitted: set[str] = set()
    in_progress: list[str] = []

    def emit(item: SourceItem) -> None:
        if item.id in emitted:
            return
        in_progress.append(item.id)
        parent = by_id.get(item.parent_id) if item.parent_id else None
        if parent is not None and parent.id not in emitted:
            if parent.id in in_progress or len(in_progress) > MAX_HIERARCHY_DEPTH:
                chain = " -> ".join(by_id[i].label for i in [*in_progress, parent.id] if i in by_id)
                if strict:
                    msg = f"Cyclic parent references: {chain}"
                    raise HierarchyCycleError(msg)
                logger.warning(f"Ignoring parent of {item.label}: cyclic parent references ({chain})")
            else:
                emit(parent)
        in_progress.pop()
        # The parent's own emission may have pulled this item in through the cycle
        if item.id not in emitted:
            emitted.add(item.id)
            ordered.append(item)

    for item in sorted(by_id.values(), key=sort_key):
        emit(item)
    return ordered


def analyze_hierarchy(items: Iterable[SourceItem]) -> dict[str, int]:
    """Count items per type, in type tier order."""
    counts = Counter(item.type for item in items)
    return dict(sorted(counts.items(), key=lambda kv: (TYPE_PRIORITY.get(kv[0], UNKNOWN_TYPE_PRIORITY), kv[0])))
