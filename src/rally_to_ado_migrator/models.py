"""Data models for migration between Rally and Azure DevOps.

These models represent the normalized data exchanged between SourceSystem,
TargetSystem, and the Migrator orchestrator. Source items use Rally's
vocabulary (ObjectID, FormattedID, raw state names); target values are plain
field-reference dictionaries as ADO expects them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

ItemType = Literal["Epic", "Feature", "Story", "Defect", "Task", "TestCase"]

Phase = Literal["collecting", "creating", "linking", "completed", "cancelled"]

LinkKind = Literal["parent", "tests"]


@dataclass
class Attachment:
    """A file attached to a source item.

    The source system downloads the bytes; the target system uploads them and
    attaches them to the target work item.
    """

    source_id: str
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"
    description: str = ""
    size: int = 0


@dataclass
class Comment:
    """A discussion post on a source item."""

    text: str
    created_at: datetime | None = None
    author: str = ""


@dataclass
class TestStep:
    """One manual test step of a Rally test case."""

    __test__ = False  # not a pytest class

    index: int
    input: str = ""
    expected_result: str = ""


@dataclass
class SourceItem:
    """A work item read from Rally.

    Fixed for the duration of one migration run. `child_ids` holds both
    structural children and tasks, in source order and without duplicates.
    """

    id: str  # Rally ObjectID
    formatted_id: str
    type: ItemType
    name: str = ""
    state: str | None = None  # Raw Rally lifecycle state
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)
    test_case_ids: list[str] = field(default_factory=list)
    description: str | None = None
    notes: str | None = None
    owner: str | None = None  # Email when known, otherwise display name
    owner_ref: str | None = None  # Rally user _ref for email lookup
    submitted_by: str | None = None
    created_by: str | None = None
    last_updated_by: str | None = None
    project: str | None = None
    iteration: str | None = None
    release: str | None = None
    priority: str | None = None
    severity: str | None = None
    plan_estimate: float | None = None
    estimate: float | None = None
    to_do: float | None = None
    actuals: float | None = None
    blocked: bool | None = None
    ready: bool | None = None
    creation_date: datetime | None = None
    last_update_date: datetime | None = None
    tags: list[str] = field(default_factory=list)
    custom_fields: dict[str, Any] = field(default_factory=dict)
    attachments: list[Attachment] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    steps: list[TestStep] = field(default_factory=list)

    def __post_init__(self) -> None:
        # An item is never its own parent or child
        if self.parent_id == self.id:
            self.parent_id = None
        self.child_ids = [c for c in dict.fromkeys(self.child_ids) if c != self.id]
        self.test_case_ids = [t for t in dict.fromkeys(self.test_case_ids) if t != self.id]

    @property
    def label(self) -> str:
        """Human-readable identifier for log messages."""
        return self.formatted_id or self.id


@dataclass
class MappedFields:
    """Target field values produced for one source item.

    `creation_fields` never contains privilege-gated fields; those are in
    `post_creation_fields`. `actors` is the set of source users seen while
    mapping this item only.
    """

    creation_fields: dict[str, Any] = field(default_factory=dict)
    post_creation_fields: dict[str, Any] = field(default_factory=dict)
    actors: set[str] = field(default_factory=set)

    @property
    def target_type(self) -> str:
        return str(self.creation_fields.get("System.WorkItemType", "Task"))

    def merged(self) -> dict[str, Any]:
        """All fields, post-creation values included."""
        return {**self.creation_fields, **self.post_creation_fields}


@dataclass
class StateTransitionPlan:
    """Ordered intermediate states to reach `desired_state` from `current_state`."""

    target_type: str
    current_state: str | None
    desired_state: str
    steps: list[str] = field(default_factory=list)


@dataclass
class ItemResult:
    """Outcome of migrating one source item."""

    source_id: str
    formatted_id: str
    target_id: int | None = None
    success: bool = False
    skipped: bool = False
    skip_reason: str = ""
    error: str = ""
    patched_fields: list[str] = field(default_factory=list)


@dataclass
class MigrationProgress:
    """Counters and results of a migration run.

    Mutated only by the orchestrating thread; observers receive it through
    ProgressEvent after every unit of work.
    """

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    phase: Phase = "collecting"
    paused: bool = False
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    results: list[ItemResult] = field(default_factory=list)
    id_map: dict[str, int] = field(default_factory=dict)  # source ObjectID -> ADO work item id
    link_stats: dict[str, int] = field(default_factory=dict)

    @property
    def elapsed(self) -> float:
        """Seconds since the run started (until it finished, if it has)."""
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return round(100.0 * self.processed / self.total, 1)

    @property
    def completed(self) -> bool:
        return self.phase == "completed" and not self.cancelled

    def failures(self) -> list[ItemResult]:
        return [r for r in self.results if not r.success and not r.skipped]


@dataclass
class ProgressEvent:
    """Published to listeners after every entity and phase transition."""

    progress: MigrationProgress
    message: str = ""
    level: int = logging.INFO
