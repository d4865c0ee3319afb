"""Migration orchestrator that coordinates source and target systems.

The Migrator class is the central coordinator for migration. It:
1. Collects the Rally items in scope and enriches them with their content
2. Creates (or synchronizes) ADO work items parent-first
3. Maintains the identity map from Rally ObjectID to ADO work item id
4. Creates parent and test links once every item has an identity
5. Publishes progress and honors pause/resume/cancel requests

Migration Flow
--------------
Phase 0: Collect
    - migrate_project(): every item of every Rally type
    - migrate_items(ids): breadth-first walk from the given ids over parent,
      children (including tasks) and test cases

Phase 1: Create or synchronize (in hierarchy order)
    For each item:
        - Enrich: owner email, attachments, comments and, for test cases,
          test steps. A failed enrichment step is a warning only; attachment
          content is dropped again once the item is done
        a. Look for an earlier migration by cross-reference tag
        b. Existing: record the identity; with sync_existing, patch the
           fields that differ, fix the state, add missing attachments and
           comments, replace test steps if they changed
        c. New: create with creation fields, apply state and audit fields
           through the state transition engine, then test steps,
           attachments and comments
        d. Publish a progress event

Phase 2: Links
    - Parent links (child -> parent) for items whose parent was migrated
    - Test links (story/defect -> test case)
    - Existing links count as success; the run never removes links

    Links are deferred to this phase because a parent link needs the ADO id
    of both ends; creation order alone only guarantees it for parents.

State Machine
-------------

    collecting ──► creating ──► linking ──► completed
         │             │            │
         └─────────────┴────────────┴──► cancelled

    Pausing is a flag, not a phase: the run blocks between entities until
    resumed or cancelled.

Error Handling
--------------
- Failures of one entity or one link are logged, counted and recorded in the
  ItemResult; they never stop the run
- HierarchyCycleError (strict hierarchy) aborts before anything is written
- Only cancellation ends the run early; nothing is rolled back
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final, get_args

import requests

from .content import build_comment_html, comment_already_present
from .duplicates import diff_fields, find_existing, values_equal
from .exceptions import MigrationError
from .field_mapping import POST_CREATION_FIELDS, STEPS_FIELD
from .models import Comment, ItemResult, ItemType, MigrationProgress, ProgressEvent
from .relationships import TESTED_BY_RELATION, attached_file_names, empty_link_stats, find_parent, has_relation
from .sequencer import TYPE_PRIORITY, analyze_hierarchy, sort_by_hierarchy
from .state_transitions import STATE_FIELD, apply_state
from .steps_xml import build_steps_xml

if TYPE_CHECKING:
    from .duplicates import ExistingItem
    from .field_mapping import FieldMapper
    from .models import MappedFields, SourceItem
    from .protocols import SourceSystem, TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]

PAUSE_POLL_SECONDS: Final[float] = 0.5

# Types whose items carry test case links
TESTED_TYPES: Final[frozenset[str]] = frozenset({"Story", "Defect"})

ALL_TYPES: Final[tuple[ItemType, ...]] = tuple(sorted(get_args(ItemType), key=lambda t: TYPE_PRIORITY[t]))

# FormattedID prefixes in a default Rally workspace
_ID_PREFIXES: Final[tuple[tuple[str, ItemType], ...]] = (
    ("US", "Story"),
    ("DE", "Defect"),
    ("TA", "Task"),
    ("TC", "TestCase"),
    ("F", "Feature"),
    ("E", "Epic"),
)

_RECOVERABLE_ERRORS: Final[tuple[type[Exception], ...]] = (MigrationError, requests.RequestException)


def guess_item_types(item_id: str) -> list[ItemType]:
    """Types to try when looking up an id, most likely first."""
    upper = item_id.strip().upper()
    guessed = [
        item_type
        for prefix, item_type in _ID_PREFIXES
        if upper.startswith(prefix) and upper[len(prefix) :].isdigit()
    ]
    return guessed + [t for t in ALL_TYPES if t not in guessed]


class Migrator:
    """Orchestrates migration from Rally to Azure DevOps.

    Usage:
        source = RallySource(server, workspace, api_key)
        target = AdoTarget(server, organization, project, pat)
        migrator = Migrator(source, target, FieldMapper(config))
        progress = migrator.migrate_items(["US123"])

    pause(), resume() and cancel() may be called from any thread; the
    migration loop itself is single-threaded and checks them between
    entities.
    """

    _source: SourceSystem
    _target: TargetSystem
    _mapper: FieldMapper
    _sync_existing: bool
    _strict_hierarchy: bool
    _listeners: list[ProgressListener]
    _paused: threading.Event
    _cancelled: threading.Event
    _progress: MigrationProgress

    def __init__(
        self,
        source: SourceSystem,
        target: TargetSystem,
        mapper: FieldMapper,
        *,
        sync_existing: bool = True,
        strict_hierarchy: bool = False,
    ) -> None:
        """Initialize the migrator.

        Args:
            source: Source system to migrate from
            target: Target system to migrate to
            mapper: Field mapper producing ADO fields for each item
            sync_existing: Update work items created by an earlier run
            strict_hierarchy: Fail on cyclic parent references instead of breaking them
        """
        self._source = source
        self._target = target
        self._mapper = mapper
        self._sync_existing = sync_existing
        self._strict_hierarchy = strict_hierarchy
        self._listeners = []
        self._paused = threading.Event()
        self._cancelled = threading.Event()
        self._progress = MigrationProgress()

    @property
    def progress(self) -> MigrationProgress:
        return self._progress

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    def cancel(self) -> None:
        self._cancelled.set()

    def _publish(self, message: str, level: int = logging.INFO) -> None:
        event = ProgressEvent(progress=self._progress, message=message, level=level)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed")

    def _wait_if_paused(self) -> None:
        """Block while paused; returns at once when cancelled."""
        if not self._paused.is_set() or self._cancelled.is_set():
            return
        self._progress.paused = True
        self._publish("Migration paused")
        while self._paused.is_set() and not self._cancelled.is_set():
            self._cancelled.wait(PAUSE_POLL_SECONDS)
        self._progress.paused = False
        if not self._cancelled.is_set():
            self._publish("Migration resumed")

    def _should_stop(self) -> bool:
        self._wait_if_paused()
        return self._cancelled.is_set()

    # Phase 0

    def migrate_project(self) -> MigrationProgress:
        """Migrate every item of every Rally type in the configured scope."""
        self._start()
        items: dict[str, SourceItem] = {}
        for item_type in ALL_TYPES:
            if self._should_stop():
                return self._finish_cancelled()
            try:
                fetched = self._source.fetch_items_by_type(item_type)
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"Could not fetch {item_type} items: {e}")
                continue
            for item in fetched:
                items.setdefault(item.id, item)
        return self._run(list(items.values()))

    def migrate_items(self, item_ids: list[str]) -> MigrationProgress:
        """Migrate the given items together with their hierarchy.

        Args:
            item_ids: Rally ObjectIDs or FormattedIDs
        """
        self._start()
        items = self._collect(item_ids)
        if items is None:
            return self._finish_cancelled()
        return self._run(items)

    def _start(self) -> None:
        self._progress = MigrationProgress(link_stats=empty_link_stats())
        self._publish("Collecting Rally items")

    def _fetch_any(self, item_id: str) -> SourceItem | None:
        for item_type in guess_item_types(item_id):
            item = self._source.fetch_item(item_type, item_id)
            if item is not None:
                return item
        return None

    def _collect(self, item_ids: list[str]) -> list[SourceItem] | None:
        """Walk the hierarchy from the given ids; None if cancelled."""
        items: dict[str, SourceItem] = {}
        seen: set[str] = set()
        queue: deque[str] = deque(i.strip() for i in item_ids if i and i.strip())
        while queue:
            if self._should_stop():
                return None
            item_id = queue.popleft()
            if item_id in seen or item_id in items:
                continue
            seen.add(item_id)
            try:
                item = self._fetch_any(item_id)
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"Could not fetch Rally item {item_id}: {e}")
                continue
            if item is None:
                logger.warning(f"Rally item {item_id} not found")
                continue
            if item.id in items:
                continue
            items[item.id] = item
            seen.add(item.formatted_id)
            related = [item.parent_id] if item.parent_id else []
            queue.extend(r for r in [*related, *item.child_ids, *item.test_case_ids] if r not in items)
        return list(items.values())

    def _enrich(self, item: SourceItem) -> None:
        if item.owner_ref and (not item.owner or "@" not in item.owner):
            try:
                email = self._source.fetch_owner_email(item.owner_ref)
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"{item.label}: could not resolve owner email: {e}")
            else:
                if email:
                    item.owner = email
        try:
            item.attachments = self._source.fetch_attachments(item)
        except _RECOVERABLE_ERRORS as e:
            logger.warning(f"{item.label}: could not fetch attachments: {e}")
        try:
            item.comments = self._source.fetch_comments(item)
        except _RECOVERABLE_ERRORS as e:
            logger.warning(f"{item.label}: could not fetch comments: {e}")
        if item.type == "TestCase":
            try:
                item.steps = self._source.fetch_test_steps(item)
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"{item.label}: could not fetch test steps: {e}")

    # Phases 1 and 2

    def _run(self, items: list[SourceItem]) -> MigrationProgress:
        ordered = sort_by_hierarchy(items, strict=self._strict_hierarchy)
        counts = ", ".join(f"{count} {item_type}" for item_type, count in analyze_hierarchy(ordered).items())
        logger.info(f"Collected {len(ordered)} Rally items ({counts or 'none'})")

        self._progress.total = len(ordered)
        self._progress.phase = "creating"
        self._publish(f"Creating {len(ordered)} work items")
        for item in ordered:
            if self._should_stop():
                return self._finish_cancelled()
            self._process(item)

        if self._should_stop():
            return self._finish_cancelled()
        self._progress.phase = "linking"
        self._publish("Creating links")
        for item in ordered:
            if self._should_stop():
                return self._finish_cancelled()
            if item.id in self._progress.id_map:
                self._link(item)

        self._progress.phase = "completed"
        self._progress.finished_at = datetime.now(UTC)
        stats = self._progress
        self._publish(
            f"Migration completed: {stats.succeeded} created, {stats.skipped} existing, {stats.failed} failed "
            f"in {stats.elapsed:.1f}s"
        )
        return self._progress

    def _finish_cancelled(self) -> MigrationProgress:
        self._progress.cancelled = True
        self._progress.phase = "cancelled"
        self._progress.paused = False
        self._progress.finished_at = datetime.now(UTC)
        self._publish("Migration cancelled", logging.WARNING)
        return self._progress

    def _process(self, item: SourceItem) -> None:
        progress = self._progress
        result = ItemResult(source_id=item.id, formatted_id=item.formatted_id)
        self._enrich(item)
        try:
            self._migrate_item(item, result)
        except _RECOVERABLE_ERRORS as e:
            logger.exception(f"Failed to migrate {item.label}")
            result.error = str(e)
            result.success = False
        except Exception as e:
            logger.exception(f"Unexpected error migrating {item.label}")
            result.error = f"{type(e).__name__}: {e}"
            result.success = False
        finally:
            item.attachments = []
        result.target_id = progress.id_map.get(item.id, result.target_id)

        if result.error:
            progress.failed += 1
            message, level = f"{item.label}: failed ({result.error})", logging.ERROR
        elif result.skipped:
            progress.skipped += 1
            message, level = f"{item.label}: exists as work item {result.target_id}", logging.INFO
            if result.patched_fields:
                message += f", updated {', '.join(result.patched_fields)}"
        else:
            progress.succeeded += 1
            message, level = f"{item.label}: created work item {result.target_id}", logging.INFO
        progress.processed += 1
        progress.results.append(result)
        self._publish(message, level)

    def _map(self, item: SourceItem) -> MappedFields:
        mapped = self._mapper.map(item)
        if item.type == "TestCase" and not mapped.post_creation_fields.get(STATE_FIELD):
            mapped.post_creation_fields[STATE_FIELD] = "Ready"
        return mapped

    def _migrate_item(self, item: SourceItem, result: ItemResult) -> None:
        mapped = self._map(item)
        existing = find_existing(self._target, item)
        if existing is not None:
            self._progress.id_map[item.id] = existing.target_id
            result.target_id = existing.target_id
            result.skipped = True
            result.success = True
            result.skip_reason = f"already migrated (tag {existing.matched_tag})"
            if self._sync_existing:
                self._synchronize(item, mapped, existing, result)
            return

        target_id = self._target.create_entity(mapped.creation_fields)
        self._progress.id_map[item.id] = target_id
        result.target_id = target_id
        logger.info(f"Created {mapped.target_type} {target_id} for {item.label}")

        apply_state(self._target, target_id, mapped.target_type, mapped.post_creation_fields)
        if item.type == "TestCase":
            self._apply_steps(item, target_id, None)
        self._reconcile_attachments(item, target_id, set())
        self._reconcile_comments(item, target_id, [])
        result.success = True

    def _synchronize(self, item: SourceItem, mapped: MappedFields, existing: ExistingItem, result: ItemResult) -> None:
        target_id = existing.target_id
        desired = {k: v for k, v in mapped.merged().items() if k != "System.WorkItemType"}
        changed = diff_fields(existing.fields, desired)

        regular = {k: v for k, v in changed.items() if k not in POST_CREATION_FIELDS}
        if regular:
            if self._target.patch_fields(target_id, regular):
                result.patched_fields.extend(regular)
                logger.info(f"{item.label}: updated {', '.join(regular)} on work item {target_id}")
            else:
                logger.warning(f"{item.label}: update of work item {target_id} was rejected")

        if STATE_FIELD in changed:
            current_state = existing.fields.get(STATE_FIELD)
            state_fields = {STATE_FIELD: changed[STATE_FIELD]}
            state = apply_state(
                self._target, target_id, mapped.target_type, state_fields, current_state=current_state
            )
            if state.applied_states:
                result.patched_fields.append(STATE_FIELD)

        if item.type == "TestCase":
            self._apply_steps(item, target_id, existing.fields.get(STEPS_FIELD), result)

        _, relations = self._target.get_entity_with_relations(target_id)
        self._reconcile_attachments(item, target_id, attached_file_names(relations))
        self._reconcile_comments(item, target_id, self._target.get_comments(target_id))

    def _apply_steps(
        self, item: SourceItem, target_id: int, current: str | None, result: ItemResult | None = None
    ) -> None:
        steps_xml = build_steps_xml(item.steps)
        if not steps_xml:
            return
        if current is not None and values_equal(STEPS_FIELD, current, steps_xml):
            return
        if self._target.patch_fields(target_id, {STEPS_FIELD: steps_xml}):
            logger.debug(f"{item.label}: wrote {len(item.steps)} test steps to work item {target_id}")
            if result is not None:
                result.patched_fields.append(STEPS_FIELD)
        else:
            logger.warning(f"{item.label}: test steps were rejected by work item {target_id}")

    def _reconcile_attachments(self, item: SourceItem, target_id: int, existing_names: set[str]) -> None:
        names = set(existing_names)
        for attachment in item.attachments:
            if attachment.filename.lower() in names:
                logger.debug(f"{item.label}: attachment {attachment.filename} already present")
                continue
            if not attachment.content:
                logger.warning(f"{item.label}: skipping empty attachment {attachment.filename}")
                continue
            try:
                url = self._target.upload_attachment(target_id, attachment)
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"{item.label}: failed to upload attachment {attachment.filename}: {e}")
                continue
            if url:
                names.add(attachment.filename.lower())
            else:
                logger.warning(f"{item.label}: attachment {attachment.filename} was not uploaded")

    def _reconcile_comments(self, item: SourceItem, target_id: int, existing_texts: list[str]) -> None:
        existing = list(existing_texts)
        for comment in sorted(item.comments, key=lambda c: c.created_at.timestamp() if c.created_at else 0.0):
            if not comment.text.strip():
                continue
            if comment_already_present(comment, existing):
                continue
            body = build_comment_html(comment)
            try:
                added = self._target.add_comment(
                    target_id, Comment(text=body, created_at=comment.created_at, author=comment.author)
                )
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"{item.label}: failed to add comment: {e}")
                continue
            if added:
                existing.append(body)
            else:
                logger.warning(f"{item.label}: comment from {comment.author or 'unknown'} was not added")

    def _link(self, item: SourceItem) -> None:
        stats = self._progress.link_stats
        id_map = self._progress.id_map
        target_id = id_map[item.id]
        relations: list[dict] | None = None

        def current_relations() -> list[dict]:
            nonlocal relations
            if relations is None:
                _, relations = self._target.get_entity_with_relations(target_id)
            return relations

        if not item.parent_id:
            stats["Skipped (No Parent)"] += 1
        elif item.parent_id not in id_map:
            stats["Skipped (Parent Not Migrated)"] += 1
            logger.warning(f"{item.label}: parent {item.parent_id} was not migrated, no parent link")
        else:
            parent_target = id_map[item.parent_id]
            try:
                existing_parent = find_parent(current_relations())
                if existing_parent is not None:
                    if existing_parent != parent_target:
                        logger.warning(
                            f"{item.label}: work item {target_id} already has parent {existing_parent}, "
                            f"expected {parent_target}; leaving it"
                        )
                    stats["Parent-Child Links"] += 1
                elif self._target.link_entities(parent_target, target_id, "parent"):
                    stats["Parent-Child Links"] += 1
                else:
                    stats["Failed Links"] += 1
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"{item.label}: parent link {target_id} -> {parent_target} failed: {e}")
                stats["Failed Links"] += 1

        if item.type not in TESTED_TYPES:
            return
        for test_case_id in item.test_case_ids:
            if test_case_id not in id_map:
                stats["Skipped (Child Not Migrated)"] += 1
                logger.warning(f"{item.label}: test case {test_case_id} was not migrated, no test link")
                continue
            test_target = id_map[test_case_id]
            try:
                if has_relation(current_relations(), TESTED_BY_RELATION, test_target) or self._target.link_entities(
                    target_id, test_target, "tests"
                ):
                    stats["Test Case Links"] += 1
                else:
                    stats["Failed Links"] += 1
            except _RECOVERABLE_ERRORS as e:
                logger.warning(f"{item.label}: test link {target_id} -> {test_target} failed: {e}")
                stats["Failed Links"] += 1
