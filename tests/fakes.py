"""In-memory SourceSystem and TargetSystem implementations for engine tests."""

from __future__ import annotations

import copy
from typing import Any

from rally_to_ado_migrator.exceptions import AdoApiError, RallyApiError
from rally_to_ado_migrator.field_mapping import split_tags
from rally_to_ado_migrator.models import Attachment, Comment, SourceItem, TestStep
from rally_to_ado_migrator.relationships import (
    ATTACHMENT_RELATION,
    PARENT_RELATION,
    TESTED_BY_RELATION,
    find_parent,
    has_relation,
)

WORK_ITEM_URL = "https://dev.azure.com/org/project/_apis/wit/workItems/{}"


def build_item(item_id: str, formatted_id: str, item_type: Any, **kwargs: Any) -> SourceItem:
    """SourceItem with a readable default name and an owner email."""
    kwargs.setdefault("name", f"Item {formatted_id}")
    kwargs.setdefault("owner", "jane.doe@contoso.com")
    kwargs.setdefault("project", "Team A")
    return SourceItem(id=item_id, formatted_id=formatted_id, type=item_type, **kwargs)


class FakeSource:
    """Rally stand-in serving a fixed set of items."""

    items: dict[str, SourceItem]
    attachments: dict[str, list[Attachment]]
    comments: dict[str, list[Comment]]
    steps: dict[str, list[TestStep]]
    emails: dict[str, str]
    failing_types: set[str]
    fetch_calls: list[tuple[str, str]]
    enriched: list[SourceItem]

    def __init__(self, items: list[SourceItem] | None = None) -> None:
        self.items = {item.id: item for item in items or []}
        self.attachments = {}
        self.comments = {}
        self.steps = {}
        self.emails = {}
        self.failing_types = set()
        self.fetch_calls = []
        self.enriched = []

    def fetch_item(self, item_type: str, item_id: str) -> SourceItem | None:
        self.fetch_calls.append((item_type, item_id))
        for item in self.items.values():
            if item.type == item_type and item_id in (item.id, item.formatted_id):
                return copy.deepcopy(item)
        return None

    def fetch_items_by_type(self, item_type: str) -> list[SourceItem]:
        if item_type in self.failing_types:
            msg = f"{item_type} query failed"
            raise RallyApiError(msg, status_code=500)
        return [copy.deepcopy(i) for i in self.items.values() if i.type == item_type]

    def fetch_attachments(self, item: SourceItem) -> list[Attachment]:
        self.enriched.append(item)
        return list(self.attachments.get(item.id, []))

    def fetch_comments(self, item: SourceItem) -> list[Comment]:
        return list(self.comments.get(item.id, []))

    def fetch_owner_email(self, ref: str) -> str | None:
        return self.emails.get(ref)

    def fetch_test_steps(self, item: SourceItem) -> list[TestStep]:
        return list(self.steps.get(item.id, []))


class FakeTarget:
    """ADO stand-in keeping work items, relations and comments in memory.

    `rejected_states` makes every write of those states fail, elevated or
    not. `erroring_states` makes those writes raise AdoApiError instead.
    `reject_elevated` makes every bypassRules write fail.
    """

    work_items: dict[int, dict[str, Any]]
    relations: dict[int, list[dict[str, Any]]]
    comments: dict[int, list[str]]
    created: list[dict[str, Any]]
    patches: list[tuple[int, dict[str, Any], bool]]
    link_calls: list[tuple[int, int, str]]
    rejected_states: set[str]
    erroring_states: set[str]
    reject_elevated: bool
    fail_create_titles: set[str]

    def __init__(self) -> None:
        self.work_items = {}
        self.relations = {}
        self.comments = {}
        self.created = []
        self.patches = []
        self.link_calls = []
        self.rejected_states = set()
        self.erroring_states = set()
        self.reject_elevated = False
        self.fail_create_titles = set()
        self._next_id = 100

    def find_by_tag(self, tag: str) -> tuple[int, dict[str, Any]] | None:
        for target_id, fields in sorted(self.work_items.items()):
            if tag.lower() in {t.lower() for t in split_tags(fields.get("System.Tags"))}:
                return target_id, dict(fields)
        return None

    def create_entity(self, creation_fields: dict[str, Any]) -> int:
        if creation_fields.get("System.Title") in self.fail_create_titles:
            msg = f"Failed to create {creation_fields.get('System.Title')}"
            raise AdoApiError(msg, status_code=400, body="VS402625: field is invalid")
        self.created.append(dict(creation_fields))
        target_id = self._next_id
        self._next_id += 1
        self.work_items[target_id] = {"System.Id": target_id, "System.State": "New", **creation_fields}
        self.relations[target_id] = []
        self.comments[target_id] = []
        return target_id

    def patch_fields(self, target_id: int, fields: dict[str, Any], *, elevated: bool = False) -> bool:
        self.patches.append((target_id, dict(fields), elevated))
        if fields.get("System.State") in self.erroring_states:
            msg = f"ADO request PATCH workitems/{target_id} failed: Read timed out"
            raise AdoApiError(msg)
        if elevated and self.reject_elevated:
            return False
        if fields.get("System.State") in self.rejected_states:
            return False
        self.work_items[target_id].update({k: v for k, v in fields.items() if v is not None})
        return True

    def get_state(self, target_id: int) -> str | None:
        return self.work_items[target_id].get("System.State")

    def upload_attachment(self, target_id: int, attachment: Attachment) -> str | None:
        url = f"https://dev.azure.com/org/_apis/wit/attachments/{attachment.source_id}?fileName={attachment.filename}"
        self.relations[target_id].append(
            {"rel": ATTACHMENT_RELATION, "url": url, "attributes": {"name": attachment.filename}}
        )
        return url

    def add_comment(self, target_id: int, comment: Comment) -> bool:
        self.comments[target_id].append(comment.text)
        return True

    def get_comments(self, target_id: int) -> list[str]:
        return list(self.comments[target_id])

    def link_entities(self, parent_id: int, child_id: int, kind: str) -> bool:
        self.link_calls.append((parent_id, child_id, kind))
        if kind == "parent":
            if find_parent(self.relations[child_id]) is None:
                self.relations[child_id].append({"rel": PARENT_RELATION, "url": WORK_ITEM_URL.format(parent_id)})
            return True
        if not has_relation(self.relations[parent_id], TESTED_BY_RELATION, child_id):
            self.relations[parent_id].append({"rel": TESTED_BY_RELATION, "url": WORK_ITEM_URL.format(child_id)})
        return True

    def get_entity_with_relations(self, target_id: int) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        return dict(self.work_items[target_id]), list(self.relations[target_id])

    def relation_count(self, rel: str) -> int:
        return sum(1 for relations in self.relations.values() for r in relations if r["rel"] == rel)
