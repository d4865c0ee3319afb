"""Protocols defining the contracts for source and target systems.

The migration architecture separates concerns into three components:

1. SourceSystem: Reads work items and their content from Rally
2. TargetSystem: Creates, patches and links work items in Azure DevOps
3. Migrator: Orchestrates the flow, sequencing, identity mapping and link resolution

This separation allows:
- Testing the engine in isolation with in-memory implementations
- Keeping HTTP details (auth, paging, retries, JSON-patch) out of the engine
- Clear boundaries for source-specific quirks (state field selection, stale reads)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import Attachment, Comment, ItemType, LinkKind, SourceItem, TestStep


class SourceSystem(Protocol):
    """Protocol for reading work items from the source system.

    Implementations return items in the normalized SourceItem form. All reads
    are assumed to be eventually consistent; staleness correction, if any, is
    the implementation's job and happens at fetch time.

    Content (attachments, comments, test steps, owner email) is fetched
    separately so the Migrator can enrich items after the whole set has been
    collected.
    """

    def fetch_item(self, item_type: ItemType, item_id: str) -> SourceItem | None:
        """Fetch a single item by ObjectID or FormattedID.

        Returns:
            The item, or None if no item of that type has the identifier.
        """
        ...

    def fetch_items_by_type(self, item_type: ItemType) -> list[SourceItem]:
        """Fetch every item of one type in the configured workspace/project."""
        ...

    def fetch_attachments(self, item: SourceItem) -> list[Attachment]:
        """Fetch attachments of an item, including their bytes."""
        ...

    def fetch_comments(self, item: SourceItem) -> list[Comment]:
        """Fetch discussion posts of an item."""
        ...

    def fetch_owner_email(self, ref: str) -> str | None:
        """Resolve a user reference to an email address."""
        ...

    def fetch_test_steps(self, item: SourceItem) -> list[TestStep]:
        """Fetch manual test steps of a test case."""
        ...


class TargetSystem(Protocol):
    """Protocol for writing work items to the target system.

    The Migrator calls methods in this order per item:
    1. find_by_tag() - Detect an item migrated by an earlier run
    2. create_entity() or patch_fields() - Create or synchronize regular fields
    3. patch_fields(elevated=True) / get_state() - Lifecycle state and audit fields
    4. upload_attachment() / add_comment() - Content reconciliation
    and, once every item has an identity:
    5. get_entity_with_relations() / link_entities() - Parent and test links

    Write methods report recoverable failures through their return value;
    exceptions are reserved for transport failures that survived retries.
    """

    def find_by_tag(self, tag: str) -> tuple[int, dict[str, Any]] | None:
        """Find a work item carrying the given tag.

        Returns:
            (work item id, current fields) of the first match, or None.
        """
        ...

    def create_entity(self, creation_fields: dict[str, Any]) -> int:
        """Create a work item and return its id.

        `System.WorkItemType` in `creation_fields` selects the type.

        Raises:
            AdoApiError: If the work item could not be created
        """
        ...

    def patch_fields(self, target_id: int, fields: dict[str, Any], *, elevated: bool = False) -> bool:
        """Update fields of a work item.

        Args:
            target_id: Work item id
            fields: Field reference -> value; None values are ignored
            elevated: Write with bypassRules so workflow and audit fields are accepted

        Returns:
            True on success (including an empty update), False if rejected
        """
        ...

    def get_state(self, target_id: int) -> str | None:
        """Read the current System.State of a work item."""
        ...

    def upload_attachment(self, target_id: int, attachment: Attachment) -> str | None:
        """Upload an attachment and attach it to the work item.

        Returns:
            The attachment URL, or None if the upload was rejected
        """
        ...

    def add_comment(self, target_id: int, comment: Comment) -> bool:
        """Add a comment to a work item."""
        ...

    def get_comments(self, target_id: int) -> list[str]:
        """Return the texts of existing comments on a work item."""
        ...

    def link_entities(self, parent_id: int, child_id: int, kind: LinkKind) -> bool:
        """Link two work items.

        Args:
            parent_id: For "parent", the parent; for "tests", the story/defect
            child_id: For "parent", the child; for "tests", the test case
            kind: Link kind

        Returns:
            True if the link exists afterwards (created or already present)
        """
        ...

    def get_entity_with_relations(self, target_id: int) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        """Return (fields, relations) of a work item."""
        ...
