"""Apply the declarative field mapping to a Rally item.

FieldMapper.map() splits the ADO fields into creation-time fields and
post-creation fields. ADO rejects arbitrary values for the lifecycle state and
audit fields unless they are written with bypassRules after the work item
exists, so those are always routed to `post_creation_fields`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final

from . import transformations as tf
from .models import MappedFields

if TYPE_CHECKING:
    from .config import FieldMapping, MappingConfiguration
    from .models import SourceItem
    from .transformations import TransformContext

logger: logging.Logger = logging.getLogger(__name__)

POST_CREATION_FIELDS: Final[frozenset[str]] = frozenset(
    {"System.State", "System.CreatedDate", "System.ChangedDate", "System.CreatedBy"}
)

STEPS_FIELD: Final[str] = "Microsoft.VSTS.TCM.Steps"
TAGS_FIELD: Final[str] = "System.Tags"

# Transformations always run in this order, whatever order the configuration lists them in
PIPELINE_ORDER: Final[tuple[str, ...]] = (
    "DATE_FORMAT",
    "USER_LOOKUP",
    "STATE_MAPPING",
    "ENUM_MAPPING",
    "COLLECTION_TO_STRING",
    "RALLY_ID_FORMAT",
    "HTML_PRESERVE",
    "HTML_APPEND",
    "PROJECT_TO_AREA",
    "ITERATION_TO_PATH",
    "CONSTANT",
    "DIRECT",
)

SOURCE_FIELDS: Final[dict[str, Callable[[SourceItem], Any]]] = {
    "ObjectID": lambda i: i.id,
    "FormattedID": lambda i: i.formatted_id,
    "Name": lambda i: i.name,
    "Description": lambda i: i.description,
    "Notes": lambda i: i.notes,
    "State": lambda i: i.state,
    "ScheduleState": lambda i: i.state,
    "Owner": lambda i: i.owner,
    "SubmittedBy": lambda i: i.submitted_by,
    "CreatedBy": lambda i: i.created_by,
    "LastUpdateBy": lambda i: i.last_updated_by,
    "Project": lambda i: i.project,
    "Iteration": lambda i: i.iteration,
    "Release": lambda i: i.release,
    "Priority": lambda i: i.priority,
    "Severity": lambda i: i.severity,
    "PlanEstimate": lambda i: i.plan_estimate,
    "Estimate": lambda i: i.estimate,
    "ToDo": lambda i: i.to_do,
    "Actuals": lambda i: i.actuals,
    "Blocked": lambda i: i.blocked,
    "Ready": lambda i: i.ready,
    "CreationDate": lambda i: i.creation_date,
    "LastUpdateDate": lambda i: i.last_update_date,
    "Tags": lambda i: i.tags or None,
}


def get_source_value(item: SourceItem, field_name: str) -> Any:
    """Read a Rally field from an item, falling back to its custom fields."""
    getter = SOURCE_FIELDS.get(field_name)
    if getter is not None:
        return getter(item)
    if field_name in item.custom_fields:
        return item.custom_fields[field_name]
    return item.custom_fields.get(f"c_{field_name}")


def split_tags(value: Any) -> list[str]:
    """Split an ADO tag string (or list) into trimmed, non-empty tags."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        raw = [str(v) for v in value]
    else:
        raw = re.split(r"[;,]", str(value))
    return [t.strip() for t in raw if t.strip()]


def cross_reference_tags(item: SourceItem) -> list[str]:
    """Tags that identify the Rally origin of a work item."""
    return [f"Rally-{item.formatted_id}", f"RallyObjectID-{item.id}"]


def actor_tag(actor: str) -> str:
    username = actor.split("@", 1)[0] if "@" in actor else actor
    return f"RallyUser-{username.strip().replace(';', '').replace(' ', '.')}"


class FieldMapper:
    """Maps SourceItems to ADO field sets using a MappingConfiguration."""

    _config: MappingConfiguration
    _context: TransformContext

    def __init__(self, config: MappingConfiguration, context: TransformContext | None = None) -> None:
        self._config = config
        self._context = context or config.transform_context()

    @property
    def config(self) -> MappingConfiguration:
        return self._config

    def target_type_for(self, item: SourceItem) -> str:
        return self._config.mapping_for(item.type).ado_work_item_type

    def map(self, item: SourceItem) -> MappedFields:
        """Map one item.

        Raises:
            ConfigurationError: If no type mapping is configured
        """
        type_mapping = self._config.mapping_for(item.type)
        result = MappedFields()
        result.creation_fields["System.WorkItemType"] = type_mapping.ado_work_item_type

        for actor in (item.owner, item.submitted_by, item.created_by, item.last_updated_by):
            if actor:
                result.actors.add(actor)

        for rule in type_mapping.field_mappings:
            is_post_field = rule.ado_field_reference in POST_CREATION_FIELDS
            if rule.skip and not is_post_field:
                continue
            raw = get_source_value(item, rule.rally_field_name)
            if raw is None and rule.default_value is None:
                continue
            try:
                value = self._apply_transformations(raw, item, rule, result)
            except (TypeError, ValueError) as e:
                logger.warning(f"Error mapping field {rule.rally_field_name} of {item.label}: {e}")
                continue
            if value is None:
                continue
            if is_post_field:
                result.post_creation_fields[rule.ado_field_reference] = value
            else:
                result.creation_fields[rule.ado_field_reference] = value

        self._merge_tags(item, result)
        self._ensure_required_fields(item, result)
        return result

    def _apply_transformations(
        self, raw: Any, item: SourceItem, rule: FieldMapping, result: MappedFields
    ) -> Any:
        requested = rule.transformations
        if "CONSTANT" in requested and rule.default_value is not None:
            return rule.default_value

        value = raw if raw is not None else rule.default_value
        if value is None:
            return None
        if isinstance(value, str):
            value = tf.unescape_text(value)

        for name in requested:
            if name not in PIPELINE_ORDER:
                logger.warning(f"Unknown transformation '{name}' on field {rule.rally_field_name}, ignoring it")

        for name in PIPELINE_ORDER:
            if name not in requested:
                continue
            if name == "DATE_FORMAT":
                value = tf.format_date(value)
            elif name == "USER_LOOKUP":
                value, actor = tf.resolve_user(value, self._context)
                if actor:
                    result.actors.add(actor)
            elif name == "STATE_MAPPING":
                value = tf.transform_state(value, item.type)
            elif name == "ENUM_MAPPING":
                value = tf.map_enum(value, rule.rally_field_name or rule.ado_field_reference)
            elif name == "COLLECTION_TO_STRING":
                value = tf.collection_to_string(value)
            elif name == "RALLY_ID_FORMAT":
                value = tf.format_rally_id(item.formatted_id, item.name)
            elif name == "HTML_PRESERVE":
                value = tf.html_preserve(value)
            elif name == "HTML_APPEND":
                value = tf.html_append(result.creation_fields.get(rule.ado_field_reference), value)
            elif name == "PROJECT_TO_AREA":
                value = tf.project_to_area(value, self._context, rule.default_value)
            elif name == "ITERATION_TO_PATH":
                value = tf.iteration_to_path(value, self._context)
            if value is None:
                return None
        if value == "":
            return None
        return value

    def _merge_tags(self, item: SourceItem, result: MappedFields) -> None:
        tags = split_tags(result.creation_fields.get(TAGS_FIELD))
        wanted = cross_reference_tags(item) + [actor_tag(a) for a in sorted(result.actors)]
        seen = {t.lower() for t in tags}
        for tag in wanted:
            if tag.lower() not in seen:
                tags.append(tag)
                seen.add(tag.lower())
        result.creation_fields[TAGS_FIELD] = ";".join(tags)

    def _ensure_required_fields(self, item: SourceItem, result: MappedFields) -> None:
        fields = result.creation_fields
        if not fields.get("System.Title"):
            fields["System.Title"] = tf.format_rally_id(item.formatted_id, item.name or item.label)
        if not fields.get("System.AreaPath") and self._config.default_ado_project:
            fields["System.AreaPath"] = self._config.default_ado_project
        # Privilege-gated fields never go into the create call
        for name in POST_CREATION_FIELDS & fields.keys():
            result.post_creation_fields.setdefault(name, fields[name])
            del fields[name]
        fields.pop(STEPS_FIELD, None)
