"""Field mapping configuration and connection settings.

The mapping file is JSON. Keys may be written in snake_case or in the
PascalCase produced by the mapping generator of earlier tooling:

    {
      "version": "1.0",
      "default_ado_project": "Contoso",
      "migration_user_email": "migration@contoso.com",
      "area_path_mappings": {"Team A": "Contoso\\\\Team A"},
      "work_item_type_mappings": [
        {
          "rally_work_item_type": "HierarchicalRequirement",
          "ado_work_item_type": "User Story",
          "field_mappings": [
            {"rally_field_name": "Name", "ado_field_reference": "System.Title",
             "custom_transformation": "RALLY_ID_FORMAT"}
          ]
        }
      ]
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from .exceptions import ConfigurationError
from .transformations import TransformContext

if TYPE_CHECKING:
    from .models import ItemType

logger: logging.Logger = logging.getLogger(__name__)

# Rally WSAPI type names (and common aliases) -> canonical item type
_ITEM_TYPE_ALIASES: Final[dict[str, ItemType]] = {
    "hierarchicalrequirement": "Story",
    "userstory": "Story",
    "story": "Story",
    "defect": "Defect",
    "task": "Task",
    "testcase": "TestCase",
    "portfolioitem/feature": "Feature",
    "feature": "Feature",
    "portfolioitem/epic": "Epic",
    "epic": "Epic",
}

DEFAULT_ADO_TYPES: Final[dict[ItemType, str]] = {
    "Story": "User Story",
    "Defect": "Bug",
    "Task": "Task",
    "TestCase": "Test Case",
    "Feature": "Feature",
    "Epic": "Epic",
}


def normalize_item_type(name: str | None) -> ItemType | None:
    """Canonical item type for a Rally type name, or None if unknown."""
    if not name:
        return None
    key = name.strip().lower().replace(" ", "").replace("-", "")
    return _ITEM_TYPE_ALIASES.get(key)


def _pick(data: dict[str, Any], snake: str, pascal: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(pascal, default)


@dataclass
class FieldMapping:
    """One Rally field -> ADO field rule."""

    rally_field_name: str
    ado_field_reference: str
    default_value: str | None = None
    custom_transformation: str = ""
    skip: bool = False
    rally_required: bool = False

    @property
    def transformations(self) -> list[str]:
        """Named transformations, upper-cased, in configured order."""
        return [t.strip().upper() for t in (self.custom_transformation or "").split(",") if t.strip()]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldMapping:
        rally_field = _pick(data, "rally_field_name", "RallyFieldName")
        ado_field = _pick(data, "ado_field_reference", "AdoFieldReference")
        if not rally_field or not ado_field:
            msg = f"Field mapping needs both a Rally field name and an ADO field reference: {data}"
            raise ConfigurationError(msg)
        default = _pick(data, "default_value", "DefaultValue")
        return cls(
            rally_field_name=str(rally_field),
            ado_field_reference=str(ado_field),
            default_value=None if default in (None, "") else str(default),
            custom_transformation=str(_pick(data, "custom_transformation", "CustomTransformation", "") or ""),
            skip=bool(_pick(data, "skip", "Skip", False)),
            rally_required=bool(_pick(data, "rally_required", "RallyRequired", False)),
        )


@dataclass
class WorkItemTypeMapping:
    """Field rules for one Rally work item type."""

    rally_work_item_type: str
    ado_work_item_type: str
    field_mappings: list[FieldMapping] = field(default_factory=list)

    @property
    def item_type(self) -> ItemType | None:
        return normalize_item_type(self.rally_work_item_type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItemTypeMapping:
        rally_type = _pick(data, "rally_work_item_type", "RallyWorkItemType")
        ado_type = _pick(data, "ado_work_item_type", "AdoWorkItemType")
        if not rally_type or not ado_type:
            msg = f"Work item type mapping needs both a Rally and an ADO type: {data}"
            raise ConfigurationError(msg)
        rules = _pick(data, "field_mappings", "FieldMappings", []) or []
        return cls(
            rally_work_item_type=str(rally_type),
            ado_work_item_type=str(ado_type),
            field_mappings=[FieldMapping.from_dict(r) for r in rules],
        )


def _rule(rally: str, ado: str, transformation: str = "", default: str | None = None) -> FieldMapping:
    return FieldMapping(rally, ado, default_value=default, custom_transformation=transformation)


def _common_rules(description_field: str = "System.Description") -> list[FieldMapping]:
    return [
        _rule("Name", "System.Title", "RALLY_ID_FORMAT"),
        _rule("Description", description_field, "HTML_PRESERVE"),
        _rule("Notes", description_field, "HTML_APPEND"),
        _rule("Owner", "System.AssignedTo", "USER_LOOKUP"),
        _rule("State", "System.State", "STATE_MAPPING"),
        _rule("CreationDate", "System.CreatedDate", "DATE_FORMAT"),
        _rule("LastUpdateDate", "System.ChangedDate", "DATE_FORMAT"),
        _rule("CreatedBy", "System.CreatedBy", "USER_LOOKUP"),
        _rule("Project", "System.AreaPath", "PROJECT_TO_AREA"),
        _rule("Tags", "System.Tags", "COLLECTION_TO_STRING"),
    ]


@dataclass
class MappingConfiguration:
    """Declarative per-type field mapping plus run-wide transformation settings."""

    work_item_type_mappings: list[WorkItemTypeMapping] = field(default_factory=list)
    version: str = "1.0"
    default_ado_project: str = ""
    iteration_root: str = ""
    migration_user_email: str | None = None
    area_path_mappings: dict[str, str] = field(default_factory=dict)
    user_mappings: dict[str, str] = field(default_factory=dict)
    email_domain_rewrites: dict[str, str] = field(default_factory=dict)

    def mapping_for(self, item_type: str) -> WorkItemTypeMapping:
        """Type mapping for an item type; the first mapping is the fallback.

        Raises:
            ConfigurationError: If no type mappings are configured at all
        """
        if not self.work_item_type_mappings:
            msg = "Field mapping configuration has no work item type mappings"
            raise ConfigurationError(msg)
        wanted = normalize_item_type(item_type) or item_type
        for mapping in self.work_item_type_mappings:
            if mapping.item_type == wanted or mapping.rally_work_item_type.lower() == item_type.lower():
                return mapping
        fallback = self.work_item_type_mappings[0]
        logger.warning(f"No mapping for Rally type '{item_type}', falling back to '{fallback.rally_work_item_type}'")
        return fallback

    def transform_context(self) -> TransformContext:
        return TransformContext(
            default_ado_project=self.default_ado_project,
            iteration_root=self.iteration_root,
            migration_user_email=self.migration_user_email,
            user_mappings=dict(self.user_mappings),
            email_domain_rewrites=dict(self.email_domain_rewrites),
            area_path_mappings=dict(self.area_path_mappings),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MappingConfiguration:
        type_mappings = _pick(data, "work_item_type_mappings", "WorkItemTypeMappings", []) or []
        if not isinstance(type_mappings, list):
            msg = "work_item_type_mappings must be a list"
            raise ConfigurationError(msg)
        return cls(
            work_item_type_mappings=[WorkItemTypeMapping.from_dict(m) for m in type_mappings],
            version=str(_pick(data, "version", "Version", "1.0")),
            default_ado_project=str(_pick(data, "default_ado_project", "DefaultAdoProject", "") or ""),
            iteration_root=str(_pick(data, "iteration_root", "IterationRoot", "") or ""),
            migration_user_email=_pick(data, "migration_user_email", "MigrationUserEmail"),
            area_path_mappings=dict(_pick(data, "area_path_mappings", "AreaPathMappings", {}) or {}),
            user_mappings=dict(_pick(data, "user_mappings", "UserMappings", {}) or {}),
            email_domain_rewrites=dict(_pick(data, "email_domain_rewrites", "EmailDomainRewrites", {}) or {}),
        )

    @classmethod
    def load(cls, path: str | Path) -> MappingConfiguration:
        """Load a mapping configuration from a JSON file.

        Raises:
            ConfigurationError: If the file is missing or not valid mapping JSON
        """
        config_path = Path(path)
        try:
            data = json.loads(config_path.read_text(encoding="utf-8-sig"))
        except OSError as e:
            msg = f"Cannot read field mapping file {config_path}: {e}"
            raise ConfigurationError(msg) from e
        except json.JSONDecodeError as e:
            msg = f"Field mapping file {config_path} is not valid JSON: {e}"
            raise ConfigurationError(msg) from e
        if not isinstance(data, dict):
            msg = f"Field mapping file {config_path} must contain a JSON object"
            raise ConfigurationError(msg)
        config = cls.from_dict(data)
        logger.info(
            f"Loaded field mapping v{config.version} from {config_path} "
            f"({len(config.work_item_type_mappings)} work item types)"
        )
        return config

    @classmethod
    def default(cls, default_ado_project: str = "") -> MappingConfiguration:
        """Built-in mapping covering all six Rally types."""
        story = [
            *_common_rules(),
            _rule("PlanEstimate", "Microsoft.VSTS.Scheduling.StoryPoints"),
            _rule("Iteration", "System.IterationPath", "ITERATION_TO_PATH"),
        ]
        defect = [
            *_common_rules("Microsoft.VSTS.TCM.ReproSteps"),
            _rule("Priority", "Microsoft.VSTS.Common.Priority", "ENUM_MAPPING"),
            _rule("Severity", "Microsoft.VSTS.Common.Severity", "ENUM_MAPPING"),
            _rule("PlanEstimate", "Microsoft.VSTS.Scheduling.StoryPoints"),
            _rule("Iteration", "System.IterationPath", "ITERATION_TO_PATH"),
        ]
        task = [
            *_common_rules(),
            _rule("Estimate", "Microsoft.VSTS.Scheduling.OriginalEstimate"),
            _rule("ToDo", "Microsoft.VSTS.Scheduling.RemainingWork"),
            _rule("Actuals", "Microsoft.VSTS.Scheduling.CompletedWork"),
            _rule("Iteration", "System.IterationPath", "ITERATION_TO_PATH"),
        ]
        test_case = [
            *_common_rules(),
            _rule("Priority", "Microsoft.VSTS.Common.Priority", "ENUM_MAPPING"),
        ]
        portfolio = _common_rules()
        return cls(
            default_ado_project=default_ado_project,
            work_item_type_mappings=[
                WorkItemTypeMapping("HierarchicalRequirement", DEFAULT_ADO_TYPES["Story"], story),
                WorkItemTypeMapping("Defect", DEFAULT_ADO_TYPES["Defect"], defect),
                WorkItemTypeMapping("Task", DEFAULT_ADO_TYPES["Task"], task),
                WorkItemTypeMapping("TestCase", DEFAULT_ADO_TYPES["TestCase"], test_case),
                WorkItemTypeMapping("PortfolioItem/Feature", DEFAULT_ADO_TYPES["Feature"], list(portfolio)),
                WorkItemTypeMapping("PortfolioItem/Epic", DEFAULT_ADO_TYPES["Epic"], list(portfolio)),
            ],
        )


@dataclass
class ConnectionSettings:
    """Where to read from and write to, and how the run behaves."""

    rally_workspace: str
    ado_organization: str
    ado_project: str
    rally_api_key: str | None = None
    ado_pat: str | None = None
    rally_server_url: str = "https://rally1.rallydev.com"
    rally_project: str | None = None
    ado_server_url: str = "https://dev.azure.com"
    sync_existing: bool = True
    strict_hierarchy: bool = False
    refresh_task_state: bool = True

    def validate(self) -> None:
        """Raise ConfigurationError if a required setting is missing."""
        missing = [
            name
            for name, value in (
                ("Rally workspace", self.rally_workspace),
                ("Rally API key", self.rally_api_key),
                ("ADO project", self.ado_project),
                ("ADO personal access token", self.ado_pat),
            )
            if not value
        ]
        if "dev.azure.com" in self.ado_server_url.lower() and not self.ado_organization:
            missing.append("ADO organization")
        if missing:
            msg = f"Missing required settings: {', '.join(missing)}"
            raise ConfigurationError(msg)
