"""
Rally to Azure DevOps Migration Tool

Migrates Rally work items (epics, features, stories, defects, tasks and test
cases) to Azure DevOps, preserving hierarchy, lifecycle state, history
fields, attachments, discussions and test steps. Re-runs are idempotent.
"""

from __future__ import annotations

from .ado_client import AdoTarget
from .cli import main
from .config import ConnectionSettings, MappingConfiguration
from .exceptions import AdoApiError, ConfigurationError, HierarchyCycleError, MigrationError, RallyApiError
from .field_mapping import FieldMapper
from .models import MigrationProgress, SourceItem
from .orchestrator import Migrator
from .rally_client import RallySource
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "AdoApiError",
    "AdoTarget",
    "ConfigurationError",
    "ConnectionSettings",
    "FieldMapper",
    "HierarchyCycleError",
    "MappingConfiguration",
    "MigrationError",
    "MigrationProgress",
    "Migrator",
    "RallyApiError",
    "RallySource",
    "SourceItem",
    "main",
    "setup_logging",
]
