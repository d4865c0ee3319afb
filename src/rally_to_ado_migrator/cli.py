"""
Command-line interface for the Rally to Azure DevOps migration tool.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from typing import TYPE_CHECKING

from .ado_client import AdoTarget
from .config import ConnectionSettings, MappingConfiguration
from .field_mapping import SOURCE_FIELDS, FieldMapper
from .orchestrator import Migrator
from .rally_client import RallySource
from .utils import get_secret, mask_secret, setup_logging

if TYPE_CHECKING:
    from types import FrameType

    from .models import MigrationProgress, ProgressEvent

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_RALLY_PASS_PATH = "rally/api_key"
DEFAULT_ADO_PASS_PATH = "azure-devops/pat"


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate Rally work items to Azure DevOps, preserving hierarchy, state and history"
    )

    # Positional arguments
    _ = parser.add_argument("ids", nargs="*", help="Rally ObjectIDs or FormattedIDs to migrate with their hierarchy")

    _ = parser.add_argument("--all", action="store_true", help="Migrate every item in the workspace/project")

    _ = parser.add_argument("--rally-server", help="Rally server URL (env: RALLY_SERVER)")
    _ = parser.add_argument("--rally-workspace", help="Rally workspace ObjectID (env: RALLY_WORKSPACE)")
    _ = parser.add_argument("--rally-project", help="Rally project ObjectID (env: RALLY_PROJECT)")
    _ = parser.add_argument("--ado-server", help="Azure DevOps server URL (env: ADO_SERVER)")
    _ = parser.add_argument("--ado-organization", help="Azure DevOps organization (env: ADO_ORGANIZATION)")
    _ = parser.add_argument("--ado-project", help="Azure DevOps project (env: ADO_PROJECT)")

    _ = parser.add_argument(
        "--rally-pass-key", help=f"Path for the Rally API key in pass utility (default: {DEFAULT_RALLY_PASS_PATH})"
    )
    _ = parser.add_argument(
        "--ado-pass-token", help=f"Path for the Azure DevOps PAT in pass utility (default: {DEFAULT_ADO_PASS_PATH})"
    )

    _ = parser.add_argument("--mapping", "-m", help="Field mapping JSON file (default: built-in mapping)")
    _ = parser.add_argument(
        "--no-sync", action="store_true", help="Leave work items created by an earlier run untouched"
    )
    _ = parser.add_argument(
        "--strict-hierarchy", action="store_true", help="Fail on cyclic parent references instead of breaking them"
    )
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)
    if args.all and args.ids:
        parser.error("give either item ids or --all, not both")
    if not args.all and not args.ids:
        parser.error("give item ids to migrate or --all")
    return args


def _setting(value: str | None, env_var: str, default: str | None = None) -> str | None:
    return value or os.environ.get(env_var) or default


def build_settings(args: argparse.Namespace) -> ConnectionSettings:
    """Resolve connection settings from arguments, environment and pass."""
    settings = ConnectionSettings(
        rally_workspace=_setting(args.rally_workspace, "RALLY_WORKSPACE") or "",
        ado_organization=_setting(args.ado_organization, "ADO_ORGANIZATION") or "",
        ado_project=_setting(args.ado_project, "ADO_PROJECT") or "",
        rally_api_key=get_secret(args.rally_pass_key, "RALLY_API_KEY", DEFAULT_RALLY_PASS_PATH),
        ado_pat=get_secret(args.ado_pass_token, "ADO_PAT", DEFAULT_ADO_PASS_PATH),
        rally_server_url=_setting(args.rally_server, "RALLY_SERVER", "https://rally1.rallydev.com") or "",
        rally_project=_setting(args.rally_project, "RALLY_PROJECT"),
        ado_server_url=_setting(args.ado_server, "ADO_SERVER", "https://dev.azure.com") or "",
        sync_existing=not args.no_sync,
        strict_hierarchy=args.strict_hierarchy,
    )
    settings.validate()
    return settings


def extra_rally_fields(config: MappingConfiguration) -> list[str]:
    """Mapped Rally fields that are not part of the standard fetch."""
    names: list[str] = []
    for type_mapping in config.work_item_type_mappings:
        for rule in type_mapping.field_mappings:
            if rule.rally_field_name not in SOURCE_FIELDS and rule.rally_field_name not in names:
                names.append(rule.rally_field_name)
    return names


def log_progress(event: ProgressEvent) -> None:
    progress = event.progress
    prefix = f"[{progress.processed}/{progress.total}] " if progress.phase == "creating" else ""
    logger.log(event.level, f"{prefix}{event.message}")


def print_summary(progress: MigrationProgress) -> None:
    print(f"Phase:      {progress.phase}")
    print(f"Processed:  {progress.processed}/{progress.total} ({progress.percentage}%)")
    print(f"Created:    {progress.succeeded}")
    print(f"Existing:   {progress.skipped}")
    print(f"Failed:     {progress.failed}")
    print(f"Elapsed:    {progress.elapsed:.1f}s")
    for key, value in progress.link_stats.items():
        print(f"{key}: {value}")
    for result in progress.failures():
        print(f"FAILED {result.formatted_id or result.source_id}: {result.error}")


def _install_cancel_handler(migrator: Migrator) -> None:
    def handle_sigint(_signum: int, _frame: FrameType | None) -> None:
        logger.warning("Interrupt received, cancelling after the current work item (press Ctrl-C again to abort)")
        migrator.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handle_sigint)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        settings = build_settings(args)
        logger.info(
            f"Rally workspace {settings.rally_workspace} -> ADO project {settings.ado_project} "
            f"(Rally key {mask_secret(settings.rally_api_key)}, ADO PAT {mask_secret(settings.ado_pat)})"
        )

        mapping_path: str | None = getattr(args, "mapping", None)
        if mapping_path:
            config = MappingConfiguration.load(mapping_path)
            if not config.default_ado_project:
                config.default_ado_project = settings.ado_project
        else:
            config = MappingConfiguration.default(settings.ado_project)

        source = RallySource(
            settings.rally_server_url,
            settings.rally_workspace,
            settings.rally_api_key or "",
            settings.rally_project,
            refresh_task_state=settings.refresh_task_state,
            extra_fields=extra_rally_fields(config),
        )
        target = AdoTarget(
            settings.ado_server_url, settings.ado_organization, settings.ado_project, settings.ado_pat or ""
        )
        migrator = Migrator(
            source,
            target,
            FieldMapper(config),
            sync_existing=settings.sync_existing,
            strict_hierarchy=settings.strict_hierarchy,
        )
        migrator.add_listener(log_progress)
        _install_cancel_handler(migrator)

        # Execute migration
        ids: list[str] = args.ids
        progress = migrator.migrate_project() if args.all else migrator.migrate_items(ids)

        print_summary(progress)

        if progress.completed and progress.failed == 0:
            sys.exit(0)
        else:
            sys.exit(1)

    except Exception:
        logger.exception("Migration failed")
        sys.exit(1)
