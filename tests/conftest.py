"""
Pytest configuration and fixtures.

- Integration tests (the Migrator driving in-memory Rally and ADO fakes)
  fail on any logger warning from the code under test
- Unit tests may log warnings; several assert on them through caplog
- Shared factories for source items and fake systems
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

import pytest
from fakes import FakeSource, FakeTarget, build_item

from rally_to_ado_migrator.config import MappingConfiguration
from rally_to_ado_migrator.field_mapping import FieldMapper
from rally_to_ado_migrator.models import SourceItem

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

# Warning records captured per integration test
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Collects WARNING and above records emitted during one integration test."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Fail integration tests that make the migration code log a warning.

    A warning from the engine means a degraded path was taken (a rejected
    write, a skipped link, an unmapped value). A happy-path scenario must not
    take any; scenarios that exercise a degraded path are unit tests.
    """
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """Turn a passed integration test into a failure if warnings were captured."""
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        _integration_test_warnings.pop(test_nodeid, None)


@pytest.fixture
def make_item() -> Callable[..., SourceItem]:
    return build_item


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def fake_target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def mapping_config() -> MappingConfiguration:
    return MappingConfiguration.default("Contoso")


@pytest.fixture
def mapper(mapping_config: MappingConfiguration) -> FieldMapper:
    return FieldMapper(mapping_config)
