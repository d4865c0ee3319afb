"""
Tests for the Migrator driving in-memory Rally and ADO systems.

Integration-marked tests are happy paths and fail on any logged warning.
"""

import logging
import threading
from datetime import UTC, datetime

import pytest
from fakes import FakeSource, FakeTarget, build_item

from rally_to_ado_migrator.exceptions import HierarchyCycleError
from rally_to_ado_migrator.field_mapping import STEPS_FIELD, FieldMapper, split_tags
from rally_to_ado_migrator.models import Attachment, Comment, ProgressEvent, TestStep
from rally_to_ado_migrator.orchestrator import ALL_TYPES, Migrator, guess_item_types
from rally_to_ado_migrator.relationships import ATTACHMENT_RELATION, PARENT_RELATION, TESTED_BY_RELATION


def _hierarchy() -> FakeSource:
    return FakeSource(
        [
            build_item("3", "US1", "Story", parent_id="2"),
            build_item("1", "E1", "Epic", child_ids=["2"]),
            build_item("2", "F1", "Feature", parent_id="1", child_ids=["3"]),
        ]
    )


@pytest.mark.unit
class TestGuessItemTypes:
    def test_prefix_decides_first_guess(self) -> None:
        assert guess_item_types("US12")[0] == "Story"
        assert guess_item_types("de3")[0] == "Defect"
        assert guess_item_types("TC9")[0] == "TestCase"
        assert guess_item_types("F7")[0] == "Feature"

    def test_every_type_is_tried(self) -> None:
        assert sorted(guess_item_types("TA1")) == sorted(ALL_TYPES)

    def test_object_id_tries_all_types_in_hierarchy_order(self) -> None:
        assert guess_item_types("123456") == list(ALL_TYPES)
        assert ALL_TYPES[0] == "Epic"


@pytest.mark.integration
class TestHappyPath:
    def setup_method(self) -> None:
        self.source = _hierarchy()
        self.target = FakeTarget()

    def _migrator(self, mapper: FieldMapper, **kwargs) -> Migrator:
        return Migrator(self.source, self.target, mapper, **kwargs)

    def test_hierarchy_is_created_parent_first_and_linked(self, mapper: FieldMapper) -> None:
        progress = self._migrator(mapper).migrate_items(["US1"])

        assert [f["System.Title"] for f in self.target.created] == ["[E1] Item E1", "[F1] Item F1", "[US1] Item US1"]
        assert [f["System.WorkItemType"] for f in self.target.created] == ["Epic", "Feature", "User Story"]
        assert progress.id_map == {"1": 100, "2": 101, "3": 102}
        assert progress.completed
        assert (progress.succeeded, progress.failed, progress.skipped) == (3, 0, 0)
        assert progress.link_stats["Parent-Child Links"] == 2
        assert progress.link_stats["Test Case Links"] == 0
        assert progress.link_stats["Skipped (No Parent)"] == 1
        assert self.target.link_calls == [(100, 101, "parent"), (101, 102, "parent")]

    def test_second_run_creates_nothing(self, mapper: FieldMapper) -> None:
        first = self._migrator(mapper).migrate_items(["US1"])
        created = len(self.target.created)
        patches = len(self.target.patches)

        second = self._migrator(mapper).migrate_items(["US1"])

        assert len(self.target.created) == created
        assert len(self.target.patches) == patches
        assert second.id_map == first.id_map
        assert (second.succeeded, second.skipped, second.failed) == (0, 3, 0)
        assert second.link_stats["Parent-Child Links"] == 2
        assert len(self.target.link_calls) == 2
        assert self.target.relation_count(PARENT_RELATION) == 2

    def test_changed_title_is_patched_alone(self, mapper: FieldMapper) -> None:
        self._migrator(mapper).migrate_items(["US1"])
        self.source.items["3"].name = "Renamed"
        self.target.patches.clear()

        progress = self._migrator(mapper).migrate_items(["US1"])

        assert self.target.patches == [(102, {"System.Title": "[US1] Renamed"}, False)]
        result = next(r for r in progress.results if r.formatted_id == "US1")
        assert result.skipped
        assert result.patched_fields == ["System.Title"]

    def test_no_sync_leaves_existing_items_alone(self, mapper: FieldMapper) -> None:
        self._migrator(mapper).migrate_items(["US1"])
        self.source.items["3"].name = "Renamed"
        self.target.patches.clear()

        self._migrator(mapper, sync_existing=False).migrate_items(["US1"])

        assert self.target.patches == []
        assert self.target.work_items[102]["System.Title"] == "[US1] Item US1"

    def test_state_and_audit_fields_are_written_after_creation(self, mapper: FieldMapper) -> None:
        created = datetime(2023, 5, 1, 12, 0, tzinfo=UTC)
        self.source = FakeSource([build_item("3", "US1", "Story", state="Accepted", creation_date=created)])

        self._migrator(mapper).migrate_items(["US1"])

        assert "System.State" not in self.target.created[0]
        assert self.target.patches == [
            (100, {"System.State": "Closed", "System.CreatedDate": "2023-05-01T12:00:00.000Z"}, True)
        ]
        assert self.target.work_items[100]["System.State"] == "Closed"

    def test_task_reaches_closed_through_active(self, mapper: FieldMapper) -> None:
        self.source = FakeSource([build_item("7", "TA1", "Task", state="Completed")])

        self._migrator(mapper).migrate_items(["TA1"])

        assert [p[1] for p in self.target.patches] == [{"System.State": "Active"}, {"System.State": "Closed"}]
        assert self.target.work_items[100]["System.State"] == "Closed"

    def test_test_cases_get_steps_and_links(self, mapper: FieldMapper) -> None:
        self.source = FakeSource(
            [build_item("1", "US1", "Story", test_case_ids=["5"]), build_item("5", "TC1", "TestCase")]
        )
        self.source.steps["5"] = [TestStep(index=1, input="Open the page", expected_result="Page shown")]

        progress = self._migrator(mapper).migrate_items(["US1"])

        assert progress.id_map == {"1": 100, "5": 101}
        assert self.target.work_items[101]["System.State"] == "Ready"
        assert self.target.work_items[101][STEPS_FIELD].startswith('<steps id="0" last="1">')
        assert progress.link_stats["Test Case Links"] == 1
        assert self.target.link_calls == [(100, 101, "tests")]

        again = self._migrator(mapper).migrate_items(["US1"])

        assert again.link_stats["Test Case Links"] == 1
        assert self.target.relation_count(TESTED_BY_RELATION) == 1
        assert len(self.target.link_calls) == 1
        assert not any(STEPS_FIELD in fields for _, fields, _ in self.target.patches[2:])

    def test_attachments_and_comments_are_not_duplicated(self, mapper: FieldMapper) -> None:
        self.source = FakeSource([build_item("1", "US1", "Story")])
        self.source.attachments["1"] = [Attachment(source_id="a1", filename="log.txt", content=b"boom")]
        first_comment = Comment(text="<p>First</p>", author="amy", created_at=datetime(2024, 1, 1, tzinfo=UTC))
        self.source.comments["1"] = [first_comment]

        self._migrator(mapper).migrate_items(["US1"])
        self.source.attachments["1"].append(Attachment(source_id="a2", filename="trace.txt", content=b"stack"))
        self.source.comments["1"].append(
            Comment(text="Second", author="bob", created_at=datetime(2024, 1, 2, tzinfo=UTC))
        )
        self._migrator(mapper).migrate_items(["US1"])

        assert self.target.relation_count(ATTACHMENT_RELATION) == 2
        assert len(self.target.comments[100]) == 2
        assert self.target.comments[100][0].startswith("<p><i>Migrated from Rally | <b>amy</b>")
        assert self.target.comments[100][1].endswith("Second")

    def test_tags_added_in_ado_survive_a_resync(self, mapper: FieldMapper) -> None:
        self._migrator(mapper).migrate_items(["US1"])
        self.target.work_items[102]["System.Tags"] += "; Reviewed-By-QA"
        self.target.patches.clear()

        self._migrator(mapper).migrate_items(["US1"])

        assert self.target.patches == []

        self.source.items["3"].owner = "amy@contoso.com"
        self._migrator(mapper).migrate_items(["US1"])

        tags = split_tags(self.target.work_items[102]["System.Tags"])
        assert "Reviewed-By-QA" in tags
        assert "RallyUser-amy" in tags
        assert "Rally-US1" in tags

    def test_items_are_enriched_one_at_a_time(self, mapper: FieldMapper) -> None:
        for item_id in ("1", "2", "3"):
            self.source.attachments[item_id] = [
                Attachment(source_id=f"a{item_id}", filename=f"{item_id}.txt", content=b"data")
            ]
        enriched_when_processed: list[int] = []

        def listener(event: ProgressEvent) -> None:
            if "created work item" in event.message:
                enriched_when_processed.append(len(self.source.enriched))

        migrator = self._migrator(mapper)
        migrator.add_listener(listener)

        migrator.migrate_items(["US1"])

        assert enriched_when_processed == [1, 2, 3]
        assert self.target.relation_count(ATTACHMENT_RELATION) == 3
        assert all(item.attachments == [] for item in self.source.enriched)

    def test_owner_email_is_resolved(self, mapper: FieldMapper) -> None:
        self.source = FakeSource([build_item("1", "US1", "Story", owner="Jane Doe", owner_ref="/user/9")])
        self.source.emails["/user/9"] = "jane.doe@contoso.com"

        self._migrator(mapper).migrate_items(["US1"])

        assert self.target.created[0]["System.AssignedTo"] == "jane.doe@contoso.com"

    def test_migrate_project_takes_every_type(self, mapper: FieldMapper) -> None:
        progress = self._migrator(mapper).migrate_project()

        assert progress.total == 3
        assert progress.link_stats["Parent-Child Links"] == 2

    def test_progress_events_follow_the_phases(self, mapper: FieldMapper) -> None:
        phases: list[str] = []
        migrator = self._migrator(mapper)
        migrator.add_listener(lambda e: phases.append(e.progress.phase))

        migrator.migrate_items(["E1"])

        assert list(dict.fromkeys(phases)) == ["collecting", "creating", "linking", "completed"]


@pytest.mark.unit
class TestDegradedPaths:
    def setup_method(self) -> None:
        self.target = FakeTarget()

    def test_rejected_terminal_state_does_not_fail_the_item(
        self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture
    ) -> None:
        source = FakeSource([build_item("7", "TA1", "Task", state="Completed")])
        self.target.rejected_states = {"Closed"}

        with caplog.at_level(logging.WARNING):
            progress = Migrator(source, self.target, mapper).migrate_items(["TA1"])

        assert (progress.succeeded, progress.failed) == (1, 0)
        assert self.target.work_items[100]["System.State"] == "Active"
        assert "state is 'Active' but 'Closed' was requested" in caplog.text

    def test_state_write_error_keeps_attachments_and_comments(
        self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture
    ) -> None:
        source = FakeSource([build_item("1", "US1", "Story", state="Accepted")])
        source.attachments["1"] = [Attachment(source_id="a1", filename="log.txt", content=b"boom")]
        source.comments["1"] = [Comment(text="Looks good", author="amy")]
        self.target.erroring_states = {"Closed"}

        with caplog.at_level(logging.WARNING):
            progress = Migrator(source, self.target, mapper).migrate_items(["US1"])

        assert (progress.succeeded, progress.failed) == (1, 0)
        assert self.target.work_items[100]["System.State"] == "New"
        assert self.target.relation_count(ATTACHMENT_RELATION) == 1
        assert len(self.target.comments[100]) == 1
        assert "failed: ADO request PATCH workitems/100 failed" in caplog.text

    def test_create_failure_is_counted_and_run_continues(self, mapper: FieldMapper) -> None:
        source = FakeSource([build_item("1", "US1", "Story"), build_item("2", "US2", "Story")])
        self.target.fail_create_titles = {"[US2] Item US2"}

        progress = Migrator(source, self.target, mapper).migrate_items(["US1", "US2"])

        assert progress.completed
        assert (progress.succeeded, progress.failed, progress.processed) == (1, 1, 2)
        failure = progress.failures()[0]
        assert failure.formatted_id == "US2"
        assert "Failed to create" in failure.error
        assert "2" not in progress.id_map

    def test_parent_outside_scope_is_skipped(self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture) -> None:
        source = FakeSource([build_item("1", "US1", "Story", parent_id="999")])

        with caplog.at_level(logging.WARNING):
            progress = Migrator(source, self.target, mapper).migrate_items(["US1"])

        assert progress.link_stats["Skipped (Parent Not Migrated)"] == 1
        assert "Rally item 999 not found" in caplog.text
        assert self.target.link_calls == []

    def test_unknown_id_is_a_warning(self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            progress = Migrator(FakeSource(), self.target, mapper).migrate_items(["US404"])

        assert progress.completed
        assert progress.total == 0
        assert "Rally item US404 not found" in caplog.text

    def test_failing_type_query_is_skipped(self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture) -> None:
        source = FakeSource([build_item("1", "E1", "Epic"), build_item("2", "TA1", "Task")])
        source.failing_types = {"Task"}

        with caplog.at_level(logging.WARNING):
            progress = Migrator(source, self.target, mapper).migrate_project()

        assert progress.id_map == {"1": 100}
        assert "Could not fetch Task items" in caplog.text

    def test_strict_hierarchy_rejects_cycles_before_writing(self, mapper: FieldMapper) -> None:
        source = FakeSource(
            [build_item("1", "US1", "Story", parent_id="2"), build_item("2", "US2", "Story", parent_id="1")]
        )

        with pytest.raises(HierarchyCycleError):
            Migrator(source, self.target, mapper, strict_hierarchy=True).migrate_project()
        assert self.target.created == []

    def test_empty_attachment_is_skipped(self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture) -> None:
        source = FakeSource([build_item("1", "US1", "Story")])
        source.attachments["1"] = [Attachment(source_id="a1", filename="empty.txt", content=b"")]

        with caplog.at_level(logging.WARNING):
            Migrator(source, self.target, mapper).migrate_items(["US1"])

        assert self.target.relation_count(ATTACHMENT_RELATION) == 0
        assert "skipping empty attachment empty.txt" in caplog.text

    def test_listener_errors_do_not_stop_the_run(self, mapper: FieldMapper, caplog: pytest.LogCaptureFixture) -> None:
        def broken(event: ProgressEvent) -> None:
            raise RuntimeError("listener bug")

        migrator = Migrator(_hierarchy(), self.target, mapper)
        migrator.add_listener(broken)

        with caplog.at_level(logging.ERROR):
            progress = migrator.migrate_items(["US1"])

        assert progress.completed
        assert "Progress listener failed" in caplog.text


@pytest.mark.unit
class TestPauseAndCancel:
    def setup_method(self) -> None:
        self.target = FakeTarget()

    def test_cancel_stops_between_entities(self, mapper: FieldMapper) -> None:
        migrator = Migrator(_hierarchy(), self.target, mapper)

        def cancel_after_first(event: ProgressEvent) -> None:
            if event.progress.processed == 1:
                migrator.cancel()

        migrator.add_listener(cancel_after_first)
        progress = migrator.migrate_items(["US1"])

        assert progress.cancelled
        assert progress.phase == "cancelled"
        assert not progress.completed
        assert progress.processed == 1
        assert len(self.target.created) == 1
        assert self.target.link_calls == []
        assert migrator.is_cancelled

    def test_cancel_while_paused(self, mapper: FieldMapper) -> None:
        migrator = Migrator(_hierarchy(), self.target, mapper)
        messages: list[str] = []

        def listener(event: ProgressEvent) -> None:
            messages.append(event.message)
            if event.progress.processed == 1 and not migrator.is_paused and not migrator.is_cancelled:
                migrator.pause()
            elif event.message == "Migration paused":
                migrator.cancel()

        migrator.add_listener(listener)
        progress = migrator.migrate_items(["US1"])

        assert progress.cancelled
        assert not progress.paused
        assert "Migration paused" in messages
        assert "Migration resumed" not in messages
        assert len(self.target.created) == 1

    def test_resume_continues_the_run(self, mapper: FieldMapper) -> None:
        migrator = Migrator(_hierarchy(), self.target, mapper)
        messages: list[str] = []
        paused_once = threading.Event()

        def listener(event: ProgressEvent) -> None:
            messages.append(event.message)
            if event.progress.processed == 1 and not paused_once.is_set():
                paused_once.set()
                migrator.pause()
                threading.Timer(0.05, migrator.resume).start()

        migrator.add_listener(listener)
        progress = migrator.migrate_items(["US1"])

        assert progress.completed
        assert len(self.target.created) == 3
        assert messages.index("Migration paused") < messages.index("Migration resumed")
        assert not migrator.is_paused
