"""
Tests for comment content building.
"""

import datetime as dt

import pytest

from rally_to_ado_migrator.content import (
    build_comment_html,
    comment_already_present,
    format_timestamp,
    normalize_comment_text,
)
from rally_to_ado_migrator.models import Comment


@pytest.mark.unit
class TestFormatTimestamp:
    def test_utc(self) -> None:
        assert format_timestamp(dt.datetime(2024, 1, 15, 10, 30, 45, tzinfo=dt.UTC)) == "2024-01-15 10:30:45Z"

    def test_other_offset_is_converted(self) -> None:
        stamp = dt.datetime(2024, 1, 15, 12, 30, 45, tzinfo=dt.timezone(dt.timedelta(hours=2)))
        assert format_timestamp(stamp) == "2024-01-15 10:30:45Z"

    def test_naive_is_utc(self) -> None:
        assert format_timestamp(dt.datetime(2024, 1, 15, 10, 30, 45, 123456)) == "2024-01-15 10:30:45Z"

    def test_none(self) -> None:
        assert format_timestamp(None) == ""


@pytest.mark.unit
class TestBuildCommentHtml:
    def test_full_attribution(self) -> None:
        comment = Comment(
            text="<p>Looks good</p>",
            author="Jane <Doe>",
            created_at=dt.datetime(2024, 1, 15, 10, 30, 45, tzinfo=dt.UTC),
        )
        assert build_comment_html(comment) == (
            "<p><i>Migrated from Rally | <b>Jane &lt;Doe&gt;</b> | 2024-01-15 10:30:45Z</i></p><p>Looks good</p>"
        )

    def test_minimal_attribution(self) -> None:
        assert build_comment_html(Comment(text="hi")) == "<p><i>Migrated from Rally</i></p>hi"


@pytest.mark.unit
class TestCommentDeduplication:
    def test_normalize(self) -> None:
        assert normalize_comment_text("<p>Hello&nbsp;  <b>World</b></p>") == "hello world"
        assert normalize_comment_text(None) == ""

    def test_attributed_body_matches(self) -> None:
        comment = Comment(text="Ship it", author="amy")
        assert comment_already_present(comment, ["<div>other</div>", build_comment_html(comment)])

    def test_bare_text_matches(self) -> None:
        assert comment_already_present(Comment(text="<p>Ship   it</p>"), ["<div>ship it</div>"])

    def test_new_comment(self) -> None:
        assert not comment_already_present(Comment(text="Ship it"), ["Hold it"])
        assert not comment_already_present(Comment(text="Ship it"), [])
