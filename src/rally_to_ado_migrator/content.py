"""Build ADO comment text from Rally discussion posts."""

from __future__ import annotations

import datetime as dt
import html
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Comment

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def format_timestamp(timestamp: dt.datetime | None) -> str:
    """Format a timestamp to human-readable form.

    Args:
        timestamp: Timestamp to format; naive values are taken as UTC

    Returns:
        Formatted timestamp (e.g., "2024-01-15 10:30:45Z"), or "" for None.
    """
    if timestamp is None:
        return ""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=dt.UTC)
    formatted = timestamp.astimezone(dt.UTC).isoformat(sep=" ", timespec="seconds")
    return formatted.replace("+00:00", "Z")


def build_comment_html(comment: Comment) -> str:
    """Build the ADO comment body with an attribution line.

    Args:
        comment: Rally discussion post

    Returns:
        HTML comment text; the post's own markup is kept as is
    """
    attribution = "Migrated from Rally"
    if comment.author:
        attribution += f" | <b>{html.escape(comment.author)}</b>"
    if comment.created_at is not None:
        attribution += f" | {format_timestamp(comment.created_at)}"
    return f"<p><i>{attribution}</i></p>{comment.text}"


def normalize_comment_text(text: str | None) -> str:
    """Reduce comment HTML to comparable text: tags stripped, whitespace collapsed, lower-cased."""
    if not text:
        return ""
    stripped = html.unescape(_TAG_RE.sub(" ", text))
    return _WS_RE.sub(" ", stripped).strip().lower()


def comment_already_present(comment: Comment, existing: list[str]) -> bool:
    """Whether a comment was migrated before.

    A match is either the bare post text or the attributed body built by
    build_comment_html.
    """
    existing_normalized = {normalize_comment_text(t) for t in existing}
    candidates = (normalize_comment_text(comment.text), normalize_comment_text(build_comment_html(comment)))
    return any(c and c in existing_normalized for c in candidates)
