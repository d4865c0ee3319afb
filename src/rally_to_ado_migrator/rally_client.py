"""Rally WSAPI v2.0 client.

Implements the SourceSystem protocol. Items are read with an explicit fetch
list and paged with `start`/`pagesize`; child, task and test case collections
come back as `_ref` stubs and are followed separately.

Rally occasionally returns a stale Task `State` when other state fields are
fetched in the same query. With `refresh_task_state` enabled, every Task is
re-read through the direct-read endpoint with a minimal fetch and its state is
corrected before the item leaves this client.
"""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import requests

from .exceptions import RallyApiError
from .models import Attachment, Comment, SourceItem, TestStep
from .utils import create_session

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .models import ItemType

logger: logging.Logger = logging.getLogger(__name__)

WSAPI_PATH: Final[str] = "slm/webservice/v2.0"
PAGE_SIZE: Final[int] = 200

TYPE_PATHS: Final[dict[ItemType, str]] = {
    "Story": "hierarchicalrequirement",
    "Defect": "defect",
    "Task": "task",
    "TestCase": "testcase",
    "Feature": "portfolioitem/feature",
    "Epic": "portfolioitem/epic",
}

ITEM_FETCH: Final[tuple[str, ...]] = (
    "ObjectID",
    "FormattedID",
    "Name",
    "Description",
    "Notes",
    "State",
    "ScheduleState",
    "Owner",
    "SubmittedBy",
    "CreatedBy",
    "LastUpdateBy",
    "Project",
    "Iteration",
    "Release",
    "Priority",
    "Severity",
    "PlanEstimate",
    "Estimate",
    "ToDo",
    "Actuals",
    "Blocked",
    "Ready",
    "CreationDate",
    "LastUpdateDate",
    "Tags",
    "Parent",
    "WorkProduct",
    "PortfolioItem",
    "Children",
    "Tasks",
    "TestCases",
    "AcceptanceCriteria",
    "PreConditions",
    "Objective",
    "ValidationInput",
    "ValidationExpectedResult",
    "Method",
    "Type",
)

# Rally metadata keys and parsed fields that are not copied into custom_fields
_NON_CUSTOM_KEYS: Final[frozenset[str]] = frozenset(
    {
        *ITEM_FETCH,
        "_ref",
        "_refObjectName",
        "_refObjectUUID",
        "_objectVersion",
        "_rallyAPIMajor",
        "_rallyAPIMinor",
        "_type",
        "_CreatedAt",
        "Workspace",
        "Subscription",
    }
)

_SCHEDULE_STATE_TYPES: Final[frozenset[str]] = frozenset({"Story", "Defect"})


def _ref_name(value: Any) -> str | None:
    """Display name of a Rally reference object, or the value itself."""
    if value is None:
        return None
    if isinstance(value, dict):
        name = value.get("_refObjectName") or value.get("Name")
        return str(name) if name else None
    text = str(value).strip()
    return text or None


def _ref_object_id(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    object_id = value.get("ObjectID")
    if object_id is not None:
        return str(object_id)
    ref = str(value.get("_ref") or "").rstrip("/")
    tail = ref.rsplit("/", 1)[-1]
    return tail if tail.isdigit() else None


def _user(value: Any) -> str | None:
    """Email of a Rally user reference, falling back to its display name."""
    if not isinstance(value, dict):
        return _ref_name(value)
    for key in ("EmailAddress", "Email"):
        if value.get(key):
            return str(value[key])
    return str(value.get("DisplayName") or value.get("_refObjectName") or "") or None


def _float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric value '{value}'")
        return None


def _bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparseable Rally date '{value}'")
        return None


def _tags(value: Any) -> list[str]:
    if not isinstance(value, dict):
        return []
    return [str(t["Name"]) for t in value.get("_tagsNameArray") or [] if t.get("Name")]


def _state(data: dict[str, Any], item_type: str) -> str | None:
    if item_type in _SCHEDULE_STATE_TYPES and data.get("ScheduleState"):
        return _ref_name(data["ScheduleState"])
    return _ref_name(data.get("State"))


def _collection(value: Any) -> tuple[str | None, int]:
    """(_ref, Count) of a collection stub."""
    if not isinstance(value, dict):
        return None, 0
    return value.get("_ref"), int(value.get("Count") or 0)


class RallySource:
    """Rally workspace (optionally narrowed to one project) as a migration source."""

    _session: requests.Session
    _base_url: str
    _workspace: str
    _project: str | None
    _refresh_task_state: bool
    _page_size: int
    _fetch: str
    _timeout: float
    _email_cache: dict[str, str | None]

    def __init__(
        self,
        server_url: str,
        workspace: str,
        api_key: str,
        project: str | None = None,
        *,
        session: requests.Session | None = None,
        refresh_task_state: bool = True,
        page_size: int = PAGE_SIZE,
        extra_fields: Iterable[str] = (),
        timeout: float = 60.0,
    ) -> None:
        self._base_url = f"{server_url.rstrip('/')}/{WSAPI_PATH}"
        self._workspace = workspace
        self._project = project or None
        self._session = session or create_session(headers={"ZSESSIONID": api_key})
        self._refresh_task_state = refresh_task_state
        self._page_size = page_size
        # Custom (c_*) fields are only returned when fetched explicitly
        self._fetch = ",".join(dict.fromkeys([*ITEM_FETCH, *extra_fields]))
        self._timeout = timeout
        self._email_cache = {}

    def _scope(self) -> dict[str, str]:
        params = {"workspace": f"/workspace/{self._workspace}"}
        if self._project:
            params["project"] = f"/project/{self._project}"
        return params

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._session.get(url, params=params, timeout=self._timeout)
        except requests.RequestException as e:
            msg = f"Rally request {url} failed: {e}"
            raise RallyApiError(msg) from e
        if not response.ok:
            msg = f"Rally request {url} failed: HTTP {response.status_code}"
            raise RallyApiError(msg, status_code=response.status_code, body=response.text)
        try:
            data = response.json()
        except ValueError as e:
            msg = f"Rally returned invalid JSON for {url}"
            raise RallyApiError(msg, status_code=response.status_code, body=response.text) from e
        errors = (data.get("QueryResult") or {}).get("Errors") or []
        if errors:
            msg = f"Rally query {url} failed: {'; '.join(str(e) for e in errors)}"
            raise RallyApiError(msg, status_code=response.status_code, body=response.text)
        return data

    def _query(self, url: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """All results of a query, following pages until TotalResultCount."""
        results: list[dict[str, Any]] = []
        start = 1
        while True:
            page = self._get_json(url, {**params, "start": start, "pagesize": self._page_size})["QueryResult"]
            batch = page.get("Results") or []
            results.extend(batch)
            total = int(page.get("TotalResultCount") or 0)
            if not batch or len(results) >= total:
                return results
            start += len(batch)

    def _type_url(self, item_type: ItemType) -> str:
        return f"{self._base_url}/{TYPE_PATHS[item_type]}"

    def _collection_ids(self, value: Any) -> list[str]:
        ref, count = _collection(value)
        if not ref or count == 0:
            return []
        ids: list[str] = []
        for entry in self._query(ref, {"fetch": "ObjectID,FormattedID"}):
            object_id = _ref_object_id(entry)
            if object_id:
                ids.append(object_id)
        return ids

    def _parse(self, data: dict[str, Any], item_type: ItemType) -> SourceItem:
        parent_id = None
        for key in ("WorkProduct", "Parent", "PortfolioItem"):
            parent_id = _ref_object_id(data.get(key))
            if parent_id:
                break

        child_ids = self._collection_ids(data.get("Children")) + self._collection_ids(data.get("Tasks"))
        test_case_ids = self._collection_ids(data.get("TestCases")) if item_type in ("Story", "Defect") else []

        owner = data.get("Owner")
        custom_fields = {
            key: value
            for key, value in data.items()
            if key not in _NON_CUSTOM_KEYS and value not in (None, "") and not isinstance(value, (dict, list))
        }
        for key in ("AcceptanceCriteria", "PreConditions", "Objective", "ValidationInput", "ValidationExpectedResult"):
            if data.get(key):
                custom_fields[key] = data[key]
        for key in ("Method", "Type"):
            if item_type == "TestCase" and data.get(key):
                custom_fields[key] = _ref_name(data[key])

        return SourceItem(
            id=str(data["ObjectID"]),
            formatted_id=str(data.get("FormattedID") or ""),
            type=item_type,
            name=str(data.get("Name") or ""),
            state=_state(data, item_type),
            parent_id=parent_id,
            child_ids=child_ids,
            test_case_ids=test_case_ids,
            description=data.get("Description") or None,
            notes=data.get("Notes") or None,
            owner=_user(owner),
            owner_ref=owner.get("_ref") if isinstance(owner, dict) else None,
            submitted_by=_user(data.get("SubmittedBy")),
            created_by=_user(data.get("CreatedBy")),
            last_updated_by=_user(data.get("LastUpdateBy")),
            project=_ref_name(data.get("Project")),
            iteration=_ref_name(data.get("Iteration")),
            release=_ref_name(data.get("Release")),
            priority=_ref_name(data.get("Priority")),
            severity=_ref_name(data.get("Severity")),
            plan_estimate=_float(data.get("PlanEstimate")),
            estimate=_float(data.get("Estimate")),
            to_do=_float(data.get("ToDo")),
            actuals=_float(data.get("Actuals")),
            blocked=_bool(data.get("Blocked")),
            ready=_bool(data.get("Ready")),
            creation_date=parse_datetime(data.get("CreationDate")),
            last_update_date=parse_datetime(data.get("LastUpdateDate")),
            tags=_tags(data.get("Tags")),
            custom_fields=custom_fields,
        )

    def _refresh_state(self, item: SourceItem) -> None:
        if not self._refresh_task_state or item.type != "Task":
            return
        data = self._get_json(f"{self._type_url('Task')}/{item.id}", {"fetch": "ObjectID,State"})
        # Direct reads wrap the object in a single key named after its type
        fresh = next((v for v in data.values() if isinstance(v, dict)), {})
        state = _ref_name(fresh.get("State"))
        if state and state != item.state:
            logger.info(f"{item.label}: corrected stale State '{item.state}' to '{state}'")
            item.state = state

    def fetch_item(self, item_type: ItemType, item_id: str) -> SourceItem | None:
        item_id = item_id.strip()
        query = f"(ObjectID = {item_id})" if item_id.isdigit() else f'(FormattedID = "{item_id}")'
        params = {**self._scope(), "query": query, "fetch": self._fetch}
        results = self._query(self._type_url(item_type), params)
        if not results:
            return None
        item = self._parse(results[0], item_type)
        self._refresh_state(item)
        return item

    def fetch_items_by_type(self, item_type: ItemType) -> list[SourceItem]:
        params = {**self._scope(), "fetch": self._fetch, "order": "ObjectID"}
        items = [self._parse(data, item_type) for data in self._query(self._type_url(item_type), params)]
        for item in items:
            self._refresh_state(item)
        logger.info(f"Fetched {len(items)} {item_type} items from Rally")
        return items

    def _download(self, content_ref: str) -> bytes:
        data = self._get_json(content_ref)
        encoded = (data.get("AttachmentContent") or {}).get("Content") or ""
        try:
            return base64.b64decode(encoded)
        except binascii.Error as e:
            msg = f"Attachment content at {content_ref} is not valid base64"
            raise RallyApiError(msg) from e

    def fetch_attachments(self, item: SourceItem) -> list[Attachment]:
        params = {
            "workspace": f"/workspace/{self._workspace}",
            "query": f"(Artifact.ObjectID = {item.id})",
            "fetch": "ObjectID,Name,Description,ContentType,Size,Content,CreationDate",
        }
        attachments: list[Attachment] = []
        for data in self._query(f"{self._base_url}/attachment", params):
            content_ref = (data.get("Content") or {}).get("_ref")
            content = self._download(content_ref) if content_ref else b""
            attachments.append(
                Attachment(
                    source_id=str(data.get("ObjectID") or ""),
                    filename=str(data.get("Name") or f"attachment-{data.get('ObjectID')}"),
                    content=content,
                    content_type=str(data.get("ContentType") or "application/octet-stream"),
                    description=str(data.get("Description") or ""),
                    size=int(data.get("Size") or len(content)),
                )
            )
        return attachments

    def fetch_comments(self, item: SourceItem) -> list[Comment]:
        params = {
            "workspace": f"/workspace/{self._workspace}",
            "query": f"(Artifact.ObjectID = {item.id})",
            "fetch": "Text,User,CreationDate",
        }
        return [
            Comment(
                text=str(data.get("Text") or ""),
                created_at=parse_datetime(data.get("CreationDate")),
                author=_user(data.get("User")) or "",
            )
            for data in self._query(f"{self._base_url}/conversationpost", params)
        ]

    def fetch_owner_email(self, ref: str) -> str | None:
        if ref in self._email_cache:
            return self._email_cache[ref]
        data = self._get_json(ref, {"fetch": "EmailAddress,DisplayName,UserName"})
        user = data.get("User") or next((v for v in data.values() if isinstance(v, dict)), {})
        email = user.get("EmailAddress") or None
        self._email_cache[ref] = email
        return email

    def fetch_test_steps(self, item: SourceItem) -> list[TestStep]:
        params = {
            "workspace": f"/workspace/{self._workspace}",
            "query": f"(TestCase.ObjectID = {item.id})",
            "fetch": "StepIndex,Input,ExpectedResult",
        }
        steps = [
            TestStep(
                index=int(data.get("StepIndex") or 0),
                input=str(data.get("Input") or ""),
                expected_result=str(data.get("ExpectedResult") or ""),
            )
            for data in self._query(f"{self._base_url}/testcasestep", params)
        ]
        return sorted(steps, key=lambda s: s.index)
