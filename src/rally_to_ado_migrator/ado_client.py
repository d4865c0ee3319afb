"""Azure DevOps work item tracking client.

Implements the TargetSystem protocol on top of the ADO REST API 7.1 using a
requests session with retrying adapters. Recoverable rejections (a field the
workflow refuses, a link that already exists) are reported through return
values; transport failures surface as AdoApiError.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

import requests

from .exceptions import AdoApiError
from .relationships import ATTACHMENT_RELATION, PARENT_RELATION, TESTED_BY_RELATION
from .utils import create_session

if TYPE_CHECKING:
    from .models import Attachment, Comment, LinkKind

logger: logging.Logger = logging.getLogger(__name__)

API_VERSION: Final[str] = "7.1"
COMMENTS_API_VERSION: Final[str] = "7.1-preview.4"
JSON_PATCH: Final[str] = "application/json-patch+json"

# Fields whose whole value is replaced rather than added
_REPLACE_FIELDS: Final[frozenset[str]] = frozenset({"Microsoft.VSTS.TCM.Steps"})

_LINK_RELATIONS: Final[dict[str, str]] = {
    "parent": PARENT_RELATION,
    "tests": TESTED_BY_RELATION,
}


def build_base_url(server_url: str, organization: str | None, project: str) -> str:
    """Project-scoped API base URL.

    dev.azure.com URLs carry the organization in the path; visualstudio.com
    and on-premises collection URLs already identify it.
    """
    server = server_url.rstrip("/")
    project_part = quote(project.strip(), safe="")
    if "dev.azure.com" in server.lower() and organization:
        return f"{server}/{organization.strip()}/{project_part}"
    return f"{server}/{project_part}"


def build_patch(fields: dict[str, Any]) -> list[dict[str, Any]]:
    """JSON-patch operations setting the given fields; None values are skipped."""
    operations: list[dict[str, Any]] = []
    for name, value in fields.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            value = ";".join(str(v) for v in value)
        op = "replace" if name in _REPLACE_FIELDS else "add"
        operations.append({"op": op, "path": f"/fields/{name}", "value": value})
    return operations


def _is_identity_error(response: requests.Response) -> bool:
    text = response.text.lower()
    return "assignedto" in text or "identity" in text


class AdoTarget:
    """Azure DevOps project as a migration target."""

    _session: requests.Session
    _base_url: str
    _project: str
    _timeout: float

    def __init__(
        self,
        server_url: str,
        organization: str | None,
        project: str,
        pat: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._project = project
        self._base_url = build_base_url(server_url, organization, project)
        self._session = session or create_session(auth=("", pat))
        self._timeout = timeout

    def work_item_url(self, target_id: int) -> str:
        return f"{self._base_url}/_apis/wit/workItems/{target_id}"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            msg = f"ADO request {method} {url} failed: {e}"
            raise AdoApiError(msg) from e

    def _check(self, response: requests.Response, action: str) -> requests.Response:
        if not response.ok:
            msg = f"Failed to {action}: HTTP {response.status_code}"
            raise AdoApiError(msg, status_code=response.status_code, body=response.text)
        return response

    def _get_work_item(self, target_id: int, **params: str) -> dict[str, Any]:
        response = self._request(
            "GET", f"{self._base_url}/_apis/wit/workitems/{target_id}", params={**params, "api-version": API_VERSION}
        )
        return self._check(response, f"read work item {target_id}").json()

    def find_by_tag(self, tag: str) -> tuple[int, dict[str, Any]] | None:
        escaped_tag = tag.replace("'", "''")
        escaped_project = self._project.replace("'", "''")
        query = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.TeamProject] = '{escaped_project}' AND [System.Tags] CONTAINS '{escaped_tag}' "
            "ORDER BY [System.Id] ASC"
        )
        response = self._request(
            "POST",
            f"{self._base_url}/_apis/wit/wiql",
            params={"api-version": API_VERSION},
            json={"query": query},
        )
        work_items = self._check(response, f"search work items tagged {tag}").json().get("workItems") or []
        if not work_items:
            return None
        if len(work_items) > 1:
            ids = ", ".join(str(w["id"]) for w in work_items)
            logger.warning(f"Several work items carry tag {tag} ({ids}); using {work_items[0]['id']}")
        target_id = int(work_items[0]["id"])
        return target_id, self._get_work_item(target_id).get("fields", {})

    def create_entity(self, creation_fields: dict[str, Any]) -> int:
        fields = dict(creation_fields)
        work_item_type = str(fields.pop("System.WorkItemType", None) or "Task")
        url = f"{self._base_url}/_apis/wit/workitems/${quote(work_item_type, safe='')}"
        params = {"api-version": API_VERSION}
        headers = {"Content-Type": JSON_PATCH}

        response = self._request("POST", url, params=params, json=build_patch(fields), headers=headers)
        if not response.ok and "System.AssignedTo" in fields and _is_identity_error(response):
            logger.warning(
                f"ADO rejected assignee '{fields['System.AssignedTo']}', creating the {work_item_type} unassigned"
            )
            fields.pop("System.AssignedTo")
            response = self._request("POST", url, params=params, json=build_patch(fields), headers=headers)

        data = self._check(response, f"create {work_item_type} '{fields.get('System.Title', '')}'").json()
        target_id = int(data["id"])
        html_url = (data.get("_links") or {}).get("html", {}).get("href", "")
        logger.debug(f"Created {work_item_type} {target_id} {html_url}")
        return target_id

    def patch_fields(self, target_id: int, fields: dict[str, Any], *, elevated: bool = False) -> bool:
        operations = build_patch(fields)
        if not operations:
            return True
        params = {"api-version": API_VERSION}
        if elevated:
            params["bypassRules"] = "true"
        response = self._request(
            "PATCH",
            f"{self._base_url}/_apis/wit/workitems/{target_id}",
            params=params,
            json=operations,
            headers={"Content-Type": JSON_PATCH},
        )
        if response.ok:
            return True
        mode = "elevated " if elevated else ""
        logger.warning(
            f"ADO rejected {mode}update of work item {target_id} ({', '.join(fields)}): "
            f"HTTP {response.status_code} {response.text[:500]}"
        )
        return False

    def get_state(self, target_id: int) -> str | None:
        fields = self._get_work_item(target_id, fields="System.State").get("fields", {})
        state = fields.get("System.State")
        return str(state) if state is not None else None

    def get_entity_with_relations(self, target_id: int) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        data = self._get_work_item(target_id, **{"$expand": "relations"})
        return data.get("fields", {}), data.get("relations") or []

    def _add_relation(self, target_id: int, relation: dict[str, Any]) -> requests.Response:
        return self._request(
            "PATCH",
            f"{self._base_url}/_apis/wit/workitems/{target_id}",
            params={"api-version": API_VERSION},
            json=[{"op": "add", "path": "/relations/-", "value": relation}],
            headers={"Content-Type": JSON_PATCH},
        )

    def upload_attachment(self, target_id: int, attachment: Attachment) -> str | None:
        response = self._request(
            "POST",
            f"{self._base_url}/_apis/wit/attachments",
            params={"fileName": attachment.filename, "api-version": API_VERSION},
            data=attachment.content,
            headers={"Content-Type": "application/octet-stream"},
        )
        if not response.ok:
            logger.warning(
                f"Upload of {attachment.filename} for work item {target_id} failed: HTTP {response.status_code}"
            )
            return None
        attachment_url = response.json().get("url")
        if not attachment_url:
            logger.warning(f"ADO returned no URL for uploaded attachment {attachment.filename}")
            return None

        relation = {
            "rel": ATTACHMENT_RELATION,
            "url": attachment_url,
            "attributes": {"name": attachment.filename, "comment": attachment.description or "Migrated from Rally"},
        }
        linked = self._add_relation(target_id, relation)
        if not linked.ok:
            logger.warning(
                f"Attaching {attachment.filename} to work item {target_id} failed: HTTP {linked.status_code}"
            )
            return None
        return str(attachment_url)

    def add_comment(self, target_id: int, comment: Comment) -> bool:
        response = self._request(
            "POST",
            f"{self._base_url}/_apis/wit/workItems/{target_id}/comments",
            params={"api-version": COMMENTS_API_VERSION},
            json={"text": comment.text},
        )
        if not response.ok:
            logger.warning(f"Adding comment to work item {target_id} failed: HTTP {response.status_code}")
        return response.ok

    def get_comments(self, target_id: int) -> list[str]:
        texts: list[str] = []
        params: dict[str, str] = {"api-version": COMMENTS_API_VERSION}
        while True:
            response = self._request(
                "GET", f"{self._base_url}/_apis/wit/workItems/{target_id}/comments", params=params
            )
            data = self._check(response, f"list comments of work item {target_id}").json()
            texts.extend(str(c.get("text") or "") for c in data.get("comments", []))
            token = data.get("continuationToken")
            if not token:
                return texts
            params = {"api-version": COMMENTS_API_VERSION, "continuationToken": token}

    def link_entities(self, parent_id: int, child_id: int, kind: LinkKind) -> bool:
        rel = _LINK_RELATIONS[kind]
        if kind == "parent":
            # The child points to its parent
            source_id, related_id = child_id, parent_id
        else:
            # The story/defect is tested by the test case
            source_id, related_id = parent_id, child_id
        relation = {
            "rel": rel,
            "url": self.work_item_url(related_id),
            "attributes": {"comment": "Linked by Rally to ADO migration"},
        }
        response = self._add_relation(source_id, relation)
        if response.ok:
            return True
        error = AdoApiError(
            f"Link {rel} {source_id} -> {related_id} rejected", status_code=response.status_code, body=response.text
        )
        if error.is_already_exists:
            logger.debug(f"Link {rel} {source_id} -> {related_id} already exists")
            return True
        logger.warning(f"{error}: HTTP {response.status_code} {response.text[:500]}")
        return False
