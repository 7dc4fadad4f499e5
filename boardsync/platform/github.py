"""GitHub Projects (v2) transport built on ``requests``."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import requests

from boardsync.dispatch.rate_limit import EntityTagStore
from boardsync.domain.models import (
    BoardField,
    BoardItem,
    BoardPage,
    Item,
    ItemKind,
    ItemState,
    Iteration,
    RateLimitStatus,
)
from boardsync.errors import PlatformError
from boardsync.logging import get_logger
from boardsync.platform.base import BoardPlatform, chunked

logger = get_logger(__name__)

_GRAPHQL_ERROR_STATUS = {
    "NOT_FOUND": 404,
    "FORBIDDEN": 403,
    "RATE_LIMITED": 429,
    "UNAUTHORIZED": 401,
}

_BOARD_MEMBERS_QUERY = """
query($projectId: ID!, $cursor: String) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: 100, after: $cursor) {
        nodes {
          id
          content {
            __typename
            ... on Issue {
              id
              number
              repository { nameWithOwner }
              assignees(first: 20) { nodes { login } }
            }
            ... on PullRequest {
              id
              number
              repository { nameWithOwner }
              assignees(first: 20) { nodes { login } }
            }
          }
          fieldValues(first: 20) {
            nodes {
              __typename
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                field { ... on ProjectV2FieldCommon { id name } }
              }
              ... on ProjectV2ItemFieldIterationValue {
                iterationId
                field { ... on ProjectV2FieldCommon { id name } }
              }
            }
          }
        }
        pageInfo { hasNextPage endCursor }
      }
    }
  }
}
"""

_BOARD_FIELDS_QUERY = """
query($projectId: ID!) {
  node(id: $projectId) {
    ... on ProjectV2 {
      fields(first: 50) {
        nodes {
          __typename
          ... on ProjectV2FieldCommon { id name dataType }
          ... on ProjectV2SingleSelectField { options { id name } }
          ... on ProjectV2IterationField {
            configuration { iterations { id title startDate duration } }
          }
        }
      }
    }
  }
}
"""

_ADMIT_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemById(input: {projectId: $projectId, contentId: $contentId}) {
    item { id }
  }
}
"""

_UPDATE_FIELD_MUTATION = """
mutation($input: UpdateProjectV2ItemFieldValueInput!) {
  updateProjectV2ItemFieldValue(input: $input) {
    projectV2Item { id }
  }
}
"""

_CLOSING_REFERENCES_QUERY = """
query($id: ID!) {
  node(id: $id) {
    ... on PullRequest {
      closingIssuesReferences(first: 25) { nodes { id } }
    }
  }
}
"""

_ITEM_QUERY = """
query($id: ID!) {
  node(id: $id) {
    __typename
    ... on Issue {
      id number state updatedAt
      author { login }
      repository { nameWithOwner }
      assignees(first: 20) { nodes { login } }
    }
    ... on PullRequest {
      id number state isDraft merged updatedAt
      author { login }
      repository { nameWithOwner }
      assignees(first: 20) { nodes { login } }
    }
  }
}
"""


def _logins(connection: Optional[Mapping[str, Any]]) -> frozenset:
    nodes = (connection or {}).get("nodes") or []
    return frozenset(node["login"] for node in nodes if node and node.get("login"))


def _timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def item_from_rest(payload: Mapping[str, Any], repository: Optional[str] = None) -> Item:
    """Convert an issue (or pull request) payload from the REST API."""

    if repository is None:
        repository_url = str(payload.get("repository_url", ""))
        repository = "/".join(repository_url.rstrip("/").split("/")[-2:])
    pull_request = payload.get("pull_request")
    state = ItemState.OPEN if payload.get("state") == "open" else ItemState.CLOSED
    if pull_request and pull_request.get("merged_at"):
        state = ItemState.MERGED
    return Item(
        content_id=str(payload["node_id"]),
        number=int(payload["number"]),
        repository=repository,
        kind=ItemKind.PULL_REQUEST if pull_request else ItemKind.ISSUE,
        author=(payload.get("user") or {}).get("login"),
        assignees=frozenset(
            assignee["login"] for assignee in payload.get("assignees") or () if assignee
        ),
        state=state,
        is_draft=bool(payload.get("draft", False)),
        updated_at=_timestamp(payload.get("updated_at")),
    )


def item_from_graphql(node: Mapping[str, Any]) -> Item:
    kind = ItemKind.from_string(node["__typename"])
    state = ItemState(str(node.get("state", "OPEN")).upper())
    if node.get("merged"):
        state = ItemState.MERGED
    return Item(
        content_id=str(node["id"]),
        number=int(node["number"]),
        repository=node["repository"]["nameWithOwner"],
        kind=kind,
        author=(node.get("author") or {}).get("login"),
        assignees=_logins(node.get("assignees")),
        state=state,
        is_draft=bool(node.get("isDraft", False)),
        updated_at=_timestamp(node.get("updatedAt")),
    )


class GitHubPlatform(BoardPlatform):
    """Talks to the GitHub GraphQL and REST APIs with a bearer token."""

    DEFAULT_API_URL = "https://api.github.com"
    TIMEOUT_SECONDS = 30
    MAX_ASSIGNEES_PER_CALL = 10

    def __init__(
        self,
        token: str,
        *,
        organization: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
        etag_store: Optional[EntityTagStore] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.organization = organization
        self.status_field_id: Optional[str] = None
        self.sprint_field_id: Optional[str] = None
        self.etags = etag_store or EntityTagStore()
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------
    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self.TIMEOUT_SECONDS, **kwargs)
        except requests.RequestException as exc:
            raise PlatformError(503, f"{method} {url} failed: {exc}", code="TRANSPORT") from exc
        logger.debug("%s %s -> %s", method, url, response.status_code)
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.status_code < 400:
            return
        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise PlatformError(response.status_code, str(message))

    def _get_json(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        body, _ = self._get(f"{self.api_url}{path}", params)
        return body

    def _get(self, url: str, params: Optional[Mapping[str, Any]] = None) -> tuple:
        """GET ``url`` replaying a cached body when the server answers 304."""

        key = f"{url}?{sorted((params or {}).items())}"
        response = self._send("GET", url, params=params, headers=self.etags.headers_for(key))
        if response.status_code == 304:
            logger.debug("Replaying cached body for %s", url)
            return self.etags.cached_body(key), response
        self._raise_for_status(response)
        body = response.json()
        self.etags.remember(key, response.headers.get("ETag"), body)
        return body, response

    def _paginate(self, path: str, params: Mapping[str, Any]) -> Iterator[Any]:
        url: Optional[str] = f"{self.api_url}{path}"
        query: Optional[Mapping[str, Any]] = params
        while url:
            body, response = self._get(url, query)
            yield body
            url = response.links.get("next", {}).get("url")
            query = None

    def graphql(self, query: str, variables: Mapping[str, Any]) -> Dict[str, Any]:
        response = self._send(
            "POST", f"{self.api_url}/graphql", json={"query": query, "variables": dict(variables)}
        )
        self._raise_for_status(response)
        payload = response.json()
        errors = payload.get("errors") or []
        if errors:
            first = errors[0]
            error_type = str(first.get("type", ""))
            status = _GRAPHQL_ERROR_STATUS.get(error_type, 502)
            raise PlatformError(status, str(first.get("message", "GraphQL error")), code=error_type)
        return payload.get("data") or {}

    @staticmethod
    def _is_field(board_field: Mapping[str, Any], field_id: Optional[str], name: str) -> bool:
        if field_id:
            return board_field.get("id") == field_id
        return board_field.get("name") == name

    # ------------------------------------------------------------------
    # Capability contract
    # ------------------------------------------------------------------
    def list_board_members(self, board_id: str, cursor: Optional[str] = None) -> BoardPage:
        data = self.graphql(_BOARD_MEMBERS_QUERY, {"projectId": board_id, "cursor": cursor})
        connection = ((data.get("node") or {}).get("items")) or {}
        members: List[BoardItem] = []
        for node in connection.get("nodes") or []:
            content = node.get("content") or {}
            if not content.get("id"):
                continue
            column = None
            sprint = None
            for value in (node.get("fieldValues") or {}).get("nodes") or []:
                board_field = (value or {}).get("field") or {}
                if self._is_field(board_field, self.status_field_id, "Status") and value.get("name"):
                    column = value["name"]
                elif self._is_field(board_field, self.sprint_field_id, "Sprint") and value.get(
                    "iterationId"
                ):
                    sprint = value["iterationId"]
            members.append(
                BoardItem(
                    project_item_id=node["id"],
                    content_id=content["id"],
                    column=column,
                    sprint=sprint,
                    assignees=_logins(content.get("assignees")),
                    number=content.get("number"),
                    repository=(content.get("repository") or {}).get("nameWithOwner"),
                    kind=ItemKind.from_string(content["__typename"]),
                )
            )
        page_info = connection.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return BoardPage(items=tuple(members), next_cursor=next_cursor)

    def list_board_fields(self, board_id: str) -> List[BoardField]:
        data = self.graphql(_BOARD_FIELDS_QUERY, {"projectId": board_id})
        nodes = (((data.get("node") or {}).get("fields")) or {}).get("nodes") or []
        fields: List[BoardField] = []
        for node in nodes:
            if not node or not node.get("id"):
                continue
            iterations = tuple(
                Iteration(
                    id=raw["id"],
                    title=raw.get("title", ""),
                    start_date=date.fromisoformat(raw["startDate"]),
                    duration_days=int(raw["duration"]),
                )
                for raw in ((node.get("configuration") or {}).get("iterations") or [])
            )
            fields.append(
                BoardField(
                    id=node["id"],
                    name=node.get("name", ""),
                    data_type=node.get("dataType", ""),
                    options={option["name"]: option["id"] for option in node.get("options") or []},
                    iterations=iterations,
                )
            )
        return fields

    def admit_to_board(self, board_id: str, content_id: str) -> str:
        data = self.graphql(_ADMIT_MUTATION, {"projectId": board_id, "contentId": content_id})
        item = ((data.get("addProjectV2ItemById") or {}).get("item")) or {}
        if not item.get("id"):
            raise PlatformError(502, "addProjectV2ItemById returned no item id")
        return item["id"]

    def _update_field(
        self, board_id: str, project_item_id: str, field_id: str, value: Mapping[str, str]
    ) -> None:
        data = self.graphql(
            _UPDATE_FIELD_MUTATION,
            {
                "input": {
                    "projectId": board_id,
                    "itemId": project_item_id,
                    "fieldId": field_id,
                    "value": dict(value),
                }
            },
        )
        if not (data.get("updateProjectV2ItemFieldValue") or {}).get("projectV2Item"):
            raise PlatformError(502, f"No project item returned when updating {project_item_id}")

    def set_single_select_field(
        self, board_id: str, project_item_id: str, field_id: str, option_id: str
    ) -> None:
        self._update_field(board_id, project_item_id, field_id, {"singleSelectOptionId": option_id})

    def set_iteration_field(
        self, board_id: str, project_item_id: str, field_id: str, iteration_id: str
    ) -> None:
        self._update_field(board_id, project_item_id, field_id, {"iterationId": iteration_id})

    def add_assignees(self, repository: str, number: int, logins: Sequence[str]) -> None:
        for batch in chunked(sorted(logins), self.MAX_ASSIGNEES_PER_CALL):
            response = self._send(
                "POST",
                f"{self.api_url}/repos/{repository}/issues/{number}/assignees",
                json={"assignees": batch},
            )
            self._raise_for_status(response)

    def list_updated_items(self, repository: str, since: datetime) -> List[Item]:
        params = {"state": "all", "since": since.isoformat(), "per_page": 100}
        items: List[Item] = []
        for page in self._paginate(f"/repos/{repository}/issues", params):
            items.extend(item_from_rest(payload, repository) for payload in page or [])
        return items

    def list_assigned_items(self, login: str, since: datetime) -> List[Item]:
        scope = f"org:{self.organization} " if self.organization else ""
        items: List[Item] = []
        for qualifier in ("assignee", "author"):
            query = f"{scope}{qualifier}:{login} updated:>={since.date().isoformat()}"
            for page in self._paginate("/search/issues", {"q": query, "per_page": 100}):
                for payload in (page or {}).get("items") or []:
                    item = item_from_rest(payload)
                    if item.updated_at >= since:
                        items.append(item)
        return items

    def list_closing_issue_references(self, pr_content_id: str) -> List[str]:
        data = self.graphql(_CLOSING_REFERENCES_QUERY, {"id": pr_content_id})
        connection = ((data.get("node") or {}).get("closingIssuesReferences")) or {}
        return [node["id"] for node in connection.get("nodes") or [] if node and node.get("id")]

    def get_item(self, content_id: str) -> Item:
        data = self.graphql(_ITEM_QUERY, {"id": content_id})
        node = data.get("node")
        if not node or node.get("__typename") not in {"Issue", "PullRequest"}:
            raise PlatformError(404, f"content {content_id} is not an issue or pull request")
        return item_from_graphql(node)

    def rate_limit_remaining(self) -> RateLimitStatus:
        body = self._get_json("/rate_limit")
        resources = (body or {}).get("resources") or {}
        buckets = [resources[name] for name in ("core", "graphql") if name in resources]
        if not buckets:
            return RateLimitStatus(remaining=5000, reset=0)
        tightest = min(buckets, key=lambda bucket: bucket.get("remaining", 0))
        return RateLimitStatus(
            remaining=int(tightest.get("remaining", 0)),
            reset=float(tightest.get("reset", 0)),
            limit=tightest.get("limit"),
        )

    def bind_organization(self, organization: str) -> None:
        if not self.organization:
            self.organization = organization

    def bind_fields(self, status_field_id: str, sprint_field_id: Optional[str]) -> None:
        self.status_field_id = status_field_id
        self.sprint_field_id = sprint_field_id

    def close(self) -> None:
        self._session.close()


__all__ = ["GitHubPlatform", "item_from_graphql", "item_from_rest"]
