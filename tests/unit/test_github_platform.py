from datetime import date, datetime, timezone

import pytest
import requests

from boardsync.domain.models import ItemKind, ItemState
from boardsync.errors import PlatformError
from boardsync.platform.base import BoardPlatform
from boardsync.platform.github import GitHubPlatform, item_from_rest


class FakeResponse:
    def __init__(self, status_code=200, body=None, headers=None, links=None):
        self.status_code = status_code
        self._body = body
        self.headers = headers or {}
        self.links = links or {}
        self.text = "" if body is None else str(body)

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.headers = {}
        self.closed = False

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def _platform(*responses, organization=None):
    session = FakeSession(*responses)
    return GitHubPlatform("token", organization=organization, session=session), session


def _issue(number, *, node_id=None, pull_request=None, state="open", updated="2026-10-14T10:00:00Z"):
    payload = {
        "node_id": node_id or f"I_{number}",
        "number": number,
        "state": state,
        "user": {"login": "alice"},
        "assignees": [{"login": "bob"}],
        "updated_at": updated,
        "repository_url": "https://api.github.com/repos/org/r1",
    }
    if pull_request is not None:
        payload["pull_request"] = pull_request
    return payload


def test_factory_builds_known_platforms():
    assert isinstance(BoardPlatform.create_platform("github", token="t"), GitHubPlatform)
    assert type(BoardPlatform.create_platform("memory")).__name__ == "InMemoryPlatform"
    with pytest.raises(ValueError):
        BoardPlatform.create_platform("github")
    with pytest.raises(ValueError):
        BoardPlatform.create_platform("gitlab")


def test_session_carries_the_bearer_token():
    platform, session = _platform()

    assert session.headers["Authorization"] == "Bearer token"
    platform.close()
    assert session.closed


def test_item_from_rest_reads_pull_request_state():
    merged = item_from_rest(_issue(3, pull_request={"merged_at": "2026-10-13T00:00:00Z"}, state="closed"))
    issue = item_from_rest(_issue(4))

    assert merged.kind is ItemKind.PULL_REQUEST
    assert merged.state is ItemState.MERGED
    assert merged.repository == "org/r1"
    assert issue.kind is ItemKind.ISSUE
    assert issue.assignees == frozenset({"bob"})
    assert issue.updated_at == datetime(2026, 10, 14, 10, tzinfo=timezone.utc)


def test_updated_items_follow_pagination():
    platform, session = _platform(
        FakeResponse(
            body=[_issue(1)],
            links={"next": {"url": "https://api.github.com/repositories/9/issues?page=2"}},
        ),
        FakeResponse(body=[_issue(2)]),
    )

    items = platform.list_updated_items("org/r1", datetime(2026, 10, 12, tzinfo=timezone.utc))

    assert [item.number for item in items] == [1, 2]
    first, second = session.requests
    assert first[2]["params"]["since"] == "2026-10-12T00:00:00+00:00"
    assert second[1].endswith("page=2")
    assert second[2]["params"] is None


def test_not_modified_replays_the_cached_body():
    platform, session = _platform(
        FakeResponse(body=[_issue(1)], headers={"ETag": '"v1"'}),
        FakeResponse(status_code=304),
    )
    since = datetime(2026, 10, 12, tzinfo=timezone.utc)

    platform.list_updated_items("org/r1", since)
    replayed = platform.list_updated_items("org/r1", since)

    assert [item.number for item in replayed] == [1]
    assert session.requests[1][2]["headers"] == {"If-None-Match": '"v1"'}


def test_http_errors_become_platform_errors():
    platform, _ = _platform(FakeResponse(status_code=404, body={"message": "Not Found"}))

    with pytest.raises(PlatformError) as excinfo:
        platform.add_assignees("org/r1", 7, ["alice"])

    assert excinfo.value.status == 404
    assert "Not Found" in str(excinfo.value)


def test_transport_failure_is_retryable():
    platform, _ = _platform(requests.ConnectionError("reset"))

    with pytest.raises(PlatformError) as excinfo:
        platform.get_item("I_1")

    assert excinfo.value.status == 503
    assert excinfo.value.retryable


def test_graphql_errors_are_mapped_to_statuses():
    platform, _ = _platform(
        FakeResponse(body={"errors": [{"type": "NOT_FOUND", "message": "Could not resolve"}]}),
        FakeResponse(body={"errors": [{"type": "RATE_LIMITED", "message": "slow down"}]}),
    )

    with pytest.raises(PlatformError) as missing:
        platform.admit_to_board("PVT_1", "I_1")
    with pytest.raises(PlatformError) as limited:
        platform.admit_to_board("PVT_1", "I_1")

    assert missing.value.status == 404
    assert limited.value.status == 429


def test_board_members_read_status_and_sprint():
    node = {
        "id": "PVTI_1",
        "content": {
            "__typename": "PullRequest",
            "id": "PR_1",
            "number": 5,
            "repository": {"nameWithOwner": "org/r1"},
            "assignees": {"nodes": [{"login": "alice"}]},
        },
        "fieldValues": {
            "nodes": [
                {"__typename": "ProjectV2ItemFieldSingleSelectValue", "name": "Active", "field": {"name": "Status"}},
                {"__typename": "ProjectV2ItemFieldIterationValue", "iterationId": "it-42", "field": {"name": "Sprint"}},
            ]
        },
    }
    draft = {"id": "PVTI_2", "content": {}, "fieldValues": {"nodes": []}}
    platform, _ = _platform(
        FakeResponse(
            body={
                "data": {
                    "node": {
                        "items": {
                            "nodes": [node, draft],
                            "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
                        }
                    }
                }
            }
        )
    )

    page = platform.list_board_members("PVT_1")

    assert page.next_cursor == "c1"
    assert len(page.items) == 1
    member = page.items[0]
    assert (member.content_id, member.column, member.sprint) == ("PR_1", "Active", "it-42")
    assert member.assignees == frozenset({"alice"})


def test_board_members_match_values_on_bound_field_ids():
    node = {
        "id": "PVTI_1",
        "content": {
            "__typename": "Issue",
            "id": "I_1",
            "number": 6,
            "repository": {"nameWithOwner": "org/r1"},
            "assignees": {"nodes": []},
        },
        "fieldValues": {
            "nodes": [
                {
                    "__typename": "ProjectV2ItemFieldSingleSelectValue",
                    "name": "Next",
                    "field": {"id": "F1", "name": "Stage"},
                },
                {
                    "__typename": "ProjectV2ItemFieldIterationValue",
                    "iterationId": "it-42",
                    "field": {"id": "F2", "name": "Iteration"},
                },
                {
                    "__typename": "ProjectV2ItemFieldIterationValue",
                    "iterationId": "release-9",
                    "field": {"id": "F3", "name": "Sprint"},
                },
            ]
        },
    }
    platform, session = _platform(
        FakeResponse(
            body={
                "data": {
                    "node": {
                        "items": {"nodes": [node], "pageInfo": {"hasNextPage": False}}
                    }
                }
            }
        )
    )
    platform.bind_fields("F1", "F2")

    member = platform.list_board_members("PVT_1").items[0]

    assert (member.column, member.sprint) == ("Next", "it-42")
    assert "field { ... on ProjectV2FieldCommon { id name } }" in session.requests[0][2]["json"]["query"]


def test_board_fields_include_options_and_iterations():
    platform, _ = _platform(
        FakeResponse(
            body={
                "data": {
                    "node": {
                        "fields": {
                            "nodes": [
                                {
                                    "id": "F1",
                                    "name": "Status",
                                    "dataType": "SINGLE_SELECT",
                                    "options": [{"id": "o1", "name": "Active"}],
                                },
                                {
                                    "id": "F2",
                                    "name": "Sprint",
                                    "dataType": "ITERATION",
                                    "configuration": {
                                        "iterations": [
                                            {"id": "it-42", "title": "Sprint 42", "startDate": "2026-10-05", "duration": 14}
                                        ]
                                    },
                                },
                            ]
                        }
                    }
                }
            }
        )
    )

    status, sprint = platform.list_board_fields("PVT_1")

    assert status.options == {"Active": "o1"}
    assert sprint.iterations[0].start_date == date(2026, 10, 5)
    assert sprint.iterations[0].contains(date(2026, 10, 18))


def test_assignees_are_sent_in_batches():
    platform, session = _platform(FakeResponse(status_code=201, body={}), FakeResponse(status_code=201, body={}))
    logins = [f"user{n:02d}" for n in range(12)]

    platform.add_assignees("org/r1", 7, logins)

    assert [len(request[2]["json"]["assignees"]) for request in session.requests] == [10, 2]
    assert session.requests[0][1].endswith("/repos/org/r1/issues/7/assignees")


def test_rate_limit_reports_the_tightest_bucket():
    platform, _ = _platform(
        FakeResponse(
            body={
                "resources": {
                    "core": {"remaining": 4000, "reset": 100, "limit": 5000},
                    "graphql": {"remaining": 90, "reset": 200, "limit": 5000},
                }
            }
        )
    )

    status = platform.rate_limit_remaining()

    assert (status.remaining, status.reset) == (90, 200.0)


def test_user_search_is_scoped_to_the_bound_organization():
    recent = _issue(8, updated="2026-10-14T10:00:00Z")
    stale = _issue(9, updated="2026-10-01T10:00:00Z")
    platform, session = _platform(
        FakeResponse(body={"items": [recent, stale]}),
        FakeResponse(body={"items": []}),
    )
    platform.bind_organization("org")

    items = platform.list_assigned_items("alice", datetime(2026, 10, 12, tzinfo=timezone.utc))

    assert [item.number for item in items] == [8]
    queries = [request[2]["params"]["q"] for request in session.requests]
    assert queries == [
        "org:org assignee:alice updated:>=2026-10-12",
        "org:org author:alice updated:>=2026-10-12",
    ]
