"""Tests for the Linear issue tracker."""

import json

import pytest
from pytest_httpx import HTTPXMock

from zen.auth.manager import AuthManager
from zen.auth.storage import MemoryStore
from zen.errors import NetworkError, NotFound
from zen.models import Credential
from zen.trackers.linear import LinearTracker

_GRAPHQL = "https://api.linear.app/graphql"

_ISSUE = {
    "id": "c0ffee",
    "identifier": "ENG-7",
    "title": "Prefetch popular assets",
    "description": "Warm the cache after sync.",
    "url": "https://linear.app/acme/issue/ENG-7",
    "priority": 1,
    "state": {"name": "Todo", "type": "unstarted"},
    "assignee": {"name": "Lee", "email": "lee@example.com"},
    "team": {"name": "Platform", "key": "ENG"},
    "labels": {"nodes": [{"name": "Feature"}, {"name": "cache"}]},
}


@pytest.fixture
def linear_auth(memory_store: MemoryStore) -> AuthManager:
    memory_store.put(Credential(provider="linear", secret="lin_api_abcdefgh"))
    return AuthManager(memory_store, prompt_disabled=True)


class TestLinearTracker:
    def test_fetch(self, linear_auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=_GRAPHQL, method="POST", json={"data": {"issue": _ISSUE}})

        snapshot = LinearTracker(linear_auth).fetch("ENG-7")

        assert snapshot.external_system == "linear"
        assert snapshot.external_id == "ENG-7"
        data = snapshot.task_data
        assert data.title == "Prefetch popular assets"
        assert data.type == "story"
        assert data.status == "Todo"
        assert data.priority == 1
        assert data.assignee == "Lee"
        assert data.team == "Platform"
        assert data.labels == ["Feature", "cache"]

        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "lin_api_abcdefgh"
        body = json.loads(request.content)
        assert body["variables"] == {"id": "ENG-7"}
        assert "issue(id: $id)" in body["query"]

    def test_null_issue(self, linear_auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=_GRAPHQL, method="POST", json={"data": {"issue": None}})
        with pytest.raises(NotFound):
            LinearTracker(linear_auth).fetch("ENG-404")

    def test_graphql_not_found_error(self, linear_auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=_GRAPHQL, method="POST", json={"errors": [{"message": "Entity not found"}]})
        with pytest.raises(NotFound, match="Entity not found"):
            LinearTracker(linear_auth).fetch("ENG-404")

    def test_graphql_error(self, linear_auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url=_GRAPHQL, method="POST", json={"errors": [{"message": "Argument invalid"}]})
        with pytest.raises(NetworkError, match="Argument invalid"):
            LinearTracker(linear_auth).fetch("???")
