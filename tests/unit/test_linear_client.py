from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest
import requests
from conftest import TEAM_ID, make_poll_node

from linear_agent_orchestrator.orchestrator.linear.client import (
    RECENT_ISSUES_QUERY,
    LinearApiError,
    LinearClient,
)


def _session(payload: object) -> Mock:
    session = Mock(spec=requests.Session)
    session.headers = {}
    response = Mock(spec=requests.Response)
    response.json.return_value = payload
    session.post.return_value = response
    return session


def _client(session: Mock, api_key: str = "lin_api_test") -> LinearClient:
    return LinearClient(
        api_key=api_key, url="https://linear.test/graphql", timeout=7.5, session=session
    )


def test_recent_issues_sends_query_with_headers_and_timeout() -> None:
    session = _session({"data": {"issues": {"nodes": [make_poll_node()]}}})
    client = _client(session)
    since = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    nodes = client.recent_issues(team_id=TEAM_ID, since=since, first=15)

    assert [n.identifier for n in nodes] == ["CRU-123"]
    assert nodes[0].state is not None and nodes[0].state.name == "In Dev"
    assert session.headers["Authorization"] == "lin_api_test"
    session.post.assert_called_once_with(
        "https://linear.test/graphql",
        json={
            "query": RECENT_ISSUES_QUERY,
            "variables": {"teamId": TEAM_ID, "since": since.isoformat(), "first": 15},
        },
        timeout=7.5,
    )


def test_malformed_nodes_are_dropped() -> None:
    nodes = [{"title": "no identifier"}, make_poll_node()]
    session = _session({"data": {"issues": {"nodes": nodes}}})

    nodes = _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)

    assert len(nodes) == 1


def test_missing_nodes_yield_empty_list() -> None:
    session = _session({"data": {}})
    nodes = _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)
    assert nodes == []


def test_missing_api_key_raises_without_request() -> None:
    session = _session({})
    client = _client(session, api_key="  ")

    with pytest.raises(LinearApiError, match="LINEAR_API_KEY"):
        client.recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)
    session.post.assert_not_called()


def test_graphql_errors_are_raised() -> None:
    session = _session({"errors": [{"message": "Team not found"}, {"message": "Try again"}]})

    with pytest.raises(LinearApiError, match="Team not found; Try again"):
        _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)


def test_transport_errors_are_wrapped() -> None:
    session = _session({})
    session.post.side_effect = requests.ConnectionError("refused")

    with pytest.raises(LinearApiError, match="Linear request failed"):
        _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)


def test_http_status_errors_are_wrapped() -> None:
    session = _session({})
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("401")

    with pytest.raises(LinearApiError):
        _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)


def test_invalid_json_is_wrapped() -> None:
    session = _session(None)
    session.post.return_value.json.side_effect = ValueError("no json")

    with pytest.raises(LinearApiError, match="not valid JSON"):
        _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)


def test_non_object_response_is_rejected() -> None:
    session = _session(["unexpected"])

    with pytest.raises(LinearApiError, match="unexpected shape"):
        _client(session).recent_issues(team_id=TEAM_ID, since=datetime.now(tz=UTC), first=5)
