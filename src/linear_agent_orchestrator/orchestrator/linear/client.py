"""Linear GraphQL API client for the poll path.

This intentionally wraps `requests` to keep Linear calls out of service code and make tests easy.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import requests

from linear_agent_orchestrator.orchestrator.triggers.events import PollNode, parse_poll_node

logger = logging.getLogger(__name__)

RECENT_ISSUES_QUERY = """
query RecentIssues($teamId: ID!, $since: DateTimeOrDuration!, $first: Int!) {
  issues(
    filter: { team: { id: { eq: $teamId } }, updatedAt: { gte: $since } }
    orderBy: updatedAt
    first: $first
  ) {
    nodes {
      identifier
      title
      description
      state { id name }
      updatedAt
      assignee { name }
    }
  }
}
"""


class LinearApiError(RuntimeError):
    pass


class LinearClient:
    """Small wrapper around the Linear GraphQL endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        url: str = "https://api.linear.app/graphql",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                # Linear personal API keys are sent without a "Bearer" prefix.
                "Authorization": self._api_key,
                "Content-Type": "application/json",
                "User-Agent": "linear-agent-orchestrator",
            }
        )

    def close(self) -> None:
        self._session.close()

    def _graphql(self, *, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        if not self._api_key:
            raise LinearApiError("LINEAR_API_KEY not set")

        try:
            resp = self._session.post(
                self._url,
                json={"query": query, "variables": variables},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as e:
            raise LinearApiError(f"Linear request failed: {e}") from e
        except ValueError as e:
            raise LinearApiError("Linear response is not valid JSON") from e

        if not isinstance(payload, dict):
            raise LinearApiError("Linear response has unexpected shape")

        errors = payload.get("errors")
        if errors:
            # Keep logs small and actionable.
            messages = []
            if isinstance(errors, list):
                for item in errors:
                    if isinstance(item, dict):
                        msg = item.get("message")
                        if isinstance(msg, str):
                            messages.append(msg)
            message = "; ".join(messages) if messages else "Unknown GraphQL error"
            raise LinearApiError(f"Linear GraphQL error: {message}")
        return payload

    def recent_issues(self, *, team_id: str, since: datetime, first: int) -> list[PollNode]:
        """Fetch up to `first` issues of `team_id` updated at or after `since`."""

        payload = self._graphql(
            query=RECENT_ISSUES_QUERY,
            variables={"teamId": team_id, "since": since.isoformat(), "first": first},
        )
        data = payload.get("data") or {}
        issues = data.get("issues") if isinstance(data, dict) else None
        raw_nodes = issues.get("nodes") if isinstance(issues, dict) else None
        if not isinstance(raw_nodes, list):
            return []

        nodes: list[PollNode] = []
        for raw in raw_nodes:
            node = parse_poll_node(raw)
            if node is not None:
                nodes.append(node)
        logger.debug(
            "Fetched recent issues",
            extra={"team_id": team_id, "count": len(nodes), "raw_count": len(raw_nodes)},
        )
        return nodes
