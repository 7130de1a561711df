"""Linear issue-tracker integration."""

from linear_agent_orchestrator.orchestrator.linear.client import LinearApiError, LinearClient

__all__ = ["LinearApiError", "LinearClient"]
