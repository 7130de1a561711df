"""FastAPI server adapter for linear-agent-orchestrator.

Design intent:
- Keep business logic in `linear_agent_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, background work, poll loop) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from linear_agent_orchestrator.server.app import create_app
