"""Configuration for the webhook server."""

from __future__ import annotations

from pydantic import Field

from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings


class ServerSettings(OrchestratorSettings):
    """Orchestrator settings plus HTTP and background-poll options."""

    host: str = Field(default="127.0.0.1", validation_alias="ORCHESTRATOR_HOST")
    port: int = Field(default=8787, validation_alias="ORCHESTRATOR_PORT", ge=1, le=65535)

    auto_poll_enabled: bool = Field(
        default=False,
        validation_alias="ORCHESTRATOR_AUTO_POLL_ENABLED",
        description=(
            "If true, the server runs a poll sweep on a fixed interval in addition to "
            "receiving webhooks. Requires LINEAR_API_KEY and LINEAR_TEAM_ID."
        ),
    )
    auto_poll_interval_seconds: float = Field(
        default=300.0,
        validation_alias="ORCHESTRATOR_AUTO_POLL_INTERVAL_SECONDS",
        description="Interval (seconds) between background poll sweeps.",
        ge=5.0,
    )
