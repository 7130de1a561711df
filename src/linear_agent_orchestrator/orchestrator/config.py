"""Configuration for the trigger orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing here is mandatory. A missing webhook secret disables push ingestion
(signature checks fail closed), a missing team id disables the poll sweep and
a missing dispatcher leaves admitted triggers `pending` for a later drain.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# "In Dev" state of the CruzBot Linear team; the state that starts dev work.
DEFAULT_TARGET_STATE_ID = "99a123f5-1bda-48b0-b0b2-38246e2a50d2"

DEFAULT_STATE_LABELS: dict[str, str] = {
    DEFAULT_TARGET_STATE_ID: "ready for dev",
    "83a9ff51-748f-4242-96d7-2df175e6c2bb": "completed",
    "b26e9e94-919c-45a3-a62f-4ec89d234e8c": "ready for QA",
}


class OrchestratorSettings(BaseSettings):
    """Settings for the trigger orchestrator.

    Environment variables:
    - LINEAR_API_KEY            (optional; required by the poll path only)
    - LINEAR_WEBHOOK_SECRET     (optional; required by the push path only)
    - LINEAR_TEAM_ID            (optional)
    - LINEAR_TARGET_STATE_ID    (optional)
    - LOG_LEVEL                 (optional)
    - AGENT_STATE_PATH          (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    linear_api_key: str = Field(
        default="",
        validation_alias="LINEAR_API_KEY",
        description="Linear API key (sent as-is in the Authorization header)",
    )
    linear_api_url: str = Field(
        default="https://api.linear.app/graphql",
        validation_alias="LINEAR_API_URL",
        description="Linear GraphQL endpoint",
    )

    webhook_secret: str = Field(
        default="",
        validation_alias="LINEAR_WEBHOOK_SECRET",
        description="Shared secret used to verify webhook signatures",
    )
    team_id: str = Field(
        default="",
        validation_alias="LINEAR_TEAM_ID",
        description="Only events for this team are considered. Empty disables the poll sweep.",
    )
    target_state_id: str = Field(
        default=DEFAULT_TARGET_STATE_ID,
        validation_alias="LINEAR_TARGET_STATE_ID",
        description="Workflow state whose entry triggers a dispatch",
    )
    state_labels: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_STATE_LABELS),
        validation_alias="LINEAR_STATE_LABELS",
        description="JSON object mapping state ids to human labels (logging only)",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )
    log_events: bool = Field(
        default=True,
        validation_alias="ORCHESTRATOR_LOG_EVENTS",
        description="Append every observed webhook state change to the event log",
    )

    agent_state_path: Path = Field(
        default=Path("agent_state"),
        validation_alias="AGENT_STATE_PATH",
        description="Directory where the trigger ledger and event log are persisted",
    )

    document_root: str = Field(
        default="_bmad-output/stories",
        validation_alias="ORCHESTRATOR_DOCUMENT_ROOT",
        description="Leading path segment of story documents referenced in descriptions",
    )
    document_extension: str = Field(
        default=".md",
        validation_alias="ORCHESTRATOR_DOCUMENT_EXTENSION",
    )
    document_fallback_hint: str = Field(
        default="_bmad-output/stories/cruzbot/",
        validation_alias="ORCHESTRATOR_DOCUMENT_FALLBACK_HINT",
        description="Directory the agent is pointed at when no story path was found",
    )

    poll_limit: int = Field(
        default=15,
        validation_alias="ORCHESTRATOR_POLL_LIMIT",
        description="Number of most recently updated issues fetched per sweep",
        ge=1,
        le=250,
    )
    poll_window_hours: float = Field(
        default=24.0,
        validation_alias="ORCHESTRATOR_POLL_WINDOW_HOURS",
        gt=0,
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="ORCHESTRATOR_HTTP_TIMEOUT_SECONDS",
        description="Timeout applied to every outbound call (Linear and dispatch)",
        gt=0,
    )

    dispatch_url: str = Field(
        default="",
        validation_alias="ORCHESTRATOR_DISPATCH_URL",
        description="HTTP endpoint that spawns an agent run",
    )
    dispatch_command: str = Field(
        default="",
        validation_alias="ORCHESTRATOR_DISPATCH_COMMAND",
        description=(
            "Local command that spawns an agent run. The dispatch request is written to its "
            "stdin as JSON. Ignored when ORCHESTRATOR_DISPATCH_URL is set."
        ),
    )
    dispatch_model: str = Field(
        default="",
        validation_alias="ORCHESTRATOR_DISPATCH_MODEL",
        description="Optional model hint forwarded with every dispatch request",
    )
    dispatch_dry_run: bool = Field(
        default=False,
        validation_alias="ORCHESTRATOR_DISPATCH_DRY_RUN",
        description="Treat every dispatch as delivered without calling the dispatcher",
    )
    retry_pending_on_sighting: bool = Field(
        default=False,
        validation_alias="ORCHESTRATOR_RETRY_PENDING_ON_SIGHTING",
        description=(
            "Re-attempt direct dispatch when a sighting is deduplicated against a trigger "
            "that is still pending"
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("document_extension")
    @classmethod
    def _dotted_extension(cls, value: str) -> str:
        value = value.strip()
        if value and not value.startswith("."):
            return f".{value}"
        return value

    @field_validator("document_root")
    @classmethod
    def _strip_root_slashes(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def logs_dir(self) -> Path:
        return self.agent_state_path / "logs"

    @property
    def ledger_file(self) -> Path:
        """Path of the append-only trigger ledger (JSONL)."""

        return self.logs_dir / "linear-triggers.jsonl"

    @property
    def ledger_lock_file(self) -> Path:
        return self.logs_dir / "linear-triggers.jsonl.lock"

    @property
    def event_log_file(self) -> Path:
        """Path of the webhook state-change event log (JSONL)."""

        return self.logs_dir / "linear-webhook-events.jsonl"

    def state_label(self, state_id: str | None) -> str:
        if not state_id:
            return "other"
        return self.state_labels.get(state_id, "other")
