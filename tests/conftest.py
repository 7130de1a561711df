"""Test configuration and fixtures."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings
from linear_agent_orchestrator.orchestrator.triggers.events import (
    EventNormalizer,
    NormalizedTransition,
)
from linear_agent_orchestrator.orchestrator.triggers.ledger import TriggerLedger

TARGET_STATE = "99a123f5-1bda-48b0-b0b2-38246e2a50d2"
OTHER_STATE = "b26e9e94-919c-45a3-a62f-4ec89d234e8c"
TEAM_ID = "team-cru"

_ENV_VARS = [
    "LINEAR_API_KEY",
    "LINEAR_API_URL",
    "LINEAR_WEBHOOK_SECRET",
    "LINEAR_TEAM_ID",
    "LINEAR_TARGET_STATE_ID",
    "LINEAR_STATE_LABELS",
    "LOG_LEVEL",
    "AGENT_STATE_PATH",
    "ORCHESTRATOR_LOG_EVENTS",
    "ORCHESTRATOR_DISPATCH_URL",
    "ORCHESTRATOR_DISPATCH_COMMAND",
    "ORCHESTRATOR_DISPATCH_DRY_RUN",
    "ORCHESTRATOR_RETRY_PENDING_ON_SIGHTING",
    "ORCHESTRATOR_DISPATCH_MODEL",
    "ORCHESTRATOR_DOCUMENT_ROOT",
    "ORCHESTRATOR_DOCUMENT_EXTENSION",
    "ORCHESTRATOR_POLL_LIMIT",
    "ORCHESTRATOR_POLL_WINDOW_HOURS",
    "ORCHESTRATOR_HTTP_TIMEOUT_SECONDS",
    "ORCHESTRATOR_HOST",
    "ORCHESTRATOR_PORT",
    "ORCHESTRATOR_AUTO_POLL_ENABLED",
    "ORCHESTRATOR_AUTO_POLL_INTERVAL_SECONDS",
]


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate settings from the developer's environment and any `.env` file."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def settings(clean_env: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        _env_file=None,
        webhook_secret="test-secret",
        team_id=TEAM_ID,
        target_state_id=TARGET_STATE,
        agent_state_path=clean_env / "agent_state",
    )


@pytest.fixture
def ledger(tmp_path: Path) -> TriggerLedger:
    return TriggerLedger(tmp_path / "logs" / "linear-triggers.jsonl")


@pytest.fixture
def normalizer() -> EventNormalizer:
    return EventNormalizer(target_state_id=TARGET_STATE, team_id=TEAM_ID)


@pytest.fixture
def transition() -> NormalizedTransition:
    return NormalizedTransition(
        work_item_id="CRU-123",
        title="Test issue",
        target_state_id=TARGET_STATE,
    )


def make_push_payload(
    *,
    identifier: str = "CRU-123",
    state_id: str = TARGET_STATE,
    from_state_id: str | None = OTHER_STATE,
    team_id: str = TEAM_ID,
    description: str | None = None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "type": "Issue",
        "action": "update",
        "data": {
            "id": "2f6c4b1e-0000-0000-0000-000000000000",
            "identifier": identifier,
            "title": "Test issue",
            "stateId": state_id,
            "teamId": team_id,
            "description": description,
        },
    }
    if from_state_id is not None:
        payload["updatedFrom"] = {"stateId": from_state_id}
    return payload


def make_poll_node(
    *,
    identifier: str = "CRU-123",
    state_id: str = TARGET_STATE,
    state_name: str = "In Dev",
    description: str | None = None,
) -> dict[str, object]:
    return {
        "identifier": identifier,
        "title": "Test issue",
        "description": description,
        "state": {"id": state_id, "name": state_name},
        "updatedAt": "2026-10-19T10:00:00.000Z",
        "assignee": None,
    }


def read_jsonl(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").split("\n") if line]
