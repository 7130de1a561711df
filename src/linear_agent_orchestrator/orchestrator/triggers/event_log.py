"""Audit log of webhook state changes (JSONL, best-effort)."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from linear_agent_orchestrator.orchestrator.triggers.events import StateChange

logger = logging.getLogger(__name__)


class EventLog:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def record_state_change(self, change: StateChange, *, label: str) -> None:
        entry = {
            "type": "state_change",
            "issueId": change.work_item_id,
            "issueTitle": change.title,
            "fromStateId": change.from_state_id,
            "toStateId": change.to_state_id,
            "label": label,
            "teamId": change.team_id,
            "loggedAt": datetime.now(tz=UTC).isoformat(),
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError:
            logger.exception("Failed to append to event log", extra={"path": str(self._path)})
