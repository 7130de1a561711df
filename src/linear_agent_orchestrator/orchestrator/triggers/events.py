"""Normalisation of tracker events into trigger candidates.

Two input shapes reach the orchestrator:

- ``PushPayload``: a Linear webhook body ``{type, action, data, updatedFrom}``
- ``PollNode``: one node of the recent-issues GraphQL query

Both are reduced to a :class:`NormalizedTransition` when (and only when) the
event represents an issue entering the configured target state. Anything else
normalises to ``None``; rejection is the common case, not an error.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

ISSUE_EVENT_TYPE = "Issue"
UPDATE_ACTION = "update"

# Characters that terminate a path token: whitespace, quotes and link/markup delimiters.
_PATH_TOKEN = r"[^\s\"'`()\[\]<>]+"


class PushPayload(BaseModel):
    """Webhook delivery body. Unknown fields are kept but ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str | None = None
    action: str | None = None
    data: dict[str, Any] | None = None
    updated_from: dict[str, Any] | None = Field(default=None, alias="updatedFrom")


class PollState(BaseModel):
    id: str | None = None
    name: str | None = None


class PollAssignee(BaseModel):
    name: str | None = None


class PollNode(BaseModel):
    """One issue returned by the recent-issues query."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    identifier: str
    title: str | None = None
    description: str | None = None
    state: PollState | None = None
    updated_at: str | None = Field(default=None, alias="updatedAt")
    assignee: PollAssignee | None = None


TrackerEvent = PushPayload | PollNode


@dataclass(frozen=True, slots=True)
class StateChange:
    """A state change observed on the push path, before the target-state filter."""

    work_item_id: str
    title: str
    from_state_id: str
    to_state_id: str | None
    team_id: str | None


@dataclass(frozen=True, slots=True)
class NormalizedTransition:
    """An issue entering the target state, from either ingestion path."""

    work_item_id: str
    title: str
    target_state_id: str
    from_state_id: str | None = None
    team_id: str | None = None
    description: str | None = None
    auxiliary_path: str | None = None


@dataclass(frozen=True, slots=True)
class DocumentPathPattern:
    """Lexical pattern for document paths embedded in free text."""

    root: str = "_bmad-output/stories"
    extension: str = ".md"
    _regex: re.Pattern[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        root = self.root.rstrip("/")
        prefix = f"{re.escape(root)}/" if root else ""
        # Frozen dataclass: compiled once per pattern instance.
        object.__setattr__(
            self, "_regex", re.compile(prefix + _PATH_TOKEN + re.escape(self.extension))
        )

    def search(self, text: str) -> str | None:
        match = self._regex.search(text)
        return match.group(0) if match else None


DEFAULT_DOCUMENT_PATTERN = DocumentPathPattern()


def extract_document_path(
    text: object, pattern: DocumentPathPattern = DEFAULT_DOCUMENT_PATTERN
) -> str | None:
    """Return the first document path found in `text`, or None.

    Bare, quoted and markdown-link-wrapped paths all yield the bare path.
    """

    if not isinstance(text, str) or not text:
        return None
    return pattern.search(text)


def parse_push_payload(raw: bytes | str | dict[str, Any]) -> PushPayload | None:
    """Parse a webhook body. Malformed input yields None (and a log line)."""

    data: object = raw
    if isinstance(raw, (bytes, str)):
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Webhook body is not valid JSON; ignoring")
            return None

    if not isinstance(data, dict):
        logger.warning("Webhook body is not a JSON object; ignoring")
        return None

    try:
        return PushPayload.model_validate(data)
    except ValidationError as e:
        logger.warning("Webhook body has unexpected shape; ignoring", extra={"error": str(e)})
        return None


def parse_poll_node(raw: object) -> PollNode | None:
    if not isinstance(raw, dict):
        return None
    try:
        return PollNode.model_validate(raw)
    except ValidationError as e:
        logger.warning("Poll node has unexpected shape; ignoring", extra={"error": str(e)})
        return None


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


class EventNormalizer:
    """Applies the admission filter rules to push payloads and poll nodes.

    Rules, first failure wins:
      1. push only: type is "Issue" and action is "update"
      2. push only: the payload names a previous state (``updatedFrom.stateId``)
      3. push only: the team matches, when a team filter is configured
      4. the new state is the target state
    """

    def __init__(
        self,
        *,
        target_state_id: str,
        team_id: str = "",
        document_pattern: DocumentPathPattern = DEFAULT_DOCUMENT_PATTERN,
    ) -> None:
        self._target_state_id = target_state_id.strip()
        self._team_id = team_id.strip()
        self._document_pattern = document_pattern

    @property
    def target_state_id(self) -> str:
        return self._target_state_id

    def observe_push(self, payload: PushPayload) -> StateChange | None:
        """Apply rules 1-3 and describe the state change, whatever its target."""

        if payload.type != ISSUE_EVENT_TYPE or payload.action != UPDATE_ACTION:
            return None

        from_state_id = _str_or_none((payload.updated_from or {}).get("stateId"))
        if from_state_id is None:
            return None

        data = payload.data or {}
        team_id = _str_or_none(data.get("teamId"))
        if self._team_id and team_id != self._team_id:
            return None

        to_state_id = _str_or_none(data.get("stateId"))
        if to_state_id is None:
            state = data.get("state")
            if isinstance(state, dict):
                to_state_id = _str_or_none(state.get("id"))

        work_item_id = _str_or_none(data.get("identifier")) or _str_or_none(data.get("id"))
        if work_item_id is None:
            logger.warning("Issue update without an identifier; ignoring")
            return None
        title = data.get("title")
        return StateChange(
            work_item_id=work_item_id,
            title=title if isinstance(title, str) else "",
            from_state_id=from_state_id,
            to_state_id=to_state_id,
            team_id=team_id,
        )

    def normalize_push(self, payload: PushPayload) -> NormalizedTransition | None:
        change = self.observe_push(payload)
        if change is None or not self._is_target(change.to_state_id):
            return None

        description = _str_or_none((payload.data or {}).get("description"))
        return NormalizedTransition(
            work_item_id=change.work_item_id,
            title=change.title,
            target_state_id=self._target_state_id,
            from_state_id=change.from_state_id,
            team_id=change.team_id,
            description=description,
            auxiliary_path=extract_document_path(description, self._document_pattern),
        )

    def normalize_poll_node(self, node: PollNode) -> NormalizedTransition | None:
        # Team scope is part of the poll query itself.
        state_id = node.state.id if node.state is not None else None
        if not self._is_target(state_id):
            return None
        return NormalizedTransition(
            work_item_id=node.identifier,
            title=node.title or "",
            target_state_id=self._target_state_id,
            description=node.description,
            auxiliary_path=extract_document_path(node.description, self._document_pattern),
        )

    def normalize(self, event: TrackerEvent) -> NormalizedTransition | None:
        if isinstance(event, PushPayload):
            return self.normalize_push(event)
        if isinstance(event, PollNode):
            return self.normalize_poll_node(event)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def _is_target(self, state_id: str | None) -> bool:
        return bool(self._target_state_id) and state_id == self._target_state_id
