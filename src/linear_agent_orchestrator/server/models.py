"""Pydantic models for the REST server."""

from __future__ import annotations

from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    ok: bool
    error: str | None = None


class LedgerSummary(BaseModel):
    pending: int = 0
    spawned: int = 0
    skipped: int = 0


class PollResult(BaseModel):
    nodes: int = 0
    triggered: list[str] = Field(default_factory=list)
    deduplicated: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    error: str | None = None
    skipped_reason: str | None = None
