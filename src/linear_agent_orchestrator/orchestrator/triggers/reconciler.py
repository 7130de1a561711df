"""Poll-path reconciliation.

A sweep fetches the most recently updated issues of the configured team and
feeds them through the same pipeline as webhook deliveries. Sweeps may overlap
with each other and with webhook handling; the ledger deduplicates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from linear_agent_orchestrator.orchestrator.linear.client import LinearApiError
from linear_agent_orchestrator.orchestrator.triggers.events import PollNode
from linear_agent_orchestrator.orchestrator.triggers.ledger import (
    IllegalTransitionError,
    TriggerNotFound,
    TriggerRecord,
)
from linear_agent_orchestrator.orchestrator.triggers.service import PollReport, TriggerService

if TYPE_CHECKING:
    from linear_agent_orchestrator.orchestrator.linear.client import LinearClient

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Reconciler:
    def __init__(
        self,
        *,
        service: TriggerService,
        linear: LinearClient,
        team_id: str,
        limit: int = 15,
        window_hours: float = 24.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._service = service
        self._linear = linear
        self._team_id = team_id.strip()
        self._limit = limit
        self._window = timedelta(hours=window_hours)
        self._clock = clock

    def _fetch(self) -> list[PollNode]:
        since = self._clock() - self._window
        return self._linear.recent_issues(team_id=self._team_id, since=since, first=self._limit)

    def poll_once(self) -> PollReport:
        """Run one sweep. Never raises; failures are reported and logged."""

        if not self._team_id:
            logger.warning("Poll skipped: no team configured")
            return PollReport(skipped_reason="no team configured")

        try:
            nodes = self._fetch()
        except LinearApiError as e:
            logger.warning("Linear poll failed", extra={"error": str(e)})
            return PollReport(error=str(e))

        report = self._service.handle_poll_nodes(nodes)
        logger.info(
            "Poll sweep complete",
            extra={
                "nodes": len(report.nodes),
                "triggered": report.triggered,
                "deduplicated": len(report.deduplicated),
                "errors": len(report.errors),
            },
        )
        return report

    def find_stale(self, nodes: Iterable[PollNode] | None = None) -> list[TriggerRecord]:
        """Active triggers whose issue has since left the target state.

        Only issues present in the sweep are judged; absence says nothing.
        """

        if nodes is None:
            nodes = self._fetch()
        seen_states = {
            node.identifier: (node.state.id if node.state is not None else None) for node in nodes
        }
        target = self._service.normalizer.target_state_id

        stale: list[TriggerRecord] = []
        for record in self._service.ledger.load():
            if not record.is_active or record.work_item_id not in seen_states:
                continue
            if seen_states[record.work_item_id] != target:
                stale.append(record)
        return stale

    def skip_stale(self, nodes: Iterable[PollNode] | None = None) -> list[str]:
        """Mark stale active triggers as skipped. Operator-invoked, never automatic."""

        skipped: list[str] = []
        for record in self.find_stale(nodes):
            try:
                self._service.skip(record.work_item_id)
            except (TriggerNotFound, IllegalTransitionError) as e:
                # Raced with another writer; the record is no longer active.
                logger.info(
                    "Stale trigger already transitioned",
                    extra={"work_item_id": record.work_item_id, "error": str(e)},
                )
                continue
            skipped.append(record.work_item_id)
        return skipped


def format_poll_report(report: PollReport, *, window_hours: float = 24.0) -> str:
    if report.skipped_reason is not None:
        return "No teamId configured."
    if report.error is not None:
        return f"Linear poll failed: {report.error}"
    if not report.nodes:
        return "No recently changed issues found."

    lines = []
    for node in report.nodes:
        state = node.state.name if node.state is not None and node.state.name else "?"
        assignee = (
            node.assignee.name if node.assignee is not None and node.assignee.name else "unassigned"
        )
        lines.append(f"• **{node.identifier}** {node.title or ''} → _{state}_ ({assignee})")

    window = f"{window_hours:g}h"
    text = f"**Recently changed issues (last {window}):**\n" + "\n".join(lines)
    if report.triggered:
        text += (
            f"\n\nTriggered {len(report.triggered)} new dev agent(s) via trigger file: "
            + ", ".join(report.triggered)
        )
    if report.errors:
        text += "\n\nErrors:\n" + "\n".join(f"- {e}" for e in report.errors)
    return text


def format_ledger_status(records: list[TriggerRecord]) -> str:
    if not records:
        return "No triggers recorded."
    lines = []
    for r in records:
        story = r.auxiliary_path or "-"
        lines.append(
            f"{r.work_item_id:<12} {r.status.value:<8} {r.source.value:<8} "
            f"{r.triggered_at}  {story}  {r.title}"
        )
    return "\n".join(lines)
