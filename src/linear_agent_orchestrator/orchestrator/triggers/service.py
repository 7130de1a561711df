"""Trigger ingestion pipeline shared by the webhook and poll paths.

    event -> normalise -> ledger admission -> (if admitted) direct dispatch

Both paths converge on the same ledger; the ledger's admission gate, not the
callers, guarantees at most one active trigger per work item.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings
from linear_agent_orchestrator.orchestrator.triggers.dispatch import (
    DispatchCoordinator,
    DispatchOutcome,
    build_dispatcher,
)
from linear_agent_orchestrator.orchestrator.triggers.event_log import EventLog
from linear_agent_orchestrator.orchestrator.triggers.events import (
    DocumentPathPattern,
    EventNormalizer,
    NormalizedTransition,
    PollNode,
    PushPayload,
    parse_push_payload,
)
from linear_agent_orchestrator.orchestrator.triggers.ledger import (
    TriggerLedger,
    TriggerRecord,
    TriggerSource,
    TriggerStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IngestResult:
    work_item_id: str
    source: TriggerSource
    written: bool
    status: TriggerStatus
    outcome: DispatchOutcome | None = None


@dataclass(slots=True)
class PollReport:
    """What one poll sweep saw and did."""

    nodes: list[PollNode] = field(default_factory=list)
    triggered: list[str] = field(default_factory=list)
    deduplicated: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    error: str | None = None
    skipped_reason: str | None = None


class TriggerService:
    """High-level, testable trigger ingestion."""

    def __init__(
        self,
        *,
        ledger: TriggerLedger,
        normalizer: EventNormalizer,
        coordinator: DispatchCoordinator,
        event_log: EventLog | None = None,
        state_labels: dict[str, str] | None = None,
        retry_pending_on_sighting: bool = False,
    ) -> None:
        self._ledger = ledger
        self._normalizer = normalizer
        self._coordinator = coordinator
        self._event_log = event_log
        self._state_labels = state_labels or {}
        self._retry_pending_on_sighting = retry_pending_on_sighting

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> TriggerService:
        ledger = TriggerLedger(settings.ledger_file, lock_path=settings.ledger_lock_file)
        normalizer = EventNormalizer(
            target_state_id=settings.target_state_id,
            team_id=settings.team_id,
            document_pattern=DocumentPathPattern(
                root=settings.document_root, extension=settings.document_extension
            ),
        )
        coordinator = DispatchCoordinator(
            ledger=ledger,
            dispatcher=build_dispatcher(settings),
            dry_run=settings.dispatch_dry_run,
            fallback_hint=settings.document_fallback_hint,
            model=settings.dispatch_model,
        )
        return cls(
            ledger=ledger,
            normalizer=normalizer,
            coordinator=coordinator,
            event_log=EventLog(settings.event_log_file) if settings.log_events else None,
            state_labels=settings.state_labels,
            retry_pending_on_sighting=settings.retry_pending_on_sighting,
        )

    @property
    def ledger(self) -> TriggerLedger:
        return self._ledger

    @property
    def normalizer(self) -> EventNormalizer:
        return self._normalizer

    @property
    def coordinator(self) -> DispatchCoordinator:
        return self._coordinator

    def ingest(self, candidate: NormalizedTransition, *, source: TriggerSource) -> IngestResult:
        admission = self._ledger.admit(candidate, source=source)
        record = admission.record
        log_extra = {"work_item_id": candidate.work_item_id, "source": source.value}

        if not admission.written:
            logger.info(
                "Trigger deduplicated; work item already pending/spawned",
                extra={**log_extra, "status": record.status.value},
            )
            outcome = None
            if self._retry_pending_on_sighting and record.status == TriggerStatus.PENDING:
                outcome = self._coordinator.dispatch(record)
            return IngestResult(
                work_item_id=candidate.work_item_id,
                source=source,
                written=False,
                status=self._current_status(record, outcome),
                outcome=outcome,
            )

        logger.info(
            "Trigger written",
            extra={**log_extra, "story_file_path": record.auxiliary_path},
        )
        outcome = self._coordinator.dispatch(record)
        return IngestResult(
            work_item_id=candidate.work_item_id,
            source=source,
            written=True,
            status=self._current_status(record, outcome),
            outcome=outcome,
        )

    @staticmethod
    def _current_status(record: TriggerRecord, outcome: DispatchOutcome | None) -> TriggerStatus:
        if outcome is not None and outcome.delivered:
            return TriggerStatus.SPAWNED
        return record.status

    # -- push path ---------------------------------------------------------

    def handle_push(self, payload: PushPayload) -> IngestResult | None:
        change = self._normalizer.observe_push(payload)
        if change is None:
            return None

        label = self._state_labels.get(change.to_state_id or "", "other")
        logger.info(
            "Webhook state change",
            extra={
                "work_item_id": change.work_item_id,
                "to_state_id": change.to_state_id,
                "label": label,
            },
        )
        if self._event_log is not None:
            self._event_log.record_state_change(change, label=label)

        candidate = self._normalizer.normalize_push(payload)
        if candidate is None:
            return None
        return self.ingest(candidate, source=TriggerSource.WEBHOOK)

    def process_webhook_body(self, raw_body: bytes | str) -> IngestResult | None:
        """Parse and ingest one verified webhook body. Never raises."""

        try:
            payload = parse_push_payload(raw_body)
            if payload is None:
                return None
            return self.handle_push(payload)
        except Exception:
            logger.exception("Webhook processing failed")
            return None

    # -- poll path ---------------------------------------------------------

    def handle_poll_nodes(self, nodes: Iterable[PollNode]) -> PollReport:
        report = PollReport()
        for node in nodes:
            report.nodes.append(node)
            try:
                candidate = self._normalizer.normalize_poll_node(node)
                if candidate is None:
                    continue
                result = self.ingest(candidate, source=TriggerSource.POLL)
            except Exception as e:
                logger.exception("Poll ingestion failed", extra={"work_item_id": node.identifier})
                report.errors.append(f"{node.identifier}: {e}")
                continue

            if result.written:
                report.triggered.append(result.work_item_id)
            else:
                report.deduplicated.append(result.work_item_id)
        return report

    # -- operator transitions ----------------------------------------------

    def skip(self, work_item_id: str) -> TriggerRecord:
        return self._ledger.mark_skipped(work_item_id)

    def mark_spawned(self, work_item_id: str) -> TriggerRecord:
        return self._ledger.mark_spawned(work_item_id)

    def drain(self, *, limit: int | None = None) -> list[DispatchOutcome]:
        return self._coordinator.drain(limit=limit)
