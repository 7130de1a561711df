"""Direct dispatch of admitted triggers to the execution subsystem.

Direct dispatch is an optimisation. The durable hand-off is the ``pending``
ledger record itself: if the dispatcher is missing, slow or failing, the
record stays ``pending`` and any later drain picks it up.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import requests

from linear_agent_orchestrator.orchestrator.triggers.ledger import (
    TriggerLedger,
    TriggerNotFound,
    TriggerRecord,
    TriggerStatus,
    TriggerSuperseded,
)

if TYPE_CHECKING:
    from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings

logger = logging.getLogger(__name__)

RUN_MODE = "run"


class DispatchFailed(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    task: str
    label: str
    mode: str = RUN_MODE
    model: str | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"task": self.task, "label": self.label, "mode": self.mode}
        if self.model:
            out["model"] = self.model
        return out


@dataclass(frozen=True, slots=True)
class DispatchOutcome:
    """Result of one direct dispatch attempt. Informational only."""

    delivered: bool
    message: str
    details: dict[str, object] = field(default_factory=dict)


class Dispatcher(Protocol):
    """Hands a task to the execution subsystem. Raises on failure."""

    def spawn(self, request: DispatchRequest) -> object: ...


def build_task(record: TriggerRecord, *, fallback_hint: str) -> str:
    story = record.auxiliary_path or f"not found - check {fallback_hint}"
    return (
        f"Implement {record.work_item_id}: {record.title}. Story file: {story}. "
        "Follow Canon workflow. Read story file first."
    )


def build_request(
    record: TriggerRecord, *, fallback_hint: str, model: str | None = None
) -> DispatchRequest:
    return DispatchRequest(
        task=build_task(record, fallback_hint=fallback_hint),
        label=f"dev-{record.work_item_id}",
        model=model or None,
    )


class HttpDispatcher:
    """POSTs the request as JSON to a spawn endpoint."""

    def __init__(
        self, *, url: str, timeout: float, session: requests.Session | None = None
    ) -> None:
        if not url:
            raise ValueError("Dispatch URL is required")
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def spawn(self, request: DispatchRequest) -> object:
        resp = self._session.post(self._url, json=request.to_json(), timeout=self._timeout)
        resp.raise_for_status()
        if not resp.content:
            return {"status_code": resp.status_code}
        try:
            body: Any = resp.json()
        except ValueError:
            return {"status_code": resp.status_code}
        return body

    def close(self) -> None:
        self._session.close()


class CommandDispatcher:
    """Runs a local command with the request JSON on stdin."""

    def __init__(self, *, command: str, timeout: float) -> None:
        argv = shlex.split(command)
        if not argv:
            raise ValueError("Dispatch command is required")
        self._argv = argv
        self._timeout = timeout

    def spawn(self, request: DispatchRequest) -> object:
        result = subprocess.run(
            self._argv,
            input=json.dumps(request.to_json()),
            text=True,
            capture_output=True,
            timeout=self._timeout,
            check=False,
        )
        if result.returncode != 0:
            stderr = result.stderr.strip() or "(no stderr)"
            raise DispatchFailed(f"Dispatch command exited {result.returncode}: {stderr}")
        return {"stdout": result.stdout.strip()}


def build_dispatcher(settings: OrchestratorSettings) -> Dispatcher | None:
    """Return the configured dispatcher, or None when no capability is configured."""

    if settings.dispatch_url.strip():
        return HttpDispatcher(
            url=settings.dispatch_url.strip(), timeout=settings.http_timeout_seconds
        )
    if settings.dispatch_command.strip():
        return CommandDispatcher(
            command=settings.dispatch_command, timeout=settings.http_timeout_seconds
        )
    return None


class DispatchCoordinator:
    """Attempts direct dispatch and records completion in the ledger.

    Never raises: a failed or unavailable dispatch leaves the record ``pending``.
    Completion is recorded against the admission that was dispatched, so a late
    acknowledgement never lands on a newer admission of the same work item.
    """

    def __init__(
        self,
        *,
        ledger: TriggerLedger,
        dispatcher: Dispatcher | None,
        dry_run: bool = False,
        fallback_hint: str = "_bmad-output/stories/",
        model: str | None = None,
    ) -> None:
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._dry_run = dry_run
        self._fallback_hint = fallback_hint
        self._model = model or None
        self._in_flight: set[tuple[str, str, str]] = set()
        self._in_flight_lock = threading.Lock()

    def _claim(self, record: TriggerRecord) -> bool:
        with self._in_flight_lock:
            if record.admission_key in self._in_flight:
                return False
            self._in_flight.add(record.admission_key)
            return True

    def _release(self, record: TriggerRecord) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(record.admission_key)

    def dispatch(self, record: TriggerRecord) -> DispatchOutcome:
        request = build_request(record, fallback_hint=self._fallback_hint, model=self._model)
        log_extra = {"work_item_id": record.work_item_id, "label": request.label}

        if not self._claim(record):
            logger.info("Dispatch already in flight; not repeating it", extra=log_extra)
            return DispatchOutcome(delivered=False, message="Dispatch already in flight")
        try:
            return self._dispatch_claimed(record, request, log_extra)
        finally:
            self._release(record)

    def _dispatch_claimed(
        self, record: TriggerRecord, request: DispatchRequest, log_extra: dict[str, str]
    ) -> DispatchOutcome:
        if self._dry_run:
            logger.info("Dry-run dispatch", extra=log_extra)
            outcome = DispatchOutcome(delivered=True, message="Dry run")
        elif self._dispatcher is None:
            logger.info(
                "Direct dispatch unavailable; trigger stays pending for a later drain",
                extra=log_extra,
            )
            return DispatchOutcome(delivered=False, message="Dispatcher unavailable")
        else:
            try:
                result = self._dispatcher.spawn(request)
            except Exception as e:
                # Timeouts included: degrade to the durable pending record.
                logger.warning(
                    "Direct dispatch failed; trigger stays pending for a later drain",
                    extra={**log_extra, "error": str(e)},
                )
                return DispatchOutcome(delivered=False, message=str(e))
            logger.info("Direct dispatch succeeded", extra={**log_extra, "result": result})
            outcome = DispatchOutcome(
                delivered=True, message="Dispatched", details={"result": result}
            )

        self._record_spawned(record)
        return outcome

    def _record_spawned(self, record: TriggerRecord) -> None:
        try:
            self._ledger.mark_spawned(record.work_item_id, expected=record)
        except (TriggerNotFound, TriggerSuperseded) as e:
            # Skipped (and possibly re-admitted) while the dispatch was in flight.
            logger.warning(
                "Dispatch delivered for an admission that is no longer active",
                extra={"work_item_id": record.work_item_id, "error": str(e)},
            )
        except Exception:
            logger.exception(
                "Dispatch delivered but status update failed",
                extra={"work_item_id": record.work_item_id},
            )

    def drain(self, *, limit: int | None = None) -> list[DispatchOutcome]:
        """Retry direct dispatch for every pending record, oldest first.

        Each record is re-read just before its attempt; records that were
        dispatched, skipped or superseded meanwhile are left alone.
        """

        pending = [r for r in self._ledger.load() if r.status == TriggerStatus.PENDING]
        if limit is not None:
            pending = pending[: max(limit, 0)]

        outcomes: list[DispatchOutcome] = []
        for record in pending:
            current = self._ledger.find_active(record.work_item_id)
            if (
                current is None
                or current.status != TriggerStatus.PENDING
                or current.admission_key != record.admission_key
            ):
                logger.info(
                    "Pending trigger changed before drain; leaving it",
                    extra={"work_item_id": record.work_item_id},
                )
                continue
            outcomes.append(self.dispatch(current))
        logger.info(
            "Drained pending triggers",
            extra={
                "attempted": len(outcomes),
                "delivered": sum(1 for o in outcomes if o.delivered),
            },
        )
        return outcomes
