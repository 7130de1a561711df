"""Unit tests for the dispatch coordinator."""

from __future__ import annotations

import json
import subprocess
import sys
from dataclasses import replace
from unittest.mock import Mock

import pytest
import requests

from linear_agent_orchestrator.orchestrator.config import OrchestratorSettings
from linear_agent_orchestrator.orchestrator.triggers.dispatch import (
    CommandDispatcher,
    DispatchCoordinator,
    DispatchFailed,
    DispatchOutcome,
    Dispatcher,
    DispatchRequest,
    HttpDispatcher,
    build_dispatcher,
    build_request,
    build_task,
)
from linear_agent_orchestrator.orchestrator.triggers.events import NormalizedTransition
from linear_agent_orchestrator.orchestrator.triggers.ledger import (
    TriggerLedger,
    TriggerRecord,
    TriggerSource,
    TriggerStatus,
)


def _admit(ledger: TriggerLedger, transition: NormalizedTransition) -> TriggerRecord:
    return ledger.admit(transition, source=TriggerSource.WEBHOOK).record


def test_task_mentions_story_path_or_fallback(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    record = _admit(ledger, replace(transition, auxiliary_path="_bmad-output/stories/a/s.md"))
    assert build_task(record, fallback_hint="_bmad-output/stories/cruzbot/") == (
        "Implement CRU-123: Test issue. Story file: _bmad-output/stories/a/s.md. "
        "Follow Canon workflow. Read story file first."
    )

    bare = record.model_copy(update={"auxiliary_path": None})
    assert "Story file: not found - check _bmad-output/stories/cruzbot/." in build_task(
        bare, fallback_hint="_bmad-output/stories/cruzbot/"
    )


def test_request_shape(ledger: TriggerLedger, transition: NormalizedTransition) -> None:
    record = _admit(ledger, transition)
    request = build_request(record, fallback_hint="x/", model="sonnet")

    body = request.to_json()
    assert body["label"] == "dev-CRU-123"
    assert body["mode"] == "run"
    assert body["model"] == "sonnet"
    assert "model" not in build_request(record, fallback_hint="x/").to_json()


def test_successful_dispatch_marks_spawned(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    record = _admit(ledger, transition)
    dispatcher = Mock(spec=Dispatcher)
    dispatcher.spawn.return_value = {"runId": "r-1"}

    outcome = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher).dispatch(record)

    assert outcome.delivered is True
    request = dispatcher.spawn.call_args.args[0]
    assert isinstance(request, DispatchRequest)
    assert request.label == "dev-CRU-123"
    assert ledger.load()[0].status == TriggerStatus.SPAWNED


def test_failed_dispatch_leaves_record_pending(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    record = _admit(ledger, transition)
    dispatcher = Mock(spec=Dispatcher)
    dispatcher.spawn.side_effect = requests.Timeout("timed out")

    outcome = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher).dispatch(record)

    assert outcome.delivered is False
    assert "timed out" in outcome.message
    assert ledger.load()[0].status == TriggerStatus.PENDING


def test_missing_dispatcher_is_not_an_error(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    record = _admit(ledger, transition)

    outcome = DispatchCoordinator(ledger=ledger, dispatcher=None).dispatch(record)

    assert outcome.delivered is False
    assert ledger.load()[0].status == TriggerStatus.PENDING


def test_dry_run_always_succeeds(ledger: TriggerLedger, transition: NormalizedTransition) -> None:
    record = _admit(ledger, transition)
    dispatcher = Mock(spec=Dispatcher)

    outcome = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher, dry_run=True).dispatch(
        record
    )

    assert outcome.delivered is True
    dispatcher.spawn.assert_not_called()
    assert ledger.load()[0].status == TriggerStatus.SPAWNED


def test_status_update_failure_does_not_flip_outcome() -> None:
    ledger = Mock(spec=TriggerLedger)
    ledger.mark_spawned.side_effect = OSError("disk full")
    dispatcher = Mock(spec=Dispatcher)
    dispatcher.spawn.return_value = None
    pending = TriggerRecord(
        work_item_id="CRU-123",
        target_state_id="s",
        triggered_at="2026-10-19T10:00:00Z",
        source=TriggerSource.POLL,
    )

    outcome = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher).dispatch(pending)

    assert outcome.delivered is True
    ledger.mark_spawned.assert_called_once_with("CRU-123", expected=pending)


def test_drain_retries_pending_records_and_continues_past_failures(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    for work_item_id in ("CRU-1", "CRU-2", "CRU-3"):
        _admit(ledger, replace(transition, work_item_id=work_item_id))
    ledger.mark_skipped("CRU-3")

    dispatcher = Mock(spec=Dispatcher)
    dispatcher.spawn.side_effect = [RuntimeError("boom"), {"ok": True}]

    outcomes = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher).drain()

    assert [o.delivered for o in outcomes] == [False, True]
    statuses = {r.work_item_id: r.status for r in ledger.load()}
    assert statuses == {
        "CRU-1": TriggerStatus.PENDING,
        "CRU-2": TriggerStatus.SPAWNED,
        "CRU-3": TriggerStatus.SKIPPED,
    }


def test_late_acknowledgement_does_not_mark_newer_admission(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    record = _admit(ledger, transition)

    def skip_and_readmit(_request: DispatchRequest) -> dict[str, bool]:
        # An operator abandons the trigger and a poll re-admits it mid-flight.
        ledger.mark_skipped("CRU-123")
        ledger.admit(transition, source=TriggerSource.POLL)
        return {"ok": True}

    dispatcher = Mock(spec=Dispatcher)
    dispatcher.spawn.side_effect = skip_and_readmit

    outcome = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher).dispatch(record)

    assert outcome.delivered is True
    assert [(r.source, r.status) for r in ledger.load()] == [
        (TriggerSource.WEBHOOK, TriggerStatus.SKIPPED),
        (TriggerSource.POLL, TriggerStatus.PENDING),
    ]


def test_drain_does_not_repeat_a_dispatch_in_flight(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    record = _admit(ledger, transition)
    drained: list[list[DispatchOutcome]] = []
    dispatcher = Mock(spec=Dispatcher)
    coordinator = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher)

    def drain_while_in_flight(_request: DispatchRequest) -> dict[str, bool]:
        drained.append(coordinator.drain())
        return {"ok": True}

    dispatcher.spawn.side_effect = drain_while_in_flight

    outcome = coordinator.dispatch(record)

    assert outcome.delivered is True
    assert dispatcher.spawn.call_count == 1
    assert [o.delivered for o in drained[0]] == [False]
    assert drained[0][0].message == "Dispatch already in flight"
    assert ledger.load()[0].status == TriggerStatus.SPAWNED


def test_drain_leaves_records_changed_since_listing(
    ledger: TriggerLedger, transition: NormalizedTransition
) -> None:
    for work_item_id in ("CRU-1", "CRU-2"):
        _admit(ledger, replace(transition, work_item_id=work_item_id))
    dispatcher = Mock(spec=Dispatcher)

    def skip_the_next_one(request: DispatchRequest) -> dict[str, bool]:
        if request.label == "dev-CRU-1":
            ledger.mark_skipped("CRU-2")
        return {"ok": True}

    dispatcher.spawn.side_effect = skip_the_next_one

    outcomes = DispatchCoordinator(ledger=ledger, dispatcher=dispatcher).drain()

    assert len(outcomes) == 1
    assert dispatcher.spawn.call_count == 1
    statuses = {r.work_item_id: r.status for r in ledger.load()}
    assert statuses == {"CRU-1": TriggerStatus.SPAWNED, "CRU-2": TriggerStatus.SKIPPED}


def test_drain_respects_limit(ledger: TriggerLedger, transition: NormalizedTransition) -> None:
    for work_item_id in ("CRU-1", "CRU-2"):
        _admit(ledger, replace(transition, work_item_id=work_item_id))

    outcomes = DispatchCoordinator(ledger=ledger, dispatcher=None).drain(limit=1)

    assert len(outcomes) == 1


def test_http_dispatcher_posts_request_with_timeout() -> None:
    session = Mock(spec=requests.Session)
    response = Mock()
    response.content = b'{"runId": "r-1"}'
    response.json.return_value = {"runId": "r-1"}
    session.post.return_value = response

    dispatcher = HttpDispatcher(url="http://spawn.local/run", timeout=7.5, session=session)
    result = dispatcher.spawn(DispatchRequest(task="t", label="dev-CRU-1"))

    assert result == {"runId": "r-1"}
    session.post.assert_called_once_with(
        "http://spawn.local/run",
        json={"task": "t", "label": "dev-CRU-1", "mode": "run"},
        timeout=7.5,
    )
    response.raise_for_status.assert_called_once()


def test_command_dispatcher_passes_request_on_stdin(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_run(argv, **kwargs):
        captured["argv"] = argv
        captured.update(kwargs)
        return subprocess.CompletedProcess(argv, 0, stdout="spawned\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    dispatcher = CommandDispatcher(command="spawn-agent --queue dev", timeout=3)
    result = dispatcher.spawn(DispatchRequest(task="t", label="dev-CRU-1"))

    assert result == {"stdout": "spawned"}
    assert captured["argv"] == ["spawn-agent", "--queue", "dev"]
    assert json.loads(str(captured["input"]))["label"] == "dev-CRU-1"
    assert captured["timeout"] == 3


def test_command_dispatcher_raises_on_nonzero_exit() -> None:
    dispatcher = CommandDispatcher(
        command=f'{sys.executable} -c "import sys; sys.exit(3)"', timeout=30
    )
    with pytest.raises(DispatchFailed):
        dispatcher.spawn(DispatchRequest(task="t", label="dev-CRU-1"))


def test_build_dispatcher_prefers_url_then_command(settings: OrchestratorSettings) -> None:
    assert build_dispatcher(settings) is None

    with_command = settings.model_copy(update={"dispatch_command": "spawn-agent"})
    assert isinstance(build_dispatcher(with_command), CommandDispatcher)

    with_url = with_command.model_copy(update={"dispatch_url": "http://spawn.local/run"})
    assert isinstance(build_dispatcher(with_url), HttpDispatcher)
