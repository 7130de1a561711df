"""Append-only trigger ledger.

The ledger is a JSONL file with one :class:`TriggerRecord` per line. It is the
only authority for "has this work item already been actioned": both ingestion
paths and the dispatch coordinator re-read it before every write.

Status lifecycle::

    (admission)  -> pending
    pending      -> spawned | skipped
    spawned      -> skipped
    skipped      -> (terminal; a new sighting appends a fresh record)

At most one record per work item may be ``pending`` or ``spawned``.

Writers are serialised with a process-local lock plus an advisory ``flock`` on
a sidecar lock file, so admission (read, check, append) is atomic for every
writer on the host. Readers never lock; they tolerate partially-written or
corrupt lines by skipping them.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from linear_agent_orchestrator.orchestrator.triggers.events import NormalizedTransition

logger = logging.getLogger(__name__)


class TriggerStatus(str, Enum):
    PENDING = "pending"
    SPAWNED = "spawned"
    SKIPPED = "skipped"


class TriggerSource(str, Enum):
    WEBHOOK = "webhook"
    POLL = "poll"


ACTIVE_STATUSES: frozenset[TriggerStatus] = frozenset(
    {TriggerStatus.PENDING, TriggerStatus.SPAWNED}
)

ALLOWED_TRANSITIONS: dict[TriggerStatus, set[TriggerStatus]] = {
    TriggerStatus.PENDING: {TriggerStatus.SPAWNED, TriggerStatus.SKIPPED},
    TriggerStatus.SPAWNED: {TriggerStatus.SKIPPED},
    TriggerStatus.SKIPPED: set(),
}


class IllegalTransitionError(ValueError):
    pass


class TriggerSuperseded(IllegalTransitionError):
    """The work item's active record is not the admission the caller acted on."""


class TriggerNotFound(KeyError):
    """Raised when no pending/spawned record exists for a work item."""

    def __str__(self) -> str:
        return f"No active trigger for {self.args[0]}"


class TriggerRecord(BaseModel):
    """One admitted state transition.

    Serialised with the field names of the on-disk format (``issueId``, ...);
    Python code uses the snake_case names.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    work_item_id: str = Field(alias="issueId", min_length=1)
    title: str = Field(default="", alias="issueTitle")
    target_state_id: str = Field(alias="stateId")
    triggered_at: str = Field(alias="triggeredAt")
    source: TriggerSource
    status: TriggerStatus = TriggerStatus.PENDING
    auxiliary_path: str | None = Field(default=None, alias="storyFilePath")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def admission_key(self) -> tuple[str, str, str]:
        """Identifies one admission of a work item, independent of its status."""

        return (self.work_item_id, self.triggered_at, self.source.value)

    def to_json_line(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), ensure_ascii=False) + "\n"


def transition(record: TriggerRecord, to: TriggerStatus) -> TriggerRecord:
    allowed = ALLOWED_TRANSITIONS.get(record.status, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal transition for {record.work_item_id}: {record.status.value} -> {to.value}"
        )
    return record.model_copy(update={"status": to})


@dataclass(frozen=True, slots=True)
class AdmissionResult:
    """Outcome of an admission attempt.

    ``record`` is the newly written record when ``written`` is true, otherwise
    the existing active record that blocked admission.
    """

    written: bool
    record: TriggerRecord


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


class TriggerLedger:
    """JSONL-file backed trigger ledger."""

    def __init__(self, path: Path, *, lock_path: Path | None = None) -> None:
        self._path = path
        self._lock_path = lock_path or path.with_name(path.name + ".lock")
        self._thread_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # -- reads -------------------------------------------------------------

    def _read_lines(self) -> list[bytes]:
        # Records are separated by "\n" only. Titles may legitimately contain
        # U+2028/U+0085, which str.splitlines() would treat as line breaks.
        if not self._path.exists():
            return []
        return self._path.read_bytes().split(b"\n")

    @staticmethod
    def _parse_line(line: bytes, *, lineno: int, path: Path) -> TriggerRecord | None:
        try:
            return TriggerRecord.model_validate(json.loads(line.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError):
            logger.warning(
                "Skipping malformed trigger ledger line",
                extra={"path": str(path), "line": lineno},
            )
            return None

    def load(self) -> list[TriggerRecord]:
        """Return every well-formed record, in file order."""

        records: list[TriggerRecord] = []
        for lineno, line in enumerate(self._read_lines(), start=1):
            if not line.strip():
                continue
            record = self._parse_line(line, lineno=lineno, path=self._path)
            if record is not None:
                records.append(record)
        return records

    def find_active(self, work_item_id: str) -> TriggerRecord | None:
        return _last_active(self.load(), work_item_id)

    def pending(self) -> list[TriggerRecord]:
        return [r for r in self.load() if r.status == TriggerStatus.PENDING]

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TriggerStatus}
        for record in self.load():
            counts[record.status.value] += 1
        return counts

    # -- writes ------------------------------------------------------------

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock:
            self._lock_path.touch(exist_ok=True)
            with self._lock_path.open("r+", encoding="utf-8") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def admit(
        self,
        candidate: NormalizedTransition,
        *,
        source: TriggerSource,
        triggered_at: str | None = None,
    ) -> AdmissionResult:
        """Append a ``pending`` record unless the work item already has an active one."""

        with self._locked():
            existing = _last_active(self.load(), candidate.work_item_id)
            if existing is not None:
                return AdmissionResult(written=False, record=existing)

            record = TriggerRecord(
                work_item_id=candidate.work_item_id,
                title=candidate.title,
                target_state_id=candidate.target_state_id,
                triggered_at=triggered_at or _utc_iso_now(),
                source=source,
                status=TriggerStatus.PENDING,
                auxiliary_path=candidate.auxiliary_path,
            )
            self._append_unlocked(record.to_json_line())
            return AdmissionResult(written=True, record=record)

    def write_trigger(
        self,
        candidate: NormalizedTransition,
        *,
        source: TriggerSource,
        triggered_at: str | None = None,
    ) -> bool:
        """Boolean form of :meth:`admit`: True if written, False if deduplicated."""

        return self.admit(candidate, source=source, triggered_at=triggered_at).written

    def _append_unlocked(self, line: str) -> None:
        # A single write of the whole line; a concurrent reader sees all of it or none of it.
        with self._path.open("ab") as handle:
            handle.write(line.encode("utf-8"))
            handle.flush()
            os.fsync(handle.fileno())

    def set_status(
        self,
        work_item_id: str,
        status: TriggerStatus,
        *,
        expected: TriggerRecord | None = None,
    ) -> TriggerRecord:
        """Move the active record for `work_item_id` to `status`.

        With `expected`, the transition only applies if the active record is
        that same admission; otherwise :class:`TriggerSuperseded` is raised.

        The file is rewritten as a whole (temp file + rename). Malformed lines,
        including undecodable ones, are carried over byte for byte.
        """

        with self._locked():
            lines = self._read_lines()
            target_index: int | None = None
            target: TriggerRecord | None = None
            for idx, line in enumerate(lines):
                if not line.strip():
                    continue
                record = self._parse_line(line, lineno=idx + 1, path=self._path)
                if record is None or record.work_item_id != work_item_id:
                    continue
                if record.is_active:
                    target_index, target = idx, record

            if target is None or target_index is None:
                raise TriggerNotFound(work_item_id)
            if expected is not None and target.admission_key != expected.admission_key:
                raise TriggerSuperseded(
                    f"Active trigger for {work_item_id} was admitted at {target.triggered_at} "
                    f"({target.source.value}), not {expected.triggered_at} "
                    f"({expected.source.value})"
                )

            updated = transition(target, status)
            lines[target_index] = updated.to_json_line().rstrip("\n").encode("utf-8")
            self._rewrite_unlocked(lines)

        logger.info(
            "Trigger status updated",
            extra={
                "work_item_id": work_item_id,
                "from_status": target.status.value,
                "to_status": status.value,
            },
        )
        return updated

    def mark_spawned(
        self, work_item_id: str, *, expected: TriggerRecord | None = None
    ) -> TriggerRecord:
        return self.set_status(work_item_id, TriggerStatus.SPAWNED, expected=expected)

    def mark_skipped(
        self, work_item_id: str, *, expected: TriggerRecord | None = None
    ) -> TriggerRecord:
        """Abandon the active record, re-arming the work item for a fresh admission."""

        return self.set_status(work_item_id, TriggerStatus.SKIPPED, expected=expected)

    def _rewrite_unlocked(self, lines: list[bytes]) -> None:
        content = b"".join(line + b"\n" for line in lines if line.strip())
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise


def _last_active(records: list[TriggerRecord], work_item_id: str) -> TriggerRecord | None:
    for record in reversed(records):
        if record.work_item_id == work_item_id and record.is_active:
            return record
    return None
