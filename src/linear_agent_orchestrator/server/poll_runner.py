"""Background poll loop for the server process."""

from __future__ import annotations

import logging
import threading

from linear_agent_orchestrator.orchestrator.triggers.reconciler import Reconciler

logger = logging.getLogger(__name__)


class PollLoop:
    """Runs `Reconciler.poll_once` every `interval_seconds` on a daemon thread."""

    def __init__(self, *, reconciler: Reconciler, interval_seconds: float) -> None:
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="linear-poll-loop", daemon=True)
        self._thread.start()
        logger.info("Poll loop started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._reconciler.poll_once()
            except Exception:
                logger.exception("Poll loop iteration failed")
            self._stop.wait(self._interval)
