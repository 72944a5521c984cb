from __future__ import annotations

import logging
import threading

from .orchestrator import ExecutionOrchestrator

logger = logging.getLogger(__name__)


class RecordSweeper:
    """Background thread that evicts expired records on a fixed interval.

    Example:
        ```python
        sweeper = RecordSweeper(sandbox, interval_seconds=60).start()
        ...
        sweeper.stop()
        ```
    """

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        *,
        interval_seconds: float | None = None,
        max_age_ms: int | None = None,
    ) -> None:
        """Bind the sweeper to an orchestrator; defaults come from its config.

        Example:
            ```python
            sweeper = RecordSweeper(sandbox, max_age_ms=600_000)
            ```
        """
        config = orchestrator.config
        self._orchestrator = orchestrator
        self._interval = config.sweep_interval_seconds if interval_seconds is None else interval_seconds
        self._max_age_ms = config.record_max_age_ms if max_age_ms is None else max_age_ms
        if self._interval <= 0:
            raise ValueError("interval_seconds must be positive")
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "RecordSweeper":
        with self._lock:
            if self._thread is not None:
                return self
            self._thread = threading.Thread(target=self._loop, name="pgs-sweeper", daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def run_once(self) -> int:
        """Evict once and return the number of records removed.

        Example:
            ```python
            removed = sweeper.run_once()
            ```
        """
        return self._orchestrator.evict_expired(self._max_age_ms)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Record sweep failed")
