from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import ExecutionNotFound
from .models import Execution, ExecutionMetrics, ExecutionStatus


@dataclass(slots=True)
class RegistryEntry:
    """Record plus the synchronization handles that travel with it."""

    record: Execution
    metrics: ExecutionMetrics
    done: threading.Event = field(default_factory=threading.Event)
    cancel: threading.Event = field(default_factory=threading.Event)


class ExecutionStore:
    """Lock-protected, in-memory map of execution records.

    Every mutation happens under one re-entrant lock, so a terminal status is
    written exactly once no matter which thread gets there first.

    Example:
        ```python
        store = ExecutionStore()
        entry = store.add(Execution(id="python_1_ab", language=Language.PYTHON), ExecutionMetrics("python_1_ab", time.time()))
        ```
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        """Create an empty store.

        Example:
            ```python
            store = ExecutionStore()
            ```
        """
        self._lock = threading.RLock()
        self._entries: dict[str, RegistryEntry] = {}
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._entries

    def add(self, record: Execution, metrics: ExecutionMetrics) -> RegistryEntry:
        """Insert a new Running record.

        Example:
            ```python
            entry = store.add(record, metrics)
            ```
        """
        with self._lock:
            if record.id in self._entries:
                raise ValueError(f"Duplicate execution id: {record.id}")
            entry = RegistryEntry(record=record, metrics=metrics)
            self._entries[record.id] = entry
            return entry

    def entry(self, execution_id: str) -> RegistryEntry:
        """Return the live entry for an id.

        Example:
            ```python
            entry = store.entry("python_1_ab")
            ```
        """
        with self._lock:
            try:
                return self._entries[execution_id]
            except KeyError:
                raise ExecutionNotFound(execution_id) from None

    def snapshot(self, execution_id: str) -> Execution:
        """Return a copy of one record.

        Example:
            ```python
            record = store.snapshot("python_1_ab")
            ```
        """
        with self._lock:
            return self.entry(execution_id).record.snapshot()

    def metrics(self, execution_id: str) -> ExecutionMetrics:
        with self._lock:
            metrics = self.entry(execution_id).metrics
            return ExecutionMetrics(
                id=metrics.id,
                start_time=metrics.start_time,
                end_time=metrics.end_time,
                memory_peak_bytes=metrics.memory_peak_bytes,
                output_size_bytes=metrics.output_size_bytes,
            )

    def records(self) -> list[Execution]:
        """Return copies of all records, newest first.

        Example:
            ```python
            latest = store.records()[0]
            ```
        """
        with self._lock:
            items = [entry.record.snapshot() for entry in self._entries.values()]
        return sorted(items, key=lambda record: record.timestamp, reverse=True)

    def running_ids(self) -> list[str]:
        with self._lock:
            return [
                execution_id
                for execution_id, entry in self._entries.items()
                if entry.record.status is ExecutionStatus.RUNNING
            ]

    def finalize(
        self,
        execution_id: str,
        apply: Callable[[Execution, ExecutionMetrics], None],
        *,
        notify: bool = True,
    ) -> bool:
        """Run `apply` on a still-Running record and mark it done.

        Returns False, without calling `apply`, when the record already
        reached a terminal status. With `notify=False` the done event is left
        for a later `notify_done` call.

        Example:
            ```python
            store.finalize(eid, lambda rec, met: setattr(rec, "status", ExecutionStatus.COMPLETED))
            ```
        """
        with self._lock:
            entry = self.entry(execution_id)
            applied = False
            if entry.record.status is ExecutionStatus.RUNNING:
                apply(entry.record, entry.metrics)
                if entry.record.status is ExecutionStatus.RUNNING:
                    raise ValueError("finalize() must move the record to a terminal status")
                applied = True
            if entry.metrics.end_time is None:
                entry.metrics.end_time = self._clock()
            if notify:
                entry.done.set()
            return applied

    def notify_done(self, execution_id: str) -> None:
        """Wake waiters on a record that has reached a terminal status."""
        with self._lock:
            entry = self._entries.get(execution_id)
            if entry is not None and entry.record.status.is_terminal:
                entry.done.set()

    def evict(self, max_age_ms: int) -> list[str]:
        """Drop terminal records that finished more than `max_age_ms` ago.

        Example:
            ```python
            removed = store.evict(3_600_000)
            ```
        """
        cutoff = self._clock() - max_age_ms / 1000.0
        with self._lock:
            expired = [
                execution_id
                for execution_id, entry in self._entries.items()
                if entry.record.status.is_terminal
                and entry.metrics.end_time is not None
                and entry.metrics.end_time < cutoff
            ]
            for execution_id in expired:
                self._entries.pop(execution_id).done.set()
        return expired
