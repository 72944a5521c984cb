from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import FailureKind
from .languages import Language


class ExecutionStatus(str, Enum):
    """Lifecycle state of an execution. Everything but `RUNNING` is terminal."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Return True once the status can no longer change.

        Example:
            ```python
            ExecutionStatus.TIMEOUT.is_terminal  # True
            ```
        """
        return self is not ExecutionStatus.RUNNING


@dataclass(frozen=True, slots=True)
class ExecutionOptions:
    """One submission. Frozen once built.

    Example:
        ```python
        opts = ExecutionOptions(code="print('hi')", language="python", timeout_ms=2000)
        ```
    """

    code: str
    language: Language | str
    timeout_ms: int | None = None
    memory_limit_mb: int | None = None
    stdin: str | None = None


@dataclass(slots=True)
class Execution:
    """Registry record for one submission and its result.

    Example:
        ```python
        record = Execution(id="python_1_ab", language=Language.PYTHON)
        ```
    """

    id: str
    language: Language
    status: ExecutionStatus = ExecutionStatus.RUNNING
    output: str = ""
    error: str | None = None
    failure: FailureKind | None = None
    exit_code: int = 0
    runtime_ms: int = 0
    memory_used_bytes: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def snapshot(self) -> "Execution":
        """Return a detached copy safe to hand to callers.

        Example:
            ```python
            copy = record.snapshot()
            ```
        """
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        """Render the external result shape.

        Example:
            ```python
            payload = record.to_dict()
            payload["status"]  # "completed"
            ```
        """
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "output": self.output,
            "exitCode": self.exit_code,
            "runtimeMs": self.runtime_ms,
            "memoryUsedBytes": self.memory_used_bytes,
            "language": self.language.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.failure is not None:
            payload["failure"] = self.failure.value
        return payload


@dataclass(slots=True)
class ExecutionMetrics:
    """Timing and resource figures kept next to each execution.

    Times are `time.time()` seconds.
    """

    id: str
    start_time: float
    end_time: float | None = None
    memory_peak_bytes: int | None = None
    output_size_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class ExecutionStats:
    """Aggregate view over the registry."""

    total: int
    running: int
    completed: int
    failed: int
    timed_out: int
    cancelled: int
    avg_runtime_ms: float
    active_executions: int
    max_concurrent: int
