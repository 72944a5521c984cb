from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable

from ..errors import FailureKind
from ..languages import LanguageProfile

OutputSink = Callable[[str], None]

EXIT_FAILURE = 1
EXIT_TIMEOUT = 124
EXIT_CANCELLED = 130
# Used when the code never ran (unsupported language, no runtime, internal error).
EXIT_NOT_RUN = -1


def _discard(_text: str) -> None:
    return None


@dataclass(slots=True)
class ExecutionRequest:
    """Normalized request sent to an execution engine.

    Example:
        ```python
        req = ExecutionRequest(
            execution_id="python_1_ab",
            code="print(1)",
            profile=profile_for("python"),
            timeout_ms=5000,
            memory_limit_mb=256,
            max_output_bytes=1024 * 1024,
        )
        ```
    """

    execution_id: str
    code: str
    profile: LanguageProfile
    timeout_ms: int
    memory_limit_mb: int
    max_output_bytes: int
    stdin: str | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    on_output: OutputSink = _discard


@dataclass(slots=True)
class ExecutionOutcome:
    """Normalized response returned by an execution engine.

    `failure` is None exactly when the code ran to completion with exit
    code 0.

    Example:
        ```python
        out = ExecutionOutcome(output="hi\\n", exit_code=0)
        ```
    """

    output: str = ""
    exit_code: int = 0
    failure: FailureKind | None = None
    error: str | None = None
    memory_used_bytes: int = 0
    output_size_bytes: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None
