from __future__ import annotations

from typing import Protocol

from .types import ExecutionOutcome, ExecutionRequest


class ExecutionEngine(Protocol):
    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Execute one request and return normalized execution outcome.

        Implementations own whatever they start for the request and release
        it before returning, on every path. Mid-run failures are reported in
        the outcome rather than raised.

        Example:
            ```python
            outcome = engine.execute(request)
            ```
        """
        ...
