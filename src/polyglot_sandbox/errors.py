from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Why an execution did not complete normally.

    Example:
        ```python
        kind = FailureKind.TIMEOUT
        ```
    """

    TIMEOUT = "Timeout"
    OUTPUT_LIMIT_EXCEEDED = "OutputLimitExceeded"
    RUNTIME_ERROR = "RuntimeError"
    CANCELLED = "Cancelled"
    UNSUPPORTED_LANGUAGE = "UnsupportedLanguage"
    ENVIRONMENT_UNAVAILABLE = "EnvironmentUnavailable"
    INTERNAL_ERROR = "InternalError"


class SandboxError(Exception):
    """Base class for errors raised by the sandbox API."""


class CapacityExceeded(SandboxError):
    """Raised by `submit` when every concurrency slot is taken. Safe to retry.

    Example:
        ```python
        raise CapacityExceeded(5)
        ```
    """

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"Concurrent execution limit reached ({limit}). "
            "Please wait for other executions to complete."
        )
        self.limit = limit


class ValidationError(SandboxError, ValueError):
    """Raised when submitted options are malformed or out of bounds."""


class UnsupportedLanguage(SandboxError):
    """Raised when a language tag is unknown to the catalog.

    Example:
        ```python
        raise UnsupportedLanguage("cobol")
        ```
    """

    def __init__(self, language: str, reason: str | None = None) -> None:
        message = f"Unsupported language: {language}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.language = language


class EnvironmentUnavailable(SandboxError):
    """Raised when a runtime or container image cannot be provided."""


class ExecutionNotFound(SandboxError, LookupError):
    """Raised when an execution id is not in the registry.

    Example:
        ```python
        raise ExecutionNotFound("python_1700000000000_ab12cd34")
        ```
    """

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id
