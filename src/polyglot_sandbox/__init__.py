from .config import InterpreterPolicy, SandboxConfig
from .errors import (
    CapacityExceeded,
    EnvironmentUnavailable,
    ExecutionNotFound,
    FailureKind,
    SandboxError,
    UnsupportedLanguage,
    ValidationError,
)
from .events import EventBus, EventKind, Subscription
from .execution.docker_engine import DockerEngine
from .execution.local_engine import LocalEngine
from .languages import CATALOG, Language, LanguageProfile, profile_for
from .models import Execution, ExecutionMetrics, ExecutionOptions, ExecutionStats, ExecutionStatus
from .orchestrator import ExecutionOrchestrator
from .sweeper import RecordSweeper

__all__ = [
    "CATALOG",
    "CapacityExceeded",
    "DockerEngine",
    "EnvironmentUnavailable",
    "EventBus",
    "EventKind",
    "Execution",
    "ExecutionMetrics",
    "ExecutionNotFound",
    "ExecutionOptions",
    "ExecutionOrchestrator",
    "ExecutionStats",
    "ExecutionStatus",
    "FailureKind",
    "InterpreterPolicy",
    "Language",
    "LanguageProfile",
    "LocalEngine",
    "RecordSweeper",
    "SandboxConfig",
    "SandboxError",
    "Subscription",
    "UnsupportedLanguage",
    "ValidationError",
    "profile_for",
]
