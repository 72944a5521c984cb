from __future__ import annotations

import hashlib
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Mapping

from .config import SandboxConfig
from .errors import (
    CapacityExceeded,
    ExecutionNotFound,
    FailureKind,
    SandboxError,
    UnsupportedLanguage,
    ValidationError,
)
from .events import (
    EventBus,
    ExecutionCancelled,
    ExecutionCompleted,
    ExecutionStarted,
    OutputChunk,
)
from .execution.docker_engine import DockerEngine
from .execution.engine import ExecutionEngine
from .execution.local_engine import LocalEngine
from .execution.types import EXIT_CANCELLED, EXIT_NOT_RUN, ExecutionOutcome, ExecutionRequest
from .governor import ConcurrencyGovernor
from .languages import CATALOG, IsolationBackend, Language, profile_for
from .models import (
    Execution,
    ExecutionMetrics,
    ExecutionOptions,
    ExecutionStats,
    ExecutionStatus,
)
from .registry import ExecutionStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Execution cancelled by user"

_STATUS_FOR_FAILURE = {
    FailureKind.TIMEOUT: ExecutionStatus.TIMEOUT,
    FailureKind.CANCELLED: ExecutionStatus.CANCELLED,
}


def status_for(outcome: ExecutionOutcome) -> ExecutionStatus:
    """Map an engine outcome onto the coarse record status.

    Example:
        ```python
        status_for(ExecutionOutcome(failure=FailureKind.TIMEOUT))  # ExecutionStatus.TIMEOUT
        ```
    """
    if outcome.failure is None:
        return ExecutionStatus.COMPLETED
    return _STATUS_FOR_FAILURE.get(outcome.failure, ExecutionStatus.ERROR)


def default_engines(
    config: SandboxConfig,
    *,
    docker_host: str | None = None,
    docker_context: str | None = None,
) -> dict[IsolationBackend, ExecutionEngine]:
    """Build one engine per isolation backend from a config.

    Example:
        ```python
        engines = default_engines(SandboxConfig(), docker_context="remote")
        ```
    """
    return {
        IsolationBackend.LOCAL: LocalEngine(policy=config.policy),
        IsolationBackend.DOCKER: DockerEngine(
            config=config,
            docker_host=docker_host,
            docker_context=docker_context,
        ),
    }


class ExecutionOrchestrator:
    """Accept submissions, run them on the right backend and keep their records.

    `submit` returns at once; the backend call runs on a thread pool sized to
    the concurrency bound. Records live in an `ExecutionStore` and only this
    class writes their terminal status.

    Example:
        ```python
        with ExecutionOrchestrator(SandboxConfig()) as sandbox:
            eid = sandbox.submit(ExecutionOptions(code="print('hi')", language="python"))
            result = sandbox.wait(eid)
        ```
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        *,
        engines: Mapping[IsolationBackend, ExecutionEngine] | None = None,
        store: ExecutionStore | None = None,
        events: EventBus | None = None,
    ) -> None:
        """Wire the governor, store, event bus and engines together.

        Example:
            ```python
            sandbox = ExecutionOrchestrator(engines={IsolationBackend.LOCAL: LocalEngine()})
            ```
        """
        self._config = config or SandboxConfig()
        self._governor = ConcurrencyGovernor(self._config.max_concurrent_executions)
        self._store = store or ExecutionStore()
        self.events = events or EventBus()
        self._engines = dict(engines) if engines is not None else default_engines(self._config)
        self._pool = ThreadPoolExecutor(
            max_workers=self._config.max_concurrent_executions,
            thread_name_prefix="pgs-exec",
        )
        self._counter = itertools.count()
        self._state_lock = threading.Lock()
        self._closed = False

    @property
    def config(self) -> SandboxConfig:
        return self._config

    @property
    def governor(self) -> ConcurrencyGovernor:
        return self._governor

    def __enter__(self) -> "ExecutionOrchestrator":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def submit(self, options: ExecutionOptions) -> str:
        """Validate and start one execution, returning its id.

        Raises `ValidationError`, `UnsupportedLanguage` or `CapacityExceeded`
        without creating a record.

        Example:
            ```python
            eid = sandbox.submit(ExecutionOptions(code="fn main() {}", language="rust", timeout_ms=20000))
            ```
        """
        self._validate(options)
        language = Language.parse(options.language)
        profile = profile_for(language)
        engine = self._engines.get(profile.backend)
        if engine is None:
            raise UnsupportedLanguage(language.value, f"no {profile.backend.value} backend configured")

        with self._state_lock:
            if self._closed:
                raise SandboxError("Orchestrator has been shut down")
            if not self._governor.try_acquire():
                logger.info("Rejected %s submission: %d executions already running", language.value, self._governor.limit)
                raise CapacityExceeded(self._governor.limit)

        try:
            execution_id = self._new_id(language, options.code)
            entry = self._store.add(
                Execution(id=execution_id, language=language),
                ExecutionMetrics(id=execution_id, start_time=time.time()),
            )
        except BaseException:
            self._governor.release()
            raise

        request = ExecutionRequest(
            execution_id=execution_id,
            code=options.code,
            profile=profile,
            timeout_ms=options.timeout_ms or self._config.default_timeout_ms,
            memory_limit_mb=options.memory_limit_mb or self._config.default_memory_limit_mb,
            max_output_bytes=self._config.max_output_bytes,
            stdin=options.stdin,
            cancel_event=entry.cancel,
            on_output=lambda text: self.events.publish(OutputChunk(execution_id, text)),
        )
        logger.info(
            "Starting execution %s (%s, %s backend, active %d/%d)",
            execution_id,
            language.value,
            profile.backend.value,
            self._governor.active,
            self._governor.limit,
        )
        self.events.publish(ExecutionStarted(execution_id, language))
        try:
            self._pool.submit(self._run, engine, request, time.monotonic())
        except RuntimeError as exc:
            # The pool was shut down between the closed check and dispatch.
            self._governor.release()
            self._finish(
                execution_id,
                ExecutionOutcome(exit_code=EXIT_NOT_RUN, failure=FailureKind.INTERNAL_ERROR, error=str(exc)),
                time.monotonic(),
            )
            self._store.notify_done(execution_id)
            raise SandboxError("Orchestrator has been shut down") from exc
        return execution_id

    def get_result(self, execution_id: str) -> Execution:
        """Return a snapshot of one record.

        Example:
            ```python
            record = sandbox.get_result(eid)
            ```
        """
        return self._store.snapshot(execution_id)

    def wait(self, execution_id: str, timeout: float | None = None) -> Execution:
        """Block until the record is terminal, or `timeout` seconds pass.

        The returned snapshot may still be Running if the timeout elapsed.

        Example:
            ```python
            record = sandbox.wait(eid, timeout=30)
            ```
        """
        entry = self._store.entry(execution_id)
        entry.done.wait(timeout)
        try:
            return self._store.snapshot(execution_id)
        except ExecutionNotFound:
            # Evicted while we waited; the entry we hold is still the final record.
            return entry.record.snapshot()

    def cancel(self, execution_id: str) -> bool:
        """Cancel a Running execution; returns False if it had already finished.

        Example:
            ```python
            sandbox.cancel(eid)
            ```
        """
        entry = self._store.entry(execution_id)

        def apply(record: Execution, metrics: ExecutionMetrics) -> None:
            record.status = ExecutionStatus.CANCELLED
            record.failure = FailureKind.CANCELLED
            record.error = CANCELLED_MESSAGE
            record.exit_code = EXIT_CANCELLED
            record.runtime_ms = max(0, int((time.time() - metrics.start_time) * 1000))

        applied = self._store.finalize(execution_id, apply)
        if applied:
            entry.cancel.set()
            logger.info("Cancelled execution %s", execution_id)
            self.events.publish(ExecutionCancelled(execution_id))
        return applied

    def list_executions(self) -> list[Execution]:
        """Return snapshots of every record, newest first.

        Example:
            ```python
            latest = sandbox.list_executions()[:10]
            ```
        """
        return self._store.records()

    def evict_expired(self, max_age_ms: int | None = None) -> int:
        """Remove terminal records older than `max_age_ms` and return how many went.

        Example:
            ```python
            removed = sandbox.evict_expired(60_000)
            ```
        """
        age = self._config.record_max_age_ms if max_age_ms is None else max_age_ms
        removed = self._store.evict(age)
        if removed:
            logger.info("Evicted %d expired execution record(s)", len(removed))
        return len(removed)

    def get_metrics(self, execution_id: str) -> ExecutionMetrics:
        return self._store.metrics(execution_id)

    def get_stats(self) -> ExecutionStats:
        """Summarize the registry by status.

        Example:
            ```python
            stats = sandbox.get_stats()
            stats.running
            ```
        """
        records = self._store.records()
        counts = {status: 0 for status in ExecutionStatus}
        for record in records:
            counts[record.status] += 1
        finished = [record.runtime_ms for record in records if record.status.is_terminal]
        return ExecutionStats(
            total=len(records),
            running=counts[ExecutionStatus.RUNNING],
            completed=counts[ExecutionStatus.COMPLETED],
            failed=counts[ExecutionStatus.ERROR],
            timed_out=counts[ExecutionStatus.TIMEOUT],
            cancelled=counts[ExecutionStatus.CANCELLED],
            avg_runtime_ms=(sum(finished) / len(finished)) if finished else 0.0,
            active_executions=self._governor.active,
            max_concurrent=self._governor.limit,
        )

    def supported_languages(self) -> list[Language]:
        """Languages that can actually run with the configured engines.

        Example:
            ```python
            [lang.value for lang in sandbox.supported_languages()]
            ```
        """
        return [
            language
            for language, profile in CATALOG.items()
            if profile.backend in self._engines and not profile.requires_transform
        ]

    def shutdown(self, wait: bool = True) -> None:
        """Cancel whatever is still running and stop the dispatch pool.

        Example:
            ```python
            sandbox.shutdown()
            ```
        """
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        for execution_id in self._store.running_ids():
            self.cancel(execution_id)
        self._pool.shutdown(wait=wait)

    def _run(self, engine: ExecutionEngine, request: ExecutionRequest, started: float) -> None:
        try:
            try:
                outcome = engine.execute(request)
            except Exception as exc:
                logger.exception("Backend failed for execution %s", request.execution_id)
                outcome = ExecutionOutcome(
                    exit_code=EXIT_NOT_RUN,
                    failure=FailureKind.INTERNAL_ERROR,
                    error=f"Internal error: {exc}",
                )
            self._finish(request.execution_id, outcome, started)
        finally:
            self._governor.release()
            self._store.notify_done(request.execution_id)

    def _finish(self, execution_id: str, outcome: ExecutionOutcome, started: float) -> None:
        runtime_ms = max(0, int((time.monotonic() - started) * 1000))
        status = status_for(outcome)

        def apply(record: Execution, metrics: ExecutionMetrics) -> None:
            record.status = status
            record.output = outcome.output
            record.error = outcome.error
            record.failure = outcome.failure
            record.exit_code = outcome.exit_code
            record.runtime_ms = runtime_ms
            record.memory_used_bytes = outcome.memory_used_bytes
            metrics.memory_peak_bytes = outcome.memory_used_bytes or None
            metrics.output_size_bytes = outcome.output_size_bytes

        applied = self._store.finalize(execution_id, apply, notify=False)
        if not applied:
            logger.debug("Execution %s was already %s; dropping late outcome", execution_id, status.value)
            return
        logger.info(
            "Execution %s finished: %s in %dms (active %d)",
            execution_id,
            status.value,
            runtime_ms,
            self._governor.active - 1,
        )
        self.events.publish(ExecutionCompleted(execution_id, self._store.snapshot(execution_id)))

    def _new_id(self, language: Language, code: str) -> str:
        seed = f"{language.value}|{code}|{time.time_ns()}|{next(self._counter)}"
        digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:8]
        return f"{language.value}_{int(time.time() * 1000)}_{digest}"

    def _validate(self, options: ExecutionOptions) -> None:
        config = self._config
        code = options.code
        if not isinstance(code, str) or not code.strip():
            raise ValidationError("Code must be a non-empty string")
        if len(code) > config.max_code_chars:
            raise ValidationError(f"Code exceeds the maximum length of {config.max_code_chars} characters")
        if options.timeout_ms is not None:
            if isinstance(options.timeout_ms, bool) or not isinstance(options.timeout_ms, int):
                raise ValidationError("timeout_ms must be an integer")
            if not 1 <= options.timeout_ms <= config.max_timeout_ms:
                raise ValidationError(f"timeout_ms must be between 1 and {config.max_timeout_ms}")
        if options.memory_limit_mb is not None:
            if isinstance(options.memory_limit_mb, bool) or not isinstance(options.memory_limit_mb, int):
                raise ValidationError("memory_limit_mb must be an integer")
            if not config.min_memory_limit_mb <= options.memory_limit_mb <= config.max_memory_limit_mb:
                raise ValidationError(
                    f"memory_limit_mb must be between {config.min_memory_limit_mb} "
                    f"and {config.max_memory_limit_mb}"
                )
        if options.stdin is not None:
            if not isinstance(options.stdin, str):
                raise ValidationError("stdin must be a string")
            if len(options.stdin.encode("utf-8")) > config.max_stdin_bytes:
                raise ValidationError(f"stdin exceeds the maximum size of {config.max_stdin_bytes} bytes")
