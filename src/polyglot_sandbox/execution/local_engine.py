from __future__ import annotations

import json
import logging
import math
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

from ..config import InterpreterPolicy
from ..errors import FailureKind
from ..governor import OutputGovernor
from .framing import Channel, FrameDecoder, FramingError
from .streaming import RaceWinner, StreamPump, race
from .types import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_NOT_RUN,
    EXIT_TIMEOUT,
    ExecutionOutcome,
    ExecutionRequest,
)

logger = logging.getLogger(__name__)

STDERR_TAIL_BYTES = 4096
REAP_TIMEOUT_SECONDS = 5.0


def _worker_path() -> Path:
    """Return the absolute path to the worker module file.

    Example:
        ```python
        path = _worker_path()
        ```
    """
    return Path(__file__).resolve().parents[1] / "worker.py"


def _worker_env() -> dict[str, str]:
    # The worker inherits nothing from the host environment beyond locale basics.
    env: dict[str, str] = {}
    for name in ("LANG", "LC_ALL", "SYSTEMROOT"):
        if name in os.environ:
            env[name] = os.environ[name]
    return env


def _kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError:
        logger.warning("killpg failed for worker %s, killing the process only", proc.pid)
        proc.kill()


class LocalEngine:
    """Run Python code in a fresh, restricted interpreter process per request.

    The worker applies the import/builtin policy and a heap ceiling before
    compiling user code; this side enforces the wall-clock deadline, the
    output ceiling and cancellation by killing the worker's process group.

    Example:
        ```python
        engine = LocalEngine(policy=InterpreterPolicy(blocked_imports=["os"]))
        outcome = engine.execute(request)
        ```
    """

    def __init__(
        self,
        *,
        policy: InterpreterPolicy | None = None,
        python_executable: str | None = None,
    ) -> None:
        """Initialize a local engine.

        Example:
            ```python
            engine = LocalEngine(python_executable="/usr/bin/python3")
            ```
        """
        self._policy = policy or InterpreterPolicy()
        self._python = python_executable or sys.executable

    @property
    def policy(self) -> InterpreterPolicy:
        return self._policy

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Execute one request in a worker interpreter.

        Example:
            ```python
            outcome = engine.execute(ExecutionRequest("python_1_ab", "print(1)", profile_for("python"), 5000, 256, 1024))
            ```
        """
        profile = request.profile
        if profile.requires_transform:
            return ExecutionOutcome(
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.UNSUPPORTED_LANGUAGE,
                error=(
                    f"Language '{profile.language.value}' requires a source transformation "
                    "step that this sandbox does not provide"
                ),
            )

        cmd = [self._python, "-I", "-B", str(_worker_path())]
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=_worker_env(),
                start_new_session=True,
                close_fds=True,
            )
        except OSError as exc:
            return ExecutionOutcome(
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.ENVIRONMENT_UNAVAILABLE,
                error=f"Failed to start Python interpreter '{self._python}': {exc}",
            )

        try:
            return self._supervise(proc, request)
        finally:
            _kill_process_group(proc)
            for stream in (proc.stdin, proc.stdout, proc.stderr):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        logger.debug("Closing worker pipe failed", exc_info=True)
            try:
                proc.wait(timeout=REAP_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Worker %s did not exit after SIGKILL", proc.pid)

    def _payload(self, request: ExecutionRequest) -> dict[str, Any]:
        return {
            "code": request.code,
            "stdin": request.stdin,
            "memory_limit_mb": request.memory_limit_mb,
            # CPU backstop in case the wall-clock kill is delayed.
            "cpu_seconds": math.ceil(request.timeout_ms / 1000) + 1,
            "max_output_bytes": request.max_output_bytes,
            "policy": self._policy.to_payload(),
        }

    def _supervise(self, proc: subprocess.Popen[bytes], request: ExecutionRequest) -> ExecutionOutcome:
        assert proc.stdin is not None and proc.stdout is not None and proc.stderr is not None

        deadline = time.monotonic() + request.timeout_ms / 1000.0
        output = OutputGovernor(request.max_output_bytes)
        decoder = FrameDecoder()
        summary: dict[str, Any] = {}
        stderr_tail = bytearray()

        def on_frames(chunk: bytes) -> bool:
            for channel, payload in decoder.feed(chunk):
                if channel is Channel.RESULT:
                    try:
                        summary.update(json.loads(payload))
                    except ValueError as exc:
                        raise FramingError(f"Malformed worker summary: {exc}") from exc
                    continue
                fresh = output.feed(payload)
                if fresh:
                    request.on_output(fresh)
                if output.exceeded:
                    return False
            return True

        def on_stderr(chunk: bytes) -> bool:
            stderr_tail.extend(chunk)
            del stderr_tail[:-STDERR_TAIL_BYTES]
            return True

        pump = StreamPump(proc.stdout, on_frames, name=f"{request.execution_id}-frames").start()
        err_pump = StreamPump(proc.stderr, on_stderr, name=f"{request.execution_id}-stderr").start()

        try:
            proc.stdin.write(json.dumps(self._payload(request)).encode("utf-8"))
            proc.stdin.close()
        except OSError:
            # Worker died before reading its request; the summary check below reports it.
            logger.debug("Worker %s closed stdin early", proc.pid, exc_info=True)

        winner = race(pump, request.cancel_event, deadline)
        if winner is not RaceWinner.COMPLETED:
            _kill_process_group(proc)
        pump.join(REAP_TIMEOUT_SECONDS)
        err_pump.join(REAP_TIMEOUT_SECONDS)
        output.close()

        captured = output.text
        if winner is RaceWinner.TIMEOUT:
            return ExecutionOutcome(
                output=captured,
                exit_code=EXIT_TIMEOUT,
                failure=FailureKind.TIMEOUT,
                error=f"Execution timed out after {request.timeout_ms}ms",
                output_size_bytes=output.size,
            )
        if winner is RaceWinner.CANCELLED:
            return ExecutionOutcome(
                output=captured,
                exit_code=EXIT_CANCELLED,
                failure=FailureKind.CANCELLED,
                error="Execution cancelled",
                output_size_bytes=output.size,
            )
        if winner is RaceWinner.OUTPUT_LIMIT or summary.get("output_limit_exceeded"):
            return ExecutionOutcome(
                output=captured,
                exit_code=EXIT_FAILURE,
                failure=FailureKind.OUTPUT_LIMIT_EXCEEDED,
                error=f"Output size limit exceeded ({request.max_output_bytes} bytes)",
                output_size_bytes=output.size,
            )

        returncode = proc.wait(timeout=REAP_TIMEOUT_SECONDS)
        if isinstance(pump.error, FramingError):
            logger.error("Worker protocol error for %s: %s", request.execution_id, pump.error)
            return ExecutionOutcome(
                output=captured,
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.INTERNAL_ERROR,
                error=f"Worker protocol error: {pump.error}",
                output_size_bytes=output.size,
            )
        if not summary:
            diagnostic = stderr_tail.decode("utf-8", "replace").strip()
            return ExecutionOutcome(
                output=captured,
                exit_code=returncode if returncode else EXIT_FAILURE,
                failure=FailureKind.RUNTIME_ERROR,
                error=diagnostic or f"Interpreter exited with code {returncode} without a result",
                output_size_bytes=output.size,
            )

        memory = int(summary.get("memory_peak_bytes") or 0)
        exit_code = int(summary.get("exit_code", returncode))
        if summary.get("ok"):
            return ExecutionOutcome(
                output=captured,
                exit_code=0,
                memory_used_bytes=memory,
                output_size_bytes=output.size,
            )
        return ExecutionOutcome(
            output=captured,
            exit_code=exit_code or EXIT_FAILURE,
            failure=FailureKind.RUNTIME_ERROR,
            error=str(summary.get("error") or "Execution failed"),
            memory_used_bytes=memory,
            output_size_bytes=output.size,
        )
