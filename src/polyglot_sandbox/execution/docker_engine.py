from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import IO, Mapping

from ..config import SandboxConfig
from ..errors import FailureKind
from ..governor import OutputGovernor
from .config import (
    DOCKER_RUN_FAILED,
    EXECUTION_LABEL,
    MANAGED_LABEL,
    MANAGED_LABEL_VALUE,
    MANAGED_LABELS_BASE,
    CleanupSummary,
    ContainerInfo,
    container_name_for,
)
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

CONTAINER_SOURCE_DIR = "/code"
CONTAINER_BUILD_DIR = "/tmp/build"
TMPFS_SIZE = "512m"
UNPRIVILEGED_USER = "65534:65534"
PROBE_TIMEOUT_SECONDS = 15
TEARDOWN_TIMEOUT_SECONDS = 30
REAP_TIMEOUT_SECONDS = 5.0


def docker_is_available(*, docker_env: Mapping[str, str], docker_context: str | None) -> tuple[bool, str | None]:
    """Check Docker CLI and daemon accessibility for the selected target.

    Example:
        ```python
        ok, reason = docker_is_available(docker_env=os.environ, docker_context=None)
        ```
    """
    if shutil.which("docker") is None:
        return False, "Docker CLI was not found. Install Docker and ensure it is on PATH."
    cmd = ["docker"]
    if docker_context:
        cmd.extend(["--context", docker_context])
    cmd.append("info")
    try:
        probe = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            env=dict(docker_env),
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return False, "Docker daemon did not answer in time."
    if probe.returncode != 0:
        return False, "Docker is installed but the daemon is not running or not accessible."
    return True, None


def _feed_stdin(stream: IO[bytes], data: bytes) -> None:
    try:
        stream.write(data)
    except OSError:
        # The program exited without reading all of its input.
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


class DockerEngine:
    """Execute code in a throwaway, locked-down container per request.

    Each run gets a private workspace mounted read-only at ``/code``, no
    network, a read-only root filesystem with a ``/tmp`` tmpfs for build
    output, dropped capabilities and the memory/CPU/pid ceilings from the
    config. The container is killed on timeout, output overflow or cancel,
    and removed on every path.

    Example:
        ```python
        engine = DockerEngine(config=SandboxConfig(), docker_context="remote")
        ```
    """

    def __init__(
        self,
        *,
        config: SandboxConfig | None = None,
        docker_host: str | None = None,
        docker_context: str | None = None,
    ) -> None:
        """Initialize Docker execution settings and connection strategy.

        Example:
            ```python
            engine = DockerEngine(docker_host="ssh://ubuntu@build-box")
            ```
        """
        self._config = config or SandboxConfig()
        self._docker_host = docker_host
        self._docker_context = docker_context
        self._known_images: set[str] = set()
        self._images_lock = threading.Lock()
        self._validate_connection_options()

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Build and run one request inside a fresh container.

        Example:
            ```python
            outcome = engine.execute(ExecutionRequest("go_1_ab", src, profile_for("go"), 10000, 256, 1024 * 1024))
            ```
        """
        profile = request.profile
        available, reason = docker_is_available(
            docker_env=self._docker_env(),
            docker_context=self._docker_context,
        )
        if not available:
            return ExecutionOutcome(exit_code=EXIT_NOT_RUN, failure=FailureKind.ENVIRONMENT_UNAVAILABLE, error=reason)
        if not self._ensure_image_available(profile.runtime):
            return ExecutionOutcome(
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.ENVIRONMENT_UNAVAILABLE,
                error=f"Runtime image '{profile.runtime}' for {profile.language.value} is not available",
            )

        try:
            workspace = self._prepare_workspace(request)
        except OSError as exc:
            return ExecutionOutcome(
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.ENVIRONMENT_UNAVAILABLE,
                error=f"Failed to prepare workspace: {exc}",
            )

        name = container_name_for(request.execution_id)
        try:
            return self._run_container(request, workspace, name)
        finally:
            self._remove_container(name)
            self._remove_workspace(workspace)

    def list_units(self, all_states: bool = True) -> list[ContainerInfo]:
        """List managed containers visible to this engine target.

        Example:
            ```python
            containers = engine.list_units(all_states=False)
            ```
        """
        fmt = "{{.ID}}|{{.Names}}|{{.Image}}|{{.State}}|{{.Status}}|{{.Label \"" + EXECUTION_LABEL + "\"}}"
        cmd = ["ps", "--filter", f"label={MANAGED_LABEL}={MANAGED_LABEL_VALUE}", "--format", fmt]
        if all_states:
            cmd.insert(1, "-a")
        out = self._run_docker(cmd)
        if out.returncode != 0:
            raise RuntimeError(f"Failed to list containers: {out.stderr.strip()}")
        items: list[ContainerInfo] = []
        for line in out.stdout.splitlines():
            if not line.strip():
                continue
            c_id, name, image, state, status, execution_id = (line.split("|", 5) + [""])[:6]
            items.append(ContainerInfo(c_id, name, image, state, status, execution_id))
        return items

    def cleanup_stale(self, include_running: bool = False) -> CleanupSummary:
        """Force-remove managed containers left behind by a crashed host.

        Running containers are only touched with `include_running=True`,
        since they may belong to a live host sharing the daemon.

        Example:
            ```python
            summary = engine.cleanup_stale()
            ```
        """
        removed = 0
        failed = 0
        for container in self.list_units(all_states=True):
            if container.state == "running" and not include_running:
                continue
            result = self._run_docker(["rm", "-f", container.id])
            if result.returncode == 0:
                removed += 1
            else:
                failed += 1
                logger.warning("Failed to remove container %s: %s", container.name, result.stderr.strip())
        if removed:
            logger.info("Removed %d stale sandbox container(s)", removed)
        return CleanupSummary(removed_containers=removed, failed=failed)

    def _run_container(self, request: ExecutionRequest, workspace: Path, name: str) -> ExecutionOutcome:
        cmd = ["docker"]
        if self._docker_context:
            cmd.extend(["--context", self._docker_context])
        cmd.extend(self._run_args(request, workspace, name))

        deadline = time.monotonic() + request.timeout_ms / 1000.0
        output = OutputGovernor(request.max_output_bytes)

        def on_chunk(chunk: bytes) -> bool:
            fresh = output.feed(chunk)
            if fresh:
                request.on_output(fresh)
            return not output.exceeded

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE if request.stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self._docker_env(),
            )
        except OSError as exc:
            return ExecutionOutcome(
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.ENVIRONMENT_UNAVAILABLE,
                error=f"Failed to start docker: {exc}",
            )

        try:
            assert proc.stdout is not None
            if request.stdin and proc.stdin is not None:
                threading.Thread(
                    target=_feed_stdin,
                    args=(proc.stdin, request.stdin.encode("utf-8")),
                    name=f"{request.execution_id}-stdin",
                    daemon=True,
                ).start()
            pump = StreamPump(proc.stdout, on_chunk, name=f"{request.execution_id}-output").start()
            winner = race(pump, request.cancel_event, deadline)
            if winner is not RaceWinner.COMPLETED:
                self._kill_container(name)
                proc.kill()
            pump.join(REAP_TIMEOUT_SECONDS)
            output.close()
            returncode: int | None
            try:
                # docker run --rm only returns once the container is removed.
                returncode = proc.wait(timeout=TEARDOWN_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("docker run for %s did not exit after teardown; killing client", name)
                self._kill_container(name)
                proc.kill()
                proc.wait()
                returncode = None
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            if proc.stdout is not None:
                proc.stdout.close()

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
        if winner is RaceWinner.OUTPUT_LIMIT:
            return ExecutionOutcome(
                output=captured,
                exit_code=EXIT_FAILURE,
                failure=FailureKind.OUTPUT_LIMIT_EXCEEDED,
                error=f"Output size limit exceeded ({request.max_output_bytes} bytes)",
                output_size_bytes=output.size,
            )

        if returncode is None:
            return ExecutionOutcome(
                output=captured,
                exit_code=EXIT_NOT_RUN,
                failure=FailureKind.ENVIRONMENT_UNAVAILABLE,
                error=f"Docker did not report an exit status within {TEARDOWN_TIMEOUT_SECONDS}s",
                output_size_bytes=output.size,
            )
        memory = request.memory_limit_mb * 1024 * 1024
        if returncode == 0:
            return ExecutionOutcome(output=captured, exit_code=0, memory_used_bytes=memory, output_size_bytes=output.size)
        if returncode == DOCKER_RUN_FAILED:
            return ExecutionOutcome(
                output=captured,
                exit_code=returncode,
                failure=FailureKind.ENVIRONMENT_UNAVAILABLE,
                error=f"Docker refused to start the container: {captured.strip()}",
                output_size_bytes=output.size,
            )
        return ExecutionOutcome(
            output=captured,
            exit_code=returncode,
            failure=FailureKind.RUNTIME_ERROR,
            error=f"Process exited with code {returncode}",
            memory_used_bytes=memory,
            output_size_bytes=output.size,
        )

    def _run_args(self, request: ExecutionRequest, workspace: Path, name: str) -> list[str]:
        profile = request.profile
        memory = f"{request.memory_limit_mb}m"
        args = [
            "run",
            "--rm",
            "-i",
            "--name",
            name,
            "--network",
            "none",
            "--memory",
            memory,
            "--memory-swap",
            memory,
            "--cpus",
            str(self._config.container_cpus),
            "--pids-limit",
            str(self._config.container_pids_limit),
            "--read-only",
            "--tmpfs",
            f"/tmp:rw,exec,size={TMPFS_SIZE}",
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--user",
            UNPRIVILEGED_USER,
            "-v",
            f"{workspace}:{CONTAINER_SOURCE_DIR}:ro",
            "-w",
            "/tmp",
        ]
        labels = {**MANAGED_LABELS_BASE, EXECUTION_LABEL: request.execution_id}
        for key, value in labels.items():
            args.extend(["--label", f"{key}={value}"])
        for key, value in profile.environment.items():
            args.extend(["-e", f"{key}={value}"])
        entry = profile.entry_command(source_dir=CONTAINER_SOURCE_DIR, build_dir=CONTAINER_BUILD_DIR)
        args.extend([profile.runtime, "sh", "-c", entry])
        return args

    def _prepare_workspace(self, request: ExecutionRequest) -> Path:
        root = self._config.resolved_workspace_root()
        root.mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"{request.execution_id}-", dir=root))
        source = workspace / request.profile.source_filename
        source.write_text(request.code, encoding="utf-8")
        # The container runs as an unprivileged uid and only needs to read.
        os.chmod(workspace, 0o755)
        os.chmod(source, 0o644)
        return workspace

    def _remove_workspace(self, workspace: Path) -> None:
        try:
            shutil.rmtree(workspace)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", workspace, exc)

    def _kill_container(self, name: str) -> None:
        try:
            killed = self._run_docker(["kill", name], timeout=TEARDOWN_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("docker kill %s timed out", name)
            return
        if killed.returncode != 0 and "No such container" not in killed.stderr:
            logger.warning("Failed to kill container %s: %s", name, killed.stderr.strip())

    def _remove_container(self, name: str) -> None:
        try:
            removed = self._run_docker(["rm", "-f", name], timeout=TEARDOWN_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("docker rm %s timed out", name)
            return
        if removed.returncode != 0 and "No such container" not in removed.stderr:
            logger.warning("Failed to remove container %s: %s", name, removed.stderr.strip())

    def _ensure_image_available(self, image: str) -> bool:
        """Ensure an image exists locally, pulling when needed.

        Example:
            ```python
            ok = engine._ensure_image_available("node:18-alpine")
            ```
        """
        with self._images_lock:
            if image in self._known_images:
                return True
        try:
            inspected = self._run_docker(["image", "inspect", image], timeout=PROBE_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("Inspecting image %s timed out after %ss", image, PROBE_TIMEOUT_SECONDS)
            return False
        if inspected.returncode != 0:
            logger.info("Pulling image %s", image)
            try:
                pulled = self._run_docker(["pull", image], timeout=self._config.image_pull_timeout_seconds)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Pulling image %s timed out after %ss", image, self._config.image_pull_timeout_seconds
                )
                return False
            if pulled.returncode != 0:
                logger.warning("Failed to pull image %s: %s", image, pulled.stderr.strip())
                return False
        with self._images_lock:
            self._known_images.add(image)
        return True

    def _run_docker(self, args: list[str], timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        """Run a Docker CLI command against the configured target.

        Example:
            ```python
            completed = engine._run_docker(["ps"])
            ```
        """
        cmd = ["docker"]
        if self._docker_context:
            cmd.extend(["--context", self._docker_context])
        cmd.extend(args)
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            env=self._docker_env(),
            timeout=timeout,
        )

    def _docker_env(self) -> dict[str, str]:
        """Build environment variables for Docker CLI targeting.

        Example:
            ```python
            env = engine._docker_env()
            ```
        """
        env = dict(os.environ)
        if self._docker_host:
            env["DOCKER_HOST"] = self._docker_host
        return env

    def _validate_connection_options(self) -> None:
        """Validate mutually exclusive Docker connection settings.

        Example:
            ```python
            engine._validate_connection_options()
            ```
        """
        if self._docker_context and self._docker_host:
            raise ValueError("Use either docker_context or docker_host, not both")
