from __future__ import annotations

import io
import os
import stat
import subprocess
import threading
from pathlib import Path
from typing import Any

import pytest

from polyglot_sandbox import DockerEngine, FailureKind, SandboxConfig, profile_for
from polyglot_sandbox.execution import docker_engine
from polyglot_sandbox.execution.config import EXECUTION_LABEL, MANAGED_LABEL
from polyglot_sandbox.execution.types import ExecutionRequest


class _FakePopen:
    def __init__(self, cmd: list[str], output: bytes, returncode: int) -> None:
        self.cmd = cmd
        self.stdin = None
        self.stdout = io.BytesIO(output)
        self.returncode = returncode
        self.killed = False

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def kill(self) -> None:
        self.killed = True


class _HangingPopen:
    """Never writes anything until killed, like a container stuck in a loop."""

    def __init__(self, cmd: list[str]) -> None:
        self.cmd = cmd
        self.stdin = None
        read_fd, self._write_fd = os.pipe()
        self.stdout = os.fdopen(read_fd, "rb")
        self.returncode: int | None = None
        self.killed = False

    def poll(self) -> int | None:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired(self.cmd, timeout or 0)
        return self.returncode

    def kill(self) -> None:
        if not self.killed:
            self.killed = True
            self.returncode = -9
            os.close(self._write_fd)


class _SlowReapPopen(_FakePopen):
    """Output is complete but the client never exits, like a stalled --rm."""

    def poll(self) -> int | None:
        return -9 if self.killed else None

    def wait(self, timeout: float | None = None) -> int:
        if self.killed:
            return -9
        raise subprocess.TimeoutExpired(self.cmd, timeout or 0)


class _FakeDocker:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.info_rc = 0
        self.inspect_rc = 0
        self.pull_rc = 0
        self.ps_stdout = ""
        self.rm_rc: dict[str, int] = {}
        self.output = b""
        self.returncode = 0
        self.hang = False
        self.slow_reap = False
        self.inspect_hangs = False
        self.timeouts: dict[str, Any] = {}
        self.popens: list[Any] = []
        self.workspace_snapshot: dict[str, int] = {}

    def run(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(cmd)
        args = cmd[1:]
        if args[:1] == ["--context"]:
            args = args[2:]
        rc = 0
        stdout = ""
        stderr = ""
        if args[:1] == ["info"]:
            rc = self.info_rc
        elif args[:2] == ["image", "inspect"]:
            self.timeouts["inspect"] = kwargs.get("timeout")
            if self.inspect_hangs:
                raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout") or 0)
            rc = self.inspect_rc
        elif args[:1] == ["pull"]:
            rc = self.pull_rc
            stderr = "pull access denied" if rc else ""
        elif args[:1] == ["ps"]:
            stdout = self.ps_stdout
        elif args[:2] == ["rm", "-f"]:
            rc = self.rm_rc.get(args[2], 0)
            stderr = "No such container" if rc else ""
        return subprocess.CompletedProcess(cmd, rc, stdout=stdout, stderr=stderr)

    def popen(self, cmd: list[str], **kwargs: Any) -> Any:
        self.calls.append(cmd)
        mount = cmd[cmd.index("-v") + 1]
        workspace = Path(mount.split(":")[0])
        self.workspace_snapshot = {
            entry.name: stat.S_IMODE(entry.stat().st_mode) for entry in workspace.iterdir()
        }
        self.workspace_snapshot["."] = stat.S_IMODE(workspace.stat().st_mode)
        if self.hang:
            proc: Any = _HangingPopen(cmd)
        elif self.slow_reap:
            proc = _SlowReapPopen(cmd, self.output, self.returncode)
        else:
            proc = _FakePopen(cmd, self.output, self.returncode)
        self.popens.append(proc)
        return proc

    def commands(self, verb: str) -> list[list[str]]:
        return [call for call in self.calls if verb in call[1:3]]


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch) -> _FakeDocker:
    fake = _FakeDocker()
    monkeypatch.setattr(docker_engine.shutil, "which", lambda name: "/usr/bin/docker")
    monkeypatch.setattr(docker_engine.subprocess, "run", fake.run)
    monkeypatch.setattr(docker_engine.subprocess, "Popen", fake.popen)
    return fake


@pytest.fixture
def engine(tmp_path: Path) -> DockerEngine:
    return DockerEngine(config=SandboxConfig(workspace_root=str(tmp_path / "ws")))


def _request(language: str = "go", *, timeout_ms: int = 10_000, max_output_bytes: int = 1024 * 1024) -> ExecutionRequest:
    return ExecutionRequest(
        execution_id=f"{language}_1700000000000_ab12cd34",
        code="package main\n",
        profile=profile_for(language),
        timeout_ms=timeout_ms,
        memory_limit_mb=256,
        max_output_bytes=max_output_bytes,
    )


def test_docker_context_conflicts_with_docker_host() -> None:
    with pytest.raises(ValueError, match="either docker_context"):
        DockerEngine(docker_context="remote", docker_host="ssh://user@host")


def test_docker_host_is_exported_to_the_cli() -> None:
    engine = DockerEngine(docker_host="ssh://alice@example.com")
    env = engine._docker_env()  # noqa: SLF001 - validating internal connection config
    assert env["DOCKER_HOST"] == "ssh://alice@example.com"


def test_successful_run(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.output = b"Hello from Go\n"
    chunks: list[str] = []
    request = _request()
    request.on_output = chunks.append

    outcome = engine.execute(request)

    assert outcome.ok
    assert outcome.output == "Hello from Go\n"
    assert "".join(chunks) == "Hello from Go\n"
    assert outcome.memory_used_bytes == 256 * 1024 * 1024
    assert outcome.output_size_bytes == len(b"Hello from Go\n")


def test_run_args_lock_the_container_down(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    engine.execute(_request())
    cmd = fake_docker.popens[0].cmd

    assert cmd[:2] == ["docker", "run"]
    assert cmd[cmd.index("--network") + 1] == "none"
    assert cmd[cmd.index("--memory") + 1] == "256m"
    assert cmd[cmd.index("--memory-swap") + 1] == "256m"
    assert cmd[cmd.index("--cap-drop") + 1] == "ALL"
    assert cmd[cmd.index("--user") + 1] == "65534:65534"
    assert cmd[cmd.index("--name") + 1] == "pgs-go_1700000000000_ab12cd34"
    assert "--read-only" in cmd
    assert "no-new-privileges" in cmd
    assert cmd[cmd.index("-v") + 1].endswith(":/code:ro")
    assert f"{MANAGED_LABEL}=true" in cmd
    assert f"{EXECUTION_LABEL}=go_1700000000000_ab12cd34" in cmd
    assert "GOCACHE=/tmp/gocache" in cmd
    assert cmd[-4:] == ["golang:1.21-alpine", "sh", "-c", "go run /code/main.go"]


def test_java_source_uses_type_name_and_is_world_readable(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    engine.execute(_request("java"))

    assert fake_docker.workspace_snapshot == {"Main.java": 0o644, ".": 0o755}
    entry = fake_docker.popens[0].cmd[-1]
    assert entry.startswith("mkdir -p /tmp/build && javac -d /tmp/build /code/Main.java")


def test_workspace_and_container_are_removed(fake_docker: _FakeDocker, engine: DockerEngine, tmp_path: Path) -> None:
    fake_docker.returncode = 1
    engine.execute(_request())

    assert list((tmp_path / "ws").iterdir()) == []
    assert ["docker", "rm", "-f", "pgs-go_1700000000000_ab12cd34"] in fake_docker.calls


def test_missing_docker_cli(monkeypatch: pytest.MonkeyPatch, engine: DockerEngine) -> None:
    monkeypatch.setattr(docker_engine.shutil, "which", lambda name: None)
    outcome = engine.execute(_request())
    assert outcome.failure is FailureKind.ENVIRONMENT_UNAVAILABLE
    assert outcome.exit_code == -1
    assert "Docker CLI was not found" in (outcome.error or "")


def test_unreachable_daemon(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.info_rc = 1
    outcome = engine.execute(_request())
    assert outcome.failure is FailureKind.ENVIRONMENT_UNAVAILABLE
    assert "not running" in (outcome.error or "")
    assert fake_docker.popens == []


def test_image_pull_failure(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.inspect_rc = 1
    fake_docker.pull_rc = 1
    outcome = engine.execute(_request("rust"))
    assert outcome.failure is FailureKind.ENVIRONMENT_UNAVAILABLE
    assert "rust:alpine" in (outcome.error or "")
    assert fake_docker.popens == []


def test_checked_images_are_remembered(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    engine.execute(_request())
    engine.execute(_request())
    assert len(fake_docker.commands("inspect")) == 1


def test_daemon_refusal_is_environment_failure(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.returncode = 125
    fake_docker.output = b"docker: invalid reference format\n"
    outcome = engine.execute(_request())
    assert outcome.failure is FailureKind.ENVIRONMENT_UNAVAILABLE
    assert outcome.exit_code == 125


def test_nonzero_exit_is_runtime_error(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.returncode = 1
    fake_docker.output = b"main.go:3: undefined: foo\n"
    outcome = engine.execute(_request())
    assert outcome.failure is FailureKind.RUNTIME_ERROR
    assert outcome.exit_code == 1
    assert outcome.error == "Process exited with code 1"
    assert "undefined: foo" in outcome.output


def test_output_ceiling_kills_the_container(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.output = b"x" * 10_000
    outcome = engine.execute(_request(max_output_bytes=1024))

    assert outcome.failure is FailureKind.OUTPUT_LIMIT_EXCEEDED
    assert outcome.output == "x" * 1024
    assert fake_docker.popens[0].killed
    assert ["docker", "kill", "pgs-go_1700000000000_ab12cd34"] in fake_docker.calls


def test_timeout_kills_the_container(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.hang = True
    outcome = engine.execute(_request(timeout_ms=100))

    assert outcome.failure is FailureKind.TIMEOUT
    assert outcome.exit_code == 124
    assert outcome.error == "Execution timed out after 100ms"
    assert fake_docker.popens[0].killed


def test_cancel_kills_the_container(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.hang = True
    request = _request(timeout_ms=20_000)
    timer = threading.Timer(0.1, request.cancel_event.set)
    timer.start()
    try:
        outcome = engine.execute(request)
    finally:
        timer.cancel()
    assert outcome.failure is FailureKind.CANCELLED
    assert outcome.exit_code == 130


def test_list_units_parses_ps_output(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.ps_stdout = (
        "abc|pgs-go_1_aa|golang:1.21-alpine|running|Up 2 seconds|go_1_aa\n"
        "def|pgs-c_2_bb|gcc:13|exited|Exited (0) 1 minute ago|c_2_bb\n"
    )
    units = engine.list_units()

    assert [unit.execution_id for unit in units] == ["go_1_aa", "c_2_bb"]
    assert units[1].state == "exited"
    ps = fake_docker.commands("ps")[0]
    assert "-a" in ps
    assert f"label={MANAGED_LABEL}=true" in ps


def test_cleanup_stale_skips_running_by_default(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.ps_stdout = (
        "abc|pgs-go_1_aa|golang:1.21-alpine|running|Up 2 seconds|go_1_aa\n"
        "def|pgs-c_2_bb|gcc:13|exited|Exited (0) 1 minute ago|c_2_bb\n"
        "ghi|pgs-c_3_cc|gcc:13|created|Created|c_3_cc\n"
    )
    fake_docker.rm_rc = {"ghi": 1}

    summary = engine.cleanup_stale()
    assert summary.removed_containers == 1
    assert summary.failed == 1
    assert ["docker", "rm", "-f", "abc"] not in fake_docker.calls

    everything = engine.cleanup_stale(include_running=True)
    assert everything.removed_containers == 2
    assert ["docker", "rm", "-f", "abc"] in fake_docker.calls


def test_context_is_passed_to_every_command(fake_docker: _FakeDocker, tmp_path: Path) -> None:
    engine = DockerEngine(config=SandboxConfig(workspace_root=str(tmp_path)), docker_context="remote")
    engine.execute(_request())
    assert fake_docker.calls
    assert all(call[:3] == ["docker", "--context", "remote"] for call in fake_docker.calls)


def test_image_inspect_is_bounded(fake_docker: _FakeDocker, engine: DockerEngine) -> None:
    fake_docker.inspect_hangs = True
    outcome = engine.execute(_request())
    assert fake_docker.timeouts["inspect"] == docker_engine.PROBE_TIMEOUT_SECONDS
    assert outcome.failure is FailureKind.ENVIRONMENT_UNAVAILABLE
    assert "golang" in (outcome.error or "")
    assert fake_docker.popens == []


def test_stalled_client_after_completion_is_not_an_internal_error(
    fake_docker: _FakeDocker, engine: DockerEngine
) -> None:
    fake_docker.slow_reap = True
    fake_docker.output = b"done\n"
    outcome = engine.execute(_request())
    assert outcome.failure is FailureKind.ENVIRONMENT_UNAVAILABLE
    assert outcome.output == "done\n"
    assert "exit status" in (outcome.error or "")
    assert fake_docker.popens[0].killed is True
    assert fake_docker.commands("kill")
