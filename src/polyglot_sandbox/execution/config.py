from __future__ import annotations

import re
from dataclasses import dataclass

MANAGED_LABEL = "polyglot_sandbox.managed"
MANAGED_LABEL_VALUE = "true"
EXECUTION_LABEL = "polyglot_sandbox.execution"
MANAGED_LABELS_BASE = {
    MANAGED_LABEL: MANAGED_LABEL_VALUE,
    "polyglot_sandbox.engine": "docker",
    "polyglot_sandbox.project": "polyglot-sandbox",
}
CONTAINER_NAME_PREFIX = "pgs-"
_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")

# Exit code the docker CLI uses when the daemon itself refused the run.
DOCKER_RUN_FAILED = 125


def container_name_for(execution_id: str) -> str:
    """Derive a docker-safe container name from an execution id.

    Example:
        ```python
        container_name_for("rust_1700000000000_ab12cd34")  # "pgs-rust_1700000000000_ab12cd34"
        ```
    """
    return CONTAINER_NAME_PREFIX + _NAME_UNSAFE.sub("-", execution_id)


@dataclass(frozen=True, slots=True)
class ContainerInfo:
    """Snapshot of a managed container returned by DockerEngine.

    Example:
        ```python
        info = ContainerInfo("abc", "pgs-go_1_ab", "golang:1.21-alpine", "running", "Up 2s", "go_1_ab")
        ```
    """

    id: str
    name: str
    image: str
    state: str
    status: str
    execution_id: str = ""


@dataclass(frozen=True, slots=True)
class CleanupSummary:
    """Result summary from Docker cleanup operations.

    Example:
        ```python
        summary = CleanupSummary(removed_containers=2, failed=0)
        ```
    """

    removed_containers: int
    failed: int = 0
