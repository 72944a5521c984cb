from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

ENV_PREFIX = "PGS_"

# Environment variable suffix -> config field.
_ENV_OVERRIDES: dict[str, str] = {
    "MAX_EXECUTION_TIME_MS": "default_timeout_ms",
    "MAX_MEMORY_MB": "default_memory_limit_mb",
    "MAX_OUTPUT_SIZE_KB": "max_output_kb",
    "MAX_CONCURRENT_EXECUTIONS": "max_concurrent_executions",
}


def _default_config_path() -> Path:
    """Return bundled default config TOML path.

    Example:
        ```python
        path = _default_config_path()
        ```
    """
    return Path(__file__).with_name("default_config.toml")


def _read_config_toml(path: Path) -> dict[str, Any]:
    """Read a config TOML and return the `[sandbox]` table.

    Example:
        ```python
        raw = _read_config_toml(Path("/etc/pgs.toml"))
        ```
    """
    if not path.exists():
        return {
            "default_timeout_ms": 30000,
            "default_memory_limit_mb": 512,
            "max_output_kb": 1024,
            "max_concurrent_executions": 5,
            "policy": {
                "mode": "restrict",
                "blocked_imports": ["os", "subprocess", "socket", "ctypes", "importlib", "builtins", "sys", "gc", "inspect"],
                "blocked_builtins": ["eval", "exec", "open", "compile", "breakpoint", "vars", "globals", "locals"],
                "allowed_imports": [],
                "allowed_builtins": [],
            },
        }
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("sandbox", raw)
    if not isinstance(table, dict):
        raise ValueError("Sandbox config must be a TOML table")
    return table


def _list_of_str(value: Any, field_name: str) -> list[str]:
    """Validate and normalize a list-of-strings config field.

    Example:
        ```python
        blocked = _list_of_str(["os", "subprocess"], "blocked_imports")
        ```
    """
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValueError(f"'{field_name}' must contain only strings")
        out.append(item)
    return out


_DEFAULT_RAW = _read_config_toml(_default_config_path())
_DEFAULT_POLICY_RAW: dict[str, Any] = dict(_DEFAULT_RAW.get("policy", {}))
DEFAULT_MODE = str(_DEFAULT_POLICY_RAW.get("mode", "restrict"))
DEFAULT_BLOCKED_IMPORTS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("blocked_imports", []), "blocked_imports"
)
DEFAULT_BLOCKED_BUILTINS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("blocked_builtins", []), "blocked_builtins"
)
DEFAULT_ALLOWED_IMPORTS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("allowed_imports", []), "allowed_imports"
)
DEFAULT_ALLOWED_BUILTINS = _list_of_str(
    _DEFAULT_POLICY_RAW.get("allowed_builtins", []), "allowed_builtins"
)


@dataclass(slots=True)
class InterpreterPolicy:
    """Import and builtin restrictions for the in-process interpreter.

    In `restrict` mode everything not block-listed is available; in `allow`
    mode only the listed names are.

    Example:
        ```python
        policy = InterpreterPolicy(mode="allow", allowed_imports=["math"], allowed_builtins=["print", "len"])
        ```
    """

    mode: str = DEFAULT_MODE
    allowed_imports: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_IMPORTS.copy())
    blocked_imports: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_IMPORTS.copy())
    allowed_builtins: list[str] = field(default_factory=lambda: DEFAULT_ALLOWED_BUILTINS.copy())
    blocked_builtins: list[str] = field(default_factory=lambda: DEFAULT_BLOCKED_BUILTINS.copy())

    def __post_init__(self) -> None:
        """Validate mode after dataclass initialization.

        Example:
            ```python
            InterpreterPolicy(mode="restrict")
            ```
        """
        if self.mode not in {"allow", "restrict"}:
            raise ValueError("mode must be 'allow' or 'restrict'")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "InterpreterPolicy":
        """Build a policy from a parsed `[sandbox.policy]` table.

        Example:
            ```python
            policy = InterpreterPolicy.from_mapping({"blocked_imports": ["os"]})
            ```
        """
        return cls(
            mode=str(raw.get("mode", DEFAULT_MODE)),
            allowed_imports=_list_of_str(raw.get("allowed_imports", []), "allowed_imports"),
            blocked_imports=_list_of_str(
                raw.get("blocked_imports", DEFAULT_BLOCKED_IMPORTS), "blocked_imports"
            ),
            allowed_builtins=_list_of_str(
                raw.get("allowed_builtins", []), "allowed_builtins"
            ),
            blocked_builtins=_list_of_str(
                raw.get("blocked_builtins", DEFAULT_BLOCKED_BUILTINS), "blocked_builtins"
            ),
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the worker request.

        Example:
            ```python
            payload = InterpreterPolicy().to_payload()
            ```
        """
        return {
            "mode": self.mode,
            "allowed_imports": self.allowed_imports,
            "blocked_imports": self.blocked_imports,
            "allowed_builtins": self.allowed_builtins,
            "blocked_builtins": self.blocked_builtins,
        }


@dataclass(slots=True)
class SandboxConfig:
    """Budgets and bounds shared by the orchestrator and both backends.

    Example:
        ```python
        config = SandboxConfig(max_concurrent_executions=2, max_output_kb=64)
        ```
    """

    default_timeout_ms: int = int(_DEFAULT_RAW.get("default_timeout_ms", 30000))
    default_memory_limit_mb: int = int(_DEFAULT_RAW.get("default_memory_limit_mb", 512))
    max_output_kb: int = int(_DEFAULT_RAW.get("max_output_kb", 1024))
    max_concurrent_executions: int = int(_DEFAULT_RAW.get("max_concurrent_executions", 5))
    max_code_chars: int = int(_DEFAULT_RAW.get("max_code_chars", 100000))
    max_timeout_ms: int = int(_DEFAULT_RAW.get("max_timeout_ms", 60000))
    min_memory_limit_mb: int = int(_DEFAULT_RAW.get("min_memory_limit_mb", 32))
    max_memory_limit_mb: int = int(_DEFAULT_RAW.get("max_memory_limit_mb", 2048))
    max_stdin_kb: int = int(_DEFAULT_RAW.get("max_stdin_kb", 1024))
    container_cpus: float = float(_DEFAULT_RAW.get("container_cpus", 1.0))
    container_pids_limit: int = int(_DEFAULT_RAW.get("container_pids_limit", 256))
    image_pull_timeout_seconds: int = int(_DEFAULT_RAW.get("image_pull_timeout_seconds", 300))
    workspace_root: str = str(_DEFAULT_RAW.get("workspace_root", ""))
    record_max_age_ms: int = int(_DEFAULT_RAW.get("record_max_age_ms", 3600000))
    sweep_interval_seconds: float = float(_DEFAULT_RAW.get("sweep_interval_seconds", 3600))
    policy: InterpreterPolicy = field(
        default_factory=lambda: InterpreterPolicy.from_mapping(_DEFAULT_POLICY_RAW)
    )
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Reject bounds that cannot work together.

        Example:
            ```python
            SandboxConfig(max_concurrent_executions=0)  # raises ValueError
            ```
        """
        if self.max_concurrent_executions < 1:
            raise ValueError("max_concurrent_executions must be at least 1")
        if self.max_output_kb < 1:
            raise ValueError("max_output_kb must be at least 1")
        if not 0 < self.default_timeout_ms <= self.max_timeout_ms:
            raise ValueError("default_timeout_ms must be between 1 and max_timeout_ms")
        if not self.min_memory_limit_mb <= self.default_memory_limit_mb <= self.max_memory_limit_mb:
            raise ValueError(
                "default_memory_limit_mb must be between min_memory_limit_mb and max_memory_limit_mb"
            )

    @property
    def max_output_bytes(self) -> int:
        return self.max_output_kb * 1024

    @property
    def max_stdin_bytes(self) -> int:
        return self.max_stdin_kb * 1024

    def resolved_workspace_root(self) -> Path:
        """Return the directory per-run workspaces are created in.

        Example:
            ```python
            root = SandboxConfig().resolved_workspace_root()
            ```
        """
        if self.workspace_root:
            return Path(self.workspace_root).expanduser()
        return Path(tempfile.gettempdir()) / "polyglot-sandbox"

    @classmethod
    def from_file(cls, config_path: str) -> "SandboxConfig":
        """Create a config from a TOML file with a `[sandbox]` table.

        Keys missing from the file keep their bundled defaults.

        Example:
            ```python
            config = SandboxConfig.from_file("/etc/pgs.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        raw = _read_config_toml(path)
        policy_raw = raw.get("policy", {})
        if not isinstance(policy_raw, dict):
            raise ValueError("'policy' must be a TOML table")
        known = {f.name for f in fields(cls)} - {"policy", "config_path"}
        unknown = sorted(set(raw) - known - {"policy"})
        if unknown:
            raise ValueError(f"Unknown sandbox config keys: {', '.join(unknown)}")
        values = {key: raw[key] for key in known if key in raw}
        merged_policy = {**_DEFAULT_POLICY_RAW, **policy_raw}
        return cls(
            **values,
            policy=InterpreterPolicy.from_mapping(merged_policy),
            config_path=config_path,
        )

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        base: "SandboxConfig | None" = None,
    ) -> "SandboxConfig":
        """Apply `PGS_*` environment overrides on top of a base config.

        Example:
            ```python
            config = SandboxConfig.from_env({"PGS_MAX_CONCURRENT_EXECUTIONS": "8"})
            ```
        """
        env = os.environ if environ is None else environ
        config = base if base is not None else cls()
        overrides: dict[str, int] = {}
        for suffix, name in _ENV_OVERRIDES.items():
            value = env.get(f"{ENV_PREFIX}{suffix}")
            if value is None or not value.strip():
                continue
            try:
                overrides[name] = int(value)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{suffix} must be an integer, got {value!r}") from None
        if not overrides:
            return config
        return replace(config, **overrides)
