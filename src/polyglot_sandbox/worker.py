"""Restricted Python interpreter entry point.

Started by `LocalEngine` as ``python -I worker.py``. Reads one JSON request
from stdin and answers with length-prefixed frames on the original stdout:
user output on channels 1/2 and a JSON summary on channel 3. This file must
stay importable on its own; it is never imported as part of the package.
"""

from __future__ import annotations

import ast
import io
import json
import os
import struct
import sys
import traceback
import types
from typing import Any, BinaryIO, Callable

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except Exception:  # pragma: no cover - platform specific
    _resource = None

# Same layout as polyglot_sandbox.execution.framing.HEADER.
_HEADER = struct.Struct(">BxxxL")
_CHANNEL_STDOUT = 1
_CHANNEL_STDERR = 2
_CHANNEL_RESULT = 3

EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_MEMORY = 2
EXIT_OUTPUT_LIMIT = 3

# Frame, generator and traceback internals lead back to worker globals.
_HIDDEN_ATTRIBUTES = frozenset(
    {
        "gi_frame",
        "gi_code",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "tb_frame",
        "f_back",
        "f_globals",
        "f_locals",
        "f_builtins",
        "f_code",
    }
)
_VISIBLE_DUNDERS = frozenset({"__init__", "__name__", "__doc__", "__class__"})

# Audit events refused while user code runs.
_DENIED_EVENTS = frozenset({"open", "code.__new__"})
_DENIED_EVENT_PREFIXES = (
    "os.",
    "subprocess.",
    "socket.",
    "ctypes.",
    "shutil.",
    "mmap.",
    "pty.",
    "resource.",
    "signal.",
    "winreg.",
    "_winapi.",
)

# print rebuilt outside the builtins module so it carries no __self__.
_PRINT_SOURCE = """
def print(*args, sep=" ", end="\\n", file=None, flush=False):
    if sep is None:
        sep = " "
    if end is None:
        end = "\\n"
    target = _stdout if file is None else file
    target.write(sep.join([str(arg) for arg in args]) + end)
    if flush:
        target.flush()
"""


class OutputBudgetExhausted(BaseException):
    """Raised into user code once the output ceiling is crossed.

    Derives from BaseException so a plain ``except Exception`` in user code
    does not swallow it.
    """


class _FrameWriter:
    def __init__(self, raw: BinaryIO, limit: int) -> None:
        self._raw = raw
        self._remaining = max(0, int(limit))
        self.exhausted = False

    def send(self, channel: int, data: bytes) -> None:
        self._raw.write(_HEADER.pack(channel, len(data)) + data)
        self._raw.flush()

    def send_output(self, channel: int, data: bytes) -> None:
        # The chunk that crosses the ceiling is still sent so the host sees the breach.
        if self.exhausted:
            raise OutputBudgetExhausted()
        if data:
            self.send(channel, data)
        self._remaining -= len(data)
        if self._remaining < 0:
            self.exhausted = True
            raise OutputBudgetExhausted()


class _CappedTextStream(io.TextIOBase):
    def __init__(self, writer: _FrameWriter, channel: int) -> None:
        super().__init__()
        self._writer = writer
        self._channel = channel

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        if not isinstance(text, str):
            raise TypeError(f"write() argument must be str, not {type(text).__name__}")
        self._writer.send_output(self._channel, text.encode("utf-8", "replace"))
        return len(text)


def _set_limits(memory_limit_mb: int, cpu_seconds: int) -> list[str]:
    errors: list[str] = []
    if _resource is None:
        errors.append("RLIMIT limits unavailable on this platform")
        return errors

    mem_bytes = int(memory_limit_mb) * 1024 * 1024
    limits = [
        ("RLIMIT_AS", mem_bytes),
        ("RLIMIT_CPU", max(1, int(cpu_seconds))),
        ("RLIMIT_FSIZE", 0),
    ]
    for name, wanted in limits:
        which = getattr(_resource, name, None)
        if which is None:
            errors.append(f"{name} unavailable on this platform")
            continue
        try:
            _, current_hard = _resource.getrlimit(which)
            if current_hard in (-1, _resource.RLIM_INFINITY):
                target_hard = wanted
            else:
                target_hard = min(wanted, current_hard)
            target_soft = min(wanted, target_hard)
            _resource.setrlimit(which, (target_soft, target_hard))
        except (ValueError, OSError) as exc:
            errors.append(f"{name} not applied: {exc}")

    return errors


def _peak_memory_bytes() -> int:
    if _resource is None:
        return 0
    peak = int(_resource.getrusage(_resource.RUSAGE_SELF).ru_maxrss)
    # ru_maxrss is reported in kilobytes on Linux and in bytes on macOS.
    return peak if sys.platform == "darwin" else peak * 1024


class _AuditGate:
    """Audit hook that refuses filesystem, process and socket events while armed."""

    def __init__(self) -> None:
        self.armed = False

    def __call__(self, event: str, args: tuple[Any, ...]) -> None:
        if not self.armed:
            return
        if event in _DENIED_EVENTS or event.startswith(_DENIED_EVENT_PREFIXES):
            raise PermissionError(f"Operation '{event}' is not permitted in the sandbox")


def _is_hidden_attribute(name: str) -> bool:
    if name in _HIDDEN_ATTRIBUTES:
        return True
    return name.startswith("__") and name.endswith("__") and name not in _VISIBLE_DUNDERS


class _AttributeGuard(ast.NodeVisitor):
    def __init__(self) -> None:
        self.violations: list[str] = []

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _is_hidden_attribute(node.attr):
            self._reject(node.attr, node)
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        for name in node.kwd_attrs:
            if _is_hidden_attribute(name):
                self._reject(name, node)
        self.generic_visit(node)

    def _reject(self, name: str, node: ast.AST) -> None:
        line = getattr(node, "lineno", 0)
        self.violations.append(f"line {line}: attribute '{name}' is not accessible in the sandbox")


def _admission_check(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
) -> Callable[[str], str | None]:
    def _refusal(name: str) -> str | None:
        if name == "importlib" or name.startswith("importlib."):
            return f"Import '{name}' is blocked by policy"
        root = name.split(".")[0]
        if mode == "allow":
            if root not in allowed_imports:
                return f"Import '{name}' is not allowed by policy"
        elif root in blocked_imports:
            return f"Import '{name}' is blocked by policy"
        return None

    return _refusal


def _module_view(
    module: types.ModuleType,
    refusal: Callable[[str], str | None],
    seen: dict[int, types.ModuleType],
) -> types.ModuleType:
    # Public names only; nested modules the policy refuses are left out.
    view = seen.get(id(module))
    if view is not None:
        return view
    view = types.ModuleType(module.__name__, module.__doc__)
    seen[id(module)] = view
    for name, value in list(vars(module).items()):
        if name.startswith("_"):
            continue
        if isinstance(value, types.ModuleType):
            if refusal(value.__name__) is not None:
                continue
            value = _module_view(value, refusal, seen)
        setattr(view, name, value)
    return view


def _safe_import_factory_mode(
    mode: str,
    allowed_imports: set[str],
    blocked_imports: set[str],
    gate: _AuditGate | None = None,
) -> Callable[..., Any]:
    refusal = _admission_check(mode, allowed_imports, blocked_imports)

    def _safe_import(
        name: str,
        globals: dict[str, Any] | None = None,
        locals: dict[str, Any] | None = None,
        fromlist: Any = (),
        level: int = 0,
    ) -> Any:
        if level:
            raise ImportError("Relative imports are not available in the sandbox")
        reason = refusal(name)
        if reason is not None:
            raise ImportError(reason)

        # Loading a module reads files, so the gate stands down for the real import.
        was_armed = gate.armed if gate is not None else False
        if gate is not None:
            gate.armed = False
        try:
            module = __import__(name, globals, locals, fromlist, level)
        finally:
            if gate is not None:
                gate.armed = was_armed
        return _module_view(module, refusal, {})

    return _safe_import


def _checked_attribute_builtin(func: Callable[..., Any]) -> Callable[..., Any]:
    def checked(obj: Any, name: Any, *args: Any) -> Any:
        if isinstance(name, str) and _is_hidden_attribute(name):
            raise AttributeError(f"attribute '{name}' is not accessible in the sandbox")
        return func(obj, name, *args)

    checked.__name__ = func.__name__
    return checked


def _sandbox_print(stdout: io.TextIOBase) -> Callable[..., Any]:
    namespace: dict[str, Any] = {"__builtins__": {"str": str}, "_stdout": stdout}
    exec(compile(_PRINT_SOURCE, "<sandbox>", "exec"), namespace)
    return namespace["print"]


def _build_safe_builtins(
    mode: str,
    allowed_builtins: set[str],
    blocked_builtins: set[str],
    safe_import: Any,
    stdout: io.TextIOBase | None = None,
) -> dict[str, Any]:
    raw_builtins = __builtins__
    if isinstance(raw_builtins, dict):
        builtins_obj: dict[str, Any] = raw_builtins
    else:
        builtins_obj = vars(raw_builtins)

    # print is the one output primitive and class statements need __build_class__.
    always = {"print", "__build_class__"}
    safe = {}
    for name, value in builtins_obj.items():
        if name in always:
            safe[name] = value
            continue
        if mode == "allow":
            if name not in allowed_builtins:
                continue
        elif name in blocked_builtins:
            continue
        safe[name] = value

    for name in ("getattr", "setattr", "delattr", "hasattr"):
        if name in safe:
            safe[name] = _checked_attribute_builtin(safe[name])
    if stdout is not None:
        safe["print"] = _sandbox_print(stdout)
    safe["__import__"] = safe_import
    return safe


def _hidden_attribute_violations(tree: ast.AST) -> list[str]:
    guard = _AttributeGuard()
    guard.visit(tree)
    return guard.violations


def _normalize_system_exit(exit_code: Any) -> tuple[bool, int, str | None]:
    if exit_code in (None, 0):
        return True, 0, None
    if isinstance(exit_code, int):
        return False, exit_code, f"SystemExit: {exit_code}"
    return False, 1, f"SystemExit: {exit_code}"


def _user_traceback(exc: BaseException) -> str:
    # Skip the worker's own exec() frame so only user frames are shown.
    tb = exc.__traceback__.tb_next if exc.__traceback__ is not None else None
    return "".join(traceback.format_exception(type(exc), exc, tb))


def _summary(
    *,
    ok: bool,
    exit_code: int,
    error: str | None = None,
    error_type: str | None = None,
    resource_exceeded: bool = False,
    output_limit_exceeded: bool = False,
    warnings: list[str] | None = None,
) -> dict[str, Any]:
    return {
        "ok": ok,
        "exit_code": exit_code,
        "error": error,
        "error_type": error_type,
        "resource_exceeded": resource_exceeded,
        "output_limit_exceeded": output_limit_exceeded,
        "memory_peak_bytes": _peak_memory_bytes(),
        "warnings": warnings or [],
    }


def _run(req: dict[str, Any], writer: _FrameWriter) -> dict[str, Any]:
    code: str = req.get("code", "")
    policy = req.get("policy", {})
    mode = str(policy.get("mode", "restrict"))
    allowed_imports = set(policy.get("allowed_imports", []))
    blocked_imports = set(policy.get("blocked_imports", []))
    allowed_builtins = set(policy.get("allowed_builtins", []))
    blocked_builtins = set(policy.get("blocked_builtins", []))

    if mode not in {"allow", "restrict"}:
        raise ValueError("mode must be 'allow' or 'restrict'")

    warnings = _set_limits(
        memory_limit_mb=int(req.get("memory_limit_mb", 256)),
        cpu_seconds=int(req.get("cpu_seconds", 60)),
    )

    gate = _AuditGate()
    sys.addaudithook(gate)

    stdout = _CappedTextStream(writer, _CHANNEL_STDOUT)
    stderr = _CappedTextStream(writer, _CHANNEL_STDERR)
    safe_import = _safe_import_factory_mode(mode, allowed_imports, blocked_imports, gate)
    safe_builtins = _build_safe_builtins(mode, allowed_builtins, blocked_builtins, safe_import, stdout)

    try:
        tree = ast.parse(code, "<user_code>", "exec")
        byte_code = compile(tree, "<user_code>", "exec")
    except SyntaxError as exc:
        return _summary(
            ok=False,
            exit_code=EXIT_RUNTIME_ERROR,
            error=f"SyntaxError: {exc}",
            error_type="SyntaxError",
            warnings=warnings,
        )

    violations = _hidden_attribute_violations(tree)
    if violations:
        return _summary(
            ok=False,
            exit_code=EXIT_RUNTIME_ERROR,
            error="PolicyViolation: " + "; ".join(violations),
            error_type="PolicyViolation",
            warnings=warnings,
        )

    exec_globals: dict[str, Any] = {"__builtins__": safe_builtins, "__name__": "__main__"}
    sys.stdin = io.StringIO(req.get("stdin") or "")
    sys.stdout = stdout
    sys.stderr = stderr

    try:
        gate.armed = True
        try:
            exec(byte_code, exec_globals, exec_globals)
        finally:
            gate.armed = False
    except SystemExit as exc:
        ok, exit_code, error = _normalize_system_exit(exc.code)
        if isinstance(exc.code, str):
            try:
                stderr.write(f"{exc.code}\n")
            except OutputBudgetExhausted:
                pass
        return _summary(ok=ok, exit_code=exit_code, error=error, error_type="SystemExit" if error else None, warnings=warnings)
    except OutputBudgetExhausted:
        return _summary(
            ok=False,
            exit_code=EXIT_OUTPUT_LIMIT,
            error="Output size limit exceeded",
            error_type="OutputLimitExceeded",
            output_limit_exceeded=True,
            warnings=warnings,
        )
    except MemoryError:
        exec_globals.clear()
        return _summary(
            ok=False,
            exit_code=EXIT_MEMORY,
            error="Memory limit exceeded",
            error_type="MemoryError",
            resource_exceeded=True,
            warnings=warnings,
        )
    except Exception as exc:
        try:
            stderr.write(_user_traceback(exc))
        except OutputBudgetExhausted:
            pass
        return _summary(
            ok=False,
            exit_code=EXIT_RUNTIME_ERROR,
            error=f"{type(exc).__name__}: {exc}",
            error_type=type(exc).__name__,
            warnings=warnings,
        )
    finally:
        sys.stdout = sys.__stdout__
        sys.stderr = sys.__stderr__
        sys.stdin = sys.__stdin__

    return _summary(ok=True, exit_code=EXIT_OK, warnings=warnings)


def main() -> int:
    """Serve one request from stdin and return the user code's exit code.

    Example:
        ```python
        # echo '{"code": "print(1)"}' | python -I worker.py
        ```
    """
    req = json.loads(sys.stdin.buffer.read() or b"{}")

    # Keep the real stdout for frames and point fd 1 at stderr so raw writes cannot forge them.
    protocol = os.fdopen(os.dup(1), "wb", buffering=0)
    os.dup2(2, 1)
    writer = _FrameWriter(protocol, int(req.get("max_output_bytes", 1024 * 1024)))

    try:
        summary = _run(req, writer)
    except MemoryError:
        summary = _summary(
            ok=False,
            exit_code=EXIT_MEMORY,
            error="Memory limit exceeded",
            error_type="MemoryError",
            resource_exceeded=True,
        )
    except Exception as exc:
        # Fallback for unexpected runner errors (e.g. init failures)
        summary = _summary(ok=False, exit_code=EXIT_RUNTIME_ERROR, error=str(exc), error_type="WorkerError")

    writer.send(_CHANNEL_RESULT, json.dumps(summary, default=str).encode("utf-8"))
    return int(summary["exit_code"])


if __name__ == "__main__":
    raise SystemExit(main())
