from polyglot_sandbox import FailureKind, InterpreterPolicy, LocalEngine, profile_for
from polyglot_sandbox.execution.types import ExecutionOutcome, ExecutionRequest

ENGINE = LocalEngine()


def run_code(code: str, policy: InterpreterPolicy | None = None) -> ExecutionOutcome:
    engine = LocalEngine(policy=policy) if policy is not None else ENGINE
    return engine.execute(
        ExecutionRequest(
            execution_id="python_security",
            code=code,
            profile=profile_for("python"),
            timeout_ms=10_000,
            memory_limit_mb=512,
            max_output_bytes=64 * 1024,
        )
    )


def test_blocked_import_direct() -> None:
    """Verify that directly importing a blocked module fails."""
    policy = InterpreterPolicy(blocked_imports=["os"])
    result = run_code("import os", policy=policy)
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_blocked_import_alias() -> None:
    """Verify that aliasing a blocked module still fails."""
    policy = InterpreterPolicy(blocked_imports=["os"])
    result = run_code("import os as my_os", policy=policy)
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_blocked_import_from() -> None:
    """Verify that 'from x import y' on a blocked module fails."""
    policy = InterpreterPolicy(blocked_imports=["os"])
    result = run_code("from os import path", policy=policy)
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_blocked_submodule_uses_root_name() -> None:
    policy = InterpreterPolicy(blocked_imports=["xml"])
    result = run_code("import xml.dom.minidom", policy=policy)
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_blocked_builtin_eval() -> None:
    """Verify that using eval is blocked."""
    policy = InterpreterPolicy(blocked_builtins=["eval"])
    result = run_code("x = eval('1 + 1')", policy=policy)
    assert not result.ok
    assert "name 'eval' is not defined" in (result.error or "")


def test_blocked_builtin_exec() -> None:
    """Verify that using exec is blocked."""
    policy = InterpreterPolicy(blocked_builtins=["exec"])
    result = run_code("exec('x = 1')", policy=policy)
    assert not result.ok
    assert "name 'exec' is not defined" in (result.error or "")


def test_blocked_builtin_open() -> None:
    """Verify that using open is blocked."""
    policy = InterpreterPolicy(blocked_builtins=["open"])
    result = run_code("f = open('test.txt', 'w')", policy=policy)
    assert not result.ok
    assert "name 'open' is not defined" in (result.error or "")


def test_system_exit_code() -> None:
    """Verify that SystemExit is handled gracefully."""
    # SystemExit(0) -> Success
    result = run_code("raise SystemExit(0)")
    assert result.ok is True
    assert result.exit_code == 0

    # SystemExit(1) -> Failure (controlled)
    result_err = run_code("raise SystemExit(1)")
    assert result_err.ok is False
    assert result_err.exit_code == 1
    assert result_err.failure is FailureKind.RUNTIME_ERROR
    assert "SystemExit: 1" in (result_err.error or "")


def test_system_exit_string_message() -> None:
    result = run_code("raise SystemExit('stop now')")
    assert result.ok is False
    assert result.exit_code == 1
    assert "SystemExit: stop now" in (result.error or "")
    assert "stop now" in result.output


def test_importlib_bypass_attempt() -> None:
    """Importing via importlib is refused outright."""
    policy = InterpreterPolicy(blocked_imports=["os"])
    code = """
import importlib
os = importlib.import_module("os")
"""
    result = run_code(code, policy=policy)
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_dunder_import_bypass_attempt() -> None:
    """Attempt to bypass using __import__."""
    policy = InterpreterPolicy(blocked_imports=["os"])
    result = run_code('os = __import__("os")', policy=policy)
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_builtins_dict_bypass_attempt() -> None:
    """The builtins module is not reachable through a blocked-name lookup."""
    result = run_code("import builtins\nbuiltins.open('/etc/passwd')")
    assert not result.ok
    assert "blocked by policy" in (result.error or "")


def test_secure_defaults_block_os_import() -> None:
    result = run_code("import os")
    assert result.ok is False
    assert "blocked by policy" in (result.error or "")


def test_secure_defaults_block_network_and_process_modules() -> None:
    for module in ("socket", "subprocess", "ctypes", "pathlib", "shutil"):
        result = run_code(f"import {module}")
        assert result.ok is False, module
        assert "blocked by policy" in (result.error or ""), module


def test_secure_defaults_block_eval_builtin() -> None:
    result = run_code("result = eval('1+1')")
    assert result.ok is False
    assert "name 'eval' is not defined" in (result.error or "")


def test_secure_defaults_block_open_builtin() -> None:
    result = run_code("open('/etc/passwd').read()")
    assert result.ok is False
    assert "name 'open' is not defined" in (result.error or "")


def test_relative_imports_are_refused() -> None:
    result = run_code("from . import something")
    assert result.ok is False
    assert "Relative imports" in (result.error or "")


def test_secure_defaults_block_sys_and_introspection_modules() -> None:
    for module in ("sys", "gc", "inspect", "types", "operator"):
        result = run_code(f"import {module}")
        assert result.ok is False, module
        assert "blocked by policy" in (result.error or ""), module


def test_sys_modules_cannot_hand_out_os() -> None:
    result = run_code("import sys\nprint(sys.modules['os'].listdir('/'))")
    assert result.ok is False
    assert "blocked by policy" in (result.error or "")
    assert "ImportError" in result.output


def test_print_does_not_lead_back_to_builtins() -> None:
    result = run_code("b = print.__self__\nprint(b.open('/etc/hostname').read())")
    assert result.ok is False
    assert (result.error or "").startswith("PolicyViolation")
    assert "'__self__' is not accessible in the sandbox" in (result.error or "")
    assert result.output == ""


def test_getattr_refuses_hidden_attributes() -> None:
    result = run_code("owner = getattr(print, '__globals__')")
    assert result.ok is False
    assert "AttributeError" in (result.error or "")
    assert "not accessible in the sandbox" in (result.error or "")


def test_generator_frames_are_hidden() -> None:
    code = """
def numbers():
    yield 1

frame = numbers().gi_frame
"""
    result = run_code(code)
    assert result.ok is False
    assert "'gi_frame' is not accessible" in (result.error or "")


def test_class_patterns_cannot_read_hidden_attributes() -> None:
    code = """
match print:
    case object(__self__=owner):
        owner.open('/etc/hostname')
"""
    result = run_code(code)
    assert result.ok is False
    assert "'__self__' is not accessible" in (result.error or "")


def test_imported_modules_hide_private_names() -> None:
    code = """
import collections
print(hasattr(collections, '_sys'))
print(collections.OrderedDict(a=1))
"""
    result = run_code(code)
    assert result.ok is True, result.error
    assert result.output.startswith("False\nOrderedDict(")


def test_replacement_print_keeps_its_options() -> None:
    result = run_code("print(1, 2, sep='-', end='!\\n')\nprint('done', flush=True)")
    assert result.ok is True, result.error
    assert result.output == "1-2!\ndone\n"


def test_host_effects_are_refused_when_policy_allows_os() -> None:
    policy = InterpreterPolicy(blocked_imports=[])
    listing = run_code("import os\nos.listdir('/')", policy=policy)
    assert listing.ok is False
    assert "PermissionError" in (listing.error or "")
    assert "not permitted in the sandbox" in (listing.error or "")

    reading = run_code("import io\nio.open('/etc/hostname').read()", policy=policy)
    assert reading.ok is False
    assert "PermissionError" in (reading.error or "")
