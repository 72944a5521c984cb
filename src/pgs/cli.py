from __future__ import annotations

import argparse
import json
import sys
from dataclasses import fields, is_dataclass
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

from polyglot_sandbox import (
    CATALOG,
    DockerEngine,
    ExecutionOptions,
    ExecutionOrchestrator,
    ExecutionStatus,
    SandboxConfig,
    SandboxError,
)
from polyglot_sandbox.events import EventKind, OutputChunk
from polyglot_sandbox.log import LOG_LEVELS, configure_logging
from polyglot_sandbox.models import Execution
from polyglot_sandbox.orchestrator import default_engines

_CONSOLE = Console(no_color=False)
_ERR_CONSOLE = Console(stderr=True)


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m pgs")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {escape(message)}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def _to_jsonable(value: object) -> Any:
    """Convert CLI return values into printable payloads.

    Example:
        ```python
        payload = _to_jsonable(summary)
        ```
    """
    if not isinstance(value, type) and is_dataclass(value):
        return {field.name: getattr(value, field.name) for field in fields(value)}
    return value


def _error_panel(message: str) -> None:
    _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {escape(message)}", border_style="red"))


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the polyglot sandbox.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m pgs",
        description=(
            "polyglot-sandbox CLI\n"
            "Run untrusted snippets in a restricted interpreter or a locked-down container,\n"
            "and manage the containers the sandbox labels as its own."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m pgs run hello.py --language python\n"
            "  python -m pgs run main.rs --language rust --timeout-ms 20000\n"
            "  python -m pgs languages\n"
            "  python -m pgs units\n"
            "  python -m pgs cleanup\n\n"
            "Remote Examples:\n"
            "  python -m pgs --docker-context my-remote-context units\n"
            "  python -m pgs --docker-host ssh://ubuntu@server run main.go --language go"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "TOML file with a [sandbox] table.\n"
            "Missing keys keep the bundled defaults; PGS_* env vars apply on top."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=LOG_LEVELS,
        help="Sandbox log verbosity (default: WARNING).",
    )
    parser.add_argument(
        "--docker-context",
        help=(
            "Use an existing Docker context name.\n"
            "Example: --docker-context prod-us-east\n"
            "Mutually exclusive with --docker-host."
        ),
    )
    parser.add_argument(
        "--docker-host",
        help=(
            "Connect directly with DOCKER_HOST.\n"
            "Examples: ssh://user@server, tcp://host:2376"
        ),
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Execute one source file and print its result.",
        description=(
            "Execute a source file in the sandbox.\n"
            "Output is streamed as it arrives, followed by a result summary."
        ),
        epilog=(
            "Examples:\n"
            "  python -m pgs run script.py --language python --timeout-ms 2000\n"
            "  python -m pgs run Main.java --language java --stdin-file input.txt\n"
            "  python -m pgs run main.c --language c --json"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file", help="Source file to execute.")
    run_cmd.add_argument(
        "--language",
        "-l",
        required=True,
        help="Language tag, see `python -m pgs languages`.",
    )
    run_cmd.add_argument("--timeout-ms", type=int, help="Wall-clock limit in milliseconds.")
    run_cmd.add_argument("--memory-mb", type=int, help="Memory ceiling in megabytes.")
    run_cmd.add_argument("--stdin-file", help="File whose contents are fed to the program's stdin.")
    run_cmd.add_argument(
        "--json",
        action="store_true",
        help="Print the result record as JSON instead of streaming output.",
    )

    sub.add_parser(
        "languages",
        help="List registered languages and how they run.",
        description="Show every language profile: backend, runtime and entry command.",
        formatter_class=_HELP_FORMATTER,
    )

    sub.add_parser(
        "units",
        help="List sandbox-managed containers.",
        description=(
            "Show containers labeled by the sandbox in any state.\n"
            "Includes id, name, image, state, status and execution id."
        ),
        formatter_class=_HELP_FORMATTER,
    )

    cleanup_cmd = sub.add_parser(
        "cleanup",
        help="Remove stale managed containers.",
        description=(
            "Force-remove managed containers left behind by a crashed host.\n"
            "Running containers are skipped unless --include-running is given."
        ),
        epilog=(
            "Example:\n"
            "  python -m pgs cleanup --include-running"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    cleanup_cmd.add_argument(
        "--include-running",
        action="store_true",
        help="Also remove managed containers that are still running.",
    )

    return parser


def load_config(args: argparse.Namespace) -> SandboxConfig:
    """Resolve the config from --config and PGS_* environment overrides.

    Example:
        ```python
        config = load_config(args)
        ```
    """
    base = SandboxConfig.from_file(args.config) if args.config else SandboxConfig()
    return SandboxConfig.from_env(base=base)


def build_engine(args: argparse.Namespace, config: SandboxConfig) -> DockerEngine:
    """Create a DockerEngine from global CLI connection flags.

    Example:
        ```python
        engine = build_engine(args, SandboxConfig())
        ```
    """
    return DockerEngine(
        config=config,
        docker_context=args.docker_context,
        docker_host=args.docker_host,
    )


def build_orchestrator(args: argparse.Namespace, config: SandboxConfig) -> ExecutionOrchestrator:
    """Create an orchestrator whose Docker engine honors the CLI connection flags.

    Example:
        ```python
        sandbox = build_orchestrator(args, config)
        ```
    """
    engines = default_engines(
        config,
        docker_host=args.docker_host,
        docker_context=args.docker_context,
    )
    return ExecutionOrchestrator(config, engines=engines)


def _print_result(record: Execution) -> None:
    """Render the final record of a run.

    Example:
        ```python
        _print_result(sandbox.get_result(eid))
        ```
    """
    style = "green" if record.status is ExecutionStatus.COMPLETED else "red"
    table = Table(title="Execution Result", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("ID", record.id)
    table.add_row("Language", record.language.value)
    table.add_row("Status", f"[{style}]{record.status.value}[/{style}]")
    if record.failure is not None:
        table.add_row("Failure", record.failure.value)
    table.add_row("Exit code", str(record.exit_code))
    table.add_row("Runtime", f"{record.runtime_ms} ms")
    table.add_row("Memory", f"{record.memory_used_bytes} bytes")
    if record.error:
        table.add_row("Error", escape(record.error))
    _ERR_CONSOLE.print(table)


def _print_languages() -> None:
    table = Table(title="Languages")
    table.add_column("Language", style="cyan")
    table.add_column("Backend", style="magenta")
    table.add_column("Runtime")
    table.add_column("Source file")
    table.add_column("Entry command")
    for language, profile in CATALOG.items():
        if profile.requires_transform:
            entry = "[yellow]needs a source transform (not available)[/yellow]"
        elif profile.run_command:
            entry = escape(profile.entry_command())
        else:
            entry = "restricted in-process interpreter"
        table.add_row(language.value, profile.backend.value, profile.runtime, profile.source_filename, entry)
    _CONSOLE.print(table)


def _print_units(rows: list[dict[str, Any]]) -> None:
    """Render managed containers in a rich table.

    Example:
        ```python
        _print_units([{"id": "abc", "name": "pgs-go_1_ab", "image": "golang:1.21-alpine", "state": "running", "status": "Up 1s", "execution_id": "go_1_ab"}])
        ```
    """
    table = Table(title="Managed Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status")
    table.add_column("Execution")
    for row in rows:
        table.add_row(row["id"], row["name"], row["image"], row["state"], row["status"], row["execution_id"])
    _CONSOLE.print(table)


def _run(args: argparse.Namespace, config: SandboxConfig) -> int:
    source_path = Path(args.file)
    try:
        code = source_path.read_text(encoding="utf-8")
        stdin = Path(args.stdin_file).read_text(encoding="utf-8") if args.stdin_file else None
    except OSError as exc:
        _error_panel(str(exc))
        return 2

    options = ExecutionOptions(
        code=code,
        language=args.language,
        timeout_ms=args.timeout_ms,
        memory_limit_mb=args.memory_mb,
        stdin=stdin,
    )

    try:
        orchestrator = build_orchestrator(args, config)
    except ValueError as exc:
        _error_panel(str(exc))
        return 2

    with orchestrator as sandbox:
        subscription = None
        if not args.json:

            def _echo(event: Any) -> None:
                if isinstance(event, OutputChunk):
                    sys.stdout.write(event.text)
                    sys.stdout.flush()

            subscription = sandbox.events.subscribe(_echo, kinds=[EventKind.OUTPUT_CHUNK])
        try:
            execution_id = sandbox.submit(options)
        except SandboxError as exc:
            _error_panel(str(exc))
            return 2
        try:
            record = sandbox.wait(execution_id)
        except KeyboardInterrupt:
            sandbox.cancel(execution_id)
            record = sandbox.get_result(execution_id)
        finally:
            if subscription is not None:
                subscription.unsubscribe()

    if args.json:
        _CONSOLE.print_json(json.dumps(record.to_dict()))
    else:
        if record.output and not record.output.endswith("\n"):
            sys.stdout.write("\n")
        _print_result(record)
    return 0 if record.status is ExecutionStatus.COMPLETED else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `pgs` CLI command handler.

    Example:
        ```python
        code = main(["run", "hello.py", "--language", "python"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level)

    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        _error_panel(str(exc))
        return 2

    if args.command == "run":
        return _run(args, config)
    if args.command == "languages":
        _print_languages()
        return 0

    try:
        engine = build_engine(args, config)
    except ValueError as exc:
        _error_panel(str(exc))
        return 2

    if args.command == "units":
        try:
            rows = [_to_jsonable(c) for c in engine.list_units(all_states=True)]
        except RuntimeError as exc:
            _error_panel(str(exc))
            return 1
        _print_units(rows)
        return 0
    if args.command == "cleanup":
        try:
            summary = _to_jsonable(engine.cleanup_stale(include_running=args.include_running))
        except RuntimeError as exc:
            _error_panel(str(exc))
            return 1
        _CONSOLE.print(Panel.fit(Pretty(summary), title="Cleanup Summary", border_style="green"))
        return 0

    parser.error("Unhandled command")
