from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from .errors import UnsupportedLanguage


class Language(str, Enum):
    """Language tags accepted by `ExecutionOrchestrator.submit`.

    Example:
        ```python
        lang = Language.parse("python")
        ```
    """

    PYTHON = "python"
    CYTHON = "cython"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    JAVA = "java"
    CPP = "cpp"
    C = "c"
    GO = "go"
    RUST = "rust"

    @classmethod
    def parse(cls, tag: "Language | str") -> "Language":
        """Turn a raw tag into a `Language`, rejecting anything unknown.

        Example:
            ```python
            Language.parse("Rust")  # Language.RUST
            ```
        """
        if isinstance(tag, Language):
            return tag
        if not isinstance(tag, str):
            raise UnsupportedLanguage(repr(tag))
        try:
            return cls(tag.strip().lower())
        except ValueError:
            raise UnsupportedLanguage(tag) from None


class IsolationBackend(str, Enum):
    """Which sandbox backend runs a language."""

    LOCAL = "local"
    DOCKER = "docker"


class NamingRule(str, Enum):
    """How the source file inside the workspace is named.

    `FIXED` uses the profile's file name as is. `MATCH_TYPE_NAME` is for
    languages whose compiler insists the file is named after the public type
    it declares; the type name is a fixed convention of the profile and is
    never inferred from the submitted code.
    """

    FIXED = "fixed"
    MATCH_TYPE_NAME = "match_type_name"


@dataclass(frozen=True, slots=True)
class LanguageProfile:
    """Build and run descriptor for one language.

    Example:
        ```python
        profile = profile_for(Language.CPP)
        profile.entry_command()
        ```
    """

    language: Language
    backend: IsolationBackend
    runtime: str
    extension: str
    run_command: str = ""
    compile_command: str | None = None
    naming: NamingRule = NamingRule.FIXED
    type_name: str | None = None
    requires_transform: bool = False
    environment: Mapping[str, str] = field(default_factory=dict)

    @property
    def source_filename(self) -> str:
        """Return the file name the source must be written under.

        Example:
            ```python
            profile_for(Language.JAVA).source_filename  # "Main.java"
            ```
        """
        if self.naming is NamingRule.MATCH_TYPE_NAME:
            if not self.type_name:
                raise ValueError(f"{self.language.value} profile needs a type_name")
            return f"{self.type_name}{self.extension}"
        return f"main{self.extension}"

    def entry_command(self, *, source_dir: str = "/code", build_dir: str = "/tmp/build") -> str:
        """Render the shell entry command, chaining compile before run.

        Example:
            ```python
            cmd = profile_for(Language.C).entry_command()
            ```
        """
        values = {
            "source": f"{source_dir}/{self.source_filename}",
            "source_dir": source_dir,
            "build": build_dir,
            "type_name": self.type_name or "",
        }
        run = self.run_command.format(**values)
        if self.compile_command:
            compile_step = self.compile_command.format(**values)
            return f"mkdir -p {build_dir} && {compile_step} && {run}"
        return run


def _profiles() -> dict[Language, LanguageProfile]:
    local = IsolationBackend.LOCAL
    docker = IsolationBackend.DOCKER
    return {
        Language.PYTHON: LanguageProfile(
            language=Language.PYTHON,
            backend=local,
            runtime="python3",
            extension=".py",
        ),
        # Cython has to be translated to C before it can run; no transform is wired up.
        Language.CYTHON: LanguageProfile(
            language=Language.CYTHON,
            backend=local,
            runtime="python3",
            extension=".pyx",
            requires_transform=True,
        ),
        Language.JAVASCRIPT: LanguageProfile(
            language=Language.JAVASCRIPT,
            backend=docker,
            runtime="node:18-alpine",
            extension=".js",
            run_command="node {source}",
        ),
        Language.TYPESCRIPT: LanguageProfile(
            language=Language.TYPESCRIPT,
            backend=docker,
            runtime="denoland/deno:alpine",
            extension=".ts",
            run_command="deno run --quiet --no-prompt {source}",
            environment={"DENO_DIR": "/tmp/deno"},
        ),
        Language.JAVA: LanguageProfile(
            language=Language.JAVA,
            backend=docker,
            runtime="eclipse-temurin:17-jdk-alpine",
            extension=".java",
            naming=NamingRule.MATCH_TYPE_NAME,
            type_name="Main",
            compile_command="javac -d {build} {source}",
            run_command="java -cp {build} {type_name}",
        ),
        Language.CPP: LanguageProfile(
            language=Language.CPP,
            backend=docker,
            runtime="gcc:13",
            extension=".cpp",
            compile_command="g++ -std=c++17 -O2 -o {build}/main {source}",
            run_command="{build}/main",
        ),
        Language.C: LanguageProfile(
            language=Language.C,
            backend=docker,
            runtime="gcc:13",
            extension=".c",
            compile_command="gcc -O2 -o {build}/main {source}",
            run_command="{build}/main",
        ),
        Language.GO: LanguageProfile(
            language=Language.GO,
            backend=docker,
            runtime="golang:1.21-alpine",
            extension=".go",
            run_command="go run {source}",
            environment={"GOCACHE": "/tmp/gocache", "HOME": "/tmp"},
        ),
        Language.RUST: LanguageProfile(
            language=Language.RUST,
            backend=docker,
            runtime="rust:alpine",
            extension=".rs",
            compile_command="rustc -O -o {build}/main {source}",
            run_command="{build}/main",
        ),
    }


CATALOG: Mapping[Language, LanguageProfile] = MappingProxyType(_profiles())


def profile_for(language: Language | str) -> LanguageProfile:
    """Look up the profile for a language tag.

    Example:
        ```python
        profile = profile_for("go")
        ```
    """
    lang = Language.parse(language)
    profile = CATALOG.get(lang)
    if profile is None:
        raise UnsupportedLanguage(lang.value, "no profile registered")
    return profile
