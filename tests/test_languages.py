import pytest

from polyglot_sandbox import CATALOG, Language, UnsupportedLanguage, profile_for
from polyglot_sandbox.languages import IsolationBackend, NamingRule


def test_every_language_has_a_profile() -> None:
    assert set(CATALOG) == set(Language)
    for language, profile in CATALOG.items():
        assert profile.language is language


def test_catalog_is_read_only() -> None:
    with pytest.raises(TypeError):
        CATALOG[Language.PYTHON] = CATALOG[Language.GO]  # type: ignore[index]


@pytest.mark.parametrize("tag", ["python", "Python", "  rust ", "cpp"])
def test_parse_accepts_known_tags(tag: str) -> None:
    assert Language.parse(tag).value == tag.strip().lower()


@pytest.mark.parametrize("tag", ["cobol", "", "py"])
def test_parse_rejects_unknown_tags(tag: str) -> None:
    with pytest.raises(UnsupportedLanguage, match="Unsupported language"):
        Language.parse(tag)


def test_python_runs_in_process_and_cython_needs_transform() -> None:
    assert profile_for("python").backend is IsolationBackend.LOCAL
    assert profile_for("python").requires_transform is False
    cython = profile_for(Language.CYTHON)
    assert cython.backend is IsolationBackend.LOCAL
    assert cython.requires_transform is True


def test_containerized_languages_use_docker() -> None:
    for language in (Language.JAVASCRIPT, Language.TYPESCRIPT, Language.JAVA, Language.CPP, Language.C, Language.GO, Language.RUST):
        profile = profile_for(language)
        assert profile.backend is IsolationBackend.DOCKER
        assert profile.runtime
        assert profile.run_command


def test_java_file_is_named_after_its_type() -> None:
    java = profile_for("java")
    assert java.naming is NamingRule.MATCH_TYPE_NAME
    assert java.source_filename == "Main.java"
    assert profile_for("c").source_filename == "main.c"


def test_entry_command_chains_compile_before_run() -> None:
    cmd = profile_for("cpp").entry_command(source_dir="/code", build_dir="/tmp/build")
    assert cmd == (
        "mkdir -p /tmp/build && g++ -std=c++17 -O2 -o /tmp/build/main /code/main.cpp && /tmp/build/main"
    )


def test_entry_command_for_interpreted_language_is_run_only() -> None:
    assert profile_for("javascript").entry_command() == "node /code/main.js"
    assert profile_for("java").entry_command().endswith("java -cp /tmp/build Main")
