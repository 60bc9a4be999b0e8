import sys
from pathlib import Path

from pipewright.probe import (
    NOT_FOUND_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    count_files,
    count_pattern,
    expand_braces,
    heading_present,
    meets_min_size,
    parse_pass_fail,
    resolve_artifact,
    run_command,
)


def _python(code: str) -> str:
    return f'"{sys.executable}" -c "{code}"'


def test_run_command_captures_output(tmp_path: Path) -> None:
    result = run_command(_python("print('hello')"), tmp_path, timeout=30)

    assert result.ok
    assert result.stdout.strip() == "hello"


def test_run_command_reports_non_zero_exit(tmp_path: Path) -> None:
    result = run_command(_python("import sys; sys.exit(3)"), tmp_path, timeout=30)

    assert result.exit_code == 3
    assert not result.ok


def test_run_command_times_out_and_kills(tmp_path: Path) -> None:
    result = run_command(_python("import time; time.sleep(30)"), tmp_path, timeout=0.5)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_seconds < 10


def test_run_command_missing_binary_is_a_result(tmp_path: Path) -> None:
    result = run_command("definitely-not-a-real-binary-xyz --flag", tmp_path, timeout=5)

    assert result.exit_code == NOT_FOUND_EXIT_CODE
    assert not result.ok


def test_resolve_artifact_prefers_output_dir(tmp_path: Path) -> None:
    outputs = tmp_path / "stages" / "01" / "outputs"
    outputs.mkdir(parents=True)
    (outputs / "a.md").write_text("stage", encoding="utf-8")
    (tmp_path / "a.md").write_text("root", encoding="utf-8")
    (tmp_path / "b.md").write_text("root", encoding="utf-8")

    assert resolve_artifact(outputs, tmp_path, "a.md") == outputs / "a.md"
    assert resolve_artifact(outputs, tmp_path, "b.md") == tmp_path / "b.md"
    assert resolve_artifact(outputs, tmp_path, "c.md") is None


def test_heading_present_is_case_insensitive() -> None:
    text = "# Title\n\n## 1. system OVERVIEW\n\nbody\n#### Deep heading\n"

    assert heading_present(text, "Overview")
    assert not heading_present(text, "body")


def test_count_pattern_counts_every_line() -> None:
    text = "## One\n### Two\n## Three\ntext ## not\n"

    assert count_pattern(text, r"^## ") == 2
    assert count_pattern(text, r"^#{2,3}\s+\w+") == 3


def test_expand_braces_and_count_files(tmp_path: Path) -> None:
    (tmp_path / "src" / "pkg").mkdir(parents=True)
    (tmp_path / "src" / "pkg" / "a.py").write_text("", encoding="utf-8")
    (tmp_path / "src" / "b.ts").write_text("", encoding="utf-8")
    (tmp_path / "src" / "c.txt").write_text("", encoding="utf-8")
    (tmp_path / "src" / "node_modules").mkdir()
    (tmp_path / "src" / "node_modules" / "d.js").write_text("", encoding="utf-8")

    assert expand_braces("src/**/*.{py,ts}") == ["src/**/*.py", "src/**/*.ts"]
    assert count_files(tmp_path, "src/**/*.{py,ts,js}") == 2


def test_parse_pass_fail() -> None:
    assert parse_pass_fail("=== 18 passed, 2 failed in 1.2s ===") == (18, 2)
    assert parse_pass_fail("Tests: 5 passed") == (5, 0)
    assert parse_pass_fail("no summary here") is None


def test_meets_min_size(tmp_path: Path) -> None:
    path = tmp_path / "a.md"
    path.write_text("12345", encoding="utf-8")

    assert meets_min_size(path, 0)
    assert meets_min_size(path, 5)
    assert not meets_min_size(path, 6)
    assert not meets_min_size(tmp_path, 1)
