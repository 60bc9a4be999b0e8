from __future__ import annotations

import os
import re
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`*?]|[$]\()")
PASS_COUNT_PATTERN = re.compile(r"(\d+)\s+pass", re.IGNORECASE)
FAIL_COUNT_PATTERN = re.compile(r"(\d+)\s+fail", re.IGNORECASE)
BRACE_PATTERN = re.compile(r"\{([^{}]+)\}")
IGNORED_DIRS = {".git", "node_modules", "__pycache__", "dist", "build", ".next", "target"}

TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127


@dataclass(slots=True, frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


def _kill_tree(proc: subprocess.Popen[str]) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_command(command: str, cwd: Path, timeout: float | None = None) -> ProcessResult:
    command_text = command.strip()
    if not command_text:
        return ProcessResult(exit_code=1, stderr="Command is empty.")

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
    except (FileNotFoundError, PermissionError) as exc:
        return ProcessResult(
            exit_code=NOT_FOUND_EXIT_CODE,
            stderr=str(exc),
            duration_seconds=time.monotonic() - started,
        )

    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_tree(proc)
        stdout, stderr = proc.communicate()
        return ProcessResult(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout or "",
            stderr=(stderr or "") + f"\nTimed out after {timeout}s",
            timed_out=True,
            duration_seconds=time.monotonic() - started,
        )
    return ProcessResult(
        exit_code=proc.returncode,
        stdout=stdout or "",
        stderr=stderr or "",
        duration_seconds=time.monotonic() - started,
    )


def command_available(executable: str) -> bool:
    if not executable.strip():
        return False
    return shutil.which(executable) is not None


def resolve_artifact(output_dir: Path, project_root: Path, relative: str) -> Path | None:
    for base in (output_dir, project_root):
        candidate = base / relative
        if candidate.exists():
            return candidate
    return None


def meets_min_size(path: Path, min_bytes: int) -> bool:
    if min_bytes <= 0:
        return True
    return path.is_file() and path.stat().st_size >= min_bytes


def directory_has_entries(path: Path) -> bool:
    if not path.is_dir():
        return False
    return any(path.iterdir())


def heading_present(text: str, section: str) -> bool:
    pattern = re.compile(rf"^#{{1,3}}.*{re.escape(section)}", re.IGNORECASE | re.MULTILINE)
    return pattern.search(text) is not None


def count_pattern(text: str, pattern: str) -> int:
    compiled = re.compile(pattern, re.IGNORECASE | re.MULTILINE)
    return sum(1 for _ in compiled.finditer(text))


def expand_braces(pattern: str) -> list[str]:
    match = BRACE_PATTERN.search(pattern)
    if match is None:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end() :]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(f"{head}{option.strip()}{tail}"))
    return expanded


def _is_ignored(path: Path, root: Path) -> bool:
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        return False
    return any(part in IGNORED_DIRS for part in parts[:-1])


def count_files(root: Path, pattern: str) -> int:
    if not root.is_dir():
        return 0
    matched: set[Path] = set()
    for candidate_pattern in expand_braces(pattern):
        for path in root.glob(candidate_pattern):
            if path.is_file() and not _is_ignored(path, root):
                matched.add(path)
    return len(matched)


def parse_pass_fail(output: str) -> tuple[int, int] | None:
    pass_match = PASS_COUNT_PATTERN.search(output)
    if pass_match is None:
        return None
    fail_match = FAIL_COUNT_PATTERN.search(output)
    failed = int(fail_match.group(1)) if fail_match else 0
    return int(pass_match.group(1)), failed
