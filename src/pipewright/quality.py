from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pipewright.pipeline import CheckType, QualityCheckConfig, Severity
from pipewright.probe import (
    ProcessResult,
    count_files,
    count_pattern,
    directory_has_entries,
    heading_present,
    meets_min_size,
    parse_pass_fail,
    resolve_artifact,
    run_command,
)
from pipewright.state.store import StateCorruptionError, read_json_document, write_json_atomic

log = logging.getLogger(__name__)

DEFAULT_SECTION_PATTERN = r"^## "
DEFAULT_COMPONENT_PATTERN = r"^#{2,3}\s+\w+"
DEFAULT_FILE_PATTERN = "**/*"

CommandRunner = Callable[[str, Path, float | None], ProcessResult]


class GateStatus(StrEnum):
    PASSED = "passed"
    PASSED_WITH_WARNINGS = "passed_with_warnings"
    RETRY = "retry"
    BLOCKED = "blocked"

    @property
    def is_blocking(self) -> bool:
        return self is GateStatus.BLOCKED

    @property
    def is_success(self) -> bool:
        return self in {GateStatus.PASSED, GateStatus.PASSED_WITH_WARNINGS}


@dataclass(slots=True, frozen=True)
class CheckOutcome:
    name: str
    type: CheckType
    severity: Severity
    passed: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "severity": self.severity.value,
            "passed": self.passed,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckOutcome:
        return cls(
            name=str(data["name"]),
            type=CheckType.parse(data["type"]),
            severity=Severity.parse(data["severity"]),
            passed=bool(data["passed"]),
            message=str(data.get("message", "")),
        )


def aggregate_status(outcomes: list[CheckOutcome]) -> GateStatus:
    failed = {outcome.severity for outcome in outcomes if not outcome.passed}
    if Severity.BLOCKING in failed:
        return GateStatus.BLOCKED
    if Severity.CRITICAL in failed:
        return GateStatus.RETRY
    if Severity.NON_CRITICAL in failed:
        return GateStatus.PASSED_WITH_WARNINGS
    return GateStatus.PASSED


@dataclass(slots=True)
class QualityResult:
    stage_id: str
    outcomes: list[CheckOutcome] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def status(self) -> GateStatus:
        return aggregate_status(self.outcomes)

    @property
    def failures(self) -> list[CheckOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.passed]

    @property
    def blocking_failures(self) -> list[CheckOutcome]:
        return [item for item in self.failures if item.severity is Severity.BLOCKING]

    @property
    def critical_failures(self) -> list[CheckOutcome]:
        return [item for item in self.failures if item.severity is Severity.CRITICAL]

    @property
    def warnings(self) -> list[CheckOutcome]:
        return [item for item in self.failures if item.severity is Severity.NON_CRITICAL]

    @property
    def score(self) -> float:
        if not self.outcomes:
            return 1.0
        return sum(1 for outcome in self.outcomes if outcome.passed) / len(self.outcomes)

    def error_messages(self) -> list[str]:
        return [
            f"{outcome.name}: {outcome.message}"
            for outcome in self.failures
            if outcome.severity is not Severity.NON_CRITICAL
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage_id,
            "status": self.status.value,
            "score": round(self.score, 4),
            "created_at": self.created_at,
            "checks": [outcome.to_dict() for outcome in self.outcomes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityResult:
        try:
            return cls(
                stage_id=str(data["stage"]),
                outcomes=[CheckOutcome.from_dict(item) for item in data.get("checks", [])],
                created_at=str(data["created_at"]),
            )
        except (KeyError, TypeError) as exc:
            raise StateCorruptionError(f"Quality record is malformed: {exc}") from exc


class ValidationHistory:
    """Append-only store of quality results, one immutable file per evaluation."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def record(self, result: QualityResult) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        stamp = re.sub(r"[^0-9T]", "", result.created_at.split("+")[0])
        base = f"quality_{result.stage_id}_{stamp}"
        path = self.directory / f"{base}.json"
        suffix = 1
        while path.exists():
            path = self.directory / f"{base}-{suffix}.json"
            suffix += 1
        write_json_atomic(path, result.to_dict())
        return path

    def for_stage(self, stage_id: str) -> list[QualityResult]:
        if not self.directory.is_dir():
            return []
        results = [
            QualityResult.from_dict(read_json_document(path))
            for path in self.directory.glob(f"quality_{stage_id}_*.json")
        ]
        return sorted(results, key=lambda item: item.created_at)

    def latest(self, stage_id: str) -> QualityResult | None:
        results = self.for_stage(stage_id)
        return results[-1] if results else None


class QualityGateEngine:
    def __init__(
        self,
        project_root: Path,
        *,
        stages_dir: str = "stages",
        history: ValidationHistory | None = None,
        command_runner: CommandRunner = run_command,
    ) -> None:
        self.project_root = project_root.resolve()
        self.stages_dir = stages_dir
        self.history = history
        self.command_runner = command_runner
        self._evaluators: dict[CheckType, Callable[[str, QualityCheckConfig], tuple[bool, str]]] = {
            CheckType.FILE_EXISTS: self._check_file_exists,
            CheckType.DIRECTORY_NOT_EMPTY: self._check_directory_not_empty,
            CheckType.SECTION_PRESENT: self._check_section_present,
            CheckType.SECTION_COUNT: self._check_section_count,
            CheckType.COMPONENT_COUNT: self._check_component_count,
            CheckType.FILE_COUNT: self._check_file_count,
            CheckType.COMMAND: self._check_command,
        }

    def output_dir(self, stage_id: str) -> Path:
        return self.project_root / self.stages_dir / stage_id / "outputs"

    def _resolve(self, stage_id: str, relative: str) -> Path | None:
        return resolve_artifact(self.output_dir(stage_id), self.project_root, relative)

    def _check_file_exists(self, stage_id: str, check: QualityCheckConfig) -> tuple[bool, str]:
        missing: list[str] = []
        undersized: list[str] = []
        for item in check.files:
            resolved = self._resolve(stage_id, item)
            if resolved is None:
                missing.append(item)
            elif not meets_min_size(resolved, check.min_bytes):
                undersized.append(item)
        problems: list[str] = []
        if missing:
            problems.append(f"Missing files: {', '.join(missing)}")
        if undersized:
            problems.append(
                f"Files smaller than {check.min_bytes} bytes: {', '.join(undersized)}"
            )
        if problems:
            return False, "; ".join(problems)
        return True, f"All required files exist: {', '.join(check.files)}"

    def _check_directory_not_empty(
        self, stage_id: str, check: QualityCheckConfig
    ) -> tuple[bool, str]:
        empty: list[str] = []
        for directory in check.directories:
            resolved = self._resolve(stage_id, directory)
            if resolved is None or not directory_has_entries(resolved):
                empty.append(directory)
        if empty:
            return False, f"Empty or missing directories: {', '.join(empty)}"
        return True, f"All directories have content: {', '.join(check.directories)}"

    def _check_section_present(
        self, stage_id: str, check: QualityCheckConfig
    ) -> tuple[bool, str]:
        missing: list[str] = []
        for target in check.target_files:
            resolved = self._resolve(stage_id, target)
            if resolved is None:
                missing.extend(f"{target} (missing): {section}" for section in check.sections)
                continue
            content = resolved.read_text(encoding="utf-8")
            missing.extend(
                f"{target}: {section}"
                for section in check.sections
                if not heading_present(content, section)
            )
        if missing:
            return False, f"Missing sections: {', '.join(missing)}"
        return True, "All required sections found"

    def _count_in_targets(self, stage_id: str, targets: tuple[str, ...], pattern: str) -> int:
        total = 0
        for target in targets:
            resolved = self._resolve(stage_id, target)
            if resolved is not None and resolved.is_file():
                total += count_pattern(resolved.read_text(encoding="utf-8"), pattern)
        return total

    def _check_section_count(self, stage_id: str, check: QualityCheckConfig) -> tuple[bool, str]:
        pattern = check.pattern or DEFAULT_SECTION_PATTERN
        found = self._count_in_targets(stage_id, check.target_files, pattern)
        if found >= check.min_count:
            return True, f"Found {found} sections (>= {check.min_count} required)"
        return False, f"Only {found} sections found (minimum {check.min_count} required)"

    def _check_component_count(
        self, stage_id: str, check: QualityCheckConfig
    ) -> tuple[bool, str]:
        pattern = check.pattern or DEFAULT_COMPONENT_PATTERN
        found = self._count_in_targets(stage_id, check.target_files, pattern)
        if found >= check.min_count:
            return True, f"Found {found} components (>= {check.min_count} required)"
        return False, f"Only {found} components found (minimum {check.min_count} required)"

    def _check_file_count(self, stage_id: str, check: QualityCheckConfig) -> tuple[bool, str]:
        pattern = check.pattern or DEFAULT_FILE_PATTERN
        found = count_files(self.project_root, pattern)
        if found == 0:
            found = count_files(self.output_dir(stage_id), pattern)
        if found >= check.min_count:
            return True, f"Found {found} files matching {pattern} (>= {check.min_count} required)"
        return (
            False,
            f"Only {found} files matching {pattern} found (minimum {check.min_count} required)",
        )

    def _check_command(self, stage_id: str, check: QualityCheckConfig) -> tuple[bool, str]:
        if not check.command:
            return False, "No command configured"
        result = self.command_runner(check.command, self.project_root, check.timeout_seconds)
        if result.timed_out:
            return False, f'Command "{check.command}" timed out after {check.timeout_seconds}s'
        if check.min_pass_rate is not None:
            counts = parse_pass_fail(result.output)
            if counts is not None:
                passed, failed = counts
                total = passed + failed
                rate = passed / total if total else 1.0
                if rate >= check.min_pass_rate:
                    return True, f"Command passed with {rate:.0%} pass rate"
                return (
                    False,
                    f"Pass rate {rate:.0%} below minimum {check.min_pass_rate:.0%}",
                )
        if result.ok:
            return True, f'Command "{check.command}" succeeded'
        detail = result.stderr.strip()[-300:] or result.stdout.strip()[-300:] or "no output"
        return (
            False,
            f'Command "{check.command}" failed with exit code {result.exit_code}: {detail}',
        )

    def run_check(self, stage_id: str, check: QualityCheckConfig) -> CheckOutcome:
        evaluator = self._evaluators[check.type]
        try:
            passed, message = evaluator(stage_id, check)
        except (OSError, UnicodeDecodeError, re.error, ValueError) as exc:
            passed, message = False, f"Check errored: {exc}"
        return CheckOutcome(
            name=check.name,
            type=check.type,
            severity=check.severity,
            passed=passed,
            message=message,
        )

    def evaluate(self, stage_id: str, checks: list[QualityCheckConfig]) -> QualityResult:
        if not checks:
            log.info("No quality checks configured; nothing to validate", extra={"stage": stage_id})
        result = QualityResult(
            stage_id=stage_id,
            outcomes=[self.run_check(stage_id, check) for check in checks],
        )
        for outcome in result.outcomes:
            if outcome.passed:
                log.debug("[PASS] %s: %s", outcome.name, outcome.message, extra={"stage": stage_id})
            elif outcome.severity is Severity.NON_CRITICAL:
                log.warning(
                    "[WARNING] %s: %s", outcome.name, outcome.message, extra={"stage": stage_id}
                )
            else:
                log.error(
                    "[%s] %s: %s",
                    outcome.severity.value.upper(),
                    outcome.name,
                    outcome.message,
                    extra={"stage": stage_id},
                )
        if self.history is not None:
            self.history.record(result)
        log.info("Quality gate %s", result.status.value, extra={"stage": stage_id})
        return result
