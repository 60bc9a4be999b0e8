from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any


class PipelineDefinitionError(RuntimeError):
    """Raised when a pipeline definition violates ordering or reference rules."""


class Severity(StrEnum):
    BLOCKING = "blocking"
    CRITICAL = "critical"
    NON_CRITICAL = "non_critical"

    @classmethod
    def parse(cls, raw: str) -> Severity:
        normalized = str(raw).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError as exc:
            raise PipelineDefinitionError(f"Unknown check severity: {raw}") from exc


class CheckType(StrEnum):
    FILE_EXISTS = "file_exists"
    DIRECTORY_NOT_EMPTY = "directory_not_empty"
    SECTION_PRESENT = "section_present"
    SECTION_COUNT = "section_count"
    FILE_COUNT = "file_count"
    COMPONENT_COUNT = "component_count"
    COMMAND = "command"

    @classmethod
    def parse(cls, raw: str) -> CheckType:
        normalized = str(raw).strip().lower()
        if normalized == "section":
            normalized = cls.SECTION_PRESENT.value
        try:
            return cls(normalized)
        except ValueError as exc:
            raise PipelineDefinitionError(f"Unknown check type: {raw}") from exc


@dataclass(slots=True, frozen=True)
class QualityCheckConfig:
    name: str
    type: CheckType
    severity: Severity = Severity.CRITICAL
    files: tuple[str, ...] = ()
    directories: tuple[str, ...] = ()
    sections: tuple[str, ...] = ()
    target_files: tuple[str, ...] = ()
    pattern: str | None = None
    min_count: int = 1
    min_bytes: int = 0
    command: str | None = None
    min_pass_rate: float | None = None
    timeout_seconds: float = 300.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QualityCheckConfig:
        if "name" not in data or "type" not in data:
            raise PipelineDefinitionError(f"Quality check requires name and type: {data}")
        min_pass_rate = data.get("min_pass_rate")
        return cls(
            name=str(data["name"]),
            type=CheckType.parse(data["type"]),
            severity=Severity.parse(data.get("severity", data.get("level", "critical"))),
            files=tuple(str(item) for item in data.get("files", [])),
            directories=tuple(str(item) for item in data.get("directories", [])),
            sections=tuple(str(item) for item in data.get("sections", [])),
            target_files=tuple(str(item) for item in data.get("target_files", [])),
            pattern=data.get("pattern", data.get("section_pattern")),
            min_count=int(data.get("min_count", data.get("min", 1))),
            min_bytes=int(data.get("min_bytes", 0)),
            command=data.get("command"),
            min_pass_rate=float(min_pass_rate) if min_pass_rate is not None else None,
            timeout_seconds=float(data.get("timeout_seconds", 300.0)),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "severity": self.severity.value,
        }
        for key in ("files", "directories", "sections", "target_files"):
            values = getattr(self, key)
            if values:
                payload[key] = list(values)
        if self.pattern is not None:
            payload["pattern"] = self.pattern
        if self.type in {CheckType.SECTION_COUNT, CheckType.FILE_COUNT, CheckType.COMPONENT_COUNT}:
            payload["min_count"] = self.min_count
        if self.min_bytes:
            payload["min_bytes"] = self.min_bytes
        if self.command is not None:
            payload["command"] = self.command
            payload["timeout_seconds"] = self.timeout_seconds
        if self.min_pass_rate is not None:
            payload["min_pass_rate"] = self.min_pass_rate
        return payload


@dataclass(slots=True, frozen=True)
class Stage:
    ordinal: int
    id: str
    name: str
    iterative: bool = False
    total_sprints: int = 1
    required_outputs: tuple[str, ...] = ()
    checks: tuple[QualityCheckConfig, ...] = ()

    def quality_checks(self) -> list[QualityCheckConfig]:
        """Configured checks, led by an implicit blocking check for required outputs."""
        checks: list[QualityCheckConfig] = []
        if self.required_outputs:
            checks.append(
                QualityCheckConfig(
                    name="required_outputs",
                    type=CheckType.FILE_EXISTS,
                    severity=Severity.BLOCKING,
                    files=self.required_outputs,
                )
            )
        checks.extend(self.checks)
        return checks


@dataclass(slots=True, frozen=True)
class EpicCycleConfig:
    enabled: bool
    total_cycles: int
    start_stage: str
    end_stage: str


@dataclass(slots=True)
class PipelineDefinition:
    stages: list[Stage]
    epic: EpicCycleConfig | None = None
    _index: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.stages:
            raise PipelineDefinitionError("Pipeline must define at least one stage.")
        for position, stage in enumerate(self.stages, start=1):
            if stage.ordinal != position:
                raise PipelineDefinitionError(
                    f"Stage ordinals must be contiguous from 1; '{stage.id}' has "
                    f"ordinal {stage.ordinal}, expected {position}."
                )
            if stage.id in self._index:
                raise PipelineDefinitionError(f"Duplicate stage id: {stage.id}")
            if stage.total_sprints < 1:
                raise PipelineDefinitionError(f"Stage '{stage.id}' needs total_sprints >= 1.")
            self._index[stage.id] = position - 1
        if self.epic is not None and self.epic.enabled:
            start = self.index_of(self.epic.start_stage)
            end = self.index_of(self.epic.end_stage)
            if start > end:
                raise PipelineDefinitionError(
                    "Epic cycle start_stage must not come after end_stage."
                )
            if self.epic.total_cycles < 1:
                raise PipelineDefinitionError("Epic cycle total_cycles must be >= 1.")

    @property
    def stage_ids(self) -> list[str]:
        return [stage.id for stage in self.stages]

    @property
    def first(self) -> Stage:
        return self.stages[0]

    @property
    def last(self) -> Stage:
        return self.stages[-1]

    def has_stage(self, stage_id: str) -> bool:
        return stage_id in self._index

    def index_of(self, stage_id: str) -> int:
        try:
            return self._index[stage_id]
        except KeyError as exc:
            raise PipelineDefinitionError(f"Unknown stage id: {stage_id}") from exc

    def get(self, stage_id: str) -> Stage:
        return self.stages[self.index_of(stage_id)]

    def next_stage(self, stage_id: str) -> Stage | None:
        index = self.index_of(stage_id)
        if index + 1 >= len(self.stages):
            return None
        return self.stages[index + 1]

    def previous_stage(self, stage_id: str) -> Stage | None:
        index = self.index_of(stage_id)
        if index == 0:
            return None
        return self.stages[index - 1]

    def checks_for(self, stage_id: str) -> list[QualityCheckConfig]:
        return self.get(stage_id).quality_checks()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineDefinition:
        raw_stages = data.get("stages", [])
        if not isinstance(raw_stages, list):
            raise PipelineDefinitionError("'stages' must be an array of tables.")
        stages: list[Stage] = []
        for position, raw in enumerate(raw_stages, start=1):
            if not isinstance(raw, dict) or "id" not in raw:
                raise PipelineDefinitionError(f"Stage entry #{position} is missing an id.")
            stages.append(
                Stage(
                    ordinal=int(raw.get("ordinal", position)),
                    id=str(raw["id"]),
                    name=str(raw.get("name", raw["id"])),
                    iterative=bool(raw.get("iterative", False)),
                    total_sprints=int(raw.get("total_sprints", 1)),
                    required_outputs=tuple(str(item) for item in raw.get("required_outputs", [])),
                    checks=tuple(
                        QualityCheckConfig.from_dict(check) for check in raw.get("checks", [])
                    ),
                )
            )
        epic_raw = data.get("epic")
        epic = None
        if isinstance(epic_raw, dict):
            epic = EpicCycleConfig(
                enabled=bool(epic_raw.get("enabled", False)),
                total_cycles=int(epic_raw.get("total_cycles", 1)),
                start_stage=str(epic_raw.get("start_stage", stages[0].id if stages else "")),
                end_stage=str(epic_raw.get("end_stage", stages[-1].id if stages else "")),
            )
        return cls(stages=stages, epic=epic)


def default_pipeline() -> PipelineDefinition:
    return PipelineDefinition(
        stages=[
            Stage(
                ordinal=1,
                id="01-planning",
                name="Planning & Architecture",
                required_outputs=("architecture.md",),
                checks=(
                    QualityCheckConfig(
                        name="architecture_sections",
                        type=CheckType.SECTION_PRESENT,
                        severity=Severity.CRITICAL,
                        sections=("Overview", "Components", "Risks"),
                        target_files=("architecture.md",),
                    ),
                    QualityCheckConfig(
                        name="implementation_plan",
                        type=CheckType.FILE_EXISTS,
                        severity=Severity.NON_CRITICAL,
                        files=("implementation.yaml",),
                    ),
                ),
            ),
            Stage(
                ordinal=2,
                id="02-ui-ux",
                name="UI/UX Design",
                required_outputs=("component_specs.md",),
                checks=(
                    QualityCheckConfig(
                        name="component_coverage",
                        type=CheckType.COMPONENT_COUNT,
                        severity=Severity.CRITICAL,
                        target_files=("component_specs.md",),
                        min_count=5,
                    ),
                ),
            ),
            Stage(
                ordinal=3,
                id="03-implementation",
                name="Implementation",
                iterative=True,
                total_sprints=3,
                checks=(
                    QualityCheckConfig(
                        name="source_files",
                        type=CheckType.FILE_COUNT,
                        severity=Severity.CRITICAL,
                        pattern="src/**/*.{py,ts,tsx,js,jsx}",
                        min_count=1,
                    ),
                ),
            ),
            Stage(
                ordinal=4,
                id="04-qa",
                name="QA & E2E Testing",
                required_outputs=("qa_report.md",),
                checks=(
                    QualityCheckConfig(
                        name="qa_sections",
                        type=CheckType.SECTION_COUNT,
                        severity=Severity.NON_CRITICAL,
                        target_files=("qa_report.md",),
                        pattern="^## ",
                        min_count=3,
                    ),
                ),
            ),
            Stage(
                ordinal=5,
                id="05-deployment",
                name="Deployment",
                required_outputs=("deployment.md",),
            ),
        ],
        epic=EpicCycleConfig(
            enabled=False,
            total_cycles=1,
            start_stage="01-planning",
            end_stage="03-implementation",
        ),
    )


def load_pipeline(path: Path) -> PipelineDefinition:
    if not path.exists():
        return default_pipeline()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise PipelineDefinitionError(f"Invalid pipeline file {path}: {exc}") from exc
    return PipelineDefinition.from_dict(data)
