from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pipewright.pipeline import PipelineDefinition
from pipewright.state.store import (
    StateCorruptionError,
    append_json_line,
    read_json_document,
    read_json_lines,
    write_json_atomic,
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ProgressExistsError(RuntimeError):
    """Raised when initializing over an existing progress document without overwrite."""


class StageStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


@dataclass(slots=True)
class StageRecord:
    status: StageStatus = StageStatus.PENDING
    started_at: str | None = None
    completed_at: str | None = None
    checkpoint_id: str | None = None
    note: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("status", "started_at", "completed_at", "checkpoint_id", "note")

    @classmethod
    def from_dict(cls, stage_id: str, data: Any) -> StageRecord:
        if not isinstance(data, dict):
            raise StateCorruptionError(f"Stage entry '{stage_id}' must be an object.")
        try:
            status = StageStatus(str(data.get("status", "pending")))
        except ValueError as exc:
            raise StateCorruptionError(
                f"Stage entry '{stage_id}' has unknown status: {data.get('status')}"
            ) from exc
        return cls(
            status=status,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            checkpoint_id=data.get("checkpoint_id"),
            note=data.get("note"),
            extra={key: value for key, value in data.items() if key not in cls._KNOWN},
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "status": self.status.value,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
                "checkpoint_id": self.checkpoint_id,
            }
        )
        if self.note is not None:
            payload["note"] = self.note
        return payload


@dataclass(slots=True)
class IterationState:
    current_sprint: int = 1
    total_sprints: int = 1


@dataclass(slots=True)
class EpicCycleState:
    enabled: bool = False
    current_cycle: int = 1
    total_cycles: int = 1
    start_stage: str = ""
    end_stage: str = ""
    completed: bool = False

    @property
    def cycles_remaining(self) -> int:
        if self.completed or not self.enabled:
            return 0
        return max(0, self.total_cycles - self.current_cycle + 1)


@dataclass(slots=True)
class Progress:
    project_name: str
    current_stage: str
    stages: dict[str, StageRecord]
    current_iteration: IterationState = field(default_factory=IterationState)
    epic_cycle: EpicCycleState = field(default_factory=EpicCycleState)
    paused: bool = False
    started_at: str = field(default_factory=_utcnow_iso)
    last_updated: str = field(default_factory=_utcnow_iso)
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = (
        "project_name",
        "current_stage",
        "stages",
        "current_iteration",
        "epic_cycle",
        "paused",
        "started_at",
        "last_updated",
    )

    def record(self, stage_id: str) -> StageRecord:
        return self.stages.setdefault(stage_id, StageRecord())

    def status_of(self, stage_id: str) -> StageStatus:
        record = self.stages.get(stage_id)
        return record.status if record else StageStatus.PENDING

    @classmethod
    def initial(cls, pipeline: PipelineDefinition, project_name: str) -> Progress:
        first = pipeline.first
        epic = pipeline.epic
        return cls(
            project_name=project_name,
            current_stage=first.id,
            stages={stage.id: StageRecord() for stage in pipeline.stages},
            current_iteration=IterationState(current_sprint=1, total_sprints=first.total_sprints),
            epic_cycle=EpicCycleState(
                enabled=bool(epic and epic.enabled),
                current_cycle=1,
                total_cycles=epic.total_cycles if epic else 1,
                start_stage=epic.start_stage if epic else first.id,
                end_stage=epic.end_stage if epic else pipeline.last.id,
            ),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Progress:
        current_stage = data.get("current_stage")
        if not isinstance(current_stage, str) or not current_stage:
            raise StateCorruptionError("Progress is missing 'current_stage'.")
        raw_stages = data.get("stages")
        if not isinstance(raw_stages, dict):
            raise StateCorruptionError("Progress is missing the 'stages' map.")
        stages = {
            str(stage_id): StageRecord.from_dict(str(stage_id), payload)
            for stage_id, payload in raw_stages.items()
        }

        iteration_raw = data.get("current_iteration") or {}
        epic_raw = data.get("epic_cycle") or {}
        if not isinstance(iteration_raw, dict) or not isinstance(epic_raw, dict):
            raise StateCorruptionError("Progress iteration/epic sections must be objects.")
        scope = epic_raw.get("scope") or {}
        try:
            iteration = IterationState(
                current_sprint=int(iteration_raw.get("current_sprint", 1)),
                total_sprints=int(iteration_raw.get("total_sprints", 1)),
            )
            epic = EpicCycleState(
                enabled=bool(epic_raw.get("enabled", False)),
                current_cycle=int(epic_raw.get("current_cycle", 1)),
                total_cycles=int(epic_raw.get("total_cycles", 1)),
                start_stage=str(scope.get("start_stage", "")),
                end_stage=str(scope.get("end_stage", "")),
                completed=bool(epic_raw.get("completed", False)),
            )
        except (TypeError, ValueError) as exc:
            raise StateCorruptionError(f"Progress counters are not integers: {exc}") from exc

        return cls(
            project_name=str(data.get("project_name", "")),
            current_stage=current_stage,
            stages=stages,
            current_iteration=iteration,
            epic_cycle=epic,
            paused=bool(data.get("paused", False)),
            started_at=str(data.get("started_at") or _utcnow_iso()),
            last_updated=str(data.get("last_updated") or _utcnow_iso()),
            extra={key: value for key, value in data.items() if key not in cls._KNOWN},
        )

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.extra)
        payload.update(
            {
                "project_name": self.project_name,
                "current_stage": self.current_stage,
                "stages": {stage_id: record.to_dict() for stage_id, record in self.stages.items()},
                "current_iteration": {
                    "current_sprint": self.current_iteration.current_sprint,
                    "total_sprints": self.current_iteration.total_sprints,
                },
                "epic_cycle": {
                    "enabled": self.epic_cycle.enabled,
                    "current_cycle": self.epic_cycle.current_cycle,
                    "total_cycles": self.epic_cycle.total_cycles,
                    "completed": self.epic_cycle.completed,
                    "scope": {
                        "start_stage": self.epic_cycle.start_stage,
                        "end_stage": self.epic_cycle.end_stage,
                    },
                },
                "paused": self.paused,
                "started_at": self.started_at,
                "last_updated": self.last_updated,
            }
        )
        return payload


class ProgressRepository:
    """Sole reader/writer of ``progress.json`` and the transition history."""

    def __init__(self, project_root: Path, *, state_dir: str = "state") -> None:
        self.project_root = project_root.resolve()
        self.state_dir = self.project_root / state_dir
        self.path = self.state_dir / "progress.json"
        self.transitions_path = self.state_dir / "transitions.jsonl"

    def exists(self) -> bool:
        return self.path.exists()

    def init(
        self,
        pipeline: PipelineDefinition,
        project_name: str,
        *,
        overwrite: bool = False,
    ) -> Progress:
        if self.exists() and not overwrite:
            raise ProgressExistsError(
                f"Progress already exists at {self.path}; pass overwrite to re-initialize."
            )
        progress = Progress.initial(pipeline, project_name)
        self.save(progress)
        return progress

    def load(self) -> Progress:
        if not self.exists():
            raise StateCorruptionError(
                f"Progress file not found: {self.path}. Run `pipewright init` first."
            )
        return Progress.from_dict(read_json_document(self.path))

    def save(self, progress: Progress) -> None:
        progress.last_updated = _utcnow_iso()
        write_json_atomic(self.path, progress.to_dict())

    def update(self, mutate: Callable[[Progress], None]) -> Progress:
        progress = self.load()
        mutate(progress)
        self.save(progress)
        return progress

    def append_transition(self, record: dict[str, Any]) -> None:
        payload = dict(record)
        payload.setdefault("at", _utcnow_iso())
        append_json_line(self.transitions_path, payload)

    def transitions(self) -> list[dict[str, Any]]:
        return read_json_lines(self.transitions_path)
