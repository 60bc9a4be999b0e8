from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pipewright.config import PipewrightConfig
from pipewright.pipeline import PipelineDefinition, Stage
from pipewright.producers import FallbackGate, ProducerFailure, build_producers
from pipewright.producers.gate import ProducerEventHook
from pipewright.quality import GateStatus, QualityGateEngine, QualityResult, ValidationHistory
from pipewright.retry import AttemptDirective, RetryOutcome, RetryStrategy, run_with_retry
from pipewright.state.checkpoints import Checkpoint, CheckpointManager
from pipewright.state.progress import Progress, ProgressRepository, StageStatus
from pipewright.tasks import TaskSources, TaskSpec, load_task_spec

log = logging.getLogger(__name__)

VALIDATIONS_DIRNAME = "validations"

REMEDY_TABLE: list[tuple[tuple[str, ...], str]] = [
    (("handoff",), "Write the stage handoff document (HANDOFF.md) before advancing."),
    (("checkpoint",), "Create a checkpoint with `pipewright checkpoint create`."),
    (("uncommitted", "commit"), "Commit outstanding changes before the transition."),
    (("test", "failed"), "Fix the failing tests, then run `pipewright validate`."),
    (("coverage",), "Add tests to raise coverage above the configured threshold."),
    (("input",), "Complete the previous stage so its input files exist."),
    (("missing files",), "Produce the missing artifacts and re-validate."),
    (("missing sections",), "Add the missing sections and re-validate."),
    (("sprint",), "Finish the remaining sprints with `pipewright sprint`."),
    (("blocked",), "Resolve the blocker, then run `pipewright unblock`."),
    (("no quality validation",), "Run `pipewright validate` for the current stage."),
]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class EngineError(RuntimeError):
    """Raised when a pipeline operation is not permitted in the current state."""


class BlockingGateFailure(RuntimeError):
    """Raised when a blocking-severity check failed; the stage cannot advance."""

    def __init__(self, stage_id: str, blockers: list[str], result: QualityResult | None = None):
        super().__init__(f"Stage {stage_id} is blocked: {'; '.join(blockers)}")
        self.stage_id = stage_id
        self.blockers = blockers
        self.result = result


class RetryableGateFailure(RuntimeError):
    """Raised when the retry budget is exhausted while critical checks still fail."""

    def __init__(self, stage_id: str, outcome: RetryOutcome):
        super().__init__(
            f"Stage {stage_id} failed after {len(outcome.attempts)} attempt(s); pipeline paused."
        )
        self.stage_id = stage_id
        self.outcome = outcome


@dataclass(slots=True)
class AdvanceResult:
    allowed: bool
    blockers: list[str] = field(default_factory=list)
    from_stage: str | None = None
    to_stage: str | None = None
    pipeline_complete: bool = False
    epic_looped: bool = False
    checkpoint_id: str | None = None


@dataclass(slots=True, frozen=True)
class SprintTick:
    same_stage: bool
    sprint_number: int
    total_sprints: int


@dataclass(slots=True, frozen=True)
class EpicTick:
    cycle_complete: bool
    next_cycle: int | None
    cycles_remaining: int
    reset_to: str | None = None


@dataclass(slots=True)
class RunResult:
    stage_id: str
    outcome: RetryOutcome
    advance: AdvanceResult | None = None
    producers_used: list[str] = field(default_factory=list)


class StageEngine:
    """Drives the pipeline: the only component that mutates Progress."""

    def __init__(
        self,
        project_root: Path,
        config: PipewrightConfig,
        pipeline: PipelineDefinition,
        *,
        progress: ProgressRepository | None = None,
        checkpoints: CheckpointManager | None = None,
        quality: QualityGateEngine | None = None,
        gate: FallbackGate | None = None,
    ) -> None:
        self.project_root = project_root.resolve()
        self.config = config
        self.pipeline = pipeline
        project = config.project
        self.progress = progress or ProgressRepository(
            self.project_root, state_dir=project.state_dir
        )
        self.checkpoints = checkpoints or CheckpointManager(
            self.project_root,
            stages_dir=project.stages_dir,
            state_dir=project.state_dir,
            config_dir=project.config_dir,
            progress=self.progress,
        )
        self.history = ValidationHistory(
            self.project_root / project.state_dir / VALIDATIONS_DIRNAME
        )
        self.quality = quality or QualityGateEngine(
            self.project_root, stages_dir=project.stages_dir, history=self.history
        )
        self.gate = gate

    @classmethod
    def from_config(
        cls,
        project_root: Path,
        config: PipewrightConfig,
        pipeline: PipelineDefinition,
        *,
        event_hook: ProducerEventHook | None = None,
    ) -> StageEngine:
        producers = build_producers(
            config.producers.order,
            project_root,
            allow_baseline=config.producers.allow_baseline,
        )
        gate = FallbackGate(
            producers,
            timeout_seconds=config.producers.timeout_seconds,
            min_output_chars=config.producers.min_output_chars,
            event_hook=event_hook,
        )
        return cls(project_root, config, pipeline, gate=gate)

    def _stage_dir(self, stage_id: str) -> Path:
        return self.project_root / self.config.project.stages_dir / stage_id

    def _load(self) -> Progress:
        return self.progress.load()

    def _transition(
        self, kind: str, from_stage: str | None, to_stage: str | None, **extra: Any
    ) -> None:
        record: dict[str, Any] = {"type": kind, "from": from_stage, "to": to_stage}
        record.update({key: value for key, value in extra.items() if value is not None})
        self.progress.append_transition(record)

    def _enter_stage(self, progress: Progress, stage: Stage) -> None:
        progress.current_stage = stage.id
        record = progress.record(stage.id)
        if record.status in {StageStatus.PENDING, StageStatus.COMPLETED, StageStatus.SKIPPED}:
            record.status = StageStatus.IN_PROGRESS
            record.started_at = _utcnow_iso()
            record.completed_at = None
        progress.current_iteration.current_sprint = 1
        progress.current_iteration.total_sprints = stage.total_sprints

    def _milestone(self, stage_id: str, description: str, *, cleanup: bool = True) -> str:
        checkpoint = self.checkpoints.create(
            stage_id, description, include_config=True, milestone=True
        )
        if cleanup:
            self.checkpoints.cleanup(
                self.config.checkpoints.max_retain,
                preserve_milestones=self.config.checkpoints.preserve_milestones,
            )
        return checkpoint.id

    def init(self, project_name: str | None = None, *, overwrite: bool = False) -> Progress:
        progress = self.progress.init(
            self.pipeline, project_name or self.config.project.name, overwrite=overwrite
        )
        for stage in self.pipeline.stages:
            (self._stage_dir(stage.id) / "outputs").mkdir(parents=True, exist_ok=True)
        log.info("Initialized pipeline with %d stages", len(self.pipeline.stages))
        return progress

    def start_stage(self) -> Progress:
        progress = self._load()
        record = progress.record(progress.current_stage)
        if record.status is StageStatus.BLOCKED:
            raise EngineError(f"Stage {progress.current_stage} is blocked; unblock it first.")
        if record.status is not StageStatus.IN_PROGRESS:
            record.status = StageStatus.IN_PROGRESS
            record.started_at = record.started_at or _utcnow_iso()
            self.progress.save(progress)
            log.info("Stage started", extra={"stage": progress.current_stage})
        return progress

    def gate_blockers(self, stage_id: str, *, skip_gate_check: bool = False) -> list[str]:
        progress = self._load()
        stage = self.pipeline.get(stage_id)
        blockers: list[str] = []
        if progress.status_of(stage_id) is StageStatus.BLOCKED:
            note = progress.record(stage_id).note or "no reason given"
            blockers.append(f"Stage {stage_id} is blocked: {note}")
        if stage.iterative and progress.current_stage == stage_id:
            iteration = progress.current_iteration
            if iteration.current_sprint < iteration.total_sprints:
                blockers.append(
                    f"Sprint {iteration.current_sprint}/{iteration.total_sprints} in progress; "
                    "finish remaining sprints first"
                )
        if not skip_gate_check:
            result = self.history.latest(stage_id)
            if result is None:
                result = self.quality.evaluate(stage_id, self.pipeline.checks_for(stage_id))
            if result.status is GateStatus.BLOCKED:
                blockers.extend(f"{item.name}: {item.message}" for item in result.blocking_failures)
            if result.status in {GateStatus.BLOCKED, GateStatus.RETRY}:
                blockers.extend(
                    f"{item.name}: {item.message} (unresolved critical)"
                    for item in result.critical_failures
                )
        if self.config.engine.require_handoff:
            handoff = self._stage_dir(stage_id) / self.config.engine.handoff_file
            if not handoff.exists():
                blockers.append(
                    f"{self.config.engine.handoff_file} missing for {stage_id} (handoff)"
                )
        return blockers

    def advance(
        self,
        *,
        force: bool = False,
        skip_gate_check: bool = False,
        reason: str | None = None,
    ) -> AdvanceResult:
        progress = self._load()
        current = progress.current_stage
        next_stage = self.pipeline.next_stage(current)

        if next_stage is None and progress.status_of(current) is StageStatus.COMPLETED:
            return AdvanceResult(
                allowed=False,
                blockers=["Pipeline is already complete"],
                from_stage=current,
                pipeline_complete=True,
            )

        if not force:
            blockers = self.gate_blockers(current, skip_gate_check=skip_gate_check)
            if blockers:
                log.warning(
                    "Advance blocked by %d issue(s)", len(blockers), extra={"stage": current}
                )
                return AdvanceResult(allowed=False, blockers=blockers, from_stage=current)

        record = progress.record(current)
        record.status = StageStatus.COMPLETED
        record.completed_at = _utcnow_iso()
        record.started_at = record.started_at or record.completed_at
        result = AdvanceResult(allowed=True, from_stage=current)

        epic = progress.epic_cycle
        if epic.enabled and not epic.completed and current == epic.end_stage:
            tick = self._apply_epic_tick(progress)
            if not tick.cycle_complete:
                self.progress.save(progress)
                result.to_stage = tick.reset_to
                result.epic_looped = True
                self._transition(
                    "epic_cycle", current, tick.reset_to, cycle=tick.next_cycle, reason=reason
                )
                result.checkpoint_id = self._complete_checkpoint(current)
                return result

        if next_stage is None:
            result.pipeline_complete = True
        else:
            self._enter_stage(progress, next_stage)
            result.to_stage = next_stage.id
        self.progress.save(progress)
        self._transition("advance", current, result.to_stage, forced=force or None, reason=reason)
        result.checkpoint_id = self._complete_checkpoint(current)
        log.info(
            "Advanced %s -> %s%s",
            current,
            result.to_stage or "(complete)",
            " (forced)" if force else "",
            extra={"stage": current},
        )
        return result

    def _complete_checkpoint(self, stage_id: str) -> str | None:
        if not self.config.checkpoints.on_stage_complete:
            return None
        return self._milestone(stage_id, f"Stage {stage_id} completed")

    def goto_stage(self, target_id: str, reason: str | None = None) -> Progress:
        target = self.pipeline.get(target_id)
        progress = self._load()
        current = progress.current_stage
        self._milestone(current, f"Before goto {target_id}")
        progress = self._load()
        self._enter_stage(progress, target)
        self.progress.save(progress)
        self._transition("goto", current, target_id, reason=reason or "manual")
        log.info(
            "Moved %s -> %s: %s", current, target_id, reason or "manual", extra={"stage": target_id}
        )
        return progress

    def tick_sprint(self) -> SprintTick:
        progress = self._load()
        stage = self.pipeline.get(progress.current_stage)
        iteration = progress.current_iteration
        if not stage.iterative or iteration.current_sprint >= iteration.total_sprints:
            return SprintTick(
                same_stage=False,
                sprint_number=iteration.current_sprint,
                total_sprints=iteration.total_sprints,
            )
        iteration.current_sprint += 1
        self.progress.save(progress)
        self._transition("sprint", stage.id, stage.id, sprint=iteration.current_sprint)
        log.info(
            "Sprint %d/%d",
            iteration.current_sprint,
            iteration.total_sprints,
            extra={"stage": stage.id},
        )
        return SprintTick(
            same_stage=True,
            sprint_number=iteration.current_sprint,
            total_sprints=iteration.total_sprints,
        )

    def _apply_epic_tick(self, progress: Progress) -> EpicTick:
        epic = progress.epic_cycle
        if epic.current_cycle >= epic.total_cycles:
            epic.completed = True
            return EpicTick(cycle_complete=True, next_cycle=None, cycles_remaining=0)

        epic.current_cycle += 1
        start = self.pipeline.index_of(epic.start_stage)
        end = self.pipeline.index_of(epic.end_stage)
        for stage in self.pipeline.stages[start : end + 1]:
            record = progress.record(stage.id)
            record.status = StageStatus.PENDING
            record.started_at = None
            record.completed_at = None
        self._enter_stage(progress, self.pipeline.get(epic.start_stage))
        log.info(
            "Epic cycle %d/%d starting",
            epic.current_cycle,
            epic.total_cycles,
            extra={"stage": epic.start_stage},
        )
        return EpicTick(
            cycle_complete=False,
            next_cycle=epic.current_cycle,
            cycles_remaining=epic.cycles_remaining,
            reset_to=epic.start_stage,
        )

    def tick_epic_cycle(self) -> EpicTick:
        progress = self._load()
        epic = progress.epic_cycle
        if not epic.enabled:
            raise EngineError("Epic cycles are not enabled for this pipeline.")
        if epic.completed:
            return EpicTick(cycle_complete=True, next_cycle=None, cycles_remaining=0)
        if progress.current_stage != epic.end_stage:
            raise EngineError(
                f"Epic cycle can only be ticked at {epic.end_stage}; "
                f"current stage is {progress.current_stage}."
            )
        current = progress.current_stage
        tick = self._apply_epic_tick(progress)
        self.progress.save(progress)
        if not tick.cycle_complete:
            self._transition("epic_cycle", current, tick.reset_to, cycle=tick.next_cycle)
        return tick

    def skip(self, reason: str | None = None) -> AdvanceResult:
        progress = self._load()
        current = progress.current_stage
        record = progress.record(current)
        record.status = StageStatus.SKIPPED
        record.completed_at = _utcnow_iso()
        record.note = reason
        result = AdvanceResult(allowed=True, from_stage=current)
        next_stage = self.pipeline.next_stage(current)
        if next_stage is None:
            result.pipeline_complete = True
        else:
            self._enter_stage(progress, next_stage)
            result.to_stage = next_stage.id
        self.progress.save(progress)
        self._transition("skip", current, result.to_stage, reason=reason)
        log.warning("Stage skipped: %s", reason or "no reason given", extra={"stage": current})
        return result

    def block(self, reason: str) -> Progress:
        def _mutate(progress: Progress) -> None:
            record = progress.record(progress.current_stage)
            record.status = StageStatus.BLOCKED
            record.note = reason

        progress = self.progress.update(_mutate)
        self._transition("block", progress.current_stage, progress.current_stage, reason=reason)
        return progress

    def unblock(self) -> Progress:
        progress = self._load()
        record = progress.record(progress.current_stage)
        if record.status is not StageStatus.BLOCKED:
            raise EngineError(f"Stage {progress.current_stage} is not blocked.")
        record.status = StageStatus.IN_PROGRESS
        record.note = None
        self.progress.save(progress)
        self._transition("unblock", progress.current_stage, progress.current_stage)
        return progress

    def pause(self) -> Progress:
        def _mutate(progress: Progress) -> None:
            progress.paused = True

        return self.progress.update(_mutate)

    def resume(self) -> Progress:
        def _mutate(progress: Progress) -> None:
            progress.paused = False

        return self.progress.update(_mutate)

    def validate(self, stage_id: str | None = None) -> QualityResult:
        target = stage_id or self._load().current_stage
        return self.quality.evaluate(target, self.pipeline.checks_for(target))

    def create_checkpoint(
        self,
        description: str | None = None,
        *,
        include_config: bool = False,
        milestone: bool = False,
    ) -> Checkpoint:
        stage_id = self._load().current_stage
        return self.checkpoints.create(
            stage_id, description, include_config=include_config, milestone=milestone
        )

    def restore_checkpoint(self, checkpoint_id: str, files: list[str] | None = None) -> bool:
        checkpoint = self.checkpoints.get(checkpoint_id)
        if not files and self.progress.exists():
            self._milestone(
                self._load().current_stage, f"Before restore of {checkpoint_id}", cleanup=False
            )
        restored = self.checkpoints.restore(checkpoint_id, files)
        if self.progress.exists():
            current = self._load().current_stage
            self._transition(
                "restore",
                checkpoint.stage_id,
                current,
                checkpoint=checkpoint_id,
                partial=bool(files) or None,
            )
        return restored

    async def run_stage(self, stage_id: str | None = None) -> RunResult:
        if self.gate is None:
            raise EngineError("No producers configured for this engine.")
        progress = self._load()
        if progress.paused:
            raise EngineError("Pipeline is paused; run `pipewright resume` first.")
        target = stage_id or progress.current_stage
        stage = self.pipeline.get(target)
        if progress.status_of(target) is StageStatus.BLOCKED:
            raise EngineError(f"Stage {target} is blocked; unblock it first.")
        if target == progress.current_stage:
            self.start_stage()

        project = self.config.project
        task = load_task_spec(
            TaskSources(
                self.project_root,
                stages_dir=project.stages_dir,
                references_dir=project.references_dir,
                handoff_file=self.config.engine.handoff_file,
            ),
            self.pipeline,
            stage.id,
        )
        logs_dir = self._stage_dir(stage.id) / "logs"
        producers_used: list[str] = []

        async def produce(directive: AttemptDirective) -> None:
            spec: TaskSpec = task
            if directive.strategy is RetryStrategy.FEEDBACK:
                spec = task.with_feedback(list(directive.feedback))
            elif directive.strategy is RetryStrategy.MINIMAL:
                spec = task.as_minimal(list(directive.feedback))
            outcome = await self.gate.invoke(spec.render_prompt())
            if not outcome.success:
                raise ProducerFailure(
                    f"No producer succeeded for {stage.id}: {outcome.reason}",
                    signal=outcome.signal,
                )
            producers_used.append(outcome.used_producer or "")
            logs_dir.mkdir(parents=True, exist_ok=True)
            (logs_dir / f"attempt_{directive.attempt}_{outcome.used_producer}.md").write_text(
                outcome.output + "\n", encoding="utf-8"
            )

        def evaluate() -> QualityResult:
            return self.quality.evaluate(stage.id, self.pipeline.checks_for(stage.id))

        outcome = await run_with_retry(
            stage.id, self.config.retry.max_attempts, produce, evaluate
        )
        result = RunResult(stage_id=stage.id, outcome=outcome, producers_used=producers_used)

        if outcome.blocked:
            final = outcome.final_result
            failures = final.blocking_failures if final else []
            blockers = [f"{item.name}: {item.message}" for item in failures]
            self.progress.update(lambda p: self._mark_blocked(p, stage.id, blockers))
            self._transition("block", stage.id, stage.id, reason="; ".join(blockers))
            raise BlockingGateFailure(stage.id, blockers, final)
        if not outcome.success:
            self.pause()
            raise RetryableGateFailure(stage.id, outcome)

        if stage.id == self._load().current_stage:
            if stage.iterative:
                tick = self.tick_sprint()
                if tick.same_stage:
                    return result
            result.advance = self.advance(reason="quality gate passed")
        return result

    @staticmethod
    def _mark_blocked(progress: Progress, stage_id: str, blockers: list[str]) -> None:
        record = progress.record(stage_id)
        record.status = StageStatus.BLOCKED
        record.note = "; ".join(blockers) or "blocking check failed"

    @staticmethod
    def suggest_remedies(blockers: list[str]) -> list[str]:
        suggestions: list[str] = []
        for blocker in blockers:
            lowered = blocker.lower()
            for keywords, remedy in REMEDY_TABLE:
                if all(keyword in lowered for keyword in keywords) and remedy not in suggestions:
                    suggestions.append(remedy)
        return suggestions

    def status(self) -> dict[str, Any]:
        progress = self._load()
        stages = [
            {
                "id": stage.id,
                "name": stage.name,
                "status": progress.status_of(stage.id).value,
                "current": stage.id == progress.current_stage,
            }
            for stage in self.pipeline.stages
        ]
        done = sum(
            1 for item in stages if item["status"] in {StageStatus.COMPLETED, StageStatus.SKIPPED}
        )
        current = self.pipeline.get(progress.current_stage)
        payload: dict[str, Any] = {
            "project_name": progress.project_name,
            "current_stage": progress.current_stage,
            "paused": progress.paused,
            "progress_percent": round(done * 100 / len(stages)),
            "stages": stages,
            "last_updated": progress.last_updated,
        }
        if current.iterative:
            payload["sprint"] = {
                "current": progress.current_iteration.current_sprint,
                "total": progress.current_iteration.total_sprints,
            }
        if progress.epic_cycle.enabled:
            payload["epic"] = {
                "current_cycle": progress.epic_cycle.current_cycle,
                "total_cycles": progress.epic_cycle.total_cycles,
                "cycles_remaining": progress.epic_cycle.cycles_remaining,
                "scope": [progress.epic_cycle.start_stage, progress.epic_cycle.end_stage],
            }
        return payload
