import asyncio
from pathlib import Path

import pytest

from pipewright.config import PipewrightConfig
from pipewright.engine import (
    BlockingGateFailure,
    EngineError,
    RetryableGateFailure,
    StageEngine,
)
from pipewright.pipeline import (
    CheckType,
    EpicCycleConfig,
    PipelineDefinition,
    QualityCheckConfig,
    Stage,
)
from pipewright.probe import ProcessResult
from pipewright.producers import FallbackGate, Producer
from pipewright.state import StageStatus


class WritingProducer(Producer):
    """Writes a fixed set of artifacts the way a real producer would."""

    name = "writer"
    validates_output = False

    def __init__(self, files: dict[Path, str]) -> None:
        self.files = files
        self.prompts: list[str] = []

    def is_available(self) -> bool:
        return True

    async def invoke(self, prompt: str, timeout_seconds: float) -> ProcessResult:
        _ = timeout_seconds
        self.prompts.append(prompt)
        for path, content in self.files.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return ProcessResult(exit_code=0, stdout="artifacts written")


def _linear(count: int = 3) -> PipelineDefinition:
    return PipelineDefinition(
        stages=[
            Stage(ordinal=index, id=f"0{index}", name=f"S{index}") for index in range(1, count + 1)
        ]
    )


def _engine(
    root: Path,
    pipeline: PipelineDefinition | None = None,
    *,
    require_handoff: bool = False,
    max_attempts: int = 3,
    producer: Producer | None = None,
) -> StageEngine:
    config = PipewrightConfig()
    config.engine.require_handoff = require_handoff
    config.retry.max_attempts = max_attempts
    gate = FallbackGate([producer]) if producer is not None else None
    engine = StageEngine(root, config, pipeline or _linear(), gate=gate)
    engine.init("demo")
    return engine


def _outputs(root: Path, stage_id: str) -> Path:
    return root / "stages" / stage_id / "outputs"


def test_advance_moves_exactly_one_stage(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    first = engine.advance()
    second = engine.advance()
    final = engine.advance()

    assert (first.from_stage, first.to_stage) == ("01", "02")
    assert (second.from_stage, second.to_stage) == ("02", "03")
    assert final.allowed is True
    assert final.pipeline_complete is True
    assert engine.advance().allowed is False
    kinds = [record["type"] for record in engine.progress.transitions()]
    assert kinds == ["advance", "advance", "advance"]


def test_advance_requires_handoff_unless_forced(tmp_path: Path) -> None:
    engine = _engine(tmp_path, require_handoff=True)

    blocked = engine.advance()

    assert blocked.allowed is False
    assert any("HANDOFF.md" in blocker for blocker in blocked.blockers)
    assert engine.progress.load().current_stage == "01"

    forced = engine.advance(force=True)
    assert forced.allowed is True
    assert forced.to_stage == "02"
    assert engine.progress.transitions()[-1]["forced"] is True


def test_advance_blocked_by_failing_gate(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(ordinal=1, id="01", name="Plan", required_outputs=("plan.md",)),
            Stage(ordinal=2, id="02", name="Build"),
        ]
    )
    engine = _engine(tmp_path, pipeline)

    result = engine.advance()

    assert result.allowed is False
    assert any(blocker.startswith("required_outputs") for blocker in result.blockers)
    assert StageEngine.suggest_remedies(result.blockers)

    (_outputs(tmp_path, "01") / "plan.md").write_text("# Plan\n", encoding="utf-8")
    engine.validate()
    assert engine.advance().to_stage == "02"


def test_advance_takes_completion_milestone(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    result = engine.advance()

    assert result.checkpoint_id is not None
    checkpoint = engine.checkpoints.get(result.checkpoint_id)
    assert checkpoint.milestone is True
    assert checkpoint.stage_id == "01"


def test_sprints_hold_the_stage_until_the_last(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(ordinal=1, id="01", name="Build", iterative=True, total_sprints=3),
            Stage(ordinal=2, id="02", name="Ship"),
        ]
    )
    engine = _engine(tmp_path, pipeline)

    assert engine.advance().allowed is False
    ticks = [engine.tick_sprint() for _ in range(3)]

    assert [(tick.same_stage, tick.sprint_number) for tick in ticks] == [
        (True, 2),
        (True, 3),
        (False, 3),
    ]
    assert engine.progress.load().current_stage == "01"
    assert engine.advance().to_stage == "02"


def test_epic_cycle_loops_back_then_completes(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(ordinal=1, id="01", name="Plan"),
            Stage(ordinal=2, id="02", name="Build"),
            Stage(ordinal=3, id="03", name="Review"),
            Stage(ordinal=4, id="04", name="Ship"),
        ],
        epic=EpicCycleConfig(enabled=True, total_cycles=2, start_stage="01", end_stage="03"),
    )
    engine = _engine(tmp_path, pipeline)

    engine.advance()
    engine.advance()
    looped = engine.advance()

    assert looped.epic_looped is True
    assert looped.to_stage == "01"
    progress = engine.progress.load()
    assert progress.epic_cycle.current_cycle == 2
    assert progress.epic_cycle.cycles_remaining == 1
    assert progress.status_of("02") is StageStatus.PENDING
    assert progress.status_of("01") is StageStatus.IN_PROGRESS

    engine.advance()
    engine.advance()
    finished = engine.advance()

    assert finished.epic_looped is False
    assert finished.to_stage == "04"
    progress = engine.progress.load()
    assert progress.epic_cycle.completed is True
    assert progress.epic_cycle.cycles_remaining == 0


def test_tick_epic_cycle_only_at_end_stage(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[Stage(ordinal=1, id="01", name="A"), Stage(ordinal=2, id="02", name="B")],
        epic=EpicCycleConfig(enabled=True, total_cycles=2, start_stage="01", end_stage="02"),
    )
    engine = _engine(tmp_path, pipeline)

    with pytest.raises(EngineError):
        engine.tick_epic_cycle()

    engine.goto_stage("02")
    first = engine.tick_epic_cycle()
    assert first.cycle_complete is False
    assert first.reset_to == "01"
    assert first.cycles_remaining == 1

    engine.goto_stage("02")
    second = engine.tick_epic_cycle()
    assert second.cycle_complete is True
    assert second.cycles_remaining == 0


def test_tick_epic_cycle_requires_epic(tmp_path: Path) -> None:
    with pytest.raises(EngineError):
        _engine(tmp_path).tick_epic_cycle()


def test_goto_records_transition_and_safety_checkpoint(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    progress = engine.goto_stage("03", reason="rework")

    assert progress.current_stage == "03"
    assert progress.status_of("03") is StageStatus.IN_PROGRESS
    last = engine.progress.transitions()[-1]
    assert (last["type"], last["from"], last["to"]) == ("goto", "01", "03")
    assert last["reason"] == "rework"
    milestones = [item for item in engine.checkpoints.list() if item.milestone]
    assert [item.description for item in milestones] == ["Before goto 03"]


def test_skip_marks_stage_and_moves_on(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    result = engine.skip("not needed")

    progress = engine.progress.load()
    assert result.to_stage == "02"
    assert progress.status_of("01") is StageStatus.SKIPPED
    assert progress.stages["01"].note == "not needed"
    assert engine.status()["progress_percent"] == 33


def test_block_and_unblock(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    engine.block("waiting on credentials")

    with pytest.raises(EngineError):
        engine.start_stage()
    assert any("waiting on credentials" in item for item in engine.advance().blockers)

    engine.unblock()
    assert engine.progress.load().status_of("01") is StageStatus.IN_PROGRESS
    with pytest.raises(EngineError):
        engine.unblock()


def test_restore_takes_pre_restore_milestone(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    artifact = _outputs(tmp_path, "01") / "notes.md"
    artifact.write_text("v1\n", encoding="utf-8")
    checkpoint = engine.create_checkpoint("baseline")
    artifact.write_text("v2\n", encoding="utf-8")

    assert engine.restore_checkpoint(checkpoint.id) is True

    assert artifact.read_text(encoding="utf-8") == "v1\n"
    descriptions = [item.description for item in engine.checkpoints.list()]
    assert f"Before restore of {checkpoint.id}" in descriptions
    assert engine.progress.transitions()[-1]["type"] == "restore"


def test_restore_keeps_validation_and_transition_history(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.validate()
    engine.block("waiting on review")
    checkpoint = engine.create_checkpoint("blocked")
    engine.validate()
    engine.goto_stage("03", reason="rework")

    engine.restore_checkpoint(checkpoint.id)

    assert len(engine.history.for_stage("01")) == 2
    kinds = [record["type"] for record in engine.progress.transitions()]
    assert kinds == ["block", "goto", "restore"]
    progress = engine.progress.load()
    assert progress.current_stage == "01"
    assert progress.status_of("01") is StageStatus.BLOCKED


def test_run_stage_success_advances(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(ordinal=1, id="01", name="Plan", required_outputs=("plan.md",)),
            Stage(ordinal=2, id="02", name="Build"),
        ]
    )
    producer = WritingProducer({_outputs(tmp_path, "01") / "plan.md": "# Plan\n"})
    engine = _engine(tmp_path, pipeline, producer=producer)

    result = asyncio.run(engine.run_stage())

    assert result.outcome.success is True
    assert result.producers_used == ["writer"]
    assert result.advance is not None
    assert result.advance.to_stage == "02"
    assert (tmp_path / "stages" / "01" / "logs" / "attempt_1_writer.md").exists()
    assert "plan.md" in producer.prompts[0]


def test_run_stage_blocking_failure_marks_stage(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(ordinal=1, id="01", name="Plan", required_outputs=("plan.md",)),
            Stage(ordinal=2, id="02", name="Build"),
        ]
    )
    producer = WritingProducer({})
    engine = _engine(tmp_path, pipeline, producer=producer)

    with pytest.raises(BlockingGateFailure) as excinfo:
        asyncio.run(engine.run_stage())

    assert excinfo.value.stage_id == "01"
    assert len(producer.prompts) == 1
    assert engine.progress.load().status_of("01") is StageStatus.BLOCKED


def test_run_stage_exhaustion_pauses_pipeline(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(
                ordinal=1,
                id="01",
                name="Plan",
                required_outputs=("plan.md",),
                checks=(
                    QualityCheckConfig(
                        name="plan_sections",
                        type=CheckType.SECTION_PRESENT,
                        sections=("Goals",),
                        target_files=("plan.md",),
                    ),
                ),
            ),
            Stage(ordinal=2, id="02", name="Build"),
        ]
    )
    producer = WritingProducer({_outputs(tmp_path, "01") / "plan.md": "# Plan\n"})
    engine = _engine(tmp_path, pipeline, max_attempts=2, producer=producer)

    with pytest.raises(RetryableGateFailure) as excinfo:
        asyncio.run(engine.run_stage())

    assert len(excinfo.value.outcome.attempts) == 2
    assert len(producer.prompts) == 2
    assert "Fix these 1 issues" in producer.prompts[1]
    assert engine.progress.load().paused is True

    with pytest.raises(EngineError):
        asyncio.run(engine.run_stage())


def test_run_stage_requires_producers(tmp_path: Path) -> None:
    with pytest.raises(EngineError):
        asyncio.run(_engine(tmp_path).run_stage())


def test_suggest_remedies_maps_keywords() -> None:
    remedies = StageEngine.suggest_remedies(
        ["HANDOFF.md missing for 01 (handoff)", "Sprint 1/3 in progress; finish remaining sprints"]
    )

    assert any("HANDOFF.md" in remedy for remedy in remedies)
    assert any("pipewright sprint" in remedy for remedy in remedies)
    assert StageEngine.suggest_remedies(["something unusual"]) == []
