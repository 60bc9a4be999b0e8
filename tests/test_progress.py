import json
from pathlib import Path

import pytest

from pipewright.pipeline import EpicCycleConfig, PipelineDefinition, Stage, default_pipeline
from pipewright.state import ProgressRepository, StageStatus, StateCorruptionError
from pipewright.state.progress import EpicCycleState, ProgressExistsError


def test_init_creates_pending_stages(tmp_path: Path) -> None:
    repo = ProgressRepository(tmp_path)

    progress = repo.init(default_pipeline(), "demo")

    assert repo.exists()
    assert progress.current_stage == "01-planning"
    assert all(record.status is StageStatus.PENDING for record in progress.stages.values())
    assert repo.load().project_name == "demo"


def test_init_refuses_to_overwrite_without_flag(tmp_path: Path) -> None:
    repo = ProgressRepository(tmp_path)
    repo.init(default_pipeline(), "demo")

    with pytest.raises(ProgressExistsError):
        repo.init(default_pipeline(), "again")

    assert repo.init(default_pipeline(), "again", overwrite=True).project_name == "again"


def test_save_leaves_no_temp_files(tmp_path: Path) -> None:
    repo = ProgressRepository(tmp_path)
    repo.init(default_pipeline(), "demo")

    repo.update(lambda progress: setattr(progress, "paused", True))

    assert repo.load().paused is True
    assert [path.name for path in (tmp_path / "state").iterdir()] == ["progress.json"]


def test_unknown_fields_survive_a_rewrite(tmp_path: Path) -> None:
    repo = ProgressRepository(tmp_path)
    repo.init(default_pipeline(), "demo")
    payload = json.loads(repo.path.read_text(encoding="utf-8"))
    payload["dashboard"] = {"theme": "dark"}
    payload["stages"]["01-planning"]["reviewer"] = "sam"
    repo.path.write_text(json.dumps(payload), encoding="utf-8")

    repo.update(lambda progress: setattr(progress, "current_stage", "02-ui-ux"))

    rewritten = json.loads(repo.path.read_text(encoding="utf-8"))
    assert rewritten["dashboard"] == {"theme": "dark"}
    assert rewritten["stages"]["01-planning"]["reviewer"] == "sam"
    assert rewritten["current_stage"] == "02-ui-ux"


def test_missing_progress_is_reported(tmp_path: Path) -> None:
    with pytest.raises(StateCorruptionError):
        ProgressRepository(tmp_path).load()


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        json.dumps({"stages": {}}),
        json.dumps({"current_stage": "01", "stages": {"01": {"status": "exploded"}}}),
        json.dumps(
            {"current_stage": "01", "stages": {}, "current_iteration": {"current_sprint": "x"}}
        ),
    ],
)
def test_corrupt_progress_is_rejected(tmp_path: Path, content: str) -> None:
    repo = ProgressRepository(tmp_path)
    repo.state_dir.mkdir(parents=True)
    repo.path.write_text(content, encoding="utf-8")

    with pytest.raises(StateCorruptionError):
        repo.load()


def test_transitions_append_in_order(tmp_path: Path) -> None:
    repo = ProgressRepository(tmp_path)

    repo.append_transition({"from": "01", "to": "02", "kind": "advance"})
    repo.append_transition({"from": "02", "to": "01", "kind": "goto"})

    kinds = [record["kind"] for record in repo.transitions()]
    assert kinds == ["advance", "goto"]
    assert all("at" in record for record in repo.transitions())


def test_epic_state_is_seeded_from_pipeline(tmp_path: Path) -> None:
    pipeline = PipelineDefinition(
        stages=[
            Stage(ordinal=1, id="01", name="One"),
            Stage(ordinal=2, id="02", name="Two"),
            Stage(ordinal=3, id="03", name="Three"),
        ],
        epic=EpicCycleConfig(enabled=True, total_cycles=2, start_stage="01", end_stage="03"),
    )

    progress = ProgressRepository(tmp_path).init(pipeline, "demo")

    assert progress.epic_cycle.enabled is True
    assert progress.epic_cycle.cycles_remaining == 2
    assert progress.epic_cycle.end_stage == "03"


def test_cycles_remaining_counts_running_cycle() -> None:
    epic = EpicCycleState(enabled=True, current_cycle=2, total_cycles=3)
    assert epic.cycles_remaining == 2

    epic.completed = True
    assert epic.cycles_remaining == 0
    assert EpicCycleState(enabled=False, total_cycles=3).cycles_remaining == 0
