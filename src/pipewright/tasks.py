from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path

from pipewright.pipeline import PipelineDefinition

log = logging.getLogger(__name__)

INSTRUCTIONS_FILE = "INSTRUCTIONS.md"
REFERENCE_SUFFIXES = {".md", ".txt", ".rst", ".yaml", ".yml", ".json", ".toml"}
MAX_REFERENCE_BYTES = 50 * 1024


@dataclass(slots=True, frozen=True)
class TaskSpec:
    stage_id: str
    instructions: str
    prior_handoff: str | None = None
    reference_text: tuple[str, ...] = ()
    feedback: tuple[str, ...] = ()
    required_outputs: tuple[str, ...] = ()
    minimal: bool = False
    output_dir: str = ""

    def with_feedback(self, feedback: list[str]) -> TaskSpec:
        return replace(self, feedback=tuple(feedback), minimal=False)

    def as_minimal(self, feedback: list[str]) -> TaskSpec:
        return replace(self, feedback=tuple(feedback), minimal=True)

    def render_prompt(self) -> str:
        parts = [f"# Stage {self.stage_id}"]
        if self.minimal and self.required_outputs:
            parts.append(
                "Produce ONLY the minimum required artifacts for this stage. "
                "Create each of these files and nothing else:"
            )
            parts.append("\n".join(f"- {item}" for item in self.required_outputs))
        else:
            parts.append("## Instructions")
            parts.append(self.instructions.strip() or "(no stage instructions provided)")
        if self.feedback:
            parts.append(f"## Fix these {len(self.feedback)} issues from the previous attempt")
            parts.append("\n".join(f"- {item}" for item in self.feedback))
        if self.output_dir:
            parts.append(f"Write all artifacts under `{self.output_dir}`.")
        if self.required_outputs and not self.minimal:
            parts.append("## Required outputs")
            parts.append("\n".join(f"- {item}" for item in self.required_outputs))
        if self.prior_handoff and not self.minimal:
            parts.append("## Handoff from the previous stage")
            parts.append(self.prior_handoff.strip())
        if self.reference_text and not self.minimal:
            parts.append("## Reference material")
            parts.extend(text.strip() for text in self.reference_text)
        return "\n\n".join(parts) + "\n"


def _read_references(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    texts: list[str] = []
    for path in sorted(directory.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in REFERENCE_SUFFIXES:
            continue
        if path.stat().st_size > MAX_REFERENCE_BYTES:
            log.debug("Skipping large reference file %s", path)
            continue
        content = path.read_text(encoding="utf-8", errors="replace")
        texts.append(f"### {path.relative_to(directory).as_posix()}\n\n{content}")
    return texts


@dataclass(slots=True)
class TaskSources:
    project_root: Path
    stages_dir: str = "stages"
    references_dir: str = "references"
    handoff_file: str = "HANDOFF.md"

    def stage_dir(self, stage_id: str) -> Path:
        return self.project_root / self.stages_dir / stage_id


def load_task_spec(sources: TaskSources, pipeline: PipelineDefinition, stage_id: str) -> TaskSpec:
    stage = pipeline.get(stage_id)
    stage_dir = sources.stage_dir(stage_id)
    instructions_path = stage_dir / INSTRUCTIONS_FILE
    instructions = (
        instructions_path.read_text(encoding="utf-8") if instructions_path.exists() else ""
    )

    prior_handoff = None
    previous = pipeline.previous_stage(stage_id)
    if previous is not None:
        handoff_path = sources.stage_dir(previous.id) / sources.handoff_file
        if handoff_path.exists():
            prior_handoff = handoff_path.read_text(encoding="utf-8")

    references = _read_references(sources.project_root / sources.references_dir / stage_id)

    return TaskSpec(
        stage_id=stage_id,
        instructions=instructions,
        prior_handoff=prior_handoff,
        reference_text=tuple(references),
        required_outputs=stage.required_outputs,
        output_dir=(Path(sources.stages_dir) / stage_id / "outputs").as_posix(),
    )
