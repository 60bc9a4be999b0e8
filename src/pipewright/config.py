from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

ProducerName = str

DEFAULT_CONFIG_FILE = "pipewright.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    stages_dir: str = "stages"
    state_dir: str = "state"
    config_dir: str = "config"
    references_dir: str = "references"
    pipeline_file: str = "config/pipeline.toml"


@dataclass(slots=True)
class ProducersConfig:
    order: list[ProducerName] = field(default_factory=lambda: ["gemini", "codex", "claude"])
    timeout_seconds: float = 300.0
    allow_baseline: bool = True
    min_output_chars: int = 500


@dataclass(slots=True)
class RetryConfig:
    max_attempts: int = 3


@dataclass(slots=True)
class CheckpointConfig:
    max_retain: int = 10
    preserve_milestones: bool = True
    on_stage_complete: bool = True


@dataclass(slots=True)
class EngineConfig:
    require_handoff: bool = True
    handoff_file: str = "HANDOFF.md"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class PipewrightConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    producers: ProducersConfig = field(default_factory=ProducersConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PipewrightConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PipewrightConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            producers=ProducersConfig(**data.get("producers", {})),
            retry=RetryConfig(**data.get("retry", {})),
            checkpoints=CheckpointConfig(**data.get("checkpoints", {})),
            engine=EngineConfig(**data.get("engine", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "stages_dir": self.project.stages_dir,
                "state_dir": self.project.state_dir,
                "config_dir": self.project.config_dir,
                "references_dir": self.project.references_dir,
                "pipeline_file": self.project.pipeline_file,
            },
            "producers": {
                "order": list(self.producers.order),
                "timeout_seconds": self.producers.timeout_seconds,
                "allow_baseline": self.producers.allow_baseline,
                "min_output_chars": self.producers.min_output_chars,
            },
            "retry": {
                "max_attempts": self.retry.max_attempts,
            },
            "checkpoints": {
                "max_retain": self.checkpoints.max_retain,
                "preserve_milestones": self.checkpoints.preserve_milestones,
                "on_stage_complete": self.checkpoints.on_stage_complete,
            },
            "engine": {
                "require_handoff": self.engine.require_handoff,
                "handoff_file": self.engine.handoff_file,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PipewrightConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "producers", "retry", "checkpoints", "engine", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PipewrightConfig:
    if not path.exists():
        return PipewrightConfig.default()
    return PipewrightConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PipewrightConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
