import tomllib
from pathlib import Path

import pytest

from pipewright import __version__
from pipewright.config import PipewrightConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "pipewright.toml"
    config = PipewrightConfig.default()
    config.project.name = "pipewright-test"
    config.producers.order = ["claude", "codex"]
    config.producers.timeout_seconds = 42.5
    config.producers.allow_baseline = False
    config.retry.max_attempts = 5
    config.checkpoints.max_retain = 4
    config.checkpoints.preserve_milestones = False
    config.engine.require_handoff = False
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "pipewright-test"
    assert loaded.project.pipeline_file == "config/pipeline.toml"
    assert loaded.producers.order == ["claude", "codex"]
    assert loaded.producers.timeout_seconds == 42.5
    assert loaded.producers.allow_baseline is False
    assert loaded.producers.min_output_chars == 500
    assert loaded.retry.max_attempts == 5
    assert loaded.checkpoints.max_retain == 4
    assert loaded.checkpoints.preserve_milestones is False
    assert loaded.checkpoints.on_stage_complete is True
    assert loaded.engine.require_handoff is False
    assert loaded.engine.handoff_file == "HANDOFF.md"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == PipewrightConfig.default()
    assert loaded.producers.order == ["gemini", "codex", "claude"]
    assert loaded.retry.max_attempts == 3


def test_unknown_config_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "pipewright.toml"
    config_path.write_text("[retry]\nmax_attempts = 2\nbogus = 1\n", encoding="utf-8")

    with pytest.raises(TypeError):
        load_config(config_path)


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(PipewrightConfig.default())

    sections = ("project", "producers", "retry", "checkpoints", "engine", "logging")
    for section in sections:
        assert f"[{section}]" in rendered
    assert 'order = ["gemini", "codex", "claude"]' in rendered
    assert "timeout_seconds = 300" in rendered
    assert "preserve_milestones = true" in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
