from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from pipewright.config import DEFAULT_CONFIG_FILE, PipewrightConfig, load_config, save_config
from pipewright.engine import (
    BlockingGateFailure,
    EngineError,
    RetryableGateFailure,
    StageEngine,
)
from pipewright.log import configure_logging
from pipewright.pipeline import PipelineDefinition, PipelineDefinitionError, load_pipeline
from pipewright.producers import ProducerFailure
from pipewright.quality import GateStatus, QualityResult
from pipewright.state.checkpoints import CheckpointError
from pipewright.state.progress import ProgressExistsError
from pipewright.state.store import StateCorruptionError, read_json_document, write_json_atomic

EXIT_BLOCKED = 2
FALLBACK_LOG_FILE = "fallback_log.json"
FALLBACK_LOG_LIMIT = 200

RUNTIME_ERRORS = (
    EngineError,
    StateCorruptionError,
    PipelineDefinitionError,
    CheckpointError,
    ProducerFailure,
    ProgressExistsError,
)


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: PipewrightConfig
    pipeline: PipelineDefinition
    engine: StageEngine


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _record_producer_event(log_path: Path, event: dict[str, Any]) -> None:
    events: list[Any] = []
    if log_path.exists():
        document = read_json_document(log_path)
        stored = document.get("events", [])
        if isinstance(stored, list):
            events = stored
    payload = dict(event)
    payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
    events.append(payload)
    write_json_atomic(log_path, {"events": events[-FALLBACK_LOG_LIMIT:]})


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        pipeline = load_pipeline(project_root / config.project.pipeline_file)
    except TypeError as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc
    except PipelineDefinitionError as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(config.logging.level)

    log_path = project_root / config.project.state_dir / FALLBACK_LOG_FILE
    try:
        engine = StageEngine.from_config(
            project_root,
            config,
            pipeline,
            event_hook=lambda event: _record_producer_event(log_path, event),
        )
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        pipeline=pipeline,
        engine=engine,
    )


def _runtime(config_value: str) -> Runtime:
    project_root = Path.cwd().resolve()
    return _load_runtime(project_root, _resolve_config_path(project_root, config_value))


def _echo_blockers(engine: StageEngine, blockers: list[str]) -> None:
    for blocker in blockers:
        click.echo(f"  - {blocker}", err=True)
    remedies = engine.suggest_remedies(blockers)
    if remedies:
        click.echo("Suggested actions:", err=True)
        for remedy in remedies:
            click.echo(f"  * {remedy}", err=True)


def _echo_quality(result: QualityResult) -> None:
    for outcome in result.outcomes:
        marker = "PASS" if outcome.passed else outcome.severity.value.upper()
        click.echo(f"[{marker}] {outcome.name}: {outcome.message}")
    click.echo(f"Status: {result.status.value} (score {result.score:.2f})")


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@click.group()
def cli() -> None:
    """Pipewright stage pipeline CLI."""


@cli.command("init")
@click.option("--name", "project_name", default=None)
@click.option("--force", is_flag=True, default=False, help="Overwrite existing progress.")
@config_option
def init_command(project_name: str | None, force: bool, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except TypeError as exc:
        raise click.ClickException(f"Invalid configuration in {config_path}: {exc}") from exc
    if project_name:
        config.project.name = project_name
    save_config(config_path, config)

    runtime = _load_runtime(project_root, config_path)
    try:
        progress = runtime.engine.init(config.project.name, overwrite=force)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized pipewright in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Current stage: {progress.current_stage}")


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.engine.status()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("advance")
@click.option("--force", is_flag=True, default=False)
@click.option("--reason", default=None)
@click.option("--skip-gate", "skip_gate", is_flag=True, default=False)
@config_option
def advance_command(force: bool, reason: str | None, skip_gate: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.engine.advance(force=force, skip_gate_check=skip_gate, reason=reason)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    if not result.allowed:
        click.echo(f"Advance from {result.from_stage} blocked:", err=True)
        _echo_blockers(runtime.engine, result.blockers)
        raise click.exceptions.Exit(EXIT_BLOCKED)
    if result.pipeline_complete:
        click.echo(f"Completed {result.from_stage}; pipeline complete.")
    elif result.epic_looped:
        click.echo(f"Completed {result.from_stage}; epic cycle restarts at {result.to_stage}.")
    else:
        click.echo(f"Advanced {result.from_stage} -> {result.to_stage}")
    if result.checkpoint_id:
        click.echo(f"Checkpoint: {result.checkpoint_id}")


@cli.command("goto")
@click.argument("stage_id")
@click.option("--reason", default=None)
@config_option
def goto_command(stage_id: str, reason: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        progress = runtime.engine.goto_stage(stage_id, reason)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Current stage: {progress.current_stage}")


@cli.command("skip")
@click.option("--reason", default=None)
@config_option
def skip_command(reason: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.engine.skip(reason)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Skipped {result.from_stage}; current stage: {result.to_stage or '(complete)'}")


@cli.command("sprint")
@config_option
def sprint_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        tick = runtime.engine.tick_sprint()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if tick.same_stage:
        click.echo(f"Sprint {tick.sprint_number}/{tick.total_sprints}")
    else:
        click.echo(
            f"Sprint {tick.sprint_number}/{tick.total_sprints} is the last; "
            "run `pipewright advance` to continue."
        )


@cli.command("epic")
@config_option
def epic_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        tick = runtime.engine.tick_epic_cycle()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if tick.cycle_complete:
        click.echo("Epic cycles complete.")
    else:
        click.echo(
            f"Epic cycle {tick.next_cycle} started at {tick.reset_to} "
            f"({tick.cycles_remaining} remaining)"
        )


@cli.command("pause")
@config_option
def pause_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.engine.pause()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Pipeline paused.")


@cli.command("resume")
@config_option
def resume_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.engine.resume()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Pipeline resumed.")


@cli.command("unblock")
@config_option
def unblock_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        progress = runtime.engine.unblock()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Unblocked {progress.current_stage}")


@cli.command("run")
@click.option("--stage", "stage_id", default=None)
@config_option
def run_command(stage_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = asyncio.run(runtime.engine.run_stage(stage_id))
    except BlockingGateFailure as exc:
        click.echo(f"Stage {exc.stage_id} blocked:", err=True)
        _echo_blockers(runtime.engine, exc.blockers)
        raise click.exceptions.Exit(EXIT_BLOCKED) from exc
    except RetryableGateFailure as exc:
        for line in exc.outcome.history_lines():
            click.echo(line, err=True)
        raise click.ClickException(str(exc)) from exc
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Stage {result.stage_id} passed after {len(result.outcome.attempts)} attempt(s)")
    if result.producers_used:
        click.echo(f"Producers: {', '.join(result.producers_used)}")
    if result.advance is not None:
        if result.advance.allowed:
            click.echo(f"Current stage: {result.advance.to_stage or '(complete)'}")
        else:
            click.echo("Advance blocked:", err=True)
            _echo_blockers(runtime.engine, result.advance.blockers)
            raise click.exceptions.Exit(EXIT_BLOCKED)


@cli.command("validate")
@click.option("--stage", "stage_id", default=None)
@config_option
def validate_command(stage_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.engine.validate(stage_id)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_quality(result)
    if result.status is GateStatus.BLOCKED:
        raise click.exceptions.Exit(EXIT_BLOCKED)
    if result.status is GateStatus.RETRY:
        raise click.exceptions.Exit(1)


@cli.group("checkpoint")
def checkpoint_group() -> None:
    """Create, restore and prune checkpoints."""


@checkpoint_group.command("create")
@click.option("--description", default=None)
@click.option("--include-config", is_flag=True, default=False)
@click.option("--milestone", is_flag=True, default=False)
@config_option
def checkpoint_create_command(
    description: str | None, include_config: bool, milestone: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    try:
        checkpoint = runtime.engine.create_checkpoint(
            description, include_config=include_config, milestone=milestone
        )
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Checkpoint created: {checkpoint.id}")


@checkpoint_group.command("restore")
@click.argument("checkpoint_id")
@click.option("--partial", "files", multiple=True, help="Restore only this path (repeatable).")
@config_option
def checkpoint_restore_command(
    checkpoint_id: str, files: tuple[str, ...], config_value: str
) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.engine.restore_checkpoint(checkpoint_id, list(files) or None)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    scope = f"{len(files)} path(s)" if files else "full"
    click.echo(f"Restored {checkpoint_id} ({scope})")


@checkpoint_group.command("list")
@config_option
def checkpoint_list_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        checkpoints = runtime.engine.checkpoints.list()
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not checkpoints:
        click.echo("No checkpoints found.")
        return
    for checkpoint in checkpoints:
        marker = "*" if checkpoint.milestone else " "
        line = f"{marker} {checkpoint.id} {checkpoint.created_at} {checkpoint.description or ''}"
        click.echo(line.rstrip())


@checkpoint_group.command("delete")
@click.argument("checkpoint_id")
@click.option("--force", is_flag=True, default=False, help="Allow deleting milestones.")
@config_option
def checkpoint_delete_command(checkpoint_id: str, force: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        runtime.engine.checkpoints.delete(checkpoint_id, force=force)
    except RUNTIME_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted {checkpoint_id}")


@checkpoint_group.command("cleanup")
@click.option("--max-retain", type=int, default=None)
@config_option
def checkpoint_cleanup_command(max_retain: int | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    settings = runtime.config.checkpoints
    try:
        deleted = runtime.engine.checkpoints.cleanup(
            settings.max_retain if max_retain is None else max_retain,
            preserve_milestones=settings.preserve_milestones,
        )
    except (ValueError, *RUNTIME_ERRORS) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted {len(deleted)} checkpoint(s)")
