from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pipewright.state.progress import ProgressRepository
from pipewright.state.store import StateCorruptionError, read_json_document, write_json_atomic

log = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
CHECKPOINTS_DIRNAME = "checkpoints"
TEMP_PREFIX = ".tmp-"
# Append-only history under state/; restore never rolls these back.
AUDIT_ENTRIES = frozenset({"validations", "transitions.jsonl", "fallback_log.json"})


class CheckpointError(RuntimeError):
    """Raised when a checkpoint cannot be created or restored."""


class CheckpointNotFoundError(CheckpointError):
    """Raised when a checkpoint id does not resolve to a complete checkpoint."""


class RetentionViolationError(CheckpointError):
    """Raised when deleting a milestone checkpoint without force."""


@dataclass(slots=True, frozen=True)
class Checkpoint:
    id: str
    stage_id: str
    created_at: str
    description: str | None = None
    milestone: bool = False
    includes: tuple[str, ...] = ()
    files: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        try:
            return cls(
                id=str(data["id"]),
                stage_id=str(data["stage"]),
                created_at=str(data["createdAt"]),
                description=data.get("description"),
                milestone=bool(data.get("milestone", False)),
                includes=tuple(str(item) for item in data.get("includes", [])),
                files=tuple(str(item) for item in data.get("files", [])),
            )
        except KeyError as exc:
            raise StateCorruptionError(f"Checkpoint metadata missing field: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage_id,
            "createdAt": self.created_at,
            "description": self.description,
            "milestone": self.milestone,
            "includes": list(self.includes),
            "files": list(self.files),
        }


def generate_checkpoint_id(stage_id: str, now: datetime | None = None) -> str:
    moment = now or datetime.now(UTC)
    return f"checkpoint_{stage_id}_{moment.strftime('%Y%m%dT%H%M%S%f')}"


def _copy_entry(source: Path, destination: Path) -> None:
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


def _manifest(root: Path) -> list[str]:
    return sorted(
        path.relative_to(root).as_posix()
        for path in root.rglob("*")
        if path.is_file() and path.name != METADATA_FILE
    )


class CheckpointManager:
    def __init__(
        self,
        project_root: Path,
        *,
        stages_dir: str = "stages",
        state_dir: str = "state",
        config_dir: str = "config",
        progress: ProgressRepository | None = None,
    ) -> None:
        self.project_root = project_root.resolve()
        self.stages_dir = stages_dir
        self.state_dir = state_dir
        self.config_dir = config_dir
        self.checkpoints_dir = self.project_root / state_dir / CHECKPOINTS_DIRNAME
        self.progress = progress

    def _path_for(self, checkpoint_id: str) -> Path:
        if not checkpoint_id or "/" in checkpoint_id or checkpoint_id.startswith("."):
            raise CheckpointNotFoundError(f"Invalid checkpoint id: {checkpoint_id!r}")
        return self.checkpoints_dir / checkpoint_id

    def _unique_id(self, stage_id: str) -> str:
        base = generate_checkpoint_id(stage_id)
        candidate = base
        suffix = 1
        while (self.checkpoints_dir / candidate).exists() or (
            self.checkpoints_dir / f"{TEMP_PREFIX}{candidate}"
        ).exists():
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _stage_state_entries(self, state_root: Path) -> list[Path]:
        if not state_root.is_dir():
            return []
        return sorted(
            entry for entry in state_root.iterdir() if entry.name != CHECKPOINTS_DIRNAME
        )

    def create(
        self,
        stage_id: str,
        description: str | None = None,
        *,
        include_stages: bool = True,
        include_state: bool = True,
        include_config: bool = False,
        milestone: bool = False,
    ) -> Checkpoint:
        self.checkpoints_dir.mkdir(parents=True, exist_ok=True)
        checkpoint_id = self._unique_id(stage_id)
        staging = self.checkpoints_dir / f"{TEMP_PREFIX}{checkpoint_id}"
        final_path = self.checkpoints_dir / checkpoint_id
        includes: list[str] = []

        try:
            staging.mkdir(parents=True)
            if include_stages:
                stages_root = self.project_root / self.stages_dir
                if stages_root.is_dir():
                    _copy_entry(stages_root, staging / self.stages_dir)
                    includes.append("stages")
            if include_state:
                state_root = self.project_root / self.state_dir
                entries = self._stage_state_entries(state_root)
                (staging / self.state_dir).mkdir(parents=True, exist_ok=True)
                for entry in entries:
                    _copy_entry(entry, staging / self.state_dir / entry.name)
                includes.append("state")
            if include_config:
                config_root = self.project_root / self.config_dir
                if config_root.is_dir():
                    _copy_entry(config_root, staging / self.config_dir)
                    includes.append("config")

            checkpoint = Checkpoint(
                id=checkpoint_id,
                stage_id=stage_id,
                created_at=datetime.now(UTC).isoformat(),
                description=description,
                milestone=milestone,
                includes=tuple(includes),
                files=tuple(_manifest(staging)),
            )
            write_json_atomic(staging / METADATA_FILE, checkpoint.to_dict())
            staging.rename(final_path)
        except OSError as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise CheckpointError(f"Failed to create checkpoint for {stage_id}: {exc}") from exc

        if self.progress is not None and self.progress.exists():

            def _record(progress: Any) -> None:
                progress.record(stage_id).checkpoint_id = checkpoint_id

            self.progress.update(_record)

        log.info("Checkpoint created: %s", checkpoint_id, extra={"stage": stage_id})
        return checkpoint

    def get(self, checkpoint_id: str) -> Checkpoint:
        metadata_path = self._path_for(checkpoint_id) / METADATA_FILE
        if not metadata_path.exists():
            raise CheckpointNotFoundError(f"Checkpoint not found: {checkpoint_id}")
        return Checkpoint.from_dict(read_json_document(metadata_path))

    def list(self) -> list[Checkpoint]:
        if not self.checkpoints_dir.is_dir():
            return []
        checkpoints: list[Checkpoint] = []
        for entry in self.checkpoints_dir.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if not (entry / METADATA_FILE).exists():
                continue
            checkpoints.append(Checkpoint.from_dict(read_json_document(entry / METADATA_FILE)))
        return sorted(checkpoints, key=lambda item: (item.created_at, item.id), reverse=True)

    def _is_audit_path(self, destination: Path) -> bool:
        parts = destination.relative_to(self.project_root).parts
        return len(parts) >= 2 and parts[0] == self.state_dir and parts[1] in AUDIT_ENTRIES

    def _restore_pairs(
        self, checkpoint_id: str, source_root: Path, files: list[str]
    ) -> list[tuple[Path, Path]]:
        source_root = source_root.resolve()
        pairs: list[tuple[Path, Path]] = []
        missing: list[str] = []
        for item in files:
            source = (source_root / item).resolve()
            destination = (self.project_root / item).resolve()
            if (
                source == source_root
                or not source.is_relative_to(source_root)
                or not destination.is_relative_to(self.project_root)
            ):
                raise CheckpointError(f"Path escapes the checkpoint or project root: {item}")
            if self._is_audit_path(destination):
                raise CheckpointError(f"Append-only history cannot be restored: {item}")
            if not source.exists():
                missing.append(item)
                continue
            pairs.append((source, destination))
        if missing:
            raise CheckpointError(
                f"Checkpoint {checkpoint_id} does not contain: {', '.join(missing)}"
            )
        return pairs

    def restore(self, checkpoint_id: str, files: list[str] | None = None) -> bool:
        checkpoint = self.get(checkpoint_id)
        source_root = self._path_for(checkpoint_id)

        if files:
            for source, destination in self._restore_pairs(checkpoint_id, source_root, files):
                _copy_entry(source, destination)
            log.info(
                "Partially restored %d path(s) from %s",
                len(files),
                checkpoint_id,
                extra={"stage": checkpoint.stage_id},
            )
            return True

        if "stages" in checkpoint.includes:
            live_stages = self.project_root / self.stages_dir
            shutil.rmtree(live_stages, ignore_errors=True)
            shutil.copytree(source_root / self.stages_dir, live_stages)
        if "state" in checkpoint.includes:
            live_state = self.project_root / self.state_dir
            live_state.mkdir(parents=True, exist_ok=True)
            for entry in sorted((source_root / self.state_dir).iterdir()):
                if entry.name in AUDIT_ENTRIES:
                    continue
                destination = live_state / entry.name
                if entry.is_dir() and destination.exists():
                    shutil.rmtree(destination)
                _copy_entry(entry, destination)
        if "config" in checkpoint.includes:
            live_config = self.project_root / self.config_dir
            shutil.rmtree(live_config, ignore_errors=True)
            shutil.copytree(source_root / self.config_dir, live_config)
        log.info("Restored checkpoint %s", checkpoint_id, extra={"stage": checkpoint.stage_id})
        return True

    def delete(self, checkpoint_id: str, *, force: bool = False) -> None:
        checkpoint = self.get(checkpoint_id)
        if checkpoint.milestone and not force:
            raise RetentionViolationError(
                f"Checkpoint {checkpoint_id} is a milestone and cannot be deleted without force."
            )
        shutil.rmtree(self._path_for(checkpoint_id))

    def cleanup(self, max_retain: int, *, preserve_milestones: bool = True) -> list[str]:
        if max_retain < 0:
            raise ValueError("max_retain must be >= 0")
        checkpoints = self.list()
        if preserve_milestones:
            milestones = [item for item in checkpoints if item.milestone]
            candidates = [item for item in checkpoints if not item.milestone]
            keep_count = max(0, max_retain - len(milestones))
        else:
            candidates = checkpoints
            keep_count = max_retain

        deleted: list[str] = []
        for checkpoint in candidates[keep_count:]:
            shutil.rmtree(self._path_for(checkpoint.id))
            deleted.append(checkpoint.id)
        if deleted:
            log.info("Cleaned up %d checkpoint(s)", len(deleted))
        return deleted
