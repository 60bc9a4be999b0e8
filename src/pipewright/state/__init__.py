from pipewright.state.checkpoints import Checkpoint, CheckpointManager
from pipewright.state.progress import Progress, ProgressRepository, StageStatus
from pipewright.state.store import StateCorruptionError

__all__ = [
    "Checkpoint",
    "CheckpointManager",
    "Progress",
    "ProgressRepository",
    "StageStatus",
    "StateCorruptionError",
]
