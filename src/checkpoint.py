"""
Durable migration checkpoint.

The checkpoint is a newline-delimited KEY=VALUE file (sourceable by a
shell) rewritten atomically on every save, so a crash mid-write leaves
either the previous or the new state on disk, never a torn file.
"""

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from models import MigrationPlan, StepStatus

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "migration_state.env"

# Intra-step stages in execution order
STAGE_ORDER = [
    "backup_done",
    "stopped",
    "installed",
    "started",
    "migrated",
    "health_ok",
    "tests_ok",
]


def stage_reached(current: Optional[str], stage: str) -> bool:
    """True if `current` is at or beyond `stage` in STAGE_ORDER."""
    if not current or current not in STAGE_ORDER:
        return False
    return STAGE_ORDER.index(current) >= STAGE_ORDER.index(stage)


def _version_key(version: str) -> str:
    return version.replace(".", "_").replace("-", "_")


@dataclass
class Checkpoint:
    """Persisted progress of one migration plan."""

    current_version: str
    target_version: str
    strategy: str
    current_step: Optional[str] = None
    last_successful_step: Optional[str] = None
    resumable: bool = False
    step_status: Dict[str, StepStatus] = field(default_factory=dict)
    stages: Dict[str, str] = field(default_factory=dict)
    last_backup: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def for_plan(cls, plan: MigrationPlan, strategy: str) -> "Checkpoint":
        return cls(
            current_version=plan.current_version,
            target_version=plan.target_version,
            strategy=strategy,
            step_status={step: StepStatus.PENDING for step in plan.steps},
        )

    def matches(self, plan: MigrationPlan) -> bool:
        """Whether this checkpoint was recorded for the same version walk."""
        return (
            self.current_version == plan.current_version
            and self.target_version == plan.target_version
        )

    def status_of(self, step: str) -> StepStatus:
        return self.step_status.get(step, StepStatus.PENDING)

    def all_done(self, steps: List[str]) -> bool:
        return bool(steps) and all(self.status_of(s) == StepStatus.DONE for s in steps)

    def remaining_steps(self, steps: List[str]) -> List[str]:
        """Steps strictly after `last_successful_step`, or all steps if unset."""
        if self.last_successful_step and self.last_successful_step in steps:
            return steps[steps.index(self.last_successful_step) + 1 :]
        return list(steps)

    def to_pairs(self) -> Dict[str, str]:
        pairs = {
            "CURRENT_VERSION": self.current_version,
            "TARGET_VERSION": self.target_version,
            "STRATEGY": self.strategy,
            "CURRENT_STEP": self.current_step or "",
            "LAST_SUCCESSFUL_STEP": self.last_successful_step or "",
            "RESUME_SAFE": "true" if self.resumable else "false",
            "LAST_BACKUP": self.last_backup or "",
            "UPDATED_AT": self.updated_at or "",
        }
        for step, status in self.step_status.items():
            pairs[f"STEP_{_version_key(step)}"] = f"{step}:{status.value}"
        for step, stage in self.stages.items():
            pairs[f"CHECKPOINT_{_version_key(step)}"] = f"{step}:{stage}"
        return pairs

    @classmethod
    def from_pairs(cls, pairs: Dict[str, str]) -> "Checkpoint":
        step_status: Dict[str, StepStatus] = {}
        stages: Dict[str, str] = {}

        for key, value in pairs.items():
            if key.startswith("STEP_") and ":" in value:
                step, status = value.rsplit(":", 1)
                try:
                    step_status[step] = StepStatus(status)
                except ValueError:
                    logger.warning(f"Unknown step status '{status}' for {step}, treating as PENDING")
                    step_status[step] = StepStatus.PENDING
            elif key.startswith("CHECKPOINT_") and ":" in value:
                step, stage = value.rsplit(":", 1)
                stages[step] = stage

        return cls(
            current_version=pairs.get("CURRENT_VERSION", ""),
            target_version=pairs.get("TARGET_VERSION", ""),
            strategy=pairs.get("STRATEGY", ""),
            current_step=pairs.get("CURRENT_STEP") or None,
            last_successful_step=pairs.get("LAST_SUCCESSFUL_STEP") or None,
            resumable=pairs.get("RESUME_SAFE", "false").lower() == "true",
            step_status=step_status,
            stages=stages,
            last_backup=pairs.get("LAST_BACKUP") or None,
            updated_at=pairs.get("UPDATED_AT") or None,
        )


class CheckpointStore:
    """Loads and atomically saves a Checkpoint under a work directory."""

    def __init__(self, work_dir: str, file_name: str = STATE_FILE_NAME):
        self.work_dir = work_dir
        self.path = os.path.join(work_dir, file_name)
        self._lock = threading.Lock()

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> Optional[Checkpoint]:
        """
        Read the checkpoint file.

        Returns:
            Checkpoint, or None if no checkpoint has been written
        """
        with self._lock:
            if not os.path.isfile(self.path):
                return None

            pairs: Dict[str, str] = {}
            with open(self.path, "r", encoding="utf-8") as f:
                for lineno, raw in enumerate(f, start=1):
                    line = raw.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" not in line:
                        logger.warning(f"Ignoring malformed checkpoint line {lineno}: {line}")
                        continue
                    key, value = line.split("=", 1)
                    pairs[key.strip()] = value.strip()

        checkpoint = Checkpoint.from_pairs(pairs)
        logger.debug(f"Checkpoint loaded from: {self.path}")
        return checkpoint

    def save(self, checkpoint: Checkpoint) -> None:
        """Atomically rewrite the checkpoint (temp file + os.replace)."""
        checkpoint.updated_at = datetime.now(timezone.utc).isoformat()
        content = "".join(f"{k}={v}\n" for k, v in checkpoint.to_pairs().items())

        with self._lock:
            os.makedirs(self.work_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.work_dir, prefix=".state-")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    def clear(self) -> None:
        with self._lock:
            if os.path.exists(self.path):
                os.remove(self.path)
                logger.info(f"Checkpoint cleared: {self.path}")
