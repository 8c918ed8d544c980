"""
Progress reporting: an in-process board for concurrent workers and a
Prometheus textfile exporter for the run as a whole.
"""

import logging
import threading
import time
from typing import Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

from checkpoint import STAGE_ORDER
from models import FAILED_PROGRESS, StepStatus, Worker, WorkerKind

logger = logging.getLogger(__name__)

BAR_WIDTH = 20


class ProgressBoard:
    """Thread-safe map of worker id -> Worker, updated by the workers themselves."""

    def __init__(self):
        self._workers: Dict[str, Worker] = {}
        self._lock = threading.Lock()

    def register(self, worker_id: str, kind: WorkerKind) -> Worker:
        with self._lock:
            worker = Worker(id=worker_id, kind=kind)
            self._workers[worker_id] = worker
            return worker

    def update(
        self,
        worker_id: str,
        progress: Optional[float] = None,
        status: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            worker = self._workers[worker_id]
            if progress is not None:
                worker.progress = max(0.0, min(1.0, progress))
            if status is not None:
                worker.status = status
            if error_message is not None:
                worker.error_message = error_message

    def fail(self, worker_id: str, error_message: str) -> None:
        with self._lock:
            worker = self._workers[worker_id]
            worker.progress = FAILED_PROGRESS
            worker.status = "failed"
            worker.error_message = error_message

    def snapshot(self) -> List[Worker]:
        """Copies of all workers, in registration order."""
        with self._lock:
            return [
                Worker(w.id, w.kind, w.progress, w.status, w.error_message)
                for w in self._workers.values()
            ]

    def failed_ids(self) -> List[str]:
        return [w.id for w in self.snapshot() if w.status == "failed"]

    def render(self) -> str:
        """Text table with one progress bar per worker."""
        lines = [f"{'Instance':<20} {'Status':<10} {'Progress':<{BAR_WIDTH + 2}} {'%':>5}"]
        lines.append("-" * 70)
        completed = failed = 0
        workers = self.snapshot()
        for w in workers:
            if w.progress == FAILED_PROGRESS:
                bar = "[" + "X" * BAR_WIDTH + "]"
                pct = "FAIL"
                failed += 1
            else:
                filled = int(w.progress * BAR_WIDTH)
                bar = "[" + "#" * filled + "." * (BAR_WIDTH - filled) + "]"
                pct = f"{w.progress * 100:.0f}%"
                if w.status == "success":
                    completed += 1
            lines.append(f"{w.id:<20} {w.status:<10} {bar:<{BAR_WIDTH + 2}} {pct:>5}")
        lines.append("-" * 70)
        lines.append(f"Total: {len(workers)} | Completed: {completed} | Failed: {failed}")
        return "\n".join(lines)


class MigrationMetrics:
    """
    Migration metrics in a private registry, written to a Prometheus
    textfile (node_exporter textfile collector format).
    """

    STATUS_CODES = {
        StepStatus.PENDING: 0,
        StepStatus.IN_PROGRESS: 1,
        StepStatus.DONE: 2,
        StepStatus.FAILED: 3,
    }

    def __init__(self, profile: str, path: str, from_version: str = "", to_version: str = ""):
        self.profile = profile
        self.path = path
        self.from_version = from_version
        self.to_version = to_version
        self.start_time = time.time()
        self.registry = CollectorRegistry()

        self.progress = Gauge(
            "keycloak_migration_progress",
            "Migration progress (0.0 to 1.0, -1 on failure)",
            ["profile", "instance", "from_version", "to_version"],
            registry=self.registry,
        )
        self.step_status = Gauge(
            "keycloak_migration_step_status",
            "Step status (0=pending, 1=in_progress, 2=completed, 3=failed)",
            ["profile", "step"],
            registry=self.registry,
        )
        self.checkpoint_status = Gauge(
            "keycloak_migration_checkpoint_status",
            "Intra-step checkpoint reached (1) or not (0)",
            ["profile", "step", "checkpoint"],
            registry=self.registry,
        )
        self.duration = Gauge(
            "keycloak_migration_duration_seconds",
            "Migration duration in seconds",
            ["profile"],
            registry=self.registry,
        )
        self.errors = Counter(
            "keycloak_migration_errors",
            "Errors encountered during migration",
            ["profile", "error_type"],
            registry=self.registry,
        )
        self.last_success = Gauge(
            "keycloak_migration_last_success_timestamp",
            "Unix timestamp of the last successful migration",
            ["profile"],
            registry=self.registry,
        )

    def set_progress(self, value: float, instance: str = "main") -> None:
        self.progress.labels(self.profile, instance, self.from_version, self.to_version).set(value)
        self.flush()

    def set_step(self, step: str, status: StepStatus) -> None:
        self.step_status.labels(self.profile, step).set(self.STATUS_CODES[status])
        self.flush()

    def set_stage(self, step: str, stage: str) -> None:
        reached = STAGE_ORDER.index(stage) if stage in STAGE_ORDER else -1
        for i, name in enumerate(STAGE_ORDER):
            self.checkpoint_status.labels(self.profile, step, name).set(1 if i <= reached else 0)
        self.flush()

    def record_error(self, error_type: str) -> None:
        self.errors.labels(self.profile, error_type).inc()
        self.flush()

    def mark_success(self) -> None:
        self.last_success.labels(self.profile).set(time.time())
        self.flush()

    def flush(self) -> None:
        self.duration.labels(self.profile).set(time.time() - self.start_time)
        try:
            write_to_textfile(self.path, self.registry)
        except OSError as e:
            logger.warning(f"Could not write metrics to {self.path}: {e}")
