"""
Multi-instance rollout: one worker per tenant (or node), each running its
own sub-migration, bounded by `max_concurrent`.
"""

import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, List, Optional

from cancellation import CancellationToken
from errors import StepExecutionError
from models import Worker, WorkerKind
from progress import ProgressBoard
from rollout import RolloutStrategy

logger = logging.getLogger(__name__)

# worker, step, token, progress callback
WorkerRunner = Callable[[Worker, str, CancellationToken, Callable[[float], None]], None]


class ParallelRollout(RolloutStrategy):
    """
    Advance every instance to a step concurrently.

    `run_worker` performs a full sub-migration of one instance up to the
    step, with its own strategy, checkpoint store, limiter and breaker; it
    raises on failure. The parent joins every worker before aggregating.
    """

    name = "parallel"

    def __init__(
        self,
        instance_ids: List[str],
        run_worker: WorkerRunner,
        kind: WorkerKind = WorkerKind.TENANT,
        max_concurrent: int = 5,
        monitor_interval: float = 5.0,
        board: Optional[ProgressBoard] = None,
        token: Optional[CancellationToken] = None,
    ):
        super().__init__(token)
        if not instance_ids:
            raise ValueError("Parallel rollout requires at least one instance")
        if len(set(instance_ids)) != len(instance_ids):
            raise ValueError("Instance ids must be unique")
        self.instance_ids = instance_ids
        self.run_worker = run_worker
        self.kind = kind
        self.max_concurrent = max(1, max_concurrent)
        self.monitor_interval = monitor_interval
        self.board = board or ProgressBoard()
        self.workers = {i: self.board.register(i, kind) for i in instance_ids}
        self.last_failed: List[str] = []

    def describe(self) -> str:
        return (
            f"parallel ({len(self.instance_ids)} {self.kind.value}s, "
            f"max {self.max_concurrent} concurrent)"
        )

    def _run_one(self, worker_id: str, step: str) -> None:
        token = self.token.child()
        self.board.update(worker_id, status="running")
        try:
            self.run_worker(
                self.workers[worker_id],
                step,
                token,
                lambda progress: self.board.update(worker_id, progress=progress),
            )
        except Exception as e:
            logger.error(f"[{worker_id}] Migration failed at {step}: {e}")
            self.board.fail(worker_id, str(e))
            raise
        self.board.update(worker_id, status="success")
        logger.info(f"✓ {self.kind.value} {worker_id} reached {step}")

    def execute_step(self, step: str, resume_stage: Optional[str] = None) -> None:
        logger.info("=" * 70)
        logger.info(
            f"Parallel Execution: {len(self.instance_ids)} {self.kind.value}s -> {step} "
            f"(max concurrent: {self.max_concurrent})"
        )
        logger.info("=" * 70)

        self.last_failed = []
        failed: List[str] = []
        with ThreadPoolExecutor(max_workers=self.max_concurrent) as pool:
            futures = {pool.submit(self._run_one, i, step): i for i in self.instance_ids}
            pending = set(futures)
            while pending:
                done, pending = wait(pending, timeout=self.monitor_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    if future.exception() is not None:
                        failed.append(futures[future])
                logger.info("\n" + self.board.render())

        self.last_failed = sorted(failed)
        self.token.raise_if_cancelled()
        if failed:
            logger.error(f"{len(failed)} {self.kind.value}(s) failed")
            raise StepExecutionError(
                f"Parallel migration to {step} failed for: {', '.join(self.last_failed)}",
                step=step,
            )
        logger.info(f"✓ All {len(self.instance_ids)} {self.kind.value}s migrated to {step}")

    def rollback(
        self, step: str, error: BaseException, backup: Optional[str] = None
    ) -> None:
        if not self.last_failed:
            logger.error(f"Parallel migration to {step} failed outside the workers: {error}")
            return
        # Each worker's sub-migration already rolled back its own instance
        logger.warning(
            f"Parallel migration to {step} failed for {', '.join(self.last_failed)}; "
            f"per-instance rollbacks were handled by their workers"
        )
