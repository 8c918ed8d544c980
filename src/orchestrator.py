"""
Migration orchestrator for multi-hop Keycloak upgrades.

Walks the version path one release at a time. Every step is checkpointed
before and after it runs, backed up beforehand, retried on transient
failure and rolled back through the active strategy when it cannot be
completed.
"""

import json
import logging
import os
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from cancellation import CancellationToken
from checkpoint import Checkpoint, CheckpointStore, stage_reached
from collaborators import BACKUP_PREFIX, DatabaseAdapter
from errors import (
    CircuitOpenError,
    GateFailure,
    MigrationCancelled,
    MigrationError,
    MigrationFailed,
    MigrationTimeoutError,
    PlanError,
    RollbackError,
    StepExecutionError,
)
from models import MigrationPlan, StepResult, StepStatus
from progress import MigrationMetrics
from ratelimit import RateLimitedExecutor, backoff_delay
from rollback import find_latest_backup
from rollout import RolloutStrategy

logger = logging.getLogger(__name__)

DEFAULT_VERSION_PATH = ["16.1.1", "17.0.1", "22.0.5", "25.0.6", "26.0.7"]

# Java runtime required per Keycloak major version
JAVA_REQUIREMENTS = {16: 11, 17: 11, 22: 17, 25: 17, 26: 21}

RETRYABLE_ERRORS = (StepExecutionError, CircuitOpenError)
FATAL_ERRORS = (GateFailure, MigrationTimeoutError, MigrationCancelled)


def parse_version(version: str) -> Tuple[int, ...]:
    """Numeric tuple for a dotted version string."""
    try:
        return tuple(int(part) for part in version.strip().split("."))
    except (AttributeError, ValueError) as e:
        raise PlanError(f"Invalid version: {version!r}") from e


def validate_version_path(path: Sequence[str]) -> List[str]:
    """
    Check that a version path is non-empty and strictly increasing.

    Raises:
        PlanError: On duplicates, ordering violations or unparsable versions
    """
    if not path:
        raise PlanError("Version path is empty")
    versions = list(path)
    for previous, current in zip(versions, versions[1:]):
        if parse_version(current) <= parse_version(previous):
            raise PlanError(
                f"Version path must be strictly increasing: {previous} -> {current}"
            )
    parse_version(versions[0])
    return versions


def java_requirement(version: str) -> Optional[int]:
    return JAVA_REQUIREMENTS.get(parse_version(version)[0])


def compute_steps(path: Sequence[str], current: str, target: str) -> List[str]:
    """
    Releases strictly after `current` up to and including `target`.

    Raises:
        PlanError: If either version is not on the path, or current is not before target
    """
    versions = validate_version_path(path)
    if current not in versions:
        raise PlanError(f"Current version {current} is not in the migration path")
    if target not in versions:
        raise PlanError(f"Target version {target} is not in the migration path")

    start, end = versions.index(current), versions.index(target)
    if start >= end:
        raise PlanError(f"Current version {current} is not before target version {target}")
    return versions[start + 1 : end + 1]


def build_plan(
    current: str, target: str, path: Sequence[str] = DEFAULT_VERSION_PATH
) -> MigrationPlan:
    return MigrationPlan(
        current_version=current,
        target_version=target,
        steps=compute_steps(path, current, target),
    )


class MigrationOrchestrator:
    """Drives a MigrationPlan through a RolloutStrategy, one durable step at a time."""

    def __init__(
        self,
        store: CheckpointStore,
        database: Optional[DatabaseAdapter] = None,
        executor: Optional[RateLimitedExecutor] = None,
        backup_enabled: bool = True,
        max_step_retries: int = 2,
        retry_base_delay: float = 5.0,
        retry_max_delay: float = 60.0,
        dry_run: bool = False,
        metrics: Optional[MigrationMetrics] = None,
        progress_callback: Optional[Callable[[float], None]] = None,
        token: Optional[CancellationToken] = None,
        report: bool = True,
        name: str = "main",
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Checkpoint store for this run
            database: Adapter used for pre-step backups
            executor: Rate-limited executor guarding database operations
            backup_enabled: Take a database backup before every step
            max_step_retries: Retries of a failed step before rolling back
            retry_base_delay: Base delay of the step retry backoff (seconds)
            retry_max_delay: Cap of the step retry backoff (seconds)
            dry_run: Log the plan without executing anything
            metrics: Optional Prometheus textfile exporter
            progress_callback: Called with the completed fraction after each step
            token: Cancellation token
            report: Print and export an end-of-run report
            name: Instance name used in logs and reports
        """
        if backup_enabled and database is None:
            raise ValueError("A database adapter is required when backups are enabled")
        self.store = store
        self.database = database
        self.executor = executor
        self.backup_enabled = backup_enabled
        self.max_step_retries = max(0, max_step_retries)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.dry_run = dry_run
        self.metrics = metrics
        self.progress_callback = progress_callback
        self.token = token or CancellationToken()
        self.report = report
        self.name = name

        self.checkpoint: Optional[Checkpoint] = None
        self.results: List[StepResult] = []
        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self.stats = {"total": 0, "completed": 0, "skipped": 0, "failed": 0, "retries": 0}

    # Resume support

    def can_resume(self, plan: Optional[MigrationPlan] = None) -> bool:
        """True if a resumable checkpoint exists (for `plan`, if given)."""
        checkpoint = self.store.load()
        if checkpoint is None or not checkpoint.resumable:
            return False
        if not checkpoint.last_successful_step:
            return False
        return plan is None or checkpoint.matches(plan)

    def remaining_steps(self, plan: MigrationPlan) -> List[str]:
        """Steps still to run: those after the last successful step when resumable."""
        if not self.can_resume(plan):
            checkpoint = self.store.load()
            if checkpoint is not None and checkpoint.matches(plan) and checkpoint.all_done(plan.steps):
                return []
            return list(plan.steps)
        return self.store.load().remaining_steps(plan.steps)

    def resume(self, plan: MigrationPlan, strategy: RolloutStrategy) -> List[StepResult]:
        """
        Continue an interrupted run from its checkpoint.

        Raises:
            PlanError: If there is no resumable checkpoint for this plan
        """
        if not self.can_resume(plan):
            raise PlanError(
                f"No resumable checkpoint for {plan.current_version} -> {plan.target_version}"
            )
        return self.run(plan, strategy)

    # Checkpoint helpers

    def _save(self) -> None:
        self.store.save(self.checkpoint)

    def _mark(self, step: str, status: StepStatus) -> None:
        self.checkpoint.step_status[step] = status
        self._save()
        if self.metrics is not None:
            self.metrics.set_step(step, status)

    def _on_stage(self, step: str, stage: str) -> None:
        self.checkpoint.stages[step] = stage
        self._save()
        if self.metrics is not None:
            self.metrics.set_stage(step, stage)

    def _report_progress(self, plan: MigrationPlan) -> None:
        done = sum(1 for s in plan.steps if self.checkpoint.status_of(s) == StepStatus.DONE)
        fraction = done / plan.total_steps
        if self.progress_callback is not None:
            self.progress_callback(fraction)
        if self.metrics is not None:
            self.metrics.set_progress(fraction, instance=self.name)

    def _load_checkpoint(self, plan: MigrationPlan, strategy: RolloutStrategy, fresh: bool) -> Checkpoint:
        checkpoint = self.store.load()
        if checkpoint is not None and fresh:
            logger.info("Fresh start requested, discarding previous checkpoint")
            self.store.clear()
            checkpoint = None
        if checkpoint is not None and not checkpoint.matches(plan):
            logger.warning(
                f"Checkpoint is for {checkpoint.current_version} -> {checkpoint.target_version}, "
                f"starting fresh"
            )
            checkpoint = None
        if checkpoint is None:
            checkpoint = Checkpoint.for_plan(plan, strategy.name)
            self.store.save(checkpoint)
        elif checkpoint.last_successful_step:
            logger.info(f"Resuming after last successful step: {checkpoint.last_successful_step}")
        return checkpoint

    def _adopt_last_successful_step(self, plan: MigrationPlan) -> None:
        """Mark every step up to `last_successful_step` DONE on a resumable checkpoint."""
        checkpoint = self.checkpoint
        if not checkpoint.resumable or checkpoint.last_successful_step not in plan.steps:
            return
        done = plan.steps[: plan.steps.index(checkpoint.last_successful_step) + 1]
        pending = [s for s in done if checkpoint.status_of(s) != StepStatus.DONE]
        if not pending:
            return
        for step in pending:
            checkpoint.step_status[step] = StepStatus.DONE
            checkpoint.stages.pop(step, None)
        logger.info(f"Treating {', '.join(pending)} as done (last successful step)")
        self._save()

    # Main loop

    def run(
        self,
        plan: MigrationPlan,
        strategy: RolloutStrategy,
        stop_at: Optional[str] = None,
        fresh: bool = False,
    ) -> List[StepResult]:
        """
        Execute the plan.

        Args:
            plan: Migration plan
            strategy: Rollout strategy used for every step
            stop_at: Stop after this step (inclusive)
            fresh: Discard any existing checkpoint first

        Returns:
            Per-step results of this run

        Raises:
            MigrationFailed: A step failed and was rolled back
            RollbackError: A step failed and its rollback failed too
            PlanError: If the plan is empty or `stop_at` is not one of its steps
        """
        if not plan.steps:
            raise PlanError("Migration plan has no steps")
        steps = list(plan.steps)
        if stop_at is not None:
            if stop_at not in steps:
                raise PlanError(f"Stop version {stop_at} is not a step of this plan")
            steps = steps[: steps.index(stop_at) + 1]

        self.run_start_time = time.time()
        self.results = []
        self._print_banner(plan, strategy, steps)

        if self.dry_run:
            for step in steps:
                java = java_requirement(step)
                logger.info(f"DRY RUN: Would migrate to {step} (Java {java or '?'})")
                self.results.append(StepResult(step=step, status="dry_run"))
            self._finish()
            return self.results

        self.checkpoint = self._load_checkpoint(plan, strategy, fresh)
        self._adopt_last_successful_step(plan)
        if self.checkpoint.all_done(plan.steps):
            logger.info(f"✓ Migration to {plan.target_version} already complete, nothing to do")
            return self.results

        strategy.set_stage_listener(self._on_stage)
        strategy.begin(plan, self.checkpoint.last_successful_step)

        try:
            for step in steps:
                self.stats["total"] += 1
                if self.checkpoint.status_of(step) == StepStatus.DONE:
                    logger.info(f"Skipping {step} (already done)")
                    self.stats["skipped"] += 1
                    self.results.append(StepResult(step=step, status="skipped"))
                    continue
                self._run_step(plan, step, strategy)
                self._report_progress(plan)
        finally:
            strategy.set_stage_listener(None)

        if self.checkpoint.all_done(plan.steps):
            self.checkpoint.resumable = False
            self.checkpoint.current_step = None
            self._save()
            if self.metrics is not None:
                self.metrics.mark_success()
            logger.info(f"✓ Migration to {plan.target_version} completed successfully")

        self._finish()
        return self.results

    def _backup(self, step: str) -> str:
        label = f"{BACKUP_PREFIX}{step}"
        if self.executor is None:
            return self.database.backup(label)
        return self.executor.execute(
            lambda: self.database.backup(label), description=f"backup before {step}"
        )

    def _attempt(self, step: str, strategy: RolloutStrategy) -> None:
        self.checkpoint.current_step = step
        self._mark(step, StepStatus.IN_PROGRESS)

        stage = self.checkpoint.stages.get(step)
        if self.backup_enabled and not stage_reached(stage, "backup_done"):
            logger.info(f"Creating backup before {step}...")
            self.checkpoint.last_backup = self._backup(step)
            logger.info(f"✓ Backup created: {self.checkpoint.last_backup}")
            self._on_stage(step, "backup_done")
            stage = "backup_done"

        strategy.execute_step(step, resume_stage=stage)

    def _run_step(self, plan: MigrationPlan, step: str, strategy: RolloutStrategy) -> None:
        index = plan.steps.index(step) + 1
        java = java_requirement(step)
        logger.info("=" * 70)
        logger.info(f"Step {index}/{plan.total_steps}: Keycloak {step} (Java {java or '?'})")
        logger.info("=" * 70)

        result = StepResult(step=step, status="failed", start_time=time.time())
        self.results.append(result)
        max_attempts = self.max_step_retries + 1

        while True:
            result.attempts += 1
            try:
                self._attempt(step, strategy)
            except RETRYABLE_ERRORS as e:
                self._record_failure(step, e)
                if result.attempts >= max_attempts:
                    logger.error(f"Step {step} failed after {result.attempts} attempts: {e}")
                    self._fail(step, strategy, e, result)
                delay = backoff_delay(
                    result.attempts - 1, self.retry_base_delay, 2.0, self.retry_max_delay
                )
                logger.warning(
                    f"Step {step} failed (attempt {result.attempts}/{max_attempts}): {e}, "
                    f"retrying in {delay:.0f}s"
                )
                self.stats["retries"] += 1
                try:
                    self.token.sleep(delay)
                except MigrationCancelled as cancelled:
                    self._fail(step, strategy, cancelled, result)
                continue
            except FATAL_ERRORS as e:
                self._record_failure(step, e)
                self._fail(step, strategy, e, result)
            except RollbackError:
                raise
            except MigrationError as e:
                self._record_failure(step, e)
                self._fail(step, strategy, e, result)
            except Exception as e:
                wrapped = StepExecutionError(f"Unexpected error in step {step}: {e}", step=step)
                wrapped.__cause__ = e
                self._record_failure(step, wrapped)
                self._fail(step, strategy, wrapped, result)
            break

        self.checkpoint.last_successful_step = step
        self.checkpoint.resumable = True
        self.checkpoint.stages.pop(step, None)
        self._mark(step, StepStatus.DONE)

        result.status = "success"
        result.end_time = time.time()
        result.duration_seconds = result.end_time - result.start_time
        result.error_message = None
        self.stats["completed"] += 1
        logger.info(f"✓ Step {step} completed in {self._format_duration(result.duration_seconds)}")

    def _record_failure(self, step: str, error: BaseException) -> None:
        self._mark(step, StepStatus.FAILED)
        if self.metrics is not None:
            self.metrics.record_error(type(error).__name__)

    def _fail(
        self, step: str, strategy: RolloutStrategy, error: BaseException, result: StepResult
    ) -> None:
        """Roll the step back through the strategy and raise MigrationFailed."""
        result.end_time = time.time()
        result.duration_seconds = result.end_time - result.start_time
        result.error_message = str(error)
        self.stats["failed"] += 1

        backup = None
        if self.backup_enabled:
            backup = find_latest_backup(self.store.work_dir, self.checkpoint.last_backup, step)

        logger.error(f"Step {step} failed: {error}")
        try:
            strategy.rollback(step, error, backup=backup)
        except RollbackError as e:
            logger.error(f"Rollback failed for {step}: {e}")
            self._finish()
            raise

        result.rolled_back = True
        # Stages no longer describe the restored system
        self.checkpoint.stages.pop(step, None)
        self._save()

        if self.checkpoint.last_successful_step:
            remediation = (
                f"Fix the cause and re-run to resume after {self.checkpoint.last_successful_step}, "
                f"or run `rollback` to restore the last backup"
            )
        else:
            remediation = "Fix the cause and re-run, or run `rollback` to restore the last backup"
        self._finish()
        raise MigrationFailed(step, error, checkpoint=self.store.path, remediation=remediation)

    # Reporting

    def _print_banner(self, plan: MigrationPlan, strategy: RolloutStrategy, steps: List[str]):
        logger.info("=" * 70)
        logger.info(f"Keycloak Migration: {plan.current_version} -> {plan.target_version}")
        logger.info("=" * 70)
        if self.name != "main":
            logger.info(f"Instance: {self.name}")
        logger.info(f"Strategy: {strategy.describe()}")
        logger.info(f"Steps: {' -> '.join(steps)}")
        logger.info(f"Backups: {self.backup_enabled}")
        logger.info(f"Max step retries: {self.max_step_retries}")
        logger.info(f"Dry run: {self.dry_run}")
        logger.info(f"Checkpoint: {self.store.path}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

    def _finish(self) -> None:
        self.run_end_time = time.time()
        if self.report:
            self._print_report()

    def _format_duration(self, seconds: float) -> str:
        """Format duration in human-readable format."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = seconds % 60
            return f"{mins}m {secs:.0f}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            secs = seconds % 60
            return f"{hours}h {mins}m {secs:.0f}s"

    def _print_report(self):
        """Print detailed timing and status report."""
        total_duration = self.run_end_time - self.run_start_time

        logger.info("")
        logger.info("=" * 70)
        logger.info("MIGRATION REPORT")
        logger.info("=" * 70)

        logger.info("")
        logger.info("TIMING SUMMARY")
        logger.info("-" * 40)
        logger.info(
            f"Start time:      {datetime.fromtimestamp(self.run_start_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(
            f"End time:        {datetime.fromtimestamp(self.run_end_time).strftime('%Y-%m-%d %H:%M:%S')}"
        )
        logger.info(f"Total duration:  {self._format_duration(total_duration)}")

        logger.info("")
        logger.info("STATISTICS")
        logger.info("-" * 40)
        for k, v in self.stats.items():
            logger.info(f"{k:20s}: {v}")

        successful = [r for r in self.results if r.status == "success"]
        failed = [r for r in self.results if r.status == "failed"]
        dry_run = [r for r in self.results if r.status == "dry_run"]

        if successful:
            logger.info("")
            logger.info("COMPLETED STEPS")
            logger.info("-" * 40)
            logger.info(f"{'Version':<12} {'Attempts':<10} {'Duration'}")
            logger.info("-" * 70)
            for r in successful:
                duration_str = (
                    self._format_duration(r.duration_seconds)
                    if r.duration_seconds
                    else "N/A"
                )
                logger.info(f"{r.step:<12} {r.attempts:<10} {duration_str}")

            times = [r.duration_seconds for r in successful if r.duration_seconds]
            if len(times) > 1:
                slowest = max(successful, key=lambda r: r.duration_seconds or 0)
                logger.info("-" * 70)
                logger.info(f"Average step time: {self._format_duration(sum(times) / len(times))}")
                logger.info(
                    f"Slowest step:      {self._format_duration(slowest.duration_seconds)} ({slowest.step})"
                )

        if failed:
            logger.info("")
            logger.info("FAILED STEPS")
            logger.info("-" * 40)
            logger.info(f"{'Version':<12} {'Rolled Back':<12} {'Error'}")
            logger.info("-" * 70)
            for r in failed:
                rb = "Yes" if r.rolled_back else "No"
                error = (
                    (r.error_message[:50] + "...")
                    if r.error_message and len(r.error_message) > 50
                    else (r.error_message or "Unknown")
                )
                logger.info(f"{r.step:<12} {rb:<12} {error}")

        if dry_run:
            logger.info("")
            logger.info("DRY RUN - WOULD MIGRATE")
            logger.info("-" * 40)
            for r in dry_run:
                logger.info(f"  {r.step}")

        logger.info("")
        logger.info("=" * 70)

        self._export_results_json()

    def _export_results_json(self):
        """Export results to JSON file next to the checkpoint."""
        report: Dict = {
            "instance": self.name,
            "dry_run": self.dry_run,
            "start_time": datetime.fromtimestamp(self.run_start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.run_end_time).isoformat(),
            "total_duration_seconds": self.run_end_time - self.run_start_time,
            "statistics": self.stats,
            "checkpoint": self.store.path,
            "results": [
                {
                    "step": r.step,
                    "status": r.status,
                    "start_time": (
                        datetime.fromtimestamp(r.start_time).isoformat()
                        if r.start_time
                        else None
                    ),
                    "end_time": (
                        datetime.fromtimestamp(r.end_time).isoformat()
                        if r.end_time
                        else None
                    ),
                    "duration_seconds": r.duration_seconds,
                    "attempts": r.attempts,
                    "error_message": r.error_message,
                    "rolled_back": r.rolled_back,
                }
                for r in self.results
            ],
        }

        os.makedirs(self.store.work_dir, exist_ok=True)
        filename = os.path.join(
            self.store.work_dir,
            f"migration-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json",
        )
        with open(filename, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
