"""
Rollout strategy contract and the in-place strategy.

A strategy knows how to move one migration step (one target release) onto
the running system and how to undo it. The orchestrator owns the step
loop, the checkpoint and retries; strategies only report intra-step
stages through a listener.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from cancellation import CancellationToken
from checkpoint import stage_reached
from collaborators import DeploymentAdapter
from errors import (
    GateFailure,
    MigrationError,
    MigrationTimeoutError,
    RollbackError,
    StepExecutionError,
)
from models import GateVerdict, MigrationPlan, RolloutOutcome
from rollback import MigrationRollback

logger = logging.getLogger(__name__)

StageListener = Callable[[str, str], None]


class RolloutStrategy(ABC):
    """Base class for rollout executors."""

    name = "base"

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self._stage_listener: Optional[StageListener] = None

    def set_stage_listener(self, listener: Optional[StageListener]) -> None:
        self._stage_listener = listener

    def _record_stage(self, step: str, stage: str) -> None:
        logger.info(f"Checkpoint: {step} -> {stage}")
        if self._stage_listener is not None:
            self._stage_listener(step, stage)

    @abstractmethod
    def execute_step(self, step: str, resume_stage: Optional[str] = None) -> None:
        """
        Move the system to release `step`.

        Raises:
            StepExecutionError, GateFailure, MigrationTimeoutError,
            CircuitOpenError, MigrationCancelled
        """

    @abstractmethod
    def rollback(
        self, step: str, error: BaseException, backup: Optional[str] = None
    ) -> None:
        """
        Undo a failed step.

        Raises:
            RollbackError: If the undo itself failed
        """

    def describe(self) -> str:
        return self.name

    def begin(self, plan: MigrationPlan, last_done: Optional[str] = None) -> None:
        """Called once before the first step of a run."""

    def execute_phase_set(self, plan: MigrationPlan) -> RolloutOutcome:
        """
        Drive every step of a plan without checkpointing.

        On the first failing step the strategy's rollback runs and the
        outcome reports the failure.
        """
        outcome = RolloutOutcome(success=True)
        for step in plan.steps:
            try:
                self.execute_step(step)
            except RollbackError as e:
                outcome.success = False
                outcome.failed_step = step
                outcome.error_message = str(e)
                return outcome
            except MigrationError as e:
                logger.error(f"Step {step} failed: {e}")
                outcome.success = False
                outcome.failed_step = step
                outcome.error_message = str(e)
                try:
                    self.rollback(step, e)
                except RollbackError as rb:
                    outcome.error_message = str(rb)
                return outcome
            outcome.completed_steps.append(step)
        return outcome


class InPlaceStrategy(RolloutStrategy):
    """
    Stop, install, start and verify a single server installation.

    Stages are recorded as they complete so an interrupted step resumes
    after the last completed stage.
    """

    name = "inplace"

    def __init__(
        self,
        deployment: DeploymentAdapter,
        rollback_handler: Optional[MigrationRollback] = None,
        run_tests: bool = True,
        migration_timeout: float = 1800.0,
        poll_interval: float = 10.0,
        health_retries: int = 5,
        health_interval: float = 10.0,
        token: Optional[CancellationToken] = None,
    ):
        super().__init__(token)
        self.deployment = deployment
        self.rollback_handler = rollback_handler
        self.run_tests = run_tests
        self.migration_timeout = migration_timeout
        self.poll_interval = poll_interval
        self.health_retries = health_retries
        self.health_interval = health_interval
        self.previous_version: Optional[str] = None

    def begin(self, plan: MigrationPlan, last_done: Optional[str] = None) -> None:
        self.previous_version = last_done or plan.current_version

    def _call(self, description: str, operation: Callable[[], object], step: str):
        try:
            return operation()
        except MigrationError:
            raise
        except Exception as e:
            raise StepExecutionError(f"{description} failed for {step}: {e}", step=step) from e

    def _wait_migrated(self, step: str) -> None:
        """Bounded poll until the server reports its own migration finished."""
        elapsed = 0.0
        while True:
            done = self._call(
                "Migration status check",
                lambda: self.deployment.migration_complete(step),
                step,
            )
            if done:
                logger.info(f"✓ Keycloak {step} database migration finished")
                return
            if elapsed >= self.migration_timeout:
                raise MigrationTimeoutError(
                    f"Keycloak {step} did not finish migrating within "
                    f"{self.migration_timeout:.0f}s"
                )
            wait = min(self.poll_interval, self.migration_timeout - elapsed)
            self.token.sleep(wait)
            elapsed += wait

    def _verify_health(self, step: str) -> None:
        for attempt in range(1, self.health_retries + 1):
            if self._call("Health check", lambda: self.deployment.health_check(step), step):
                logger.info(f"✓ Keycloak {step} is healthy")
                return
            logger.warning(f"Health check attempt {attempt}/{self.health_retries} failed")
            if attempt < self.health_retries:
                self.token.sleep(self.health_interval)
        raise StepExecutionError(f"Health check failed for Keycloak {step}", step=step)

    def execute_step(self, step: str, resume_stage: Optional[str] = None) -> None:
        if resume_stage:
            logger.warning(f"Resuming step for {step} from checkpoint: {resume_stage}")

        if not stage_reached(resume_stage, "stopped"):
            self._call("Stop", lambda: self.deployment.stop(self.previous_version or step), step)
            self._record_stage(step, "stopped")
        else:
            logger.info("Skipping stop (already done)")

        if not stage_reached(resume_stage, "installed"):
            logger.info(f"Installing Keycloak {step}...")
            self._call("Install", lambda: self.deployment.install(step), step)
            self._record_stage(step, "installed")
        else:
            logger.info("Skipping install (already done)")

        if not stage_reached(resume_stage, "started"):
            self._call("Start", lambda: self.deployment.start(step), step)
            self._record_stage(step, "started")
        else:
            logger.info("Skipping start (already done)")

        if not stage_reached(resume_stage, "migrated"):
            self._wait_migrated(step)
            self._record_stage(step, "migrated")

        if not stage_reached(resume_stage, "health_ok"):
            self._verify_health(step)
            self._record_stage(step, "health_ok")
        else:
            logger.info("Skipping health check (already passed)")

        if self.run_tests and not stage_reached(resume_stage, "tests_ok"):
            if not self._call("Smoke tests", lambda: self.deployment.smoke_test(step), step):
                raise GateFailure(
                    f"Smoke tests failed for version {step}", verdict=GateVerdict.FAIL.value
                )
            self._record_stage(step, "tests_ok")

        self.previous_version = step
        logger.info(f"✓ Migration to {step} completed successfully")

    def rollback(
        self, step: str, error: BaseException, backup: Optional[str] = None
    ) -> None:
        if self.rollback_handler is None:
            logger.error(f"No rollback handler configured, {step} left as is for manual recovery")
            return
        self.rollback_handler.restore(
            backup,
            original_error=error,
            running_version=step,
            restart_version=self.previous_version,
        )
