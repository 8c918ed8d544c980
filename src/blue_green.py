"""
Blue-green rollout: deploy the new release next to the old one, validate
it, then switch all traffic at once.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from cancellation import CancellationToken
from collaborators import DeploymentAdapter
from errors import (
    GateFailure,
    MigrationError,
    MigrationTimeoutError,
    RollbackError,
    StepExecutionError,
)
from models import Environment, GateVerdict
from rollout import RolloutStrategy
from traffic import TrafficSwitcher
from validation import ValidationGate

logger = logging.getLogger(__name__)


class BlueGreenState(Enum):
    IDLE = "IDLE"
    DEPLOY_NEW = "DEPLOY_NEW"
    WAIT_READY = "WAIT_READY"
    VALIDATE_NEW = "VALIDATE_NEW"
    SWITCH = "SWITCH"
    COOLDOWN = "COOLDOWN"
    CLEANUP_OLD = "CLEANUP_OLD"
    KEPT_FOR_INSPECTION = "KEPT_FOR_INSPECTION"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


class BlueGreenStrategy(RolloutStrategy):
    """Two environments; the idle one receives each new release."""

    name = "blue_green"

    def __init__(
        self,
        deployment: DeploymentAdapter,
        switcher: TrafficSwitcher,
        gate: ValidationGate,
        old_environment: str = "blue",
        new_environment: str = "green",
        readiness_timeout: float = 600.0,
        poll_interval: float = 10.0,
        cooldown: float = 300.0,
        keep_old: bool = False,
        auto_cleanup: bool = True,
        run_smoke_tests: bool = True,
        token: Optional[CancellationToken] = None,
    ):
        super().__init__(token)
        self.deployment = deployment
        self.switcher = switcher
        self.gate = gate
        self.old = Environment(label="old", deployment_ref=old_environment, traffic_weight=100)
        self.new = Environment(label="new", deployment_ref=new_environment, traffic_weight=0)
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self.cooldown = cooldown
        self.keep_old = keep_old
        self.auto_cleanup = auto_cleanup
        self.run_smoke_tests = run_smoke_tests
        self.state = BlueGreenState.IDLE
        self.states: List[BlueGreenState] = []

    def describe(self) -> str:
        return f"blue_green ({self.old.deployment_ref} -> {self.new.deployment_ref})"

    def _transition(self, state: BlueGreenState) -> None:
        self.state = state
        self.states.append(state)
        logger.debug(f"Blue-green: {state.value}")

    def _call(self, description: str, operation: Callable[[], object], step: str):
        try:
            return operation()
        except MigrationError:
            raise
        except Exception as e:
            raise StepExecutionError(f"{description} failed for {step}: {e}", step=step) from e

    def _set_weights(self, old_weight: int, new_weight: int) -> None:
        self.switcher.set_weights(
            self.old.deployment_ref, old_weight, self.new.deployment_ref, new_weight
        )
        self.old.traffic_weight = old_weight
        self.new.traffic_weight = new_weight

    def _wait_ready(self, step: str) -> None:
        env = self.new.deployment_ref
        logger.info(f"Waiting for {env} to be ready (timeout: {self.readiness_timeout:.0f}s)...")
        elapsed = 0.0
        while True:
            if self._call("Readiness check", lambda: self.deployment.environment_ready(env), step):
                logger.info(f"✓ Environment {env} is ready")
                return
            if elapsed >= self.readiness_timeout:
                raise MigrationTimeoutError(
                    f"Environment {env} not ready after {self.readiness_timeout:.0f}s"
                )
            wait = min(self.poll_interval, self.readiness_timeout - elapsed)
            self.token.sleep(wait)
            elapsed += wait

    def _validate_new(self, step: str) -> None:
        env = self.new.deployment_ref
        url = self._call(
            "Health URL lookup", lambda: self.deployment.environment_health_url(env), step
        )
        if url and not self.gate.check_health_endpoint(url):
            raise GateFailure(
                f"New environment {env} failed health check", verdict=GateVerdict.FAIL.value
            )
        if self.run_smoke_tests and not self._call(
            "Smoke tests", lambda: self.deployment.smoke_test(step, env), step
        ):
            raise GateFailure(
                f"Smoke tests failed on new environment {env}", verdict=GateVerdict.FAIL.value
            )
        logger.info(f"✓ Environment {env} validated")

    def _destroy(self, env: str) -> None:
        try:
            self.deployment.destroy_environment(env)
            logger.info(f"✓ Environment {env} destroyed")
        except Exception as e:
            logger.warning(f"Could not destroy environment {env}: {e}")

    def execute_step(self, step: str, resume_stage: Optional[str] = None) -> None:
        old_env, new_env = self.old.deployment_ref, self.new.deployment_ref
        logger.info(f"Blue-Green environments: OLD={old_env}, NEW={new_env}")
        logger.info(f"Traffic router: {self.switcher.router_type}")

        self._transition(BlueGreenState.DEPLOY_NEW)
        logger.info(f"Step 1/5: Deploying new environment ({new_env}) with {step}...")
        self._call("Deploy", lambda: self.deployment.deploy_environment(new_env, step), step)

        self._transition(BlueGreenState.WAIT_READY)
        logger.info("Step 2/5: Waiting for new environment to be ready...")
        self._wait_ready(step)

        self._transition(BlueGreenState.VALIDATE_NEW)
        logger.info("Step 3/5: Validating new environment...")
        self._validate_new(step)

        self._transition(BlueGreenState.SWITCH)
        logger.info(f"Step 4/5: Switching traffic from {old_env} to {new_env}...")
        self._set_weights(0, 100)

        if self.keep_old:
            self._transition(BlueGreenState.KEPT_FOR_INSPECTION)
            logger.info("Step 5/5: Keeping old environment for manual verification")
        else:
            self._transition(BlueGreenState.COOLDOWN)
            logger.info(
                f"Step 5/5: Cleaning up old environment ({old_env}) "
                f"after {self.cooldown:.0f}s..."
            )
            self.token.sleep(self.cooldown)
            self._transition(BlueGreenState.CLEANUP_OLD)
            self._destroy(old_env)

        logger.info(f"✓ Blue-Green migration to {step} completed successfully")

        # The environment now serving traffic is the old side of the next hop
        self.old, self.new = self.new, self.old
        self.old.label, self.new.label = "old", "new"

    def rollback(
        self, step: str, error: BaseException, backup: Optional[str] = None
    ) -> None:
        logger.warning(
            f"Rolling back: all traffic to {self.old.deployment_ref}"
        )
        try:
            self._set_weights(100, 0)
        except Exception as e:
            self._transition(BlueGreenState.FAILED)
            raise RollbackError(
                "Blue-green traffic rollback failed", original_error=error, rollback_error=e
            ) from e

        if self.auto_cleanup:
            logger.warning(f"Auto-cleanup enabled, destroying new environment {self.new.deployment_ref}...")
            self._destroy(self.new.deployment_ref)

        self._transition(BlueGreenState.ROLLED_BACK)
        logger.info(f"✓ Blue-green rolled back for {step}")
