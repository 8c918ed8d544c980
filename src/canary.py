"""
Canary rollout: shift traffic to the new release in validated phases.

Per phase: MIGRATING -> ROUTING -> VALIDATING -> OBSERVING, then the next
phase, or ROLLED_BACK when a gate fails.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from cancellation import CancellationToken
from collaborators import DeploymentAdapter
from errors import GateFailure, MigrationError, RollbackError, StepExecutionError
from models import GateVerdict, Phase
from rollout import RolloutStrategy
from traffic import TrafficSwitcher
from validation import ValidationGate

logger = logging.getLogger(__name__)


class CanaryState(Enum):
    PENDING = "PENDING"
    MIGRATING = "MIGRATING"
    ROUTING = "ROUTING"
    VALIDATING = "VALIDATING"
    OBSERVING = "OBSERVING"
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"
    FAILED = "FAILED"


class CanaryStrategy(RolloutStrategy):
    """Phased traffic shift from the stable backend to the canary backend."""

    name = "canary"

    def __init__(
        self,
        phases: List[Phase],
        deployment: DeploymentAdapter,
        switcher: TrafficSwitcher,
        gate: ValidationGate,
        stable_backend: str = "stable",
        canary_backend: str = "canary",
        auto_rollback: bool = True,
        validation_timeout: float = 600.0,
        check_interval: float = 30.0,
        token: Optional[CancellationToken] = None,
    ):
        """
        Set up the canary rollout.

        Args:
            phases: Ordered phases, the last one at 100%
            deployment: Runtime adapter migrating canary replicas
            switcher: Traffic router
            gate: Validation gate (thresholds are replaced per phase)
            stable_backend: Backend serving the current release
            canary_backend: Backend serving the new release
            auto_rollback: Revert traffic automatically on failure
            validation_timeout: Max wait for a conclusive verdict per phase
            check_interval: Seconds between gate polls
            token: Cancellation token
        """
        super().__init__(token)
        if not phases:
            raise ValueError("Canary rollout requires at least one phase")
        self.phases = phases
        self.deployment = deployment
        self.switcher = switcher
        self.gate = gate
        self.stable_backend = stable_backend
        self.canary_backend = canary_backend
        self.auto_rollback = auto_rollback
        self.validation_timeout = validation_timeout
        self.check_interval = check_interval

        self.state = CanaryState.PENDING
        self.phase_index = -1
        self.history: List[Tuple[str, str, str]] = []

    def describe(self) -> str:
        pcts = " -> ".join(f"{p.traffic_percentage}%" for p in self.phases)
        return f"canary ({pcts})"

    def _transition(self, state: CanaryState) -> None:
        phase = self.phases[self.phase_index].name if self.phase_index >= 0 else "-"
        self.state = state
        self.history.append((datetime.now().isoformat(), phase, state.value))
        logger.debug(f"Canary phase {phase}: {state.value}")

    def _route(self, percentage: int) -> None:
        self.switcher.set_weights(
            self.stable_backend, 100 - percentage, self.canary_backend, percentage
        )

    def _execute_phase(self, step: str, index: int, phase: Phase) -> None:
        self.phase_index = index
        total = len(self.phases)
        logger.info("=" * 70)
        logger.info(
            f"Canary Phase {index + 1}/{total}: {phase.name} "
            f"({phase.traffic_percentage}%, {phase.replica_count} replicas)"
        )
        logger.info("=" * 70)

        self._transition(CanaryState.MIGRATING)
        logger.info(f"Step 1/4: Migrating {phase.replica_count} replica(s) to {step}...")
        try:
            self.deployment.migrate_replicas(step, phase.replica_count)
        except MigrationError:
            raise
        except Exception as e:
            raise StepExecutionError(
                f"Canary replica migration failed in phase {phase.name}: {e}", step=step
            ) from e

        self._transition(CanaryState.ROUTING)
        logger.info(f"Step 2/4: Routing {phase.traffic_percentage}% traffic to {step}...")
        self._route(phase.traffic_percentage)

        self._transition(CanaryState.VALIDATING)
        logger.info("Step 3/4: Validation...")
        gate = self.gate.for_phase(phase.validation)
        verdict = gate.wait_conclusive(self.validation_timeout, self.check_interval)
        if verdict != GateVerdict.PASS:
            raise GateFailure(
                f"Canary phase {phase.name} validation {verdict.value}",
                verdict=verdict.value,
            )

        self._transition(CanaryState.OBSERVING)
        logger.info(f"Step 4/4: Observation period ({phase.duration:.0f} seconds)...")
        verdict = gate.observe(phase.duration, self.check_interval)
        if verdict != GateVerdict.PASS:
            raise GateFailure(
                f"Canary phase {phase.name} observation {verdict.value}",
                verdict=verdict.value,
            )

        logger.info(f"✓ Phase {phase.name} completed successfully")

    def execute_step(self, step: str, resume_stage: Optional[str] = None) -> None:
        logger.info(
            f"Canary rollout to {step}: {len(self.phases)} phases "
            f"({self.stable_backend} -> {self.canary_backend})"
        )
        self.phase_index = -1
        for index, phase in enumerate(self.phases):
            self._execute_phase(step, index, phase)

        self._transition(CanaryState.COMPLETED)
        logger.info(f"✓ Canary migration to {step} completed successfully")

        # The canary now carries all traffic and is the stable side of the next hop
        self.stable_backend, self.canary_backend = self.canary_backend, self.stable_backend

    def rollback_weights(self) -> Tuple[int, int]:
        """(stable, canary) weights to restore for the current phase."""
        if self.phase_index <= 0:
            return 100, 0
        previous = self.phases[self.phase_index - 1].traffic_percentage
        return 100 - previous, previous

    def rollback(
        self, step: str, error: BaseException, backup: Optional[str] = None
    ) -> None:
        if not self.auto_rollback:
            self._transition(CanaryState.FAILED)
            current = self.switcher.current_weights()
            logger.error(
                f"Canary failed at {step}: {error}. Auto-rollback disabled, "
                f"traffic left as is for manual handling"
                + (f" ({current.as_dict()})" if current else "")
            )
            return

        stable, canary = self.rollback_weights()
        logger.warning(
            f"Auto-rollback enabled, reverting traffic to {self.stable_backend} "
            f"({stable}%) / {self.canary_backend} ({canary}%)"
        )
        try:
            self.switcher.set_weights(self.stable_backend, stable, self.canary_backend, canary)
        except Exception as e:
            self._transition(CanaryState.FAILED)
            raise RollbackError(
                "Canary traffic rollback failed", original_error=error, rollback_error=e
            ) from e
        self._transition(CanaryState.ROLLED_BACK)
        logger.info(f"✓ Canary rolled back for {step}")
