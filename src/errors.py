"""
Exception taxonomy for the Keycloak migration engine.
"""

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration engine errors."""


class ProfileError(MigrationError):
    """Raised when a migration profile is missing or invalid."""


class PlanError(MigrationError):
    """Raised when current/target versions cannot be resolved in the version path."""


class StepExecutionError(MigrationError):
    """A step's underlying operation failed. Retried locally before escalating."""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.step = step


class GateFailure(MigrationError):
    """Validation thresholds breached, or the gate stayed inconclusive."""

    def __init__(self, message: str, verdict: Optional[str] = None):
        super().__init__(message)
        self.verdict = verdict


class MigrationTimeoutError(MigrationError):
    """A readiness, drain or health wait exceeded its bound."""


class CircuitOpenError(MigrationError):
    """Operation refused because the circuit breaker is OPEN."""


class MigrationCancelled(MigrationError):
    """An external abort was requested while the engine was waiting."""


class RollbackError(MigrationError):
    """
    The rollback path itself failed. Fatal, never retried.

    Carries the error that triggered the rollback alongside the rollback
    failure, plus the safety backup taken before the rollback (if any).
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        rollback_error: Optional[BaseException] = None,
        safety_backup: Optional[str] = None,
    ):
        super().__init__(message)
        self.original_error = original_error
        self.rollback_error = rollback_error
        self.safety_backup = safety_backup

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.original_error is not None:
            parts.append(f"original error: {self.original_error}")
        if self.rollback_error is not None:
            parts.append(f"rollback error: {self.rollback_error}")
        if self.safety_backup:
            parts.append(f"safety backup kept at: {self.safety_backup}")
        return "; ".join(parts)


class MigrationFailed(MigrationError):
    """Terminal failure of a migration run at a given step."""

    def __init__(
        self,
        step: str,
        cause: BaseException,
        checkpoint: Optional[str] = None,
        remediation: str = "",
    ):
        message = f"Migration failed at step {step}: {cause}"
        super().__init__(message)
        self.step = step
        self.cause = cause
        self.checkpoint = checkpoint
        self.remediation = remediation
