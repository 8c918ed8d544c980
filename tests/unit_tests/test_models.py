"""
Unit tests for data models and the error taxonomy.
"""

import unittest

from errors import (
    GateFailure,
    MigrationError,
    MigrationFailed,
    RollbackError,
    StepExecutionError,
)
from models import (
    MigrationPlan,
    Phase,
    PhaseValidation,
    StepResult,
    TrafficWeightAssignment,
    Worker,
    WorkerKind,
)


class TestMigrationPlan(unittest.TestCase):
    """Test MigrationPlan data model."""

    def test_total_steps(self):
        plan = MigrationPlan("16.1.1", "26.0.7", ["17.0.1", "22.0.5", "25.0.6", "26.0.7"])
        self.assertEqual(plan.total_steps, 4)

    def test_empty_plan(self):
        """Current version already at target."""
        self.assertEqual(MigrationPlan("26.0.7", "26.0.7").total_steps, 0)


class TestTrafficWeightAssignment(unittest.TestCase):
    """Test weight validation."""

    def test_valid_assignment(self):
        assignment = TrafficWeightAssignment("blue", 90, "green", 10)
        self.assertEqual(assignment.as_dict(), {"blue": 90, "green": 10})

    def test_all_or_nothing(self):
        self.assertEqual(TrafficWeightAssignment("blue", 0, "green", 100).weight_b, 100)

    def test_weights_must_sum_to_100(self):
        with self.assertRaises(ValueError):
            TrafficWeightAssignment("blue", 60, "green", 60)

    def test_weights_out_of_range(self):
        with self.assertRaises(ValueError):
            TrafficWeightAssignment("blue", 110, "green", -10)

    def test_frozen(self):
        assignment = TrafficWeightAssignment("blue", 50, "green", 50)
        with self.assertRaises(AttributeError):
            assignment.weight_a = 100


class TestDefaults(unittest.TestCase):
    """Test defaults of the smaller records."""

    def test_phase_defaults(self):
        phase = Phase("smoke", 10)
        self.assertEqual(phase.replica_count, 1)
        self.assertEqual(phase.validation, PhaseValidation())

    def test_worker_defaults(self):
        worker = Worker("acme", WorkerKind.TENANT)
        self.assertEqual(worker.progress, 0.0)
        self.assertEqual(worker.status, "pending")

    def test_step_result(self):
        result = StepResult(step="22.0.5", status="failed", error_message="Timeout", rolled_back=True)
        self.assertEqual(result.attempts, 0)
        self.assertTrue(result.rolled_back)


class TestErrors(unittest.TestCase):
    """Test the error taxonomy."""

    def test_all_errors_share_base(self):
        for error in (StepExecutionError("x"), GateFailure("x"), RollbackError("x")):
            self.assertIsInstance(error, MigrationError)

    def test_rollback_error_message_includes_both_errors(self):
        error = RollbackError(
            "Restore failed",
            original_error=GateFailure("error rate 4%"),
            rollback_error=OSError("pg_restore exited 1"),
            safety_backup="/backups/safety_before_rollback_20240101_000000.dump",
        )

        self.assertEqual(
            str(error),
            "Restore failed; original error: error rate 4%; "
            "rollback error: pg_restore exited 1; "
            "safety backup kept at: /backups/safety_before_rollback_20240101_000000.dump",
        )

    def test_rollback_error_plain(self):
        self.assertEqual(str(RollbackError("Restore failed")), "Restore failed")

    def test_migration_failed(self):
        cause = StepExecutionError("install failed", step="22.0.5")
        error = MigrationFailed("22.0.5", cause, checkpoint="installed", remediation="resume")

        self.assertEqual(str(error), "Migration failed at step 22.0.5: install failed")
        self.assertIs(error.cause, cause)
        self.assertEqual(error.checkpoint, "installed")


if __name__ == "__main__":
    unittest.main()
