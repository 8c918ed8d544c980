"""
Unit tests for CLI module.
"""

import os
import signal
import tempfile
import unittest
from unittest.mock import patch

from checkpoint import Checkpoint, CheckpointStore
from cli import build_parser, main
from config import MigrationProfile
from errors import MigrationFailed, ProfileError, RollbackError, StepExecutionError
from models import StepStatus
from orchestrator import build_plan
from progress import MigrationMetrics


def _profile(work_dir, **migration):
    settings = {"current_version": "16.1.1", "target_version": "26.0.7"}
    settings.update(migration)
    return MigrationProfile.from_dict(
        "prod",
        {
            "migration": settings,
            "work_dir": work_dir,
            "hooks": {"db_backup": "pg_dump -f {path}", "db_restore": "pg_restore {path}"},
        },
    )


class TestParser(unittest.TestCase):
    """Test CLI argument parsing."""

    def test_migrate_options(self):
        args = build_parser().parse_args(
            [
                "migrate",
                "--profile",
                "prod",
                "--start-from",
                "17.0.1",
                "--stop-at",
                "25.0.6",
                "--monitor",
                "--skip-tests",
                "--dry-run",
                "--fresh",
                "--verbose",
            ]
        )

        self.assertEqual(args.command, "migrate")
        self.assertEqual(args.profile, "prod")
        self.assertEqual(args.profile_dir, "profiles")
        self.assertEqual(args.start_from, "17.0.1")
        self.assertEqual(args.stop_at, "25.0.6")
        self.assertTrue(args.monitor)
        self.assertTrue(args.skip_tests)
        self.assertTrue(args.dry_run)
        self.assertTrue(args.fresh)
        self.assertTrue(args.verbose)

    def test_rollback_version_optional(self):
        parser = build_parser()

        self.assertIsNone(parser.parse_args(["rollback", "--profile", "prod"]).version)
        args = parser.parse_args(["rollback", "22.0.5", "--profile", "prod", "--force"])
        self.assertEqual(args.version, "22.0.5")
        self.assertTrue(args.force)

    def test_migrate_step_requires_version(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args(["migrate-step", "--profile", "prod"])

    def test_profile_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args(["migrate"])

    def test_command_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])


class TestMain(unittest.TestCase):
    """Test command dispatch and exit codes."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.work_dir = self.tmp.name
        self.previous_handler = signal.getsignal(signal.SIGINT)

    def tearDown(self):
        signal.signal(signal.SIGINT, self.previous_handler)
        self.tmp.cleanup()

    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_missing_profile_returns_1(self, mock_load, mock_setup_logging):
        mock_load.side_effect = ProfileError("Profile not found: prod")

        self.assertEqual(main(["plan", "--profile", "prod"]), 1)

    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_log_file_per_command(self, mock_load, mock_setup_logging):
        mock_load.side_effect = ProfileError("missing")

        main(["migrate", "--profile", "prod", "--verbose"])
        self.assertEqual(mock_setup_logging.call_args[1]["log_file"], "keycloak-migration.log")
        self.assertTrue(mock_setup_logging.call_args[1]["verbose"])

        main(["rollback", "--profile", "prod", "--force"])
        self.assertEqual(mock_setup_logging.call_args[1]["log_file"], "keycloak-rollback.log")

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_migrate_runs_plan(self, mock_load, mock_setup_logging, mock_orch_class, mock_build):
        mock_load.return_value = _profile(self.work_dir)
        orchestrator = mock_orch_class.return_value

        result = main(["migrate", "--profile", "prod", "--stop-at", "22.0.5", "--fresh"])

        self.assertEqual(result, 0)
        plan, strategy = orchestrator.run.call_args[0]
        self.assertEqual(plan.steps, ["17.0.1", "22.0.5", "25.0.6", "26.0.7"])
        self.assertIs(strategy, mock_build.return_value)
        self.assertEqual(orchestrator.run.call_args[1], {"stop_at": "22.0.5", "fresh": True})
        self.assertIsNone(mock_orch_class.call_args[1]["metrics"])
        self.assertEqual(signal.getsignal(signal.SIGINT), self.previous_handler)

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_migrate_start_from_and_skip_tests(
        self, mock_load, mock_setup_logging, mock_orch_class, mock_build
    ):
        mock_load.return_value = _profile(self.work_dir)

        main(["migrate", "--profile", "prod", "--start-from", "22.0.5", "--skip-tests"])

        plan = mock_orch_class.return_value.run.call_args[0][0]
        self.assertEqual(plan.current_version, "22.0.5")
        self.assertEqual(plan.steps, ["25.0.6", "26.0.7"])
        self.assertFalse(mock_build.call_args[1]["run_tests"])

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_monitor_enables_metrics(self, mock_load, mock_setup_logging, mock_orch_class, mock_build):
        mock_load.return_value = _profile(self.work_dir)

        main(["migrate", "--profile", "prod", "--monitor"])

        metrics = mock_orch_class.call_args[1]["metrics"]
        self.assertIsInstance(metrics, MigrationMetrics)
        self.assertEqual(metrics.path, os.path.join(self.work_dir, "keycloak_migration.prom"))
        self.assertEqual(mock_build.call_args[1]["monitor_interval"], 5.0)

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_migration_failure_returns_1(
        self, mock_load, mock_setup_logging, mock_orch_class, mock_build
    ):
        mock_load.return_value = _profile(self.work_dir)
        mock_orch_class.return_value.run.side_effect = MigrationFailed(
            "22.0.5", StepExecutionError("install failed"), "installed", "Re-run migrate to resume"
        )

        self.assertEqual(main(["migrate", "--profile", "prod"]), 1)
        self.assertEqual(signal.getsignal(signal.SIGINT), self.previous_handler)

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_rollback_failure_returns_1(
        self, mock_load, mock_setup_logging, mock_orch_class, mock_build
    ):
        mock_load.return_value = _profile(self.work_dir)
        mock_orch_class.return_value.run.side_effect = RollbackError("restore failed")

        self.assertEqual(main(["migrate", "--profile", "prod"]), 1)

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_target_off_path(self, mock_load, mock_setup_logging, mock_orch_class, mock_build):
        mock_load.return_value = _profile(self.work_dir, target_version="99.0.0")

        self.assertEqual(main(["migrate", "--profile", "prod"]), 1)
        mock_orch_class.return_value.run.assert_not_called()

    @patch("cli.build_strategy")
    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_migrate_step_builds_single_step_plan(
        self, mock_load, mock_setup_logging, mock_orch_class, mock_build
    ):
        mock_load.return_value = _profile(self.work_dir)

        result = main(["migrate-step", "22.0.5", "--profile", "prod"])

        self.assertEqual(result, 0)
        store = mock_orch_class.call_args[0][0]
        self.assertEqual(store.path, os.path.join(self.work_dir, "step_22.0.5.env"))
        plan = mock_orch_class.return_value.run.call_args[0][0]
        self.assertEqual(plan.current_version, "17.0.1")
        self.assertEqual(plan.steps, ["22.0.5"])

    @patch("strategies.worker_runner")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_parallel_migrate_leaves_backups_to_workers(
        self, mock_load, mock_setup_logging, mock_worker_runner
    ):
        mock_load.return_value = MigrationProfile.from_dict(
            "prod",
            {
                "migration": {"current_version": "22.0.5", "target_version": "26.0.7"},
                "work_dir": self.work_dir,
                "rollout": {"type": "parallel"},
                "tenants": [{"name": "acme", "database": {"name": "acme_db"}}],
                "hooks": {
                    "db_backup": "echo {database_name} > {path}",
                    "db_restore": "pg_restore {path}",
                },
            },
        )
        calls = []
        mock_worker_runner.return_value = (
            lambda worker, step, token, progress: calls.append((worker.id, step))
        )

        result = main(["migrate", "--profile", "prod"])

        self.assertEqual(result, 0)
        self.assertEqual(calls, [("acme", "25.0.6"), ("acme", "26.0.7")])
        self.assertFalse(os.path.exists(os.path.join(self.work_dir, "backups")))

    @patch("cli.MigrationOrchestrator")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_migrate_step_rejects_bad_version(self, mock_load, mock_setup_logging, mock_orch_class):
        mock_load.return_value = _profile(self.work_dir)

        self.assertEqual(main(["migrate-step", "18.0.0", "--profile", "prod"]), 1)
        self.assertEqual(main(["migrate-step", "16.1.1", "--profile", "prod"]), 1)
        mock_orch_class.assert_not_called()

    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_plan_shows_resume_state(self, mock_load, mock_setup_logging):
        mock_load.return_value = _profile(self.work_dir)
        checkpoint = Checkpoint.for_plan(build_plan("16.1.1", "26.0.7"), "inplace")
        checkpoint.step_status["17.0.1"] = StepStatus.DONE
        checkpoint.last_successful_step = "17.0.1"
        checkpoint.resumable = True
        CheckpointStore(self.work_dir).save(checkpoint)

        with self.assertLogs("cli", level="INFO") as logs:
            result = main(["plan", "--profile", "prod"])

        self.assertEqual(result, 0)
        output = "\n".join(logs.output)
        self.assertIn("Migration Plan: 16.1.1 -> 26.0.7", output)
        self.assertIn("Resumable: next step 22.0.5", output)

    @patch("cli.MigrationRollback")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_rollback_uses_recorded_backup(self, mock_load, mock_setup_logging, mock_rollback_class):
        mock_load.return_value = _profile(self.work_dir)
        checkpoint = Checkpoint(
            current_version="16.1.1", target_version="26.0.7", strategy="inplace",
            last_backup="/backups/backup_before_22.0.5_20240101_000000.dump",
        )
        CheckpointStore(self.work_dir).save(checkpoint)
        mock_rollback_class.return_value.run.return_value = {"status": "success"}

        result = main(["rollback", "22.0.5", "--profile", "prod", "--force"])

        self.assertEqual(result, 0)
        mock_rollback_class.return_value.run.assert_called_once_with(
            recorded_backup="/backups/backup_before_22.0.5_20240101_000000.dump",
            version="22.0.5",
        )

    @patch("builtins.input", return_value="no")
    @patch("cli.MigrationRollback")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_rollback_requires_confirmation(
        self, mock_load, mock_setup_logging, mock_rollback_class, mock_input
    ):
        mock_load.return_value = _profile(self.work_dir)

        self.assertEqual(main(["rollback", "--profile", "prod"]), 1)
        mock_rollback_class.assert_not_called()

    @patch("cli.MigrationRollback")
    @patch("cli.setup_logging")
    @patch("cli.load_profile")
    def test_rollback_failure_exit_code(self, mock_load, mock_setup_logging, mock_rollback_class):
        mock_load.return_value = _profile(self.work_dir)
        mock_rollback_class.return_value.run.return_value = {"status": "failed"}

        self.assertEqual(main(["rollback", "--profile", "prod", "--dry-run"]), 1)
        self.assertTrue(mock_rollback_class.call_args[1]["dry_run"])


if __name__ == "__main__":
    unittest.main()
