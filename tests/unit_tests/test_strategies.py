"""
Unit tests for wiring a profile into collaborators and strategies.
"""

import os
import tempfile
import unittest
from unittest.mock import patch

from blue_green import BlueGreenStrategy
from canary import CanaryStrategy
from cancellation import CancellationToken
from clients import PrometheusClient
from config import MigrationProfile
from models import Worker, WorkerKind
from orchestrator import build_plan
from parallel import ParallelRollout
from ratelimit import AdaptiveRateLimiter, TokenBucket
from rolling import RollingStrategy
from rollout import InPlaceStrategy
from strategies import (
    build_executor,
    build_gate,
    build_hooks,
    build_step_strategy,
    build_strategy,
    worker_runner,
)
from traffic import IstioTrafficSwitcher


def _profile(work_dir, **sections):
    data = {
        "migration": {"current_version": "22.0.5", "target_version": "26.0.7"},
        "work_dir": work_dir,
        "hooks": {"db_backup": "pg_dump -f {path}", "db_restore": "pg_restore {path}"},
    }
    for key, value in sections.items():
        if key == "migration":
            data["migration"].update(value)
        else:
            data[key] = value
    return MigrationProfile.from_dict("prod", data)


class TestBuilders(unittest.TestCase):
    """Test the collaborator and guard builders."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.work_dir = self.tmp.name
        self.token = CancellationToken()

    def tearDown(self):
        self.tmp.cleanup()

    def test_build_hooks(self):
        profile = _profile(self.work_dir)

        hooks = build_hooks(profile, self.work_dir, {"tenant": "acme"}, dry_run=True)

        self.assertEqual(hooks.backup_dir, os.path.join(self.work_dir, "backups"))
        self.assertEqual(
            hooks.variables, {"work_dir": self.work_dir, "profile": "prod", "tenant": "acme"}
        )
        self.assertTrue(hooks.dry_run)
        self.assertEqual(hooks.timeout, 1800)

    def test_build_executor(self):
        profile = _profile(self.work_dir, rate_limit={"circuit_threshold": 4, "max_retries": 2})

        executor = build_executor(profile, build_hooks(profile, self.work_dir), self.token)

        self.assertIsInstance(executor.limiter, TokenBucket)
        self.assertEqual(executor.breaker.threshold, 4)
        self.assertEqual(executor.max_retries, 2)

    def test_adaptive_executor_samples_db_load(self):
        profile = _profile(
            self.work_dir,
            rate_limit={"strategy": "adaptive"},
            hooks={"db_load": "psql -tAc 'select 42'"},
        )
        hooks = build_hooks(profile, self.work_dir)

        executor = build_executor(profile, hooks, self.token)

        self.assertIsInstance(executor.limiter, AdaptiveRateLimiter)
        self.assertEqual(executor.limiter.load_sampler, hooks.load_percentage)

    def test_gate_without_metrics_source(self):
        gate = build_gate(_profile(self.work_dir), self.token)
        self.assertIsNone(gate.metrics)

    def test_gate_with_prometheus(self):
        profile = _profile(
            self.work_dir,
            validation={"prometheus_url": "http://prometheus:9090", "window": "10m",
                        "labels": {"namespace": "iam"}},
        )

        gate = build_gate(profile, self.token)

        self.assertIsInstance(gate.metrics, PrometheusClient)
        self.assertEqual(gate.window, "10m")
        self.assertEqual(gate.labels, {"namespace": "iam"})


class TestStrategyFactory(unittest.TestCase):
    """Test strategy selection from the profile."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.work_dir = self.tmp.name
        self.token = CancellationToken()
        self.plan = build_plan("22.0.5", "26.0.7")

    def tearDown(self):
        self.tmp.cleanup()

    def _build(self, profile, **kwargs):
        hooks = build_hooks(profile, self.work_dir)
        return build_strategy(profile, self.plan, hooks, self.token, **kwargs)

    def test_inplace(self):
        strategy = self._build(_profile(self.work_dir), run_tests=False)

        self.assertIsInstance(strategy, InPlaceStrategy)
        self.assertFalse(strategy.run_tests)
        self.assertIsNotNone(strategy.rollback_handler)

    def test_inplace_without_auto_rollback(self):
        strategy = self._build(_profile(self.work_dir, migration={"auto_rollback": False}))
        self.assertIsNone(strategy.rollback_handler)

    def test_canary(self):
        profile = _profile(
            self.work_dir,
            migration={"strategy": "canary"},
            canary={
                "traffic_router": {"type": "istio", "virtual_service": "keycloak-vs"},
                "phases": [{"percentage": 25}, {"percentage": 100}],
            },
            validation={"prometheus_url": "http://prometheus:9090", "interval": 15},
        )

        strategy = self._build(profile)

        self.assertIsInstance(strategy, CanaryStrategy)
        self.assertIsInstance(strategy.switcher, IstioTrafficSwitcher)
        self.assertEqual(strategy.check_interval, 15)
        self.assertEqual([p.traffic_percentage for p in strategy.phases], [25, 100])

    def test_canary_auto_rollback_follows_migration_setting(self):
        profile = _profile(
            self.work_dir,
            migration={"strategy": "canary", "auto_rollback": False},
            canary={"phases": [{"percentage": 100}]},
            validation={"prometheus_url": "http://prometheus:9090"},
        )
        self.assertFalse(self._build(profile).auto_rollback)

    def test_blue_green(self):
        profile = _profile(
            self.work_dir,
            migration={"strategy": "blue_green"},
            blue_green={"old_environment": "green", "new_environment": "blue", "keep_old": True},
        )

        strategy = self._build(profile)

        self.assertIsInstance(strategy, BlueGreenStrategy)
        self.assertEqual(strategy.new.deployment_ref, "blue")
        self.assertTrue(strategy.keep_old)

    def test_rolling_update(self):
        profile = _profile(
            self.work_dir,
            migration={"strategy": "rolling_update"},
            cluster={"nodes": ["kc-1", "kc-2"]},
            rollout={"nodes_at_once": 2},
        )

        strategy = self._build(profile)

        self.assertIsInstance(strategy, RollingStrategy)
        self.assertEqual(strategy.nodes, ["kc-1", "kc-2"])
        self.assertEqual(strategy.nodes_at_once, 2)

    def test_unknown_strategy(self):
        profile = _profile(self.work_dir)
        with self.assertRaises(ValueError):
            build_step_strategy(
                profile, "big_bang", build_hooks(profile, self.work_dir), self.work_dir, self.token
            )

    def test_parallel_over_tenants(self):
        profile = _profile(
            self.work_dir,
            rollout={"type": "parallel", "max_concurrent": 3},
            tenants=["acme", {"name": "globex"}],
            cluster={"nodes": ["kc-1"]},
        )

        strategy = self._build(profile)

        self.assertIsInstance(strategy, ParallelRollout)
        self.assertEqual(strategy.instance_ids, ["acme", "globex"])
        self.assertEqual(strategy.kind, WorkerKind.TENANT)
        self.assertEqual(strategy.max_concurrent, 3)

    def test_parallel_over_nodes(self):
        profile = _profile(
            self.work_dir, rollout={"type": "parallel"}, cluster={"nodes": ["kc-1", "kc-2"]}
        )

        strategy = self._build(profile)

        self.assertEqual(strategy.kind, WorkerKind.NODE)
        self.assertEqual(strategy.instance_ids, ["kc-1", "kc-2"])


class TestWorkerRunner(unittest.TestCase):
    """Test the per-instance sub-migration."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.work_dir = self.tmp.name
        self.plan = build_plan("22.0.5", "26.0.7")

    def tearDown(self):
        self.tmp.cleanup()

    @patch("strategies.build_step_strategy")
    @patch("strategies.MigrationOrchestrator")
    def test_runs_isolated_sub_migration(self, mock_orch_class, mock_build_step):
        profile = _profile(
            self.work_dir,
            rollout={"type": "parallel"},
            tenants=[{"name": "acme", "database": {"host": "db-acme"}}],
        )
        run = worker_runner(profile, self.plan, self.work_dir)
        token = CancellationToken()
        progress = []

        run(Worker("acme", WorkerKind.TENANT), "25.0.6", token, progress.append)

        instance_dir = os.path.join(self.work_dir, "tenants", "acme")
        store = mock_orch_class.call_args[0][0]
        self.assertEqual(store.work_dir, instance_dir)
        kwargs = mock_orch_class.call_args[1]
        self.assertFalse(kwargs["report"])
        self.assertEqual(kwargs["name"], "acme")
        self.assertIs(kwargs["token"], token)
        self.assertEqual(kwargs["progress_callback"], progress.append)
        self.assertEqual(kwargs["database"].variables["database_host"], "db-acme")
        self.assertEqual(kwargs["database"].variables["tenant"], "acme")

        self.assertEqual(mock_build_step.call_args[0][1], "inplace")
        mock_orch_class.return_value.run.assert_called_once_with(
            self.plan, mock_build_step.return_value, stop_at="25.0.6"
        )

    @patch("strategies.build_step_strategy")
    @patch("strategies.MigrationOrchestrator")
    def test_nodes_upgraded_in_place(self, mock_orch_class, mock_build_step):
        profile = _profile(
            self.work_dir,
            migration={"strategy": "rolling_update"},
            rollout={"type": "parallel"},
            cluster={"nodes": ["kc-1"]},
        )
        run = worker_runner(profile, self.plan, self.work_dir)

        run(Worker("kc-1", WorkerKind.NODE), "26.0.7", CancellationToken(), lambda p: None)

        self.assertEqual(mock_build_step.call_args[0][1], "inplace")
        self.assertEqual(mock_orch_class.call_args[1]["database"].variables["node"], "kc-1")


if __name__ == "__main__":
    unittest.main()
