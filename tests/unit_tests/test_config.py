"""
Unit tests for configuration.
"""

import os
import tempfile
import unittest
from argparse import Namespace

from config import (
    MigrationProfile,
    MigratorConfig,
    RouterSettings,
    TenantSettings,
    load_profile,
    resolve_profile_path,
    validate_phases,
)
from errors import ProfileError
from models import Phase

PROFILES_DIR = os.path.join(os.path.dirname(__file__), "..", "..", "profiles")

MINIMAL = {"migration": {"current_version": "16.1.1", "target_version": "26.0.7"}}


def _profile(**sections):
    data = {"migration": dict(MINIMAL["migration"])}
    for key, value in sections.items():
        if key == "migration":
            data["migration"].update(value)
        else:
            data[key] = value
    return data


class TestMigrationProfile(unittest.TestCase):
    """Test profile parsing and validation."""

    def test_defaults(self):
        """Test default values of a minimal profile."""
        profile = MigrationProfile.from_dict("prod", MINIMAL)

        self.assertEqual(profile.name, "prod")
        self.assertEqual(profile.migration.strategy, "inplace")
        self.assertTrue(profile.migration.backup)
        self.assertEqual(profile.migration.max_step_retries, 2)
        self.assertEqual(profile.rollout.type, "sequential")
        self.assertEqual(profile.rate_limit.strategy, "token_bucket")
        self.assertEqual(profile.rate_limit.circuit_threshold, 5)
        self.assertFalse(profile.validation.configured)
        self.assertEqual(profile.work_dir, "migration_workspace")

    def test_missing_versions(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", {"migration": {"current_version": "16.1.1"}})

    def test_not_a_mapping(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", ["migration"])

    def test_unknown_strategy(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", _profile(migration={"strategy": "big_bang"}))

    def test_invalid_boolean(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", _profile(migration={"backup": "maybe"}))

    def test_string_booleans(self):
        profile = MigrationProfile.from_dict("prod", _profile(migration={"backup": "no"}))
        self.assertFalse(profile.migration.backup)

    def test_negative_number(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", _profile(migration={"max_step_retries": -1}))

    def test_non_positive_rate(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", _profile(rate_limit={"ops_per_second": 0}))

    def test_canary_requires_validation_source(self):
        data = _profile(
            migration={"strategy": "canary"},
            canary={"phases": [{"name": "all", "percentage": 100}]},
        )
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", data)

        data["validation"] = {"prometheus_url": "http://prometheus:9090"}
        profile = MigrationProfile.from_dict("prod", data)
        self.assertEqual(profile.canary.phases[0].traffic_percentage, 100)

    def test_single_validation_source(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict(
                "prod",
                _profile(
                    validation={
                        "prometheus_url": "http://prometheus:9090",
                        "managed_prometheus_project": "my-project",
                    }
                ),
            )

    def test_rolling_update_requires_nodes(self):
        data = _profile(migration={"strategy": "rolling_update"})
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", data)

        data["cluster"] = {"nodes": ["kc-1", {"name": "kc-2", "host": "10.0.0.2"}]}
        self.assertEqual(MigrationProfile.from_dict("prod", data).nodes, ["kc-1", "kc-2"])

    def test_parallel_requires_instances(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict("prod", _profile(rollout={"type": "parallel"}))

    def test_duplicate_tenants(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict(
                "prod", _profile(rollout={"type": "parallel"}, tenants=["acme", "acme"])
            )

    def test_blue_green_environments_differ(self):
        with self.assertRaises(ProfileError):
            MigrationProfile.from_dict(
                "prod", _profile(blue_green={"old_environment": "blue", "new_environment": "blue"})
            )

    def test_hooks_stringified(self):
        profile = MigrationProfile.from_dict("prod", _profile(hooks={"stop": "systemctl stop keycloak"}))
        self.assertEqual(profile.hooks, {"stop": "systemctl stop keycloak"})


class TestCanaryPhases(unittest.TestCase):
    """Test canary phase parsing and ordering rules."""

    def _canary(self, phases):
        return MigrationProfile.from_dict(
            "prod",
            _profile(
                migration={"strategy": "canary"},
                canary={"phases": phases},
                validation={"managed_prometheus_project": "my-project"},
            ),
        )

    def test_phase_keys(self):
        profile = self._canary(
            [
                {"name": "smoke", "traffic_percentage": 10, "replica_count": 2,
                 "validation": {"error_rate_threshold": 0.05}},
                {"name": "full", "percentage": 100, "replicas": 6, "duration": 60},
            ]
        )
        smoke, full = profile.canary.phases

        self.assertEqual(smoke.replica_count, 2)
        self.assertEqual(smoke.validation.error_rate_threshold, 0.05)
        self.assertEqual(smoke.validation.min_requests, 100)
        self.assertEqual(full.traffic_percentage, 100)
        self.assertEqual(full.duration, 60)

    def test_decreasing_percentage(self):
        with self.assertRaises(ProfileError):
            self._canary([{"percentage": 50}, {"percentage": 10}, {"percentage": 100}])

    def test_last_phase_must_be_full(self):
        with self.assertRaises(ProfileError):
            self._canary([{"percentage": 10}, {"percentage": 50}])

    def test_percentage_required(self):
        with self.assertRaises(ProfileError):
            self._canary([{"name": "smoke"}])

    def test_percentage_must_be_number(self):
        with self.assertRaises(ProfileError):
            self._canary([{"percentage": "ten"}])

    def test_validate_phases_range(self):
        with self.assertRaises(ProfileError):
            validate_phases([Phase("over", 120)])
        with self.assertRaises(ProfileError):
            validate_phases([])
        validate_phases([Phase("a", 0), Phase("b", 0), Phase("c", 100)])


class TestSmallSettings(unittest.TestCase):
    """Test router and tenant settings."""

    def test_router_from_string(self):
        self.assertEqual(RouterSettings.from_value("nginx", "router").type, "nginx")

    def test_router_options(self):
        router = RouterSettings.from_value(
            {"type": "haproxy", "socket": "/run/haproxy.sock"}, "router"
        )
        self.assertEqual(router.options, {"socket": "/run/haproxy.sock"})

    def test_unknown_router(self):
        with self.assertRaises(ProfileError):
            RouterSettings.from_value("traefik", "router")

    def test_tenant_variables_flattened(self):
        tenant = TenantSettings.from_dict(0, {"name": "acme", "database": {"host": "db1", "port": 5432}})

        self.assertEqual(tenant.name, "acme")
        self.assertEqual(tenant.variables["database_host"], "db1")
        self.assertEqual(tenant.variables["database_port"], "5432")

    def test_tenant_without_name(self):
        with self.assertRaises(ProfileError):
            TenantSettings.from_dict(0, {"database": {"host": "db1"}})


class TestLoadProfile(unittest.TestCase):
    """Test profile discovery and YAML loading."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, name, content):
        path = os.path.join(self.tmp.name, name)
        with open(path, "w") as f:
            f.write(content)
        return path

    def test_load_by_name(self):
        self._write(
            "staging.yml",
            "migration:\n  current_version: '22.0.5'\n  target_version: '26.0.7'\n",
        )

        profile = load_profile("staging", self.tmp.name)

        self.assertEqual(profile.name, "staging")
        self.assertEqual(profile.migration.current_version, "22.0.5")

    def test_load_by_path(self):
        path = self._write(
            "custom.yaml", "migration:\n  current_version: 16.1.1\n  target_version: 26.0.7\n"
        )
        self.assertEqual(resolve_profile_path(path, "/nonexistent"), path)
        self.assertEqual(load_profile(path).migration.target_version, "26.0.7")

    def test_missing_profile(self):
        with self.assertRaises(ProfileError):
            load_profile("prod", self.tmp.name)

    def test_invalid_yaml(self):
        self._write("broken.yaml", "migration: [unclosed\n")
        with self.assertRaises(ProfileError):
            load_profile("broken", self.tmp.name)

    def test_empty_file(self):
        self._write("empty.yaml", "")
        with self.assertRaises(ProfileError):
            load_profile("empty", self.tmp.name)

    def test_bundled_profiles_are_valid(self):
        self.assertEqual(load_profile("example", PROFILES_DIR).migration.strategy, "inplace")
        canary = load_profile("canary", PROFILES_DIR)
        self.assertEqual([p.traffic_percentage for p in canary.canary.phases], [10, 50, 100])
        self.assertEqual(canary.canary.traffic_router.type, "istio")


class TestMigratorConfig(unittest.TestCase):
    """Test MigratorConfig data model."""

    def test_config_from_args(self):
        """Test creating config from command-line arguments."""
        args = Namespace(
            command="migrate",
            profile="prod",
            profile_dir="profiles",
            start_from="22.0.5",
            stop_at="25.0.6",
            monitor=True,
            skip_tests=True,
            dry_run=False,
            fresh=False,
            verbose=True,
        )
        config = MigratorConfig.from_args(args)

        self.assertEqual(config.command, "migrate")
        self.assertEqual(config.start_from, "22.0.5")
        self.assertEqual(config.stop_at, "25.0.6")
        self.assertTrue(config.monitor)
        self.assertTrue(config.skip_tests)
        self.assertIsNone(config.version)
        self.assertFalse(config.force)
        self.assertTrue(config.verbose)

    def test_config_from_rollback_args(self):
        args = Namespace(command="rollback", profile="prod", version="22.0.5", force=True, dry_run=True)
        config = MigratorConfig.from_args(args)

        self.assertEqual(config.version, "22.0.5")
        self.assertTrue(config.force)
        self.assertEqual(config.profile_dir, "profiles")


if __name__ == "__main__":
    unittest.main()
