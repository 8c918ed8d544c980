"""
Configuration management for the Keycloak migration engine.

A migration profile is a YAML document (profiles/NAME.yaml, or a path)
deserialized once into typed dataclasses and validated at load time.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from errors import ProfileError
from models import Phase, PhaseValidation

STRATEGIES = {"inplace", "rolling_update", "blue_green", "canary"}
ROLLOUT_TYPES = {"sequential", "parallel"}
RATE_LIMIT_STRATEGIES = {"fixed", "token_bucket", "adaptive"}
ROUTER_TYPES = {"istio", "nginx", "haproxy", "none"}

DEFAULT_PROFILE_DIR = "profiles"


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ProfileError(f"Profile section '{key}' must be a mapping")
    return value


def _bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false", "yes", "no"):
        return value.lower() in ("true", "yes")
    raise ProfileError(f"'{key}' must be a boolean, got {value!r}")


def _number(value: Any, key: str, minimum: float = 0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ProfileError(f"'{key}' must be a number, got {value!r}") from e
    if number < minimum:
        raise ProfileError(f"'{key}' must be >= {minimum}, got {number}")
    return number


@dataclass
class MigrationSettings:
    current_version: str
    target_version: str
    strategy: str = "inplace"
    backup: bool = True
    run_tests: bool = True
    auto_rollback: bool = True
    max_step_retries: int = 2
    version_path: Optional[List[str]] = None
    migration_timeout: float = 1800.0
    health_retries: int = 5
    health_interval: float = 10.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationSettings":
        for key in ("current_version", "target_version"):
            if not data.get(key):
                raise ProfileError(f"migration.{key} is required")
        strategy = data.get("strategy", "inplace")
        if strategy not in STRATEGIES:
            raise ProfileError(
                f"migration.strategy must be one of {sorted(STRATEGIES)}, got {strategy!r}"
            )
        path = data.get("version_path")
        if path is not None and (not isinstance(path, list) or not path):
            raise ProfileError("migration.version_path must be a non-empty list")
        return cls(
            current_version=str(data["current_version"]),
            target_version=str(data["target_version"]),
            strategy=strategy,
            backup=_bool(data.get("backup", True), "migration.backup"),
            run_tests=_bool(data.get("run_tests", True), "migration.run_tests"),
            auto_rollback=_bool(data.get("auto_rollback", True), "migration.auto_rollback"),
            max_step_retries=int(_number(data.get("max_step_retries", 2), "migration.max_step_retries")),
            version_path=[str(v) for v in path] if path else None,
            migration_timeout=_number(data.get("migration_timeout", 1800), "migration.migration_timeout"),
            health_retries=int(_number(data.get("health_retries", 5), "migration.health_retries", 1)),
            health_interval=_number(data.get("health_interval", 10), "migration.health_interval"),
        )


@dataclass
class RouterSettings:
    type: str = "none"
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any, key: str) -> "RouterSettings":
        if value is None:
            return cls()
        if isinstance(value, str):
            value = {"type": value}
        if not isinstance(value, dict):
            raise ProfileError(f"'{key}' must be a router type or mapping")
        options = dict(value)
        router_type = options.pop("type", "none")
        if router_type not in ROUTER_TYPES:
            raise ProfileError(
                f"'{key}.type' must be one of {sorted(ROUTER_TYPES)}, got {router_type!r}"
            )
        return cls(type=router_type, options=options)


def validate_phases(phases: List[Phase]) -> None:
    """
    Canary phases: percentages within [0, 100], non-decreasing, last one 100.

    Raises:
        ProfileError: On the first violation
    """
    if not phases:
        raise ProfileError("canary.phases must define at least one phase")
    previous = 0
    for phase in phases:
        pct = phase.traffic_percentage
        if pct < 0 or pct > 100:
            raise ProfileError(f"Canary phase {phase.name}: percentage {pct} out of range [0, 100]")
        if pct < previous:
            raise ProfileError(
                f"Canary phase {phase.name}: percentage {pct} is lower than previous phase ({previous})"
            )
        if phase.replica_count < 0:
            raise ProfileError(f"Canary phase {phase.name}: replicas must be >= 0")
        previous = pct
    if phases[-1].traffic_percentage != 100:
        raise ProfileError("The last canary phase must route 100% of traffic")


def _phase_from_dict(index: int, data: Dict[str, Any]) -> Phase:
    if not isinstance(data, dict):
        raise ProfileError(f"canary.phases[{index}] must be a mapping")
    key = f"canary.phases[{index}]"
    pct = data.get("traffic_percentage", data.get("percentage"))
    if pct is None:
        raise ProfileError(f"{key}.percentage is required")
    validation = data.get("validation") or {}
    return Phase(
        name=str(data.get("name", f"phase-{index}")),
        traffic_percentage=int(_number(pct, f"{key}.percentage", float("-inf"))),
        replica_count=int(data.get("replica_count", data.get("replicas", 1))),
        duration=_number(data.get("duration", 3600), f"{key}.duration"),
        validation=PhaseValidation(
            error_rate_threshold=_number(
                validation.get("error_rate_threshold", 0.01), f"{key}.validation.error_rate_threshold"
            ),
            latency_p99_threshold_ms=_number(
                validation.get("latency_p99_threshold_ms", 500),
                f"{key}.validation.latency_p99_threshold_ms",
            ),
            min_requests=int(
                _number(validation.get("min_requests", 100), f"{key}.validation.min_requests")
            ),
        ),
    )


@dataclass
class CanarySettings:
    phases: List[Phase] = field(default_factory=list)
    traffic_router: RouterSettings = field(default_factory=RouterSettings)
    auto_rollback: bool = True
    stable_backend: str = "stable"
    canary_backend: str = "canary"
    validation_timeout: float = 600.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanarySettings":
        phases = [_phase_from_dict(i, p) for i, p in enumerate(data.get("phases") or [])]
        return cls(
            phases=phases,
            traffic_router=RouterSettings.from_value(data.get("traffic_router"), "canary.traffic_router"),
            auto_rollback=_bool(data.get("auto_rollback", True), "canary.auto_rollback"),
            stable_backend=str(data.get("stable_backend", "stable")),
            canary_backend=str(data.get("canary_backend", "canary")),
            validation_timeout=_number(data.get("validation_timeout", 600), "canary.validation_timeout"),
        )


@dataclass
class BlueGreenSettings:
    old_environment: str = "blue"
    new_environment: str = "green"
    traffic_router: RouterSettings = field(default_factory=RouterSettings)
    readiness_timeout: float = 600.0
    cooldown: float = 300.0
    keep_old: bool = False
    auto_cleanup: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlueGreenSettings":
        settings = cls(
            old_environment=str(data.get("old_environment", "blue")),
            new_environment=str(data.get("new_environment", "green")),
            traffic_router=RouterSettings.from_value(
                data.get("traffic_router"), "blue_green.traffic_router"
            ),
            readiness_timeout=_number(data.get("readiness_timeout", 600), "blue_green.readiness_timeout"),
            cooldown=_number(data.get("cooldown", 300), "blue_green.cooldown"),
            keep_old=_bool(data.get("keep_old", False), "blue_green.keep_old"),
            auto_cleanup=_bool(data.get("auto_cleanup", True), "blue_green.auto_cleanup"),
        )
        if settings.old_environment == settings.new_environment:
            raise ProfileError("blue_green.old_environment and new_environment must differ")
        return settings


@dataclass
class RolloutSettings:
    type: str = "sequential"
    max_concurrent: int = 5
    nodes_at_once: int = 1
    drain_timeout: float = 60.0
    node_retries: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutSettings":
        rollout_type = data.get("type", "sequential")
        if rollout_type not in ROLLOUT_TYPES:
            raise ProfileError(
                f"rollout.type must be one of {sorted(ROLLOUT_TYPES)}, got {rollout_type!r}"
            )
        return cls(
            type=rollout_type,
            max_concurrent=int(_number(data.get("max_concurrent", 5), "rollout.max_concurrent", 1)),
            nodes_at_once=int(_number(data.get("nodes_at_once", 1), "rollout.nodes_at_once", 1)),
            drain_timeout=_number(data.get("drain_timeout", 60), "rollout.drain_timeout"),
            node_retries=int(_number(data.get("node_retries", 3), "rollout.node_retries", 1)),
        )


@dataclass
class RateLimitSettings:
    strategy: str = "token_bucket"
    ops_per_second: float = 10.0
    burst: int = 20
    max_retries: int = 3
    circuit_threshold: int = 5
    circuit_cooldown: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateLimitSettings":
        strategy = data.get("strategy", "token_bucket")
        if strategy not in RATE_LIMIT_STRATEGIES:
            raise ProfileError(
                f"rate_limit.strategy must be one of {sorted(RATE_LIMIT_STRATEGIES)}, got {strategy!r}"
            )
        ops = _number(data.get("ops_per_second", 10), "rate_limit.ops_per_second")
        if ops <= 0:
            raise ProfileError("rate_limit.ops_per_second must be positive")
        return cls(
            strategy=strategy,
            ops_per_second=ops,
            burst=int(_number(data.get("burst", 20), "rate_limit.burst", 1)),
            max_retries=int(_number(data.get("max_retries", 3), "rate_limit.max_retries", 1)),
            circuit_threshold=int(
                _number(data.get("circuit_threshold", 5), "rate_limit.circuit_threshold", 1)
            ),
            circuit_cooldown=_number(data.get("circuit_cooldown", 30), "rate_limit.circuit_cooldown"),
        )


@dataclass
class ValidationSettings:
    prometheus_url: Optional[str] = None
    managed_prometheus_project: Optional[str] = None
    window: str = "5m"
    interval: float = 30.0
    labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationSettings":
        settings = cls(
            prometheus_url=data.get("prometheus_url"),
            managed_prometheus_project=data.get("managed_prometheus_project"),
            window=str(data.get("window", "5m")),
            interval=_number(data.get("interval", 30), "validation.interval", 1),
            labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
        )
        if settings.prometheus_url and settings.managed_prometheus_project:
            raise ProfileError(
                "validation: set only one of prometheus_url or managed_prometheus_project"
            )
        return settings

    @property
    def configured(self) -> bool:
        return bool(self.prometheus_url or self.managed_prometheus_project)


@dataclass
class TenantSettings:
    name: str
    variables: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, index: int, data: Any) -> "TenantSettings":
        if isinstance(data, str):
            return cls(name=data)
        if not isinstance(data, dict) or not data.get("name"):
            raise ProfileError(f"tenants[{index}] must be a name or a mapping with 'name'")
        variables = {}
        for key, value in data.items():
            if isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    variables[f"{key}_{sub_key}"] = str(sub_value)
            else:
                variables[key] = str(value)
        return cls(name=str(data["name"]), variables=variables)


@dataclass
class MigrationProfile:
    """A fully validated migration profile."""

    name: str
    migration: MigrationSettings
    canary: CanarySettings = field(default_factory=CanarySettings)
    blue_green: BlueGreenSettings = field(default_factory=BlueGreenSettings)
    rollout: RolloutSettings = field(default_factory=RolloutSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    nodes: List[str] = field(default_factory=list)
    tenants: List[TenantSettings] = field(default_factory=list)
    hooks: Dict[str, str] = field(default_factory=dict)
    work_dir: str = "migration_workspace"

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "MigrationProfile":
        """
        Build and validate a profile from parsed YAML.

        Raises:
            ProfileError: If any section is missing or invalid
        """
        if not isinstance(data, dict):
            raise ProfileError(f"Profile {name} must be a YAML mapping")

        cluster = _section(data, "cluster")
        nodes = []
        for i, node in enumerate(cluster.get("nodes") or []):
            node_id = node.get("name") if isinstance(node, dict) else node
            if not node_id:
                raise ProfileError(f"cluster.nodes[{i}] has no name")
            nodes.append(str(node_id))

        hooks = _section(data, "hooks")
        profile = cls(
            name=name,
            migration=MigrationSettings.from_dict(_section(data, "migration")),
            canary=CanarySettings.from_dict(_section(data, "canary")),
            blue_green=BlueGreenSettings.from_dict(_section(data, "blue_green")),
            rollout=RolloutSettings.from_dict(_section(data, "rollout")),
            rate_limit=RateLimitSettings.from_dict(_section(data, "rate_limit")),
            validation=ValidationSettings.from_dict(_section(data, "validation")),
            nodes=nodes,
            tenants=[TenantSettings.from_dict(i, t) for i, t in enumerate(data.get("tenants") or [])],
            hooks={str(k): str(v) for k, v in hooks.items()},
            work_dir=str(data.get("work_dir", "migration_workspace")),
        )
        profile.validate()
        return profile

    def validate(self) -> None:
        strategy = self.migration.strategy
        if strategy == "canary":
            validate_phases(self.canary.phases)
            if not self.validation.configured:
                raise ProfileError("Canary strategy requires validation.prometheus_url or managed_prometheus_project")
        if strategy == "rolling_update" and not self.nodes:
            raise ProfileError("rolling_update strategy requires cluster.nodes")
        if self.rollout.type == "parallel" and not (self.tenants or self.nodes):
            raise ProfileError("Parallel rollout requires tenants or cluster.nodes")
        names = [t.name for t in self.tenants]
        if len(set(names)) != len(names):
            raise ProfileError("Tenant names must be unique")
        if len(set(self.nodes)) != len(self.nodes):
            raise ProfileError("Cluster node names must be unique")


def resolve_profile_path(name_or_path: str, profile_dir: str = DEFAULT_PROFILE_DIR) -> str:
    if os.path.isfile(name_or_path):
        return name_or_path
    for ext in (".yaml", ".yml"):
        candidate = os.path.join(profile_dir, f"{name_or_path}{ext}")
        if os.path.isfile(candidate):
            return candidate
    raise ProfileError(f"Profile not found: {name_or_path} (searched {profile_dir}/)")


def load_profile(name_or_path: str, profile_dir: str = DEFAULT_PROFILE_DIR) -> MigrationProfile:
    """
    Load a migration profile by name (profiles/NAME.yaml) or path.

    Raises:
        ProfileError: If the file is missing, unparsable or invalid
    """
    path = resolve_profile_path(name_or_path, profile_dir)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ProfileError(f"Invalid YAML in profile {path}: {e}") from e
    name = os.path.splitext(os.path.basename(path))[0]
    return MigrationProfile.from_dict(name, data)


@dataclass
class MigratorConfig:
    """Configuration for a single command-line invocation."""

    command: str
    profile: str
    profile_dir: str = DEFAULT_PROFILE_DIR
    start_from: Optional[str] = None
    stop_at: Optional[str] = None
    version: Optional[str] = None
    monitor: bool = False
    skip_tests: bool = False
    dry_run: bool = False
    fresh: bool = False
    force: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> "MigratorConfig":
        """
        Create configuration from command-line arguments.

        Args:
            args: Parsed argparse arguments

        Returns:
            MigratorConfig instance
        """
        return cls(
            command=args.command,
            profile=args.profile,
            profile_dir=getattr(args, "profile_dir", DEFAULT_PROFILE_DIR),
            start_from=getattr(args, "start_from", None),
            stop_at=getattr(args, "stop_at", None),
            version=getattr(args, "version", None),
            monitor=getattr(args, "monitor", False),
            skip_tests=getattr(args, "skip_tests", False),
            dry_run=getattr(args, "dry_run", False),
            fresh=getattr(args, "fresh", False),
            force=getattr(args, "force", False),
            verbose=getattr(args, "verbose", False),
        )
