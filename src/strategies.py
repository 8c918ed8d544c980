"""
Wiring of a migration profile into collaborators, guards and a rollout
strategy.
"""

import logging
import os
from typing import Dict, Optional

from blue_green import BlueGreenStrategy
from canary import CanaryStrategy
from cancellation import CancellationToken
from checkpoint import CheckpointStore
from clients import HealthClient, PrometheusClient
from collaborators import CommandHooks
from config import MigrationProfile, RouterSettings
from models import MigrationPlan, Worker, WorkerKind
from orchestrator import MigrationOrchestrator
from parallel import ParallelRollout, WorkerRunner
from progress import ProgressBoard
from ratelimit import CircuitBreaker, RateLimitedExecutor, build_rate_limiter
from rollback import TENANTS_DIR, MigrationRollback
from rolling import RollingStrategy
from rollout import InPlaceStrategy, RolloutStrategy
from traffic import TrafficSwitcher, get_traffic_switcher
from validation import ValidationGate

logger = logging.getLogger(__name__)


def build_hooks(
    profile: MigrationProfile,
    work_dir: str,
    variables: Optional[Dict[str, str]] = None,
    dry_run: bool = False,
) -> CommandHooks:
    merged = {"work_dir": work_dir, "profile": profile.name}
    merged.update(variables or {})
    return CommandHooks(
        hooks=profile.hooks,
        backup_dir=os.path.join(work_dir, "backups"),
        variables=merged,
        timeout=max(profile.migration.migration_timeout, 60.0),
        dry_run=dry_run,
    )


def build_executor(
    profile: MigrationProfile, hooks: CommandHooks, token: CancellationToken, name: str = "database"
) -> RateLimitedExecutor:
    """Rate limiter plus circuit breaker guarding database operations."""
    settings = profile.rate_limit
    sampler = hooks.load_percentage if hooks.has_hook("db_load") else None
    limiter = build_rate_limiter(
        settings.strategy,
        ops_per_second=settings.ops_per_second,
        burst=settings.burst,
        load_sampler=sampler,
        token=token,
    )
    breaker = CircuitBreaker(
        threshold=settings.circuit_threshold, cooldown=settings.circuit_cooldown, name=name
    )
    return RateLimitedExecutor(limiter, breaker, max_retries=settings.max_retries, token=token)


def build_gate(profile: MigrationProfile, token: CancellationToken) -> ValidationGate:
    settings = profile.validation
    metrics = None
    if settings.configured:
        metrics = PrometheusClient(
            base_url=settings.prometheus_url,
            project_id=settings.managed_prometheus_project,
        )
    return ValidationGate(
        metrics,
        window=settings.window,
        labels=settings.labels,
        token=token,
        health=HealthClient(),
    )


def build_switcher(router: RouterSettings) -> TrafficSwitcher:
    return get_traffic_switcher(router.type, **router.options)


def build_step_strategy(
    profile: MigrationProfile,
    strategy_name: str,
    hooks: CommandHooks,
    work_dir: str,
    token: CancellationToken,
    run_tests: bool = True,
    board: Optional[ProgressBoard] = None,
) -> RolloutStrategy:
    """
    Build a single-instance strategy.

    Raises:
        ValueError: For an unknown strategy name
    """
    migration = profile.migration

    if strategy_name == "inplace":
        handler = MigrationRollback(hooks, hooks, work_dir) if migration.auto_rollback else None
        return InPlaceStrategy(
            hooks,
            rollback_handler=handler,
            run_tests=run_tests,
            migration_timeout=migration.migration_timeout,
            health_retries=migration.health_retries,
            health_interval=migration.health_interval,
            token=token,
        )

    if strategy_name == "canary":
        canary = profile.canary
        return CanaryStrategy(
            canary.phases,
            hooks,
            build_switcher(canary.traffic_router),
            build_gate(profile, token),
            stable_backend=canary.stable_backend,
            canary_backend=canary.canary_backend,
            auto_rollback=canary.auto_rollback and migration.auto_rollback,
            validation_timeout=canary.validation_timeout,
            check_interval=profile.validation.interval,
            token=token,
        )

    if strategy_name == "blue_green":
        bg = profile.blue_green
        return BlueGreenStrategy(
            hooks,
            build_switcher(bg.traffic_router),
            build_gate(profile, token),
            old_environment=bg.old_environment,
            new_environment=bg.new_environment,
            readiness_timeout=bg.readiness_timeout,
            cooldown=bg.cooldown,
            keep_old=bg.keep_old,
            auto_cleanup=bg.auto_cleanup,
            run_smoke_tests=run_tests,
            token=token,
        )

    if strategy_name == "rolling_update":
        rollout = profile.rollout
        return RollingStrategy(
            profile.nodes,
            hooks,
            nodes_at_once=rollout.nodes_at_once,
            drain_timeout=rollout.drain_timeout,
            node_retries=rollout.node_retries,
            board=board,
            token=token,
        )

    raise ValueError(f"Unknown strategy: {strategy_name}")


def worker_runner(
    profile: MigrationProfile,
    plan: MigrationPlan,
    work_dir: str,
    run_tests: bool = True,
    dry_run: bool = False,
) -> WorkerRunner:
    """
    Runner advancing one tenant or node to a step through its own
    sub-migration: separate workspace, checkpoint, limiter and breaker.
    """
    tenants = {t.name: t.variables for t in profile.tenants}
    # Nodes of a parallel rollout are each upgraded in place
    sub_strategy = "inplace" if profile.migration.strategy == "rolling_update" else profile.migration.strategy

    def run(worker: Worker, step: str, token: CancellationToken, progress) -> None:
        instance_dir = os.path.join(work_dir, TENANTS_DIR, worker.id)
        variables = {"instance": worker.id, worker.kind.value: worker.id}
        variables.update(tenants.get(worker.id, {}))

        hooks = build_hooks(profile, instance_dir, variables, dry_run=dry_run)
        strategy = build_step_strategy(profile, sub_strategy, hooks, instance_dir, token, run_tests)
        orchestrator = MigrationOrchestrator(
            CheckpointStore(instance_dir),
            database=hooks,
            executor=build_executor(profile, hooks, token, name=f"database[{worker.id}]"),
            backup_enabled=profile.migration.backup,
            max_step_retries=profile.migration.max_step_retries,
            dry_run=dry_run,
            progress_callback=progress,
            token=token,
            report=False,
            name=worker.id,
        )
        orchestrator.run(plan, strategy, stop_at=step)

    return run


def build_strategy(
    profile: MigrationProfile,
    plan: MigrationPlan,
    hooks: CommandHooks,
    token: CancellationToken,
    run_tests: bool = True,
    dry_run: bool = False,
    board: Optional[ProgressBoard] = None,
    monitor_interval: float = 5.0,
) -> RolloutStrategy:
    """
    Build the rollout strategy for a profile.

    A parallel rollout wraps one sub-migration per tenant (or per node)
    running the configured strategy; otherwise the configured strategy
    drives the single installation directly.
    """
    board = board or ProgressBoard()
    if profile.rollout.type == "parallel":
        if profile.tenants:
            ids, kind = [t.name for t in profile.tenants], WorkerKind.TENANT
        else:
            ids, kind = list(profile.nodes), WorkerKind.NODE
        logger.info(f"Parallel rollout across {len(ids)} {kind.value}(s)")
        return ParallelRollout(
            ids,
            worker_runner(profile, plan, profile.work_dir, run_tests, dry_run),
            kind=kind,
            max_concurrent=profile.rollout.max_concurrent,
            monitor_interval=monitor_interval,
            board=board,
            token=token,
        )

    return build_step_strategy(
        profile, profile.migration.strategy, hooks, profile.work_dir, token, run_tests, board
    )
