"""Console entry point for the Keycloak Migration CLI."""

from __future__ import annotations

import argparse
import logging
import os
import signal
from typing import List

from cancellation import CancellationToken
from checkpoint import CheckpointStore
from config import DEFAULT_PROFILE_DIR, MigrationProfile, MigratorConfig, load_profile
from errors import MigrationError, MigrationFailed, PlanError, RollbackError
from log_utils import setup_logging
from models import MigrationPlan
from orchestrator import (
    DEFAULT_VERSION_PATH,
    MigrationOrchestrator,
    build_plan,
    java_requirement,
    validate_version_path,
)
from progress import MigrationMetrics, ProgressBoard
from rollback import MigrationRollback
from strategies import build_executor, build_hooks, build_strategy

logger = logging.getLogger(__name__)

METRICS_FILE_NAME = "keycloak_migration.prom"
STEP_STATE_TEMPLATE = "step_{version}.env"


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Keycloak Migration CLI: multi-hop upgrades with checkpoints and rollback"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--profile", required=True, help="Profile name (profiles/NAME.yaml) or path")
        sub.add_argument("--profile-dir", default=DEFAULT_PROFILE_DIR, help="Profile directory")
        sub.add_argument("--verbose", action="store_true")

    migrate = subparsers.add_parser("migrate", help="Run the migration plan")
    add_common(migrate)
    migrate.add_argument("--start-from", metavar="VERSION", help="Override the current version")
    migrate.add_argument("--stop-at", metavar="VERSION", help="Stop after this version")
    migrate.add_argument(
        "--monitor", action="store_true", help="Export Prometheus textfile metrics during the run"
    )
    migrate.add_argument("--skip-tests", action="store_true", help="Skip smoke tests")
    migrate.add_argument("--dry-run", action="store_true", help="Show what would run")
    migrate.add_argument("--fresh", action="store_true", help="Ignore any existing checkpoint")

    plan = subparsers.add_parser("plan", help="Show the migration plan and resume state")
    add_common(plan)

    rollback = subparsers.add_parser("rollback", help="Restore the database from a backup")
    rollback.add_argument("version", nargs="?", help="Restore the backup taken before VERSION")
    add_common(rollback)
    rollback.add_argument("--force", action="store_true", help="Do not ask for confirmation")
    rollback.add_argument("--dry-run", action="store_true", help="Only run pre-checks")

    step = subparsers.add_parser("migrate-step", help="Migrate a single version step")
    step.add_argument("version", help="Target version of the step")
    add_common(step)
    step.add_argument("--skip-tests", action="store_true", help="Skip smoke tests")
    step.add_argument("--dry-run", action="store_true", help="Show what would run")
    return parser


def _version_path(profile: MigrationProfile) -> List[str]:
    return validate_version_path(profile.migration.version_path or DEFAULT_VERSION_PATH)


def _plan_for(profile: MigrationProfile, start_from: str | None = None) -> MigrationPlan:
    current = start_from or profile.migration.current_version
    return build_plan(current, profile.migration.target_version, _version_path(profile))


def _install_interrupt_handler(token: CancellationToken):
    def handler(signum, frame):
        logger.warning("Interrupt received, cancelling migration (rollback will follow)...")
        token.cancel("interrupted by user")

    return signal.signal(signal.SIGINT, handler)


def _execute(
    config: MigratorConfig,
    profile: MigrationProfile,
    plan: MigrationPlan,
    store: CheckpointStore,
    stop_at: str | None = None,
) -> int:
    token = CancellationToken()
    board = ProgressBoard()
    run_tests = profile.migration.run_tests and not config.skip_tests

    hooks = build_hooks(profile, profile.work_dir, dry_run=config.dry_run)
    strategy = build_strategy(
        profile,
        plan,
        hooks,
        token,
        run_tests=run_tests,
        dry_run=config.dry_run,
        board=board,
        monitor_interval=5.0 if config.monitor else 30.0,
    )

    metrics = None
    if config.monitor:
        metrics = MigrationMetrics(
            profile.name,
            os.path.join(profile.work_dir, METRICS_FILE_NAME),
            plan.current_version,
            plan.target_version,
        )
        logger.info(f"Exporting metrics to {metrics.path}")

    # Workers of a parallel rollout back up their own instances
    parallel = profile.rollout.type == "parallel"
    orchestrator = MigrationOrchestrator(
        store,
        database=hooks,
        executor=build_executor(profile, hooks, token),
        backup_enabled=profile.migration.backup and not parallel,
        max_step_retries=profile.migration.max_step_retries,
        dry_run=config.dry_run,
        metrics=metrics,
        token=token,
    )

    previous = _install_interrupt_handler(token)
    try:
        orchestrator.run(plan, strategy, stop_at=stop_at, fresh=config.fresh)
    except MigrationFailed as e:
        logger.error(f"Migration failed at {e.step}: {e.cause}")
        logger.error(f"Checkpoint: {e.checkpoint}")
        logger.error(f"Next: {e.remediation}")
        return 1
    except RollbackError as e:
        logger.critical(f"Migration failed and rollback failed: {e}")
        logger.critical("Manual intervention required")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)
    return 0


def _cmd_migrate(config: MigratorConfig, profile: MigrationProfile) -> int:
    plan = _plan_for(profile, config.start_from)
    return _execute(config, profile, plan, CheckpointStore(profile.work_dir), stop_at=config.stop_at)


def _cmd_migrate_step(config: MigratorConfig, profile: MigrationProfile) -> int:
    path = _version_path(profile)
    if config.version not in path:
        raise PlanError(f"Version {config.version} is not in the migration path")
    index = path.index(config.version)
    if index == 0:
        raise PlanError(f"Version {config.version} is the start of the path, nothing to migrate")
    plan = build_plan(path[index - 1], config.version, path)
    store = CheckpointStore(
        profile.work_dir, file_name=STEP_STATE_TEMPLATE.format(version=config.version)
    )
    return _execute(config, profile, plan, store)


def _cmd_plan(config: MigratorConfig, profile: MigrationProfile) -> int:
    plan = _plan_for(profile)
    store = CheckpointStore(profile.work_dir)
    orchestrator = MigrationOrchestrator(store, backup_enabled=False, report=False)
    remaining = orchestrator.remaining_steps(plan)

    logger.info("=" * 70)
    logger.info(f"Migration Plan: {plan.current_version} -> {plan.target_version}")
    logger.info("=" * 70)
    logger.info(f"Profile: {profile.name}")
    logger.info(f"Strategy: {profile.migration.strategy} ({profile.rollout.type})")
    logger.info(f"Checkpoint: {store.path}")
    logger.info("")
    logger.info(f"{'Step':<6} {'Version':<12} {'Java':<6} {'Status'}")
    logger.info("-" * 40)
    for i, step in enumerate(plan.steps, start=1):
        status = "pending" if step in remaining else "done"
        logger.info(f"{i:<6} {step:<12} {java_requirement(step) or '?':<6} {status}")
    logger.info("-" * 40)
    if orchestrator.can_resume(plan):
        logger.info(f"Resumable: next step {remaining[0] if remaining else '-'}")
    elif not remaining:
        logger.info("✓ Migration already complete")
    logger.info("=" * 70)
    return 0


def _cmd_rollback(config: MigratorConfig, profile: MigrationProfile) -> int:
    if not config.force and not config.dry_run:
        target = f"the backup taken before {config.version}" if config.version else "the latest backup"
        answer = input(f"Restore the database from {target}? Type 'yes' to continue: ")
        if answer.strip().lower() != "yes":
            logger.info("Rollback aborted")
            return 1

    checkpoint = CheckpointStore(profile.work_dir).load()
    recorded = checkpoint.last_backup if checkpoint else None
    hooks = build_hooks(profile, profile.work_dir)
    runner = MigrationRollback(hooks, hooks, profile.work_dir, dry_run=config.dry_run)
    result = runner.run(recorded_backup=recorded, version=config.version)
    return 0 if result.get("status") in ("success", "dry_run") else 1


COMMANDS = {
    "migrate": _cmd_migrate,
    "migrate-step": _cmd_migrate_step,
    "plan": _cmd_plan,
    "rollback": _cmd_rollback,
}


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    log_file = "keycloak-rollback.log" if args.command == "rollback" else "keycloak-migration.log"
    setup_logging(verbose=args.verbose, log_file=log_file)

    config = MigratorConfig.from_args(args)
    try:
        profile = load_profile(config.profile, config.profile_dir)
        return COMMANDS[config.command](config, profile)
    except MigrationError as e:
        logger.error(str(e))
        return 1
