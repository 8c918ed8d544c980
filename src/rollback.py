"""
Backup-based rollback for Keycloak migrations.

Rollback restores the database from the backup taken before a migration
step. It is only attempted when a usable backup can be located, either the
one recorded in the checkpoint or the newest `backup_before_*.dump` found
in the work directory.

Safety rules:
- A safety backup of the current database is taken before restoring
- Safety backups are never deleted by this tool
- Restore failures are reported together with the error that caused the rollback
"""

import glob
import json
import logging
import os
import time
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from collaborators import BACKUP_PREFIX, BACKUP_SUFFIX, DatabaseAdapter, DeploymentAdapter
from errors import RollbackError

logger = logging.getLogger(__name__)

SAFETY_BACKUP_LABEL = "safety_before_rollback"

# Per-instance workspaces of a parallel rollout, excluded from the main backup search
TENANTS_DIR = "tenants"

# Backups older than this only produce a warning
MAX_BACKUP_AGE_SECONDS = 7 * 24 * 3600


class RollbackCheckStatus(Enum):
    """Status codes for pre-check validations."""

    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"


class PreCheckResult:
    """Result of a single pre-check validation."""

    def __init__(
        self,
        check_name: str,
        status: RollbackCheckStatus,
        message: str,
        details: Optional[Dict] = None,
    ):
        self.check_name = check_name
        self.status = status
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict:
        """Convert to dictionary for logging/reporting."""
        return {
            "check_name": self.check_name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


def find_latest_backup(
    work_dir: str, recorded: Optional[str] = None, version: Optional[str] = None
) -> Optional[str]:
    """
    Locate the backup to roll back to.

    Args:
        work_dir: Directory searched recursively when no recorded backup exists
        recorded: Backup path recorded in the checkpoint, preferred if present
        version: Restrict the search to backups taken before this step

    Returns:
        Backup path, or None if nothing was found
    """
    if recorded and os.path.isfile(recorded):
        if version is None or os.path.basename(recorded).startswith(
            f"{BACKUP_PREFIX}{version}_"
        ):
            return recorded

    logger.warning("Checkpoint backup reference missing, searching workspace...")
    stem = f"{BACKUP_PREFIX}{version}_" if version else BACKUP_PREFIX
    pattern = os.path.join(work_dir, "**", f"{stem}*{BACKUP_SUFFIX}")
    tenants_root = os.path.join(os.path.abspath(work_dir), TENANTS_DIR) + os.sep
    candidates = [
        p
        for p in glob.glob(pattern, recursive=True)
        if os.path.isfile(p) and not os.path.abspath(p).startswith(tenants_root)
    ]
    if not candidates:
        return None

    # Backup names end in a sortable timestamp
    candidates.sort(key=lambda p: (os.path.getmtime(p), os.path.basename(p)), reverse=True)
    logger.info(f"Found backup: {candidates[0]}")
    return candidates[0]


class MigrationRollback:
    """Restores the database from a pre-migration backup."""

    def __init__(
        self,
        database: DatabaseAdapter,
        deployment: Optional[DeploymentAdapter],
        work_dir: str,
        dry_run: bool = False,
    ):
        """
        Set up the rollback manager.

        Args:
            database: Backup/restore adapter
            deployment: Runtime adapter used to stop/start the server, if any
            work_dir: Directory holding backups and reports
            dry_run: If True, only run pre-checks
        """
        self.database = database
        self.deployment = deployment
        self.work_dir = work_dir
        self.dry_run = dry_run

        self.run_start_time: Optional[float] = None
        self.run_end_time: Optional[float] = None
        self.precheck_results: List[PreCheckResult] = []
        self.safety_backups: List[str] = []
        self.result: Dict = {}

    def _check_backup_exists(self, backup: Optional[str]) -> PreCheckResult:
        """Pre-check: a backup file was found."""
        if backup and os.path.isfile(backup):
            return PreCheckResult(
                check_name="backup_exists",
                status=RollbackCheckStatus.PASSED,
                message=f"Backup found: {os.path.basename(backup)}",
                details={"backup": backup},
            )
        return PreCheckResult(
            check_name="backup_exists",
            status=RollbackCheckStatus.FAILED,
            message="No backup found to roll back to",
            details={"work_dir": self.work_dir, "reason": "no_backup"},
        )

    def _check_backup_size(self, backup: str) -> PreCheckResult:
        """Pre-check: the backup file is not empty."""
        try:
            size = os.path.getsize(backup)
        except OSError as e:
            return PreCheckResult(
                check_name="backup_size",
                status=RollbackCheckStatus.FAILED,
                message=f"Cannot read backup: {e}",
                details={"error": str(e), "reason": "unreadable"},
            )
        if size == 0:
            return PreCheckResult(
                check_name="backup_size",
                status=RollbackCheckStatus.FAILED,
                message="Backup file is empty",
                details={"size_bytes": 0, "reason": "empty_backup"},
            )
        return PreCheckResult(
            check_name="backup_size",
            status=RollbackCheckStatus.PASSED,
            message=f"Backup size OK ({size} bytes)",
            details={"size_bytes": size},
        )

    def _check_backup_age(self, backup: str) -> PreCheckResult:
        """Pre-check: warn when restoring an old backup (warning only)."""
        age = time.time() - os.path.getmtime(backup)
        if age > MAX_BACKUP_AGE_SECONDS:
            return PreCheckResult(
                check_name="backup_age",
                status=RollbackCheckStatus.WARNING,
                message=f"Backup is {age / 86400:.1f} days old, newer data will be lost",
                details={"age_seconds": age},
            )
        return PreCheckResult(
            check_name="backup_age",
            status=RollbackCheckStatus.PASSED,
            message=f"Backup age {age / 3600:.1f}h",
            details={"age_seconds": age},
        )

    def _run_pre_checks(self, backup: Optional[str]) -> Tuple[bool, List[PreCheckResult]]:
        """
        Run all pre-checks for a backup.

        Returns:
            Tuple of (passed, list of PreCheckResult)
            passed=True only if all critical checks pass
        """
        checks: List[PreCheckResult] = []

        exists_check = self._check_backup_exists(backup)
        checks.append(exists_check)
        logger.info(f"  Backup Check: {exists_check.status.value} - {exists_check.message}")
        if exists_check.status == RollbackCheckStatus.FAILED:
            return False, checks

        size_check = self._check_backup_size(backup)
        checks.append(size_check)
        logger.info(f"  Size Check: {size_check.status.value} - {size_check.message}")
        if size_check.status == RollbackCheckStatus.FAILED:
            return False, checks

        age_check = self._check_backup_age(backup)
        checks.append(age_check)
        logger.info(f"  Age Check: {age_check.status.value} - {age_check.message}")

        has_failures = any(c.status == RollbackCheckStatus.FAILED for c in checks)
        return not has_failures, checks

    def restore(
        self,
        backup: Optional[str],
        original_error: Optional[BaseException] = None,
        running_version: Optional[str] = None,
        restart_version: Optional[str] = None,
    ) -> Optional[str]:
        """
        Restore the database: safety backup, stop, restore, start.

        Args:
            backup: Backup to restore
            original_error: Error that triggered the rollback, if any
            running_version: Version to stop before restoring
            restart_version: Version to start after restoring

        Returns:
            Path of the safety backup (None if it could not be taken)

        Raises:
            RollbackError: If pre-checks fail or the restore itself fails
        """
        logger.info("=" * 70)
        logger.info("Auto-Rollback")
        logger.info("=" * 70)

        passed, self.precheck_results = self._run_pre_checks(backup)
        if not passed:
            failed = [c for c in self.precheck_results if c.status == RollbackCheckStatus.FAILED]
            raise RollbackError(
                "Rollback pre-checks failed",
                original_error=original_error,
                rollback_error=RuntimeError("; ".join(c.message for c in failed)),
            )

        if self.dry_run:
            logger.info(f"DRY RUN: Would restore database from {backup}")
            return None

        logger.warning(f"Restoring from: {backup}")

        safety_backup = None
        try:
            safety_backup = self.database.backup(SAFETY_BACKUP_LABEL)
            self.safety_backups.append(safety_backup)
            logger.info(f"✓ Safety backup created: {safety_backup}")
        except Exception as e:
            logger.warning(f"Safety backup failed, continuing with restore: {e}")

        if self.deployment is not None and running_version:
            try:
                self.deployment.stop(running_version)
            except Exception as e:
                logger.warning(f"Could not stop Keycloak {running_version}: {e}")

        try:
            self.database.restore(backup)
        except Exception as e:
            logger.error(f"Rollback restore failed: {e}")
            raise RollbackError(
                f"Restore from {backup} failed",
                original_error=original_error,
                rollback_error=e,
                safety_backup=safety_backup,
            ) from e

        if self.deployment is not None and restart_version:
            try:
                self.deployment.start(restart_version)
            except Exception as e:
                logger.warning(f"Could not start Keycloak {restart_version}: {e}")

        logger.info(f"✓ Auto-rollback completed from: {backup}")
        return safety_backup

    def run(self, recorded_backup: Optional[str] = None, version: Optional[str] = None) -> Dict:
        """
        Execute a manual rollback (the `rollback` command).

        Args:
            recorded_backup: Backup recorded in the checkpoint
            version: Roll back the step to this version (its pre-step backup)

        Returns:
            Result dictionary
        """
        self.run_start_time = time.time()

        logger.info("=" * 70)
        logger.info("Keycloak Migration Rollback")
        logger.info("=" * 70)
        logger.info(f"Work dir: {self.work_dir}")
        if version:
            logger.info(f"Version: {version}")
        logger.info(f"Dry run: {self.dry_run}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        logger.info("=" * 70)

        backup = find_latest_backup(self.work_dir, recorded_backup, version)
        self.result = {"backup": backup, "status": "failed", "error_message": None}

        try:
            safety = self.restore(backup, running_version=version)
            self.result["status"] = "dry_run" if self.dry_run else "success"
            self.result["safety_backup"] = safety
        except RollbackError as e:
            logger.error(f"Rollback failed: {e}")
            self.result["error_message"] = str(e)
            self.result["safety_backup"] = e.safety_backup

        self.run_end_time = time.time()
        self._print_report()
        return self.result

    def _print_report(self):
        """Print rollback summary."""
        logger.info("")
        logger.info("=" * 70)
        logger.info("ROLLBACK REPORT")
        logger.info("=" * 70)
        logger.info(f"Backup:          {self.result.get('backup') or 'N/A'}")
        logger.info(f"Status:          {self.result.get('status')}")
        logger.info(f"Duration:        {self.run_end_time - self.run_start_time:.1f}s")
        if self.result.get("safety_backup"):
            logger.info(f"Safety backup:   {self.result['safety_backup']}")

        logger.info("")
        logger.info("PRE-CHECK SUMMARY")
        logger.info("-" * 40)
        for check in self.precheck_results:
            mark = "✗" if check.status == RollbackCheckStatus.FAILED else "✓"
            logger.info(f"  {mark} {check.check_name}: {check.message}")

        if self.result.get("error_message"):
            logger.info("")
            logger.info(f"Error: {self.result['error_message']}")
        logger.info("=" * 70)

        self._export_results_json()

    def _export_results_json(self):
        """Export results to JSON file in the work directory."""
        report = {
            "work_dir": self.work_dir,
            "dry_run": self.dry_run,
            "start_time": datetime.fromtimestamp(self.run_start_time).isoformat(),
            "end_time": datetime.fromtimestamp(self.run_end_time).isoformat(),
            "total_duration_seconds": self.run_end_time - self.run_start_time,
            "result": self.result,
            "precheck_results": [c.to_dict() for c in self.precheck_results],
        }

        os.makedirs(self.work_dir, exist_ok=True)
        filename = os.path.join(
            self.work_dir,
            f"rollback-report-{datetime.now().strftime('%Y%m%d-%H%M%S')}.json",
        )
        with open(filename, "w") as f:
            json.dump(report, f, indent=2)
        logger.info(f"Detailed report exported to: {filename}")
