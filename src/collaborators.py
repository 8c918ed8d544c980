"""
Interfaces to the systems a migration drives, and a command-hook
implementation of them.

The engine never talks to a database, runtime or load balancer directly.
Strategies receive a DatabaseAdapter, DeploymentAdapter or NodeOperator;
CommandHooks implements all three by running shell command templates
taken from the profile's `hooks:` section.
"""

import logging
import os
import shlex
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

from errors import StepExecutionError

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_before_"
BACKUP_SUFFIX = ".dump"


class DatabaseAdapter(ABC):
    """Backup/restore of the server's database."""

    @abstractmethod
    def backup(self, label: str) -> str:
        """Create a full backup and return its path."""

    @abstractmethod
    def restore(self, path: str) -> None:
        """Restore the database from a backup file."""

    def load_percentage(self) -> float:
        """Current database load in percent (e.g. active connections / max)."""
        raise NotImplementedError("Database load sampling not supported")


class DeploymentAdapter(ABC):
    """Lifecycle of the server runtime (in place, canary replicas, blue-green environments)."""

    @abstractmethod
    def stop(self, version: str) -> None: ...

    @abstractmethod
    def install(self, version: str) -> None: ...

    @abstractmethod
    def start(self, version: str) -> None: ...

    @abstractmethod
    def migration_complete(self, version: str) -> bool:
        """Whether the server finished its own schema migration on startup."""

    @abstractmethod
    def health_check(self, version: str) -> bool: ...

    def smoke_test(self, version: str, environment: Optional[str] = None) -> bool:
        return True

    def migrate_replicas(self, version: str, count: int) -> None:
        raise NotImplementedError("Canary replica migration not supported")

    def deploy_environment(self, environment: str, version: str) -> None:
        raise NotImplementedError("Blue-green deployment not supported")

    def environment_ready(self, environment: str) -> bool:
        raise NotImplementedError("Blue-green deployment not supported")

    def environment_health_url(self, environment: str) -> Optional[str]:
        return None

    def destroy_environment(self, environment: str) -> None:
        raise NotImplementedError("Blue-green deployment not supported")


class NodeOperator(ABC):
    """Per-node operations of a clustered deployment."""

    @abstractmethod
    def drain(self, node: str) -> None: ...

    @abstractmethod
    def active_connections(self, node: str) -> int: ...

    @abstractmethod
    def stop_node(self, node: str) -> None: ...

    @abstractmethod
    def upgrade_node(self, node: str, version: str) -> None:
        """Replace the node's binary, keeping the previous one for restore."""

    @abstractmethod
    def start_node(self, node: str) -> None: ...

    @abstractmethod
    def node_healthy(self, node: str) -> bool: ...

    @abstractmethod
    def undrain(self, node: str) -> None: ...

    @abstractmethod
    def restore_binary(self, node: str) -> None: ...


class CommandHooks(DatabaseAdapter, DeploymentAdapter, NodeOperator):
    """
    Collaborators backed by shell command templates.

    Each hook is a command string formatted with shell-quoted values, e.g.
    `pg_dump -Fc -f {path} keycloak` for `db_backup`. Boolean operations
    (health checks, readiness) succeed when the command exits 0; numeric
    ones parse the last line of stdout.
    """

    # Hooks that may be left out of a profile, with the value used instead
    OPTIONAL_HOOKS = {"smoke_test": True, "env_health_url": None}

    def __init__(
        self,
        hooks: Dict[str, str],
        backup_dir: str,
        variables: Optional[Dict[str, str]] = None,
        timeout: float = 3600.0,
        dry_run: bool = False,
    ):
        """
        Set up command hooks.

        Args:
            hooks: Hook name -> command template
            backup_dir: Directory receiving database backups
            variables: Extra template values (e.g. tenant name, db host)
            timeout: Per-command timeout (seconds)
            dry_run: Log commands instead of running them
        """
        self.hooks = dict(hooks)
        self.backup_dir = backup_dir
        self.variables = dict(variables or {})
        self.timeout = timeout
        self.dry_run = dry_run

    def has_hook(self, name: str) -> bool:
        return bool(self.hooks.get(name))

    def render(self, name: str, **values) -> str:
        template = self.hooks.get(name)
        if not template:
            raise StepExecutionError(f"No command configured for hook '{name}'")
        merged = {**self.variables, **values}
        quoted = {k: shlex.quote(str(v)) for k, v in merged.items()}
        try:
            return template.format(**quoted)
        except KeyError as e:
            raise StepExecutionError(
                f"Hook '{name}' references unknown placeholder {e}"
            ) from e

    def _run(self, name: str, check: bool = True, **values) -> subprocess.CompletedProcess:
        command = self.render(name, **values)
        if self.dry_run:
            logger.info(f"DRY RUN: [{name}] {command}")
            return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

        logger.debug(f"[{name}] {command}")
        try:
            proc = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise StepExecutionError(
                f"Hook '{name}' timed out after {self.timeout:.0f}s"
            ) from e
        except OSError as e:
            raise StepExecutionError(f"Hook '{name}' could not be started: {e}") from e

        if check and proc.returncode != 0:
            stderr = (proc.stderr or "").strip()[:300]
            raise StepExecutionError(
                f"Hook '{name}' failed with exit code {proc.returncode}: {stderr}"
            )
        return proc

    def _succeeds(self, name: str, **values) -> bool:
        return self._run(name, check=False, **values).returncode == 0

    def _number(self, name: str, **values) -> float:
        output = (self._run(name, **values).stdout or "").strip()
        last = output.splitlines()[-1] if output else "0"
        try:
            return float(last)
        except ValueError as e:
            raise StepExecutionError(f"Hook '{name}' returned a non-numeric value: {last}") from e

    # DatabaseAdapter

    def backup(self, label: str) -> str:
        os.makedirs(self.backup_dir, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = os.path.join(self.backup_dir, f"{label}_{stamp}{BACKUP_SUFFIX}")
        self._run("db_backup", path=path, label=label)
        return path

    def restore(self, path: str) -> None:
        self._run("db_restore", path=path)

    def load_percentage(self) -> float:
        return self._number("db_load")

    # DeploymentAdapter

    def stop(self, version: str) -> None:
        self._run("stop", version=version)

    def install(self, version: str) -> None:
        self._run("install", version=version)

    def start(self, version: str) -> None:
        self._run("start", version=version)

    def migration_complete(self, version: str) -> bool:
        return self._succeeds("migration_complete", version=version)

    def health_check(self, version: str) -> bool:
        return self._succeeds("health_check", version=version)

    def smoke_test(self, version: str, environment: Optional[str] = None) -> bool:
        if not self.has_hook("smoke_test"):
            logger.info("No smoke_test hook configured, skipping smoke tests")
            return self.OPTIONAL_HOOKS["smoke_test"]
        return self._succeeds("smoke_test", version=version, env=environment or "")

    def migrate_replicas(self, version: str, count: int) -> None:
        self._run("migrate_replicas", version=version, count=count)

    def deploy_environment(self, environment: str, version: str) -> None:
        self._run("deploy_env", env=environment, version=version)

    def environment_ready(self, environment: str) -> bool:
        return self._succeeds("env_ready", env=environment)

    def environment_health_url(self, environment: str) -> Optional[str]:
        if not self.has_hook("env_health_url"):
            return self.OPTIONAL_HOOKS["env_health_url"]
        output = (self._run("env_health_url", env=environment).stdout or "").strip()
        return output.splitlines()[-1] if output else None

    def destroy_environment(self, environment: str) -> None:
        self._run("destroy_env", env=environment)

    # NodeOperator

    def drain(self, node: str) -> None:
        self._run("node_drain", node=node)

    def active_connections(self, node: str) -> int:
        if not self.has_hook("node_connections"):
            return 0
        return int(self._number("node_connections", node=node))

    def stop_node(self, node: str) -> None:
        self._run("node_stop", node=node)

    def upgrade_node(self, node: str, version: str) -> None:
        self._run("node_upgrade", node=node, version=version)

    def start_node(self, node: str) -> None:
        self._run("node_start", node=node)

    def node_healthy(self, node: str) -> bool:
        return self._succeeds("node_health", node=node)

    def undrain(self, node: str) -> None:
        self._run("node_undrain", node=node)

    def restore_binary(self, node: str) -> None:
        self._run("node_restore", node=node)
