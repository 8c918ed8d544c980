"""
Weighted traffic switching between two backends.

Implementations drive an Istio VirtualService, an Nginx upstream file or
an HAProxy admin socket. Every switcher publishes an immutable
TrafficWeightAssignment, so readers never observe a pair of weights that
does not sum to 100.
"""

import json
import logging
import os
import socket
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from cancellation import CancellationToken
from errors import StepExecutionError
from models import TrafficWeightAssignment

logger = logging.getLogger(__name__)


def run_command(cmd: List[str], timeout: float = 60.0) -> str:
    """Run an external command and return its stdout, raising on failure."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, check=False
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise StepExecutionError(f"Command {cmd[0]} failed: {e}") from e
    if proc.returncode != 0:
        raise StepExecutionError(
            f"Command {cmd[0]} exited with {proc.returncode}: {proc.stderr.strip()[:200]}"
        )
    return proc.stdout


class TrafficSwitcher(ABC):
    """Base class: validation, locking and publication of weight assignments."""

    router_type = "none"

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Optional[TrafficWeightAssignment] = None

    @abstractmethod
    def _apply(self, assignment: TrafficWeightAssignment) -> None:
        """Push an assignment to the router. Raises StepExecutionError on failure."""

    def set_weights(
        self, backend_a: str, weight_a: int, backend_b: str, weight_b: int
    ) -> TrafficWeightAssignment:
        """
        Atomically route weight_a% to backend_a and weight_b% to backend_b.

        Raises:
            ValueError: If the weights are out of range or do not sum to 100
            StepExecutionError: If the router rejected the change
        """
        assignment = TrafficWeightAssignment(backend_a, weight_a, backend_b, weight_b)
        with self._lock:
            logger.info(
                f"[{self.router_type}] Switching traffic: {backend_a} ({weight_a}%) / "
                f"{backend_b} ({weight_b}%)"
            )
            self._apply(assignment)
            self._current = assignment
        logger.info(f"✓ Traffic updated: {backend_a} ({weight_a}%) / {backend_b} ({weight_b}%)")
        return assignment

    def current_weights(self) -> Optional[TrafficWeightAssignment]:
        """Last assignment successfully applied by this switcher."""
        return self._current

    def gradual_shift(
        self,
        source: str,
        target: str,
        step: int = 10,
        interval: float = 60.0,
        token: Optional[CancellationToken] = None,
        health_check: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """
        Shift traffic from source to target in `step`% increments.

        If `health_check` fails after an increment, traffic is returned to
        the source and the shift stops.

        Returns:
            True if the target ended at 100%
        """
        if step <= 0:
            raise ValueError("step must be positive")
        token = token or CancellationToken()
        logger.info(
            f"Gradual traffic shift: {source} -> {target} "
            f"(step: {step}%, interval: {interval:.0f}s)"
        )

        target_weight = 0
        while target_weight < 100:
            target_weight = min(100, target_weight + step)
            self.set_weights(source, 100 - target_weight, target, target_weight)

            if health_check is not None and not health_check():
                logger.error(f"Health check failed at {target_weight}%, reverting to {source}")
                self.set_weights(source, 100, target, 0)
                return False

            if target_weight < 100:
                token.sleep(interval)

        logger.info(f"✓ Gradual shift complete: 100% traffic on {target}")
        return True


class IstioTrafficSwitcher(TrafficSwitcher):
    """Weights on the first HTTP route of an Istio VirtualService."""

    router_type = "istio"

    def __init__(
        self,
        virtual_service: str = "keycloak-vs",
        namespace: str = "default",
        host: str = "keycloak",
        runner: Callable[[List[str]], str] = run_command,
    ):
        super().__init__()
        self.virtual_service = virtual_service
        self.namespace = namespace
        self.host = host
        self.runner = runner

    def build_patch(self, assignment: TrafficWeightAssignment) -> dict:
        return {
            "spec": {
                "http": [
                    {
                        "route": [
                            {
                                "destination": {"host": self.host, "subset": backend},
                                "weight": weight,
                            }
                            for backend, weight in (
                                (assignment.backend_a, assignment.weight_a),
                                (assignment.backend_b, assignment.weight_b),
                            )
                        ]
                    }
                ]
            }
        }

    def _apply(self, assignment: TrafficWeightAssignment) -> None:
        self.runner(
            [
                "kubectl",
                "patch",
                "virtualservice",
                self.virtual_service,
                "-n",
                self.namespace,
                "--type=merge",
                "-p",
                json.dumps(self.build_patch(assignment)),
            ]
        )


class NginxTrafficSwitcher(TrafficSwitcher):
    """Weighted `upstream` block in an Nginx include file, followed by a reload."""

    router_type = "nginx"

    def __init__(
        self,
        config_file: str = "/etc/nginx/conf.d/keycloak-upstream.conf",
        upstream: str = "keycloak_upstream",
        reload_command: Optional[List[str]] = None,
        runner: Callable[[List[str]], str] = run_command,
    ):
        super().__init__()
        self.config_file = config_file
        self.upstream = upstream
        self.reload_command = (
            ["nginx", "-s", "reload"] if reload_command is None else reload_command
        )
        self.runner = runner

    def render_upstream(self, assignment: TrafficWeightAssignment) -> str:
        lines = [f"upstream {self.upstream} {{"]
        for backend, weight in (
            (assignment.backend_a, assignment.weight_a),
            (assignment.backend_b, assignment.weight_b),
        ):
            # Nginx rejects weight=0; a drained server is marked down instead
            if weight == 0:
                lines.append(f"    server {backend} down;")
            else:
                lines.append(f"    server {backend} weight={weight};")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def _apply(self, assignment: TrafficWeightAssignment) -> None:
        directory = os.path.dirname(os.path.abspath(self.config_file))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".upstream-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(self.render_upstream(assignment))
            os.replace(tmp_path, self.config_file)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StepExecutionError(
                f"Failed to write Nginx upstream {self.config_file}: {e}"
            ) from e
        if self.reload_command:
            self.runner(self.reload_command)


class HAProxyTrafficSwitcher(TrafficSwitcher):
    """Server weights set through the HAProxy runtime API (admin socket)."""

    router_type = "haproxy"

    def __init__(
        self,
        backend: str = "keycloak_backend",
        socket_path: str = "/var/run/haproxy/admin.sock",
        timeout_s: float = 5.0,
    ):
        super().__init__()
        self.backend = backend
        self.socket_path = socket_path
        self.timeout_s = timeout_s

    def _send(self, command: str) -> str:
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout_s)
                sock.connect(self.socket_path)
                sock.sendall((command + "\n").encode())
                chunks = []
                while True:
                    data = sock.recv(4096)
                    if not data:
                        break
                    chunks.append(data)
        except OSError as e:
            raise StepExecutionError(
                f"HAProxy admin socket {self.socket_path} error: {e}"
            ) from e
        return b"".join(chunks).decode().strip()

    def weight_command(self, server: str, weight: int) -> str:
        return f"set weight {self.backend}/{server} {weight}"

    def _apply(self, assignment: TrafficWeightAssignment) -> None:
        # Higher weight first, one connection: the backend never sees (0, 0)
        weights = sorted(
            [(assignment.backend_a, assignment.weight_a), (assignment.backend_b, assignment.weight_b)],
            key=lambda pair: pair[1],
            reverse=True,
        )
        command = "; ".join(self.weight_command(server, weight) for server, weight in weights)
        reply = self._send(command)
        if reply:
            raise StepExecutionError(f"HAProxy rejected weight change: {reply}")


class NoopTrafficSwitcher(TrafficSwitcher):
    """Records assignments without touching a router (dry runs, tests)."""

    router_type = "none"

    def __init__(self):
        super().__init__()
        self.history: List[TrafficWeightAssignment] = []

    def _apply(self, assignment: TrafficWeightAssignment) -> None:
        self.history.append(assignment)


def get_traffic_switcher(router_type: str, **options) -> TrafficSwitcher:
    """
    Build a traffic switcher by router type.

    Raises:
        ValueError: For an unknown router type
    """
    switchers = {
        "istio": IstioTrafficSwitcher,
        "nginx": NginxTrafficSwitcher,
        "haproxy": HAProxyTrafficSwitcher,
        "none": NoopTrafficSwitcher,
    }
    if router_type not in switchers:
        raise ValueError(
            f"Unknown traffic router '{router_type}' "
            f"(expected one of: {', '.join(sorted(switchers))})"
        )
    return switchers[router_type](**options)
