"""
Rolling update across cluster nodes.

Each node goes DRAIN -> STOP -> UPGRADE -> START -> HEALTH_CHECK -> UNDRAIN.
Nodes are processed in batches of `nodes_at_once`; a node that stays
unhealthy gets its previous binary back and the rollout stops before the
next batch.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Dict, List, Optional

from cancellation import CancellationToken
from collaborators import NodeOperator
from errors import MigrationCancelled, MigrationError, StepExecutionError
from models import WorkerKind
from progress import ProgressBoard
from rollout import RolloutStrategy

logger = logging.getLogger(__name__)

# Node progress after each completed state
NODE_PROGRESS = {"DRAINED": 0.2, "STOPPED": 0.4, "UPGRADED": 0.6, "STARTED": 0.8, "DONE": 1.0}


class NodeState(Enum):
    PENDING = "PENDING"
    DRAINED = "DRAINED"
    STOPPED = "STOPPED"
    UPGRADED = "UPGRADED"
    STARTED = "STARTED"
    HEALTHY = "HEALTHY"
    DONE = "DONE"
    FAILED = "FAILED"
    RESTORED = "RESTORED"


class RollingStrategy(RolloutStrategy):
    """Node-by-node (or batch-by-batch) in-place upgrade of a cluster."""

    name = "rolling_update"

    def __init__(
        self,
        nodes: List[str],
        operator: NodeOperator,
        nodes_at_once: int = 1,
        drain_timeout: float = 60.0,
        drain_poll_interval: float = 2.0,
        node_retries: int = 3,
        retry_interval: float = 10.0,
        board: Optional[ProgressBoard] = None,
        token: Optional[CancellationToken] = None,
    ):
        """
        Set up the rolling update.

        Args:
            nodes: Node ids in rollout order
            operator: Node operations adapter
            nodes_at_once: Batch size (nodes upgraded concurrently)
            drain_timeout: Max wait for active connections to reach 0 (seconds)
            drain_poll_interval: Seconds between connection checks
            node_retries: Health check attempts per node
            retry_interval: Seconds between health check attempts
            board: Progress board for live reporting
            token: Cancellation token
        """
        super().__init__(token)
        if not nodes:
            raise ValueError("Rolling update requires at least one node")
        self.nodes = nodes
        self.operator = operator
        self.nodes_at_once = max(1, nodes_at_once)
        self.drain_timeout = drain_timeout
        self.drain_poll_interval = drain_poll_interval
        self.node_retries = max(1, node_retries)
        self.retry_interval = retry_interval
        self.board = board or ProgressBoard()
        self.node_states: Dict[str, NodeState] = {}

    def describe(self) -> str:
        return f"rolling_update ({len(self.nodes)} nodes, {self.nodes_at_once} at once)"

    def _set_state(self, node: str, state: NodeState) -> None:
        self.node_states[node] = state
        if state.value in NODE_PROGRESS:
            self.board.update(node, progress=NODE_PROGRESS[state.value])

    def _wait_drained(self, node: str) -> None:
        logger.info(f"Waiting for connections to drain from {node} (timeout: {self.drain_timeout:.0f}s)...")
        elapsed = 0.0
        while elapsed < self.drain_timeout:
            active = self.operator.active_connections(node)
            if active == 0:
                logger.info(f"✓ Node {node} fully drained (0 active connections)")
                return
            logger.info(f"  {node}: {active} active connection(s), waiting...")
            self.token.sleep(self.drain_poll_interval)
            elapsed += self.drain_poll_interval
        logger.warning(f"Drain timeout exceeded for {node} (still has connections)")

    def _healthy(self, node: str) -> bool:
        for attempt in range(1, self.node_retries + 1):
            if self.operator.node_healthy(node):
                return True
            logger.warning(f"[{node}] Health check attempt {attempt}/{self.node_retries} failed")
            if attempt < self.node_retries:
                self.token.sleep(self.retry_interval)
        return False

    def _restore_node(self, node: str, step: str) -> None:
        logger.error(f"[{node}] Restoring previous binary")
        try:
            self.operator.stop_node(node)
            self.operator.restore_binary(node)
            self.operator.start_node(node)
            self.node_states[node] = NodeState.RESTORED
            logger.info(f"[{node}] Previous binary restored, node left drained for inspection")
        except Exception as e:
            self.node_states[node] = NodeState.FAILED
            logger.error(f"[{node}] Restore of previous binary failed: {e}")

    def _migrate_node(self, node: str, step: str) -> None:
        logger.info(f"[{node}] Cluster node migration to {step}")
        try:
            logger.info(f"[{node}] Step 1/5: Draining node...")
            self.operator.drain(node)
            self._wait_drained(node)
            self._set_state(node, NodeState.DRAINED)

            logger.info(f"[{node}] Step 2/5: Stopping Keycloak...")
            self.operator.stop_node(node)
            self._set_state(node, NodeState.STOPPED)

            logger.info(f"[{node}] Step 3/5: Updating Keycloak to {step}...")
            self.operator.upgrade_node(node, step)
            self._set_state(node, NodeState.UPGRADED)

            logger.info(f"[{node}] Step 4/5: Starting Keycloak...")
            self.operator.start_node(node)
            self._set_state(node, NodeState.STARTED)

            if not self._healthy(node):
                self._restore_node(node, step)
                raise StepExecutionError(
                    f"Node {node} failed health check after {self.node_retries} attempts",
                    step=step,
                )
            self._set_state(node, NodeState.HEALTHY)

            logger.info(f"[{node}] Step 5/5: Re-adding to cluster...")
            self.operator.undrain(node)
            self._set_state(node, NodeState.DONE)
        except MigrationError:
            if self.node_states.get(node) != NodeState.RESTORED:
                self.node_states[node] = NodeState.FAILED
            raise
        except Exception as e:
            self.node_states[node] = NodeState.FAILED
            raise StepExecutionError(f"Node {node} migration failed: {e}", step=step) from e

        logger.info(f"✓ [{node}] Node migration complete")

    def execute_step(self, step: str, resume_stage: Optional[str] = None) -> None:
        self.node_states = {node: NodeState.PENDING for node in self.nodes}
        for node in self.nodes:
            self.board.register(node, WorkerKind.NODE)

        batches = [
            self.nodes[i : i + self.nodes_at_once]
            for i in range(0, len(self.nodes), self.nodes_at_once)
        ]
        for number, batch in enumerate(batches, start=1):
            logger.info(f"Batch {number}/{len(batches)}: {', '.join(batch)}")
            failed: Dict[str, BaseException] = {}

            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                futures = {pool.submit(self._migrate_node, node, step): node for node in batch}
                for future in as_completed(futures):
                    node = futures[future]
                    try:
                        future.result()
                        self.board.update(node, status="success")
                    except MigrationCancelled:
                        raise
                    except MigrationError as e:
                        logger.error(f"[{node}] {e}")
                        self.board.fail(node, str(e))
                        failed[node] = e

            logger.info("\n" + self.board.render())
            if failed:
                untouched = [n for n, s in self.node_states.items() if s == NodeState.PENDING]
                if untouched:
                    logger.warning(f"Rolling update stopped; untouched nodes: {', '.join(untouched)}")
                raise StepExecutionError(
                    f"Rolling update to {step} failed on node(s): {', '.join(sorted(failed))}",
                    step=step,
                )

        logger.info(f"✓ All {len(self.nodes)} nodes migrated to {step}")

    def rollback(
        self, step: str, error: BaseException, backup: Optional[str] = None
    ) -> None:
        upgraded = [n for n, s in self.node_states.items() if s == NodeState.DONE]
        restored = [n for n, s in self.node_states.items() if s == NodeState.RESTORED]
        untouched = [n for n, s in self.node_states.items() if s == NodeState.PENDING]
        failed = [n for n, s in self.node_states.items() if s == NodeState.FAILED]
        logger.warning(f"Rolling update to {step} aborted: {error}")
        logger.warning(f"  Upgraded:   {', '.join(upgraded) or '-'}")
        logger.warning(f"  Restored:   {', '.join(restored) or '-'}")
        logger.warning(f"  Failed:     {', '.join(failed) or '-'}")
        logger.warning(f"  Untouched:  {', '.join(untouched) or '-'}")
