"""
Deployment coordinator: pushes the bootstrap listener to worker nodes and
installs role payloads on the nodes paired with each role.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Optional

from . import messages
from .config import RoleDefinition
from .errors import DeploymentFailed, TransportError
from .state import Node
from ..transport.base import MessageBus


class DeployOutcome(str, Enum):
    """How the bootstrap reached a node"""
    OK = "ok"
    FALLBACK_USED = "fallback-used"
    FAILED = "failed"


@dataclass
class DeployResult:
    """Outcome of deploying to a single node"""
    node_id: str
    outcome: DeployOutcome
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.outcome != DeployOutcome.FAILED

    def to_dict(self) -> dict:
        return {'node_id': self.node_id, 'outcome': self.outcome.value, 'error': self.error}


@dataclass
class InstallReport:
    """Outcome of installing a role payload on its node"""
    role: str
    success: bool
    node_id: Optional[str] = None
    reason: Optional[str] = None


class DeploymentCoordinator:
    """
    Deploys code to worker nodes.

    For each node the direct-control fast path is tried first (write the
    payload, then start it). If the node is not directly attached or the
    fast path fails, the payload is sent as a ``deploy_file`` message with
    the execute flag, which only lands if the node is already listening.
    """

    def __init__(
        self,
        bus: MessageBus,
        deploy_protocol: str,
        install_protocol: str,
        settle_interval: float = 8.0,
        bootstrap_path: str = "worker_listener",
        bootstrap_command: str = "start_listener",
        poll_interval: float = 0.3,
    ):
        self.bus = bus
        self.deploy_protocol = deploy_protocol
        self.install_protocol = install_protocol
        self.settle_interval = settle_interval
        self.bootstrap_path = bootstrap_path
        self.bootstrap_command = bootstrap_command
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(f"DeploymentCoordinator-{bus.node_id}")

    async def deploy(self, nodes: Iterable[Node], payload: bytes) -> Dict[str, DeployResult]:
        """
        Deploy ``payload`` to every node, then wait for listeners to settle.

        One node's failure never stops deployment to the others.
        """
        results: Dict[str, DeployResult] = {}
        nodes = list(nodes)
        self.logger.info(f"Deploying {len(payload)} byte bootstrap to {len(nodes)} nodes")

        for node in nodes:
            results[node.node_id] = await self._deploy_node(node, payload)

        delivered = sum(1 for result in results.values() if result.delivered)
        self.logger.info(f"Listeners deployed: {delivered}/{len(nodes)}")

        if self.settle_interval > 0:
            self.logger.info(f"Waiting {self.settle_interval:.1f}s for listeners to start")
            await asyncio.sleep(self.settle_interval)

        return results

    async def _deploy_node(self, node: Node, payload: bytes) -> DeployResult:
        node_id = node.node_id

        if self.bus.supports_direct(node_id):
            try:
                await self.bus.direct_push(node_id, self.bootstrap_path, payload)
                await self.bus.direct_execute(node_id, self.bootstrap_command)
                self.logger.info(f"Listener deployed and started on {node_id}")
                return DeployResult(node_id, DeployOutcome.OK)
            except TransportError as e:
                self.logger.warning(f"Direct deployment to {node_id} failed, trying network method: {e}")

        try:
            await self.bus.unicast(
                node_id,
                self.deploy_protocol,
                messages.deploy_file(self.bootstrap_path, payload, execute=True),
            )
        except TransportError as e:
            failure = DeploymentFailed(node_id, str(e))
            self.logger.error(str(failure))
            return DeployResult(node_id, DeployOutcome.FAILED, failure.reason)

        self.logger.info(f"Bootstrap sent to {node_id} over the bus")
        return DeployResult(node_id, DeployOutcome.FALLBACK_USED)

    async def install_role(
        self,
        node: Node,
        role: RoleDefinition,
        files: Dict[str, bytes],
        timeout: float = 120.0,
    ) -> InstallReport:
        """
        Send a role's payload files to ``node`` and wait for the install report.

        Only ``install_complete``/``install_error`` from that node for that
        role end the wait; everything else is ignored.
        """
        node_id = node.node_id
        self.logger.info(f"Installing role '{role.name}' payload ({len(files)} files) on {node_id}")
        try:
            await self.bus.unicast(
                node_id,
                self.install_protocol,
                messages.deploy_installer(role.name, files, self.bus.node_id),
            )
        except TransportError as e:
            self.logger.error(f"Could not send installer for '{role.name}' to {node_id}: {e}")
            return InstallReport(role.name, False, node_id, f"send_failed:{e}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.logger.warning(f"Installation of '{role.name}' on {node_id} timed out")
                return InstallReport(role.name, False, node_id, "timeout")

            received = await self.bus.receive(self.install_protocol, timeout=min(remaining, self.poll_interval))
            if received is None:
                continue
            sender, message = received
            if sender != node_id or not isinstance(message, dict) or message.get("role") != role.name:
                continue

            kind = messages.message_type(message)
            if kind == messages.INSTALL_COMPLETE:
                self.logger.info(f"Installation of '{role.name}' on {node_id} completed")
                return InstallReport(role.name, True, node_id)
            if kind == messages.INSTALL_ERROR:
                reason = str(message.get("error") or "unknown error")
                self.logger.error(f"Installation of '{role.name}' on {node_id} failed: {reason}")
                return InstallReport(role.name, False, node_id, reason)


def load_role_files(role: RoleDefinition, payload_root: str) -> Dict[str, bytes]:
    """
    Read the files named in a role's manifest from ``payload_root``.

    Raises:
        FileNotFoundError: if a manifest entry has no file
    """
    root = Path(payload_root)
    files = {}
    for name in role.payload_manifest:
        path = root / name
        if not path.is_file():
            raise FileNotFoundError(name)
        files[name] = path.read_bytes()
    return files
