"""
Lifecycle controller: deploy -> settle -> discover -> assign -> serve -> shut down.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .assignment import AssignmentOutcome, AssignmentStatus, RoleAssignmentManager
from .config import CoordinatorConfig, RoleDefinition
from .deployment import DeploymentCoordinator, DeployResult, InstallReport, load_role_files
from .dispatcher import TaskDispatcher
from .errors import NoWorkersFound, TransportError
from . import messages
from .registry import NodeRegistry
from .state import ClusterState, Node
from ..transport.base import MessageBus


class ClusterStatus(str, Enum):
    """Aggregate state of the cluster session"""
    STARTING = "starting"
    SERVING = "serving"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass
class RoleStatus:
    """Readiness of one configured role as shown to operators"""
    role: str
    ready: bool
    reason: Optional[str] = None
    node_id: Optional[str] = None

    def __str__(self) -> str:
        return "ready" if self.ready else f"down({self.reason})"

    def to_dict(self) -> dict:
        return {'role': self.role, 'state': str(self), 'node_id': self.node_id}


class ClusterHandle:
    """
    Caller-facing handle on a started cluster.

    Usable as an async context manager; leaving the block shuts the cluster down.
    """

    def __init__(
        self,
        controller: "ClusterController",
        roles: Sequence[RoleDefinition],
        outcomes: Dict[str, AssignmentOutcome],
        deploy_results: Optional[Dict[str, DeployResult]] = None,
        install_reports: Optional[Dict[str, InstallReport]] = None,
    ):
        self.controller = controller
        self.roles = list(roles)
        self.outcomes = outcomes
        self.deploy_results = deploy_results or {}
        self.install_reports = install_reports or {}

    async def __aenter__(self) -> "ClusterHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def call(
        self,
        role: str,
        operation: str,
        payload: Any = None,
        deadline: Optional[float] = None,
    ) -> Any:
        """Dispatch a task to ``role``; see TaskDispatcher.call"""
        return await self.controller.dispatcher.call(role, operation, payload, deadline)

    def status(self) -> Dict[str, RoleStatus]:
        """Readiness of every configured role"""
        bound = self.controller.state.roles_by_name
        statuses = {}
        for role in self.roles:
            node = bound.get(role.name)
            outcome = self.outcomes.get(role.name)
            if node is not None and node.ready:
                statuses[role.name] = RoleStatus(role.name, True, node_id=node.node_id)
            elif outcome is None or outcome.status == AssignmentStatus.PENDING:
                statuses[role.name] = RoleStatus(role.name, False, "not_assigned")
            elif outcome.ready:
                # ready roles only lose readiness through shutdown
                statuses[role.name] = RoleStatus(role.name, False, "shutdown", outcome.node_id)
            else:
                statuses[role.name] = RoleStatus(
                    role.name, False, outcome.reason or outcome.status.value, outcome.node_id
                )
        return statuses

    @property
    def ready_count(self) -> int:
        return sum(1 for status in self.status().values() if status.ready)

    @property
    def degraded(self) -> bool:
        return self.ready_count < len(self.roles)

    def report(self) -> str:
        """Human-readable status table"""
        lines = ["Cluster Status:"]
        for status in self.status().values():
            node = f" (node {status.node_id})" if status.node_id else ""
            lines.append(f"  {status.role}: {status}{node}")
        lines.append(f"{self.ready_count}/{len(self.roles)} roles ready")
        return "\n".join(lines)

    async def shutdown(self) -> None:
        await self.controller.shutdown()


class ClusterController:
    """
    Owns the ClusterState of one session and drives every startup phase.

    Args:
        bus: Message bus of the coordinator node
        config: Coordinator configuration (timings, protocols, roles)
        bootstrap_payload: Listener code pushed to attached nodes before
            discovery; deployment is skipped when None
    """

    def __init__(
        self,
        bus: MessageBus,
        config: Optional[CoordinatorConfig] = None,
        bootstrap_payload: Optional[bytes] = None,
    ):
        self.bus = bus
        self.config = config or CoordinatorConfig(coordinator_id=bus.node_id)
        self.bootstrap_payload = bootstrap_payload
        self.state = ClusterState()
        self.status = ClusterStatus.STOPPED
        self.logger = logging.getLogger(f"ClusterController-{bus.node_id}")

        protocols = self.config.protocols
        poll = self.config.receive_poll_interval
        self.registry = NodeRegistry(bus, self.state, protocols.discovery, poll)
        self.deployer = DeploymentCoordinator(
            bus,
            deploy_protocol=protocols.deploy,
            install_protocol=protocols.discovery,
            settle_interval=self.config.settle_interval,
            bootstrap_path=self.config.bootstrap_path,
            bootstrap_command=self.config.bootstrap_command,
            poll_interval=poll,
        )
        self.assigner = RoleAssignmentManager(
            bus,
            self.state,
            protocols.cluster,
            attempt_timeout=self.config.assign_attempt_timeout,
            retry_budget=self.config.assign_retry_budget,
            backoff=self.config.assign_backoff,
            poll_interval=poll,
        )
        self.dispatcher = TaskDispatcher(
            bus,
            self.state,
            protocols.cluster,
            default_deadline=self.config.task_default_deadline,
            poll_interval=poll,
        )
        self.handle: Optional[ClusterHandle] = None
        self._finished = False

    async def start_cluster(self, roles: Optional[Sequence[RoleDefinition]] = None) -> ClusterHandle:
        """
        Bring the cluster up and return a handle for dispatching tasks.

        Raises:
            NoWorkersFound: discovery yielded zero nodes
            RuntimeError: the cluster is running or was already shut down
        """
        if self._finished:
            raise RuntimeError("Cluster was shut down; create a new controller to start again")
        if self.status in (ClusterStatus.STARTING, ClusterStatus.SERVING, ClusterStatus.DEGRADED):
            raise RuntimeError("Cluster already started")
        roles = list(roles) if roles is not None else list(self.config.roles)
        self.status = ClusterStatus.STARTING
        self.logger.info(f"=== Starting cluster with {len(roles)} roles ===")
        try:
            deploy_results = await self._deploy()

            nodes = await self.registry.discover(self.config.discovery_window)
            if not nodes:
                raise NoWorkersFound("No worker computers found! Check network connections.", discovered=0)

            install_reports = await self._install(nodes, roles)

            outcomes = await self.assigner.assign_roles(nodes, roles)
            self.dispatcher.start(self.state.roles_snapshot())
        except BaseException:
            await self._release_roles()
            self.state.clear()
            self.status = ClusterStatus.STOPPED
            raise

        self.handle = ClusterHandle(self, roles, outcomes, deploy_results, install_reports)
        if self.handle.ready_count == 0:
            self.status = ClusterStatus.DEGRADED
            self.logger.warning("No roles ready; every call will fail with WorkerNotReady")
        elif self.handle.degraded:
            self.status = ClusterStatus.DEGRADED
            self.logger.warning(
                f"Cluster degraded: {self.handle.ready_count}/{len(roles)} roles ready"
            )
        else:
            self.status = ClusterStatus.SERVING
            self.logger.info("Cluster is ready")
        return self.handle

    async def _deploy(self) -> Dict[str, DeployResult]:
        if self.bootstrap_payload is None:
            return {}
        targets = self.bus.attached_nodes()
        if not targets:
            self.logger.info("No directly attached nodes; skipping bootstrap deployment")
            return {}
        nodes = [self.state.add_node(node_id, self.bus.resolve(node_id)) for node_id in targets]
        return await self.deployer.deploy(nodes, self.bootstrap_payload)

    async def _install(
        self,
        nodes: List[Node],
        roles: Sequence[RoleDefinition],
    ) -> Dict[str, InstallReport]:
        if not self.config.payload_root:
            return {}
        reports: Dict[str, InstallReport] = {}
        for node, role in zip(nodes, roles):
            if not role.payload_manifest:
                continue
            try:
                files = load_role_files(role, self.config.payload_root)
            except FileNotFoundError as e:
                self.logger.error(f"Missing payload for role '{role.name}': {e}")
                reports[role.name] = InstallReport(role.name, False, node.node_id, f"missing_payload:{e}")
                continue
            reports[role.name] = await self.deployer.install_role(
                node, role, files, self.config.install_timeout
            )
        return reports

    async def shutdown(self) -> None:
        """
        Cancel in-flight calls, tell every bound node to shut down and clear
        the session state.

        The shutdown message is fire-and-forget: nothing waits for an
        acknowledgement and delivery is not guaranteed.
        """
        if self.status == ClusterStatus.STOPPED:
            return
        self.logger.info("Shutting down cluster...")
        self._finished = True
        await self.dispatcher.close()
        await self._release_roles()
        self.state.clear()
        self.status = ClusterStatus.STOPPED
        self.logger.info("Cluster shutdown complete")

    async def _release_roles(self) -> None:
        """Best-effort shutdown message to every node holding a role"""
        for role, node in list(self.state.roles_by_name.items()):
            try:
                await self.bus.unicast(node.node_id, self.config.protocols.cluster, messages.shutdown())
            except TransportError as e:
                self.registry.mark_unreachable(node.node_id)
                self.logger.warning(f"Shutdown for '{role}' not sent to {node.node_id}: {e}")


async def start_cluster(
    bus: MessageBus,
    config: Optional[CoordinatorConfig] = None,
    roles: Optional[Sequence[RoleDefinition]] = None,
    bootstrap_payload: Optional[bytes] = None,
) -> ClusterHandle:
    """Create a controller on ``bus`` and start the cluster"""
    controller = ClusterController(bus, config, bootstrap_payload)
    return await controller.start_cluster(roles)
