"""
Role assignment: binds configured roles to discovered nodes.

Pairing is positional. The i-th configured role is offered to the i-th node
in discovery order; role metadata never influences which node gets it. A node
that replied late to discovery therefore receives a later role.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from . import messages
from .config import RoleDefinition
from .errors import AssignmentTimeout, NoWorkerAvailable, TransportError
from .state import ClusterState, Node
from ..transport.base import MessageBus


class AssignmentStatus(str, Enum):
    """Per-role assignment state"""
    PENDING = "pending"
    READY = "ready"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    NO_WORKER = "no_worker"


@dataclass
class AssignmentOutcome:
    """Final state of one role after the assignment handshake"""
    role: str
    status: AssignmentStatus
    node_id: Optional[str] = None
    attempts: int = 0
    loaded_modules: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.status == AssignmentStatus.READY

    def to_dict(self) -> dict:
        return {
            'role': self.role,
            'status': self.status.value,
            'node_id': self.node_id,
            'attempts': self.attempts,
            'loaded_modules': list(self.loaded_modules),
            'reason': self.reason,
        }


class RoleAssignmentManager:
    """
    Performs the ``assign_role``/``role_ack`` handshake.

    Each pairing is retried up to ``retry_budget`` times, waiting
    ``attempt_timeout`` seconds per attempt (multiplied by ``backoff`` after
    each unanswered attempt). A role ends either READY or down (TIMEOUT,
    REJECTED, NO_WORKER) and never returns to PENDING within a session.
    """

    def __init__(
        self,
        bus: MessageBus,
        state: ClusterState,
        protocol: str,
        attempt_timeout: float = 5.0,
        retry_budget: int = 6,
        backoff: float = 1.0,
        poll_interval: float = 0.3,
    ):
        self.bus = bus
        self.state = state
        self.protocol = protocol
        self.attempt_timeout = attempt_timeout
        self.retry_budget = retry_budget
        self.backoff = backoff
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(f"RoleAssignmentManager-{bus.node_id}")

    async def assign_roles(
        self,
        nodes: Sequence[Node],
        roles: Sequence[RoleDefinition],
    ) -> Dict[str, AssignmentOutcome]:
        """
        Assign ``roles`` to ``nodes`` by position.

        Returns:
            Outcome per role name, in configured role order. Roles beyond the
            number of nodes are reported NO_WORKER.
        """
        names = [role.name for role in roles]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate role names in {names}")
        if len({node.node_id for node in nodes}) != len(nodes):
            raise ValueError("Node list contains the same node more than once")

        outcomes: Dict[str, AssignmentOutcome] = {}
        self.logger.info(f"Assigning {len(roles)} roles to {len(nodes)} workers")

        for index, role in enumerate(roles):
            if index >= len(nodes):
                self.logger.warning(str(NoWorkerAvailable(role.name)))
                outcomes[role.name] = AssignmentOutcome(
                    role.name, AssignmentStatus.NO_WORKER, reason="no_worker"
                )
                continue
            outcomes[role.name] = await self._assign(nodes[index], role)

        ready = sum(1 for outcome in outcomes.values() if outcome.ready)
        self.logger.info(f"Cluster Ready: {ready}/{len(roles)}")
        return outcomes

    async def _assign(self, node: Node, role: RoleDefinition) -> AssignmentOutcome:
        timeout = self.attempt_timeout
        request = messages.assign_role(role.name, role.payload_manifest)

        for attempt in range(1, self.retry_budget + 1):
            try:
                await self.bus.unicast(node.node_id, self.protocol, request)
            except TransportError as e:
                self.logger.warning(f"Sending '{role.name}' to {node.node_id} failed (attempt {attempt}): {e}")

            ack = await self._await_ack(node.node_id, role.name, timeout)
            if ack is not None:
                loaded = [str(name) for name in ack.get("loaded_modules") or []]
                node.loaded_modules = loaded
                if ack.get("ok") is True:
                    self.state.bind_role(role.name, node)
                    self.logger.info(f"{role.name.upper()}: READY on {node.node_id} ({len(loaded)} modules)")
                    return AssignmentOutcome(
                        role.name, AssignmentStatus.READY, node.node_id, attempt, loaded
                    )

                node.role = role.name
                node.ready = False
                reason = str(ack.get("reason") or "rejected")
                self.logger.warning(f"{role.name.upper()}: ERR on {node.node_id} ({reason})")
                return AssignmentOutcome(
                    role.name, AssignmentStatus.REJECTED, node.node_id, attempt, loaded, reason
                )

            self.logger.debug(f"No ack for '{role.name}' from {node.node_id} (attempt {attempt}/{self.retry_budget})")
            timeout *= self.backoff

        node.role = role.name
        node.ready = False
        self.logger.warning(str(AssignmentTimeout(role.name, node.node_id, self.retry_budget)))
        return AssignmentOutcome(
            role.name, AssignmentStatus.TIMEOUT, node.node_id, self.retry_budget, reason="timeout"
        )

    async def _await_ack(self, node_id: str, role: str, timeout: float) -> Optional[Dict[str, Any]]:
        """Wait for a ``role_ack`` from ``node_id`` naming ``role``"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            received = await self.bus.receive(self.protocol, timeout=min(remaining, self.poll_interval))
            if received is None:
                continue
            sender, message = received
            if messages.message_type(message) != messages.ROLE_ACK:
                continue
            if sender != node_id or message.get("role") != role:
                self.logger.debug(f"Ignoring stale ack from {sender} for {message.get('role')!r}")
                continue
            return message
