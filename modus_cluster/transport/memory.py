"""
In-process message bus.

All endpoints created from one InMemoryNetwork share a simulated wire that can
drop and delay messages. Used to run a whole cluster inside one event loop.
"""
import asyncio
import json
import logging
import random
from typing import Any, Dict, List, Optional

from ..core.errors import TransportError
from .base import DirectControl, MessageBus, ProtocolInbox, Received


class InMemoryNetwork:
    """Shared wire connecting InMemoryBus endpoints"""

    def __init__(self, drop_rate: float = 0.0, latency: float = 0.0, seed: Optional[int] = None):
        self.drop_rate = drop_rate
        self.latency = latency
        self.endpoints: Dict[str, "InMemoryBus"] = {}
        self.attached: Dict[str, Any] = {}
        self.sent: List[Dict[str, Any]] = []
        self._random = random.Random(seed)
        self.logger = logging.getLogger("InMemoryNetwork")

    def endpoint(self, node_id: str, direct: Optional[DirectControl] = None) -> "InMemoryBus":
        """Create (or return) the bus endpoint for ``node_id``"""
        bus = self.endpoints.get(node_id)
        if bus is None:
            bus = InMemoryBus(self, node_id, direct)
            self.endpoints[node_id] = bus
        elif direct is not None:
            bus.direct = direct
        return bus

    def attach(self, node_id: str, target: Any) -> None:
        """
        Make ``node_id`` directly controllable.

        ``target`` must provide ``async push_file(path, data)`` and
        ``async run_command(command)``.
        """
        self.attached[node_id] = target

    def detach(self, node_id: str) -> None:
        self.attached.pop(node_id, None)

    def direct_control(self) -> "InMemoryDirectControl":
        return InMemoryDirectControl(self)

    def transmit(self, sender: str, target: Optional[str], protocol: str, message: Dict[str, Any]) -> None:
        try:
            wire = json.dumps(message)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Message is not serializable: {e}") from e

        self.sent.append({"sender": sender, "target": target, "protocol": protocol, "message": message})

        if target is None:
            receivers = [bus for node_id, bus in self.endpoints.items() if node_id != sender]
        else:
            bus = self.endpoints.get(target)
            if bus is None:
                self.logger.debug(f"No endpoint {target}; message from {sender} lost")
                return
            receivers = [bus]

        for bus in receivers:
            if self.drop_rate and self._random.random() < self.drop_rate:
                self.logger.debug(f"Dropped {protocol} message {sender} -> {bus.node_id}")
                continue
            payload = json.loads(wire)
            if self.latency > 0:
                asyncio.get_running_loop().call_later(
                    self.latency, bus.inbox.deliver, protocol, sender, payload
                )
            else:
                bus.inbox.deliver(protocol, sender, payload)


class InMemoryBus(MessageBus):
    """One node's view of an InMemoryNetwork"""

    def __init__(self, network: InMemoryNetwork, node_id: str, direct: Optional[DirectControl] = None):
        super().__init__(node_id, direct)
        self.network = network
        self.inbox = ProtocolInbox()
        self.closed = False

    def _check_open(self) -> None:
        if self.closed:
            raise TransportError(f"Bus for node {self.node_id} is closed")

    async def unicast(self, node_id: str, protocol: str, message: Dict[str, Any]) -> None:
        self._check_open()
        self.network.transmit(self.node_id, node_id, protocol, message)

    async def broadcast(self, protocol: str, message: Dict[str, Any]) -> None:
        self._check_open()
        self.network.transmit(self.node_id, None, protocol, message)

    async def receive(self, protocol: str, timeout: Optional[float]) -> Optional[Received]:
        self._check_open()
        return await self.inbox.get(protocol, timeout)

    def resolve(self, node_id: str) -> Any:
        return f"memory://{node_id}" if node_id in self.network.endpoints else None

    async def close(self) -> None:
        self.closed = True
        self.network.endpoints.pop(self.node_id, None)
        await super().close()


class InMemoryDirectControl(DirectControl):
    """Direct control over targets attached to an InMemoryNetwork"""

    def __init__(self, network: InMemoryNetwork):
        self.network = network

    def has_node(self, node_id: str) -> bool:
        return node_id in self.network.attached

    def attached_nodes(self) -> List[str]:
        return list(self.network.attached)

    def _target(self, node_id: str) -> Any:
        target = self.network.attached.get(node_id)
        if target is None:
            raise TransportError(f"Node {node_id} is not attached")
        return target

    async def push(self, node_id: str, path: str, data: bytes) -> None:
        try:
            await self._target(node_id).push_file(path, data)
        except (OSError, ValueError) as e:
            raise TransportError(f"Direct push to {node_id} failed: {e}") from e

    async def execute(self, node_id: str, command: str) -> None:
        try:
            await self._target(node_id).run_command(command)
        except (OSError, LookupError) as e:
            raise TransportError(f"Direct execute on {node_id} failed: {e}") from e
