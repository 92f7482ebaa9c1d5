"""
Message bus interface consumed by the coordination layer
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import TransportError

Received = Tuple[str, Dict[str, Any]]


class DirectControl(ABC):
    """
    Privileged control over nodes that are locally attached to the coordinator.

    Used only by the deployment fast path: write a file onto the node and
    start something on it without the node listening on the bus yet.
    """

    @abstractmethod
    def has_node(self, node_id: str) -> bool:
        """Whether ``node_id`` can be controlled directly"""

    @abstractmethod
    def attached_nodes(self) -> List[str]:
        """Node ids reachable through this capability"""

    @abstractmethod
    async def push(self, node_id: str, path: str, data: bytes) -> None:
        """Write ``data`` to ``path`` in the node's storage"""

    @abstractmethod
    async def execute(self, node_id: str, command: str) -> None:
        """Trigger ``command`` on the node"""

    async def close(self) -> None:
        pass


class ProtocolInbox:
    """Per-protocol queues of inbound (sender, message) pairs"""

    def __init__(self, maxsize: int = 1024):
        self.maxsize = maxsize
        self._queues: Dict[str, asyncio.Queue] = {}
        self.logger = logging.getLogger("ProtocolInbox")

    def _queue(self, protocol: str) -> asyncio.Queue:
        queue = self._queues.get(protocol)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.maxsize)
            self._queues[protocol] = queue
        return queue

    def deliver(self, protocol: str, sender: str, message: Dict[str, Any]) -> None:
        try:
            self._queue(protocol).put_nowait((sender, message))
        except asyncio.QueueFull:
            # The bus is lossy; an overflowing inbox drops like the wire would
            self.logger.warning(f"Inbox for {protocol} full, dropping message from {sender}")

    async def get(self, protocol: str, timeout: Optional[float]) -> Optional[Received]:
        queue = self._queue(protocol)
        if timeout is not None and timeout <= 0:
            try:
                return queue.get_nowait()
            except asyncio.QueueEmpty:
                return None
        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class MessageBus(ABC):
    """
    Unreliable unicast/broadcast transport with protocol tagging.

    ``receive`` returns ``(sender_id, message)`` or None when ``timeout``
    elapses. Messages may be lost, duplicated or reordered; nothing here
    retries.
    """

    def __init__(self, node_id: str, direct: Optional[DirectControl] = None):
        self.node_id = node_id
        self.direct = direct

    @abstractmethod
    async def unicast(self, node_id: str, protocol: str, message: Dict[str, Any]) -> None:
        """Send ``message`` to a single node"""

    @abstractmethod
    async def broadcast(self, protocol: str, message: Dict[str, Any]) -> None:
        """Send ``message`` to every node listening on the bus"""

    @abstractmethod
    async def receive(self, protocol: str, timeout: Optional[float]) -> Optional[Received]:
        """Wait up to ``timeout`` seconds for the next message on ``protocol``"""

    def resolve(self, node_id: str) -> Any:
        """Transport-level handle for ``node_id`` (address, endpoint...), if known"""
        return None

    def supports_direct(self, node_id: str) -> bool:
        return self.direct is not None and self.direct.has_node(node_id)

    def attached_nodes(self) -> List[str]:
        return self.direct.attached_nodes() if self.direct is not None else []

    async def direct_push(self, node_id: str, path: str, data: bytes) -> None:
        if not self.supports_direct(node_id):
            raise TransportError(f"No direct control for node {node_id}")
        await self.direct.push(node_id, path, data)

    async def direct_execute(self, node_id: str, command: str) -> None:
        if not self.supports_direct(node_id):
            raise TransportError(f"No direct control for node {node_id}")
        await self.direct.execute(node_id, command)

    async def close(self) -> None:
        if self.direct is not None:
            await self.direct.close()
