"""
Node registry: discovery of worker nodes over the broadcast bus.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from . import messages
from .state import ClusterState, Node
from ..transport.base import MessageBus


class NodeRegistry:
    """
    Tracks known worker nodes and discovers new ones.

    Discovery broadcasts ``discover`` once and collects ``worker_available``
    replies for a fixed window. Replies are deduplicated by sender id and the
    result keeps first-reply order, which later drives role pairing.
    """

    def __init__(
        self,
        bus: MessageBus,
        state: ClusterState,
        protocol: str,
        poll_interval: float = 0.3,
    ):
        self.bus = bus
        self.state = state
        self.protocol = protocol
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(f"NodeRegistry-{bus.node_id}")

    async def discover(self, window: float) -> List[Node]:
        """
        Discover worker nodes.

        Args:
            window: Seconds to listen for replies after the broadcast

        Returns:
            Discovered nodes in the order their first reply arrived. An empty
            list is a valid outcome; the caller decides whether to abort.
        """
        loop = asyncio.get_running_loop()
        found: Dict[str, Node] = {}
        duplicates = 0

        self.logger.info(f"Broadcasting discovery on {self.protocol}, listening for {window:.1f}s")
        await self.bus.broadcast(self.protocol, messages.discover(self.bus.node_id))

        deadline = loop.time() + window
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            received = await self.bus.receive(self.protocol, timeout=min(remaining, self.poll_interval))
            if received is None:
                continue

            sender, message = received
            if messages.message_type(message) != messages.WORKER_AVAILABLE:
                self.logger.debug(f"Ignoring {messages.message_type(message)!r} from {sender} during discovery")
                continue
            if sender == self.bus.node_id:
                continue
            if sender in found:
                duplicates += 1
                self.logger.debug(f"Duplicate response from worker {sender} (ignored)")
                continue

            node = self.state.mark_discovered(sender, self.bus.resolve(sender))
            found[sender] = node
            self.logger.info(f"Ready worker found: {sender}")

        nodes = list(found.values())
        if nodes:
            self.logger.info(
                f"Discovery complete: {len(nodes)} workers found ({duplicates} duplicate replies)"
            )
        else:
            self.logger.warning(f"Discovery window of {window:.1f}s closed with no workers")
        return nodes

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.state.nodes.get(node_id)

    def get_discovered_nodes(self) -> List[Node]:
        return [node for node in self.state.nodes.values() if node.discovered]

    def mark_unreachable(self, node_id: str) -> None:
        self.state.mark_unreachable(node_id)
        self.logger.warning(f"Node marked unreachable: {node_id}")
