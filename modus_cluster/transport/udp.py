"""
UDP message bus.

Each datagram is a JSON object ``{"sender", "target", "protocol", "message"}``.
Broadcasts go to the broadcast address on the shared bus port; unicast needs
the peer's address, which is learned from its datagrams or given up front.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

from ..core.errors import TransportError
from .base import DirectControl, MessageBus, ProtocolInbox, Received


class _BusProtocol(asyncio.DatagramProtocol):
    """asyncio protocol feeding datagrams into the bus"""

    def __init__(self, bus: "UdpMessageBus"):
        self.bus = bus

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.bus.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        self.bus.logger.debug(f"UDP error: {exc}")


class UdpMessageBus(MessageBus):
    """Message bus over UDP datagrams with broadcast support"""

    MAX_DATAGRAM = 65507

    def __init__(
        self,
        node_id: str,
        host: str = "0.0.0.0",
        port: int = 7450,
        broadcast_address: str = "255.255.255.255",
        peers: Optional[Dict[str, Tuple[str, int]]] = None,
        direct: Optional[DirectControl] = None,
    ):
        super().__init__(node_id, direct)
        self.host = host
        self.port = port
        self.broadcast_address = broadcast_address
        self.addresses: Dict[str, Tuple[str, int]] = dict(peers or {})
        self.inbox = ProtocolInbox()
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.logger = logging.getLogger(f"UdpMessageBus-{node_id}")

    async def open(self) -> "UdpMessageBus":
        loop = asyncio.get_running_loop()
        try:
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: _BusProtocol(self),
                local_addr=(self.host, self.port),
                allow_broadcast=True,
            )
        except OSError as e:
            raise TransportError(f"Cannot bind UDP bus on {self.host}:{self.port}: {e}") from e
        self.logger.info(f"UDP bus listening on {self.host}:{self.port}")
        return self

    async def __aenter__(self) -> "UdpMessageBus":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            envelope = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            self.logger.debug(f"Ignoring malformed datagram from {addr}")
            return

        if not isinstance(envelope, dict):
            return
        sender = envelope.get("sender")
        protocol = envelope.get("protocol")
        target = envelope.get("target")
        message = envelope.get("message")
        if not isinstance(sender, str) or not isinstance(protocol, str):
            self.logger.debug(f"Ignoring datagram without sender/protocol from {addr}")
            return
        if sender == self.node_id:
            return
        if target is not None and target != self.node_id:
            return

        self.addresses[sender] = (addr[0], addr[1])
        self.inbox.deliver(protocol, sender, message)

    def _encode(self, target: Optional[str], protocol: str, message: Dict[str, Any]) -> bytes:
        try:
            data = json.dumps({
                "sender": self.node_id,
                "target": target,
                "protocol": protocol,
                "message": message,
            }).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise TransportError(f"Message is not serializable: {e}") from e
        if len(data) > self.MAX_DATAGRAM:
            raise TransportError(f"Message of {len(data)} bytes exceeds datagram size")
        return data

    def _require_transport(self) -> asyncio.DatagramTransport:
        if self.transport is None:
            raise TransportError("UDP bus is not open")
        return self.transport

    async def unicast(self, node_id: str, protocol: str, message: Dict[str, Any]) -> None:
        transport = self._require_transport()
        address = self.addresses.get(node_id)
        if address is None:
            raise TransportError(f"Unknown address for node {node_id}")
        transport.sendto(self._encode(node_id, protocol, message), address)

    async def broadcast(self, protocol: str, message: Dict[str, Any]) -> None:
        transport = self._require_transport()
        transport.sendto(self._encode(None, protocol, message), (self.broadcast_address, self.port))

    async def receive(self, protocol: str, timeout: Optional[float]) -> Optional[Received]:
        return await self.inbox.get(protocol, timeout)

    def resolve(self, node_id: str) -> Any:
        return self.addresses.get(node_id)

    async def close(self) -> None:
        if self.transport is not None:
            self.transport.close()
            self.transport = None
        await super().close()
