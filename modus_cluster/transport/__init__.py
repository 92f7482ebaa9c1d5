"""
Message bus implementations used by coordinator and workers.
"""
from .base import DirectControl, MessageBus, ProtocolInbox
from .memory import InMemoryBus, InMemoryDirectControl, InMemoryNetwork
from .udp import UdpMessageBus
from .direct import HttpDirectControl

__all__ = [
    'DirectControl',
    'MessageBus',
    'ProtocolInbox',
    'InMemoryBus',
    'InMemoryDirectControl',
    'InMemoryNetwork',
    'UdpMessageBus',
    'HttpDirectControl',
]
