"""
Cluster state owned by the lifecycle controller
"""
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


@dataclass
class Node:
    """A peer participating in the cluster, identified by its transport id"""
    node_id: str
    handle: Any = None
    discovered: bool = False
    role: Optional[str] = None
    ready: bool = False
    reachable: bool = True
    discovered_at: Optional[float] = None
    loaded_modules: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'node_id': self.node_id,
            'discovered': self.discovered,
            'role': self.role,
            'ready': self.ready,
            'reachable': self.reachable,
            'discovered_at': self.discovered_at,
            'loaded_modules': list(self.loaded_modules),
        }


class ClusterState:
    """
    Aggregate state of one cluster session.

    Nodes are never removed during a session, only marked unreachable.
    ``roles_by_name`` maps each role to at most one node and no node to more
    than one role. Correlation ids are allocated monotonically and never reused.
    """

    def __init__(self):
        self.nodes: Dict[str, Node] = {}
        self.roles_by_name: Dict[str, Node] = {}
        self.next_correlation_id = 1
        self._lock = threading.RLock()

    def add_node(self, node_id: str, handle: Any = None) -> Node:
        """Return the node for ``node_id``, creating it if unknown"""
        with self._lock:
            node = self.nodes.get(node_id)
            if node is None:
                node = Node(node_id=node_id, handle=handle)
                self.nodes[node_id] = node
            elif handle is not None:
                node.handle = handle
            return node

    def mark_discovered(self, node_id: str, handle: Any = None) -> Node:
        with self._lock:
            node = self.add_node(node_id, handle)
            if not node.discovered:
                node.discovered = True
                node.discovered_at = time.time()
            node.reachable = True
            return node

    def mark_unreachable(self, node_id: str) -> None:
        with self._lock:
            node = self.nodes.get(node_id)
            if node is not None:
                node.reachable = False

    def bind_role(self, role: str, node: Node) -> None:
        """Bind ``role`` to ``node`` and mark the node ready"""
        with self._lock:
            current = self.roles_by_name.get(role)
            if current is not None and current.node_id != node.node_id:
                raise ValueError(f"Role '{role}' is already bound to node {current.node_id}")
            for bound_role, bound in self.roles_by_name.items():
                if bound.node_id == node.node_id and bound_role != role:
                    raise ValueError(f"Node {node.node_id} is already bound to role '{bound_role}'")
            node.role = role
            node.ready = True
            self.nodes.setdefault(node.node_id, node)
            self.roles_by_name[role] = node

    def allocate_correlation_id(self) -> int:
        with self._lock:
            correlation_id = self.next_correlation_id
            self.next_correlation_id += 1
            return correlation_id

    def roles_snapshot(self) -> Mapping[str, Node]:
        """Read-only copy of the role table for concurrent readers"""
        with self._lock:
            return MappingProxyType(dict(self.roles_by_name))

    def ready_roles(self) -> List[str]:
        with self._lock:
            return [role for role, node in self.roles_by_name.items() if node.ready]

    def clear(self) -> None:
        """Tear down the session; correlation ids keep counting upward"""
        with self._lock:
            for node in self.nodes.values():
                node.ready = False
            self.roles_by_name.clear()
            self.nodes.clear()
