"""
MODUS Cluster

Coordination layer for a master node driving role-specialized worker nodes
over an unreliable broadcast message bus.
"""

__version__ = "0.1.0"

from .core.config import Config, CoordinatorConfig, RoleDefinition, WorkerConfig
from .core.errors import (
    Canceled,
    ClusterError,
    NoWorkersFound,
    TaskFailed,
    TaskTimeout,
    WorkerNotReady,
)
from .core.lifecycle import ClusterController, ClusterHandle, start_cluster
from .worker.agent import WorkerAgent

__all__ = [
    "Config",
    "CoordinatorConfig",
    "RoleDefinition",
    "WorkerConfig",
    "ClusterError",
    "NoWorkersFound",
    "WorkerNotReady",
    "TaskTimeout",
    "TaskFailed",
    "Canceled",
    "ClusterController",
    "ClusterHandle",
    "start_cluster",
    "WorkerAgent",
]
