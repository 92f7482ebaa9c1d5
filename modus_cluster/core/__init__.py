"""
Cluster coordination core: discovery, deployment, role assignment, task
dispatch and lifecycle control.
"""
from .config import Config, CoordinatorConfig, RoleDefinition, WorkerConfig, default_roles
from .state import ClusterState, Node
from .registry import NodeRegistry
from .deployment import DeploymentCoordinator, DeployOutcome, DeployResult, InstallReport
from .assignment import AssignmentOutcome, AssignmentStatus, RoleAssignmentManager
from .dispatcher import TaskDispatcher
from .lifecycle import ClusterController, ClusterHandle, ClusterStatus, RoleStatus, start_cluster

__all__ = [
    # Configuration
    'Config',
    'CoordinatorConfig',
    'RoleDefinition',
    'WorkerConfig',
    'default_roles',
    # State
    'ClusterState',
    'Node',
    # Components
    'NodeRegistry',
    'DeploymentCoordinator',
    'DeployOutcome',
    'DeployResult',
    'InstallReport',
    'RoleAssignmentManager',
    'AssignmentOutcome',
    'AssignmentStatus',
    'TaskDispatcher',
    # Lifecycle
    'ClusterController',
    'ClusterHandle',
    'ClusterStatus',
    'RoleStatus',
    'start_cluster',
]
