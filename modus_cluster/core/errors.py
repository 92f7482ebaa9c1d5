"""
Exception hierarchy for the cluster coordination layer
"""
from typing import Optional


class ClusterError(Exception):
    """Base exception for all cluster errors."""

    pass


class ConfigurationError(ClusterError):
    """Configuration loading or validation error."""

    pass


class TransportError(ClusterError):
    """The message bus could not send a message or reach a node."""

    pass


class DiscoveryTimeout(ClusterError):
    """The discovery window closed without the expected replies."""

    def __init__(self, message: str, discovered: int = 0):
        super().__init__(message)
        self.discovered = discovered


class NoWorkersFound(DiscoveryTimeout):
    """Discovery returned zero nodes; startup cannot continue."""

    pass


class DeploymentFailed(ClusterError):
    """Bootstrap deployment to a single node failed."""

    def __init__(self, node_id: str, reason: str):
        super().__init__(f"Deployment to node {node_id} failed: {reason}")
        self.node_id = node_id
        self.reason = reason


class AssignmentTimeout(ClusterError):
    """A role was never acknowledged within the retry budget."""

    def __init__(self, role: str, node_id: str, attempts: int):
        super().__init__(f"Role '{role}' not acknowledged by node {node_id} after {attempts} attempts")
        self.role = role
        self.node_id = node_id
        self.attempts = attempts


class NoWorkerAvailable(ClusterError):
    """More roles were configured than nodes were discovered."""

    def __init__(self, role: str):
        super().__init__(f"No worker available for role '{role}'")
        self.role = role


class WorkerNotReady(ClusterError):
    """A task was issued against a role with no ready node."""

    def __init__(self, role: str):
        super().__init__(f"Worker not ready: {role}")
        self.role = role


class TaskTimeout(ClusterError):
    """No matching result arrived before the call deadline."""

    def __init__(self, role: str, operation: str, correlation_id: int, deadline: float):
        super().__init__(
            f"Task {correlation_id} ({role}.{operation}) timed out after {deadline:.2f}s"
        )
        self.role = role
        self.operation = operation
        self.correlation_id = correlation_id
        self.deadline = deadline


class TaskFailed(ClusterError):
    """The worker answered the task with an error result."""

    def __init__(self, role: str, operation: str, error: str, correlation_id: Optional[int] = None):
        super().__init__(f"Task {role}.{operation} failed: {error}")
        self.role = role
        self.operation = operation
        self.error = error
        self.correlation_id = correlation_id


class Canceled(ClusterError):
    """The cluster shut down while the call was in flight."""

    pass
