"""
Task dispatcher: correlated request/response calls to role workers.

A single receiver task reads every ``result`` on the cluster protocol and
resolves the waiting call by correlation id, so any number of calls can be in
flight at once without one caller consuming another's result.
"""
import asyncio
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from . import messages
from .errors import Canceled, TaskFailed, TaskTimeout, TransportError, WorkerNotReady
from .messages import ResultEnvelope, TaskEnvelope
from .state import ClusterState, Node
from ..transport.base import MessageBus


@dataclass
class _PendingCall:
    node_id: str
    future: asyncio.Future


class TaskDispatcher:
    """
    Issues tasks to ready nodes and enforces per-call deadlines.

    Timeouts and error results are raised to the caller; they never change a
    node's readiness and are never retried here.
    """

    def __init__(
        self,
        bus: MessageBus,
        state: ClusterState,
        protocol: str,
        default_deadline: float = 3.0,
        poll_interval: float = 0.3,
    ):
        self.bus = bus
        self.state = state
        self.protocol = protocol
        self.default_deadline = default_deadline
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(f"TaskDispatcher-{bus.node_id}")

        self._roles: Mapping[str, Node] = MappingProxyType({})
        self._pending: Dict[int, _PendingCall] = {}
        self._receiver: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._receiver is not None and not self._receiver.done()

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def start(self, roles: Mapping[str, Node]) -> None:
        """Bind the role table snapshot and start the receive loop"""
        if self._closed:
            raise Canceled("Dispatcher has been closed")
        self._roles = roles
        if not self.running:
            self._receiver = asyncio.create_task(self._receive_loop())
            self.logger.info(f"Dispatcher serving {len(roles)} roles")

    async def call(
        self,
        role: str,
        operation: str,
        payload: Any = None,
        deadline: Optional[float] = None,
    ) -> Any:
        """
        Run ``operation`` on the node bound to ``role``.

        Args:
            role: Role name
            operation: Operation understood by the role's worker
            payload: JSON-compatible task data
            deadline: Seconds to wait for the result (default from config)

        Returns:
            The result payload

        Raises:
            WorkerNotReady: the role has no ready node; nothing was sent
            TaskTimeout: no matching result before the deadline
            TaskFailed: the worker answered with an error
            Canceled: the dispatcher closed while the call was in flight
            TransportError: the task could not be sent
        """
        if self._closed:
            raise Canceled(f"Cluster is shut down; {role}.{operation} not sent")

        node = self._roles.get(role)
        if node is None or not node.ready:
            raise WorkerNotReady(role)

        deadline = self.default_deadline if deadline is None else deadline
        correlation_id = self.state.allocate_correlation_id()
        envelope = TaskEnvelope(correlation_id, role, operation, payload)

        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = _PendingCall(node.node_id, future)
        try:
            await self.bus.unicast(node.node_id, self.protocol, envelope.to_message())
            self.logger.debug(f"Task {correlation_id} {role}.{operation} sent to {node.node_id}")
            result: ResultEnvelope = await asyncio.wait_for(future, timeout=deadline)
        except asyncio.TimeoutError:
            self.logger.warning(f"Task {correlation_id} {role}.{operation} timed out after {deadline:.2f}s")
            raise TaskTimeout(role, operation, correlation_id, deadline) from None
        finally:
            self._pending.pop(correlation_id, None)

        if not result.ok:
            raise TaskFailed(role, operation, result.error, correlation_id)
        return result.payload

    async def _receive_loop(self) -> None:
        while not self._closed:
            try:
                received = await self.bus.receive(self.protocol, timeout=self.poll_interval)
            except TransportError as e:
                self.logger.error(f"Receive failed: {e}")
                await asyncio.sleep(self.poll_interval)
                continue
            if received is None:
                continue

            sender, message = received
            if messages.message_type(message) != messages.RESULT:
                self.logger.debug(f"Ignoring {messages.message_type(message)!r} from {sender}")
                continue
            try:
                result = ResultEnvelope.from_message(message)
            except ValueError as e:
                self.logger.debug(f"Malformed result from {sender}: {e}")
                continue
            self._route(sender, result)

    def _route(self, sender: str, result: ResultEnvelope) -> None:
        pending = self._pending.get(result.correlation_id)
        if pending is None:
            self.logger.debug(f"Result {result.correlation_id} from {sender} has no waiting call")
            return
        if pending.node_id != sender:
            self.logger.warning(
                f"Result {result.correlation_id} came from {sender}, expected {pending.node_id}; ignored"
            )
            return
        if pending.future.done():
            self.logger.debug(f"Duplicate result {result.correlation_id} ignored")
            return
        pending.future.set_result(result)

    async def close(self) -> None:
        """Stop receiving and fail every in-flight call with Canceled"""
        self._closed = True
        for correlation_id, pending in list(self._pending.items()):
            if not pending.future.done():
                pending.future.set_exception(Canceled(f"Task {correlation_id} canceled by shutdown"))
        if self._receiver is not None:
            self._receiver.cancel()
            try:
                await self._receiver
            except asyncio.CancelledError:
                pass
            self._receiver = None
        self._roles = MappingProxyType({})
        self.logger.info("Dispatcher closed")
