"""
Worker-side protocol agent.

Answers discovery, accepts deployments and role payloads, takes exactly one
role and executes tasks for it until told to shut down.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..core import messages
from ..core.config import ProtocolConfig
from ..core.errors import TransportError
from ..core.messages import ResultEnvelope, TaskEnvelope
from ..transport.base import MessageBus
from .handlers import RoleHandlers

Command = Callable[[], Awaitable[None]]


class WorkerAgent:
    """
    A worker node speaking the cluster protocol.

    Args:
        bus: Message bus of this worker
        handlers: Operations available per role
        storage_dir: Where deployed files and role payloads are written
        protocols: Protocol tags shared with the coordinator
        listening: Whether the bus listener is already running; a worker
            started with ``listening=False`` ignores the bus until the
            ``start_listener`` command runs (direct deployment)
    """

    def __init__(
        self,
        bus: MessageBus,
        handlers: RoleHandlers,
        storage_dir: str,
        protocols: Optional[ProtocolConfig] = None,
        poll_interval: float = 0.5,
        listening: bool = True,
        execute_command: str = "start_listener",
    ):
        self.bus = bus
        self.node_id = bus.node_id
        self.handlers = handlers
        self.storage_dir = Path(storage_dir)
        self.protocols = protocols or ProtocolConfig()
        self.poll_interval = poll_interval
        self.listening = listening
        self.execute_command = execute_command

        self.role: Optional[str] = None
        self.running = False
        self.tasks_completed = 0
        self.commands: Dict[str, Command] = {"start_listener": self.start_listener}

        self._loops: List[asyncio.Task] = []
        self._inflight: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self.logger = logging.getLogger(f"WorkerAgent-{self.node_id}")

    # ------------------------------------------------------------------
    # Local control (used by direct deployment and the control server)
    # ------------------------------------------------------------------

    def register_command(self, name: str, command: Command) -> None:
        self.commands[name] = command

    async def start_listener(self) -> None:
        if not self.listening:
            self.logger.info("Listener started")
        self.listening = True

    async def run_command(self, name: str) -> None:
        command = self.commands.get(name)
        if command is None:
            raise LookupError(f"Unknown command: {name}")
        await command()

    def resolve_path(self, relative: str) -> Path:
        """Path inside the storage directory; raises ValueError if it escapes"""
        base = self.storage_dir.resolve()
        target = (base / relative.lstrip("/")).resolve()
        if target != base and base not in target.parents:
            raise ValueError(f"Path escapes storage directory: {relative}")
        return target

    async def push_file(self, relative: str, data: bytes) -> Path:
        target = self.resolve_path(relative)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self.logger.info(f"Stored {len(data)} bytes at {target}")
        return target

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start listening on every protocol in the background"""
        if self._loops:
            return
        self.running = True
        self._stopped.clear()
        for protocol in {self.protocols.discovery, self.protocols.cluster, self.protocols.deploy}:
            self._loops.append(asyncio.create_task(self._listen(protocol)))
        self.logger.info(f"Worker {self.node_id} waiting for role assignment...")

    async def serve(self) -> None:
        """Run until a shutdown message arrives"""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        self.running = False
        self._stopped.set()
        pending = self._loops + list(self._inflight)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._loops = []
        self._inflight.clear()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def _listen(self, protocol: str) -> None:
        while self.running:
            try:
                received = await self.bus.receive(protocol, timeout=self.poll_interval)
            except TransportError as e:
                self.logger.error(f"Receive on {protocol} failed: {e}")
                await asyncio.sleep(self.poll_interval)
                continue
            if received is None or not self.listening:
                continue
            sender, message = received
            await self._dispatch(protocol, sender, message)

    async def _dispatch(self, protocol: str, sender: str, message: Any) -> None:
        kind = messages.message_type(message)
        if protocol == self.protocols.discovery:
            if kind == messages.DISCOVER:
                await self._handle_discover(sender, message)
            elif kind == messages.DEPLOY_INSTALLER:
                await self._handle_installer(sender, message)
        elif protocol == self.protocols.deploy:
            if kind == messages.DEPLOY_FILE:
                await self._handle_deploy_file(sender, message)
        elif protocol == self.protocols.cluster:
            if kind == messages.ASSIGN_ROLE:
                await self._handle_assign(sender, message)
            elif kind == messages.TASK:
                task = asyncio.create_task(self._handle_task(sender, message))
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            elif kind == messages.SHUTDOWN:
                self.logger.info("Shutting down...")
                self.running = False
                self._stopped.set()

    async def _reply(self, target: str, protocol: str, message: Dict[str, Any]) -> None:
        try:
            await self.bus.unicast(target, protocol, message)
        except TransportError as e:
            self.logger.warning(f"Reply {message.get('type')} to {target} failed: {e}")

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def _handle_discover(self, sender: str, message: Dict[str, Any]) -> None:
        master = message.get("coordinator_id") or sender
        await self._reply(str(master), self.protocols.discovery, messages.worker_available(self.node_id))
        self.logger.info(f"Responded to discovery from master {master}")

    async def _handle_deploy_file(self, sender: str, message: Dict[str, Any]) -> None:
        try:
            data = messages.decode_bytes(str(message.get("content", "")))
            await self.push_file(str(message.get("filename") or "deployed_file"), data)
            if message.get("execute"):
                await self.run_command(self.execute_command)
        except (OSError, ValueError, LookupError) as e:
            self.logger.error(f"Deployment from {sender} failed: {e}")

    async def _handle_installer(self, sender: str, message: Dict[str, Any]) -> None:
        role = str(message.get("role") or "")
        master = str(message.get("master_id") or sender)
        files = message.get("files") or {}
        self.logger.info(f"Installer received for role: {role} from master {master}")
        try:
            if not role or not isinstance(files, dict):
                raise ValueError("installer message without role or files")
            for name, content in files.items():
                await self.push_file(f"{role}/{name}", messages.decode_bytes(str(content)))
        except (OSError, ValueError) as e:
            self.logger.error(f"Installer failed: {e}")
            await self._reply(master, self.protocols.discovery, messages.install_error(role, self.node_id, str(e)))
            return
        self.logger.info("Installer completed successfully!")
        await self._reply(master, self.protocols.discovery, messages.install_complete(role, self.node_id))

    def installed_modules(self, role: str, manifest: List[str]) -> List[str]:
        """Manifest entries present in this worker's storage"""
        loaded = []
        for name in manifest:
            try:
                if self.resolve_path(f"{role}/{name}").exists() or self.resolve_path(name).exists():
                    loaded.append(name)
            except ValueError:
                continue
        return loaded

    async def _handle_assign(self, sender: str, message: Dict[str, Any]) -> None:
        role = message.get("role")
        if not isinstance(role, str) or not role:
            return
        manifest = messages.manifest_of(message)

        if self.role is not None and self.role != role:
            ack = messages.role_ack(role, False, reason=f"already assigned to {self.role}")
        elif not self.handlers.has_role(role):
            ack = messages.role_ack(role, False, reason="unsupported role")
        else:
            if self.role is None:
                self.logger.info(f"Assigned role: {role.upper()}")
            self.role = role
            ack = messages.role_ack(role, True, self.installed_modules(role, manifest))
        await self._reply(sender, self.protocols.cluster, ack)

    async def _handle_task(self, sender: str, message: Dict[str, Any]) -> None:
        try:
            envelope = TaskEnvelope.from_message(message)
        except ValueError as e:
            self.logger.debug(f"Malformed task from {sender}: {e}")
            return

        if self.role is None:
            result = ResultEnvelope(envelope.correlation_id, error="no role assigned")
        elif envelope.role and envelope.role != self.role:
            result = ResultEnvelope(
                envelope.correlation_id,
                error=f"role mismatch: task for {envelope.role}, node holds {self.role}",
            )
        else:
            try:
                payload = await self.handlers.run(self.role, envelope.operation, envelope.payload)
                result = ResultEnvelope(envelope.correlation_id, payload)
            except LookupError as e:
                result = ResultEnvelope(envelope.correlation_id, error=str(e).strip("'\""))
            except Exception as e:
                self.logger.exception(f"Task {envelope.correlation_id} ({envelope.operation}) raised")
                result = ResultEnvelope(envelope.correlation_id, error=str(e))

        self.tasks_completed += 1
        await self._reply(sender, self.protocols.cluster, result.to_message())
