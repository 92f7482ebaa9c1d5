"""
Role handler registry for worker nodes.

A role's capabilities are the operations registered for it. Handlers take the
task payload and return a JSON-compatible result; they may be coroutines.
"""
import inspect
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union
import psutil

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]


class RoleHandlers:
    """Maps role -> operation -> handler"""

    def __init__(self):
        self._handlers: Dict[str, Dict[str, Handler]] = {}
        self.logger = logging.getLogger("RoleHandlers")

    def register(self, role: str, operation: str, handler: Handler) -> None:
        self._handlers.setdefault(role, {})[operation] = handler

    def handler(self, role: str, operation: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``"""
        def decorator(func: Handler) -> Handler:
            self.register(role, operation, func)
            return func
        return decorator

    def get(self, role: str, operation: str) -> Optional[Handler]:
        return self._handlers.get(role, {}).get(operation)

    def has_role(self, role: str) -> bool:
        return role in self._handlers

    def roles(self) -> List[str]:
        return list(self._handlers)

    def operations(self, role: str) -> List[str]:
        return list(self._handlers.get(role, {}))

    async def run(self, role: str, operation: str, payload: Any) -> Any:
        """
        Run the handler for ``(role, operation)``.

        Raises:
            LookupError: no handler is registered
        """
        handler = self.get(role, operation)
        if handler is None:
            raise LookupError(f"Unknown task: {operation}")
        result = handler(payload)
        if inspect.isawaitable(result):
            result = await result
        return result


def system_status() -> Dict[str, Any]:
    """CPU and memory figures of this worker"""
    memory = psutil.virtual_memory()
    return {
        "cpu_percent": psutil.cpu_percent(),
        "memory_percent": memory.percent,
        "memory_available": memory.available,
        "pid": os.getpid(),
        "timestamp": time.time(),
    }


def default_handlers(roles: Iterable[str], node_id: str) -> RoleHandlers:
    """
    Registry with the built-in operations for each role.

    Every role answers ``ping`` and ``status``; role-specific operations are
    registered on top by the application.
    """
    handlers = RoleHandlers()
    for role in roles:
        handlers.register(role, "ping", lambda payload: "pong")
        handlers.register(
            role,
            "status",
            lambda payload, role=role: {"node_id": node_id, "role": role, **system_status()},
        )
    return handlers
