"""
Logical message shapes exchanged between the coordinator and workers.

Every message is a JSON-compatible dict with a ``type`` key. Builders in this
module are the only place message dicts are assembled; parsers return None or
raise ValueError on unexpected shapes so callers can drop them quietly.
"""
import base64
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

DISCOVER = "discover"
WORKER_AVAILABLE = "worker_available"
ASSIGN_ROLE = "assign_role"
ROLE_ACK = "role_ack"
TASK = "task"
RESULT = "result"
SHUTDOWN = "shutdown"
DEPLOY_FILE = "deploy_file"
DEPLOY_INSTALLER = "deploy_installer"
INSTALL_COMPLETE = "install_complete"
INSTALL_ERROR = "install_error"

Message = Dict[str, Any]


def message_type(message: Any) -> Optional[str]:
    """Return the ``type`` of a message, or None if it is not a message at all"""
    if not isinstance(message, dict):
        return None
    kind = message.get("type")
    return kind if isinstance(kind, str) else None


def encode_bytes(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_bytes(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def discover(coordinator_id: str) -> Message:
    return {"type": DISCOVER, "coordinator_id": coordinator_id}


def worker_available(node_id: str) -> Message:
    return {"type": WORKER_AVAILABLE, "id": node_id}


def assign_role(role: str, manifest: Iterable[str] = ()) -> Message:
    return {"type": ASSIGN_ROLE, "role": role, "manifest": list(manifest)}


def role_ack(role: str, ok: bool, loaded_modules: Iterable[str] = (), reason: Optional[str] = None) -> Message:
    message = {"type": ROLE_ACK, "role": role, "ok": ok, "loaded_modules": list(loaded_modules)}
    if reason:
        message["reason"] = reason
    return message


def shutdown() -> Message:
    return {"type": SHUTDOWN}


def deploy_file(filename: str, content: bytes, execute: bool = True) -> Message:
    return {
        "type": DEPLOY_FILE,
        "filename": filename,
        "content": encode_bytes(content),
        "execute": execute,
    }


def deploy_installer(role: str, files: Dict[str, bytes], master_id: str) -> Message:
    return {
        "type": DEPLOY_INSTALLER,
        "role": role,
        "master_id": master_id,
        "files": {name: encode_bytes(data) for name, data in files.items()},
    }


def install_complete(role: str, worker: str) -> Message:
    return {"type": INSTALL_COMPLETE, "role": role, "worker": worker}


def install_error(role: str, worker: str, error: str) -> Message:
    return {"type": INSTALL_ERROR, "role": role, "worker": worker, "error": error}


@dataclass(frozen=True)
class TaskEnvelope:
    """A correlated request sent to the node bound to ``role``"""
    correlation_id: int
    role: str
    operation: str
    payload: Any = None

    def to_message(self) -> Message:
        return {
            "type": TASK,
            "correlation_id": self.correlation_id,
            "role": self.role,
            "operation": self.operation,
            "payload": self.payload,
        }

    @classmethod
    def from_message(cls, message: Any) -> "TaskEnvelope":
        if message_type(message) != TASK:
            raise ValueError("not a task message")
        correlation_id = message.get("correlation_id")
        operation = message.get("operation")
        if not isinstance(correlation_id, int) or isinstance(correlation_id, bool) or not isinstance(operation, str):
            raise ValueError("task message is missing correlation_id or operation")
        return cls(
            correlation_id=correlation_id,
            role=str(message.get("role", "")),
            operation=operation,
            payload=message.get("payload"),
        )


@dataclass(frozen=True)
class ResultEnvelope:
    """A worker's answer to exactly one TaskEnvelope"""
    correlation_id: int
    payload: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_message(self) -> Message:
        message = {"type": RESULT, "correlation_id": self.correlation_id, "payload": self.payload}
        if self.error is not None:
            message["error"] = self.error
        return message

    @classmethod
    def from_message(cls, message: Any) -> "ResultEnvelope":
        if message_type(message) != RESULT:
            raise ValueError("not a result message")
        correlation_id = message.get("correlation_id")
        # bool is an int subclass; reject it explicitly
        if not isinstance(correlation_id, int) or isinstance(correlation_id, bool):
            raise ValueError("result message is missing correlation_id")
        error = message.get("error")
        return cls(
            correlation_id=correlation_id,
            payload=message.get("payload"),
            error=None if error is None else str(error),
        )


def manifest_of(message: Message) -> List[str]:
    manifest = message.get("manifest") or []
    return [str(item) for item in manifest] if isinstance(manifest, list) else []
