"""
Configuration management for the MODUS cluster
"""
import json
import os
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError


class RoleDefinition(BaseModel):
    """A named responsibility bound to exactly one worker per session"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    payload_manifest: Tuple[str, ...] = ()


def default_roles() -> List[RoleDefinition]:
    """The four-worker layout the cluster ships with"""
    return [
        RoleDefinition(
            name="language",
            description="Language Processing & Sentiment Analysis",
            payload_manifest=("word_vectors", "worker_language"),
        ),
        RoleDefinition(
            name="memory",
            description="Conversation Memory & User Management",
            payload_manifest=("conversation_memory", "worker_memory"),
        ),
        RoleDefinition(
            name="response",
            description="Response Generation & Context",
            payload_manifest=("response_generator", "knowledge_graph", "worker_response"),
        ),
        RoleDefinition(
            name="personality",
            description="Personality & Behavioral Traits",
            payload_manifest=("personality", "mood", "attention", "worker_personality"),
        ),
    ]


class ProtocolConfig(BaseModel):
    """Protocol tags used on the message bus"""
    discovery: str = "MODUS_INSTALLER"
    cluster: str = "MODUS_CLUSTER"
    deploy: str = "MODUS_DEPLOY"


class WorkerEndpoint(BaseModel):
    """A worker reachable through its HTTP control endpoint"""
    node_id: str
    host: str = "localhost"
    control_port: int = Field(default=7451, ge=1024, le=65535)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.control_port}"


class CoordinatorConfig(BaseModel):
    """Configuration for the cluster coordinator (master)"""
    coordinator_id: str = "master"
    host: str = "0.0.0.0"
    port: int = Field(default=7450, ge=1024, le=65535)
    broadcast_address: str = "255.255.255.255"
    protocols: ProtocolConfig = Field(default_factory=ProtocolConfig)
    roles: List[RoleDefinition] = Field(default_factory=default_roles)
    known_nodes: List[WorkerEndpoint] = Field(default_factory=list)
    payload_root: Optional[str] = None
    bootstrap_path: str = "worker_listener"
    bootstrap_command: str = "start_listener"

    discovery_window: float = Field(default=20.0, gt=0)  # seconds
    settle_interval: float = Field(default=8.0, ge=0)
    assign_attempt_timeout: float = Field(default=5.0, gt=0)
    assign_retry_budget: int = Field(default=6, ge=1)
    assign_backoff: float = Field(default=1.0, ge=1.0)
    task_default_deadline: float = Field(default=3.0, gt=0)
    install_timeout: float = Field(default=120.0, gt=0)
    receive_poll_interval: float = Field(default=0.3, gt=0)

    def direct_endpoints(self) -> Dict[str, str]:
        """node_id -> control URL for every known node"""
        return {endpoint.node_id: endpoint.url for endpoint in self.known_nodes}


class WorkerConfig(BaseModel):
    """Configuration for a worker node"""
    node_id: str
    host: str = "0.0.0.0"
    port: int = Field(default=7450, ge=1024, le=65535)
    broadcast_address: str = "255.255.255.255"
    control_port: Optional[int] = Field(default=7451, ge=1024, le=65535)
    storage_dir: str = "./worker_storage"
    roles: List[str] = Field(default_factory=lambda: [role.name for role in default_roles()])
    protocols: ProtocolConfig = Field(default_factory=ProtocolConfig)
    receive_poll_interval: float = Field(default=0.5, gt=0)


class LoggingConfig(BaseModel):
    """Configuration for logging output"""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Config(BaseModel):
    """Main configuration class"""
    coordinator: Optional[CoordinatorConfig] = None
    worker: Optional[WorkerConfig] = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables"""
        mode = os.getenv("MODUS_MODE")
        port = int(os.getenv("MODUS_PORT", "7450"))
        return cls(
            coordinator=CoordinatorConfig(
                coordinator_id=os.getenv("MODUS_NODE_ID", "master"),
                host=os.getenv("MODUS_HOST", "0.0.0.0"),
                port=port,
            ) if mode == "coordinator" else None,
            worker=WorkerConfig(
                node_id=os.getenv("MODUS_NODE_ID", "worker_1"),
                host=os.getenv("MODUS_HOST", "0.0.0.0"),
                port=port,
                control_port=int(os.getenv("MODUS_CONTROL_PORT", "7451")),
            ) if mode == "worker" else None,
            logging=LoggingConfig(level=os.getenv("MODUS_LOG_LEVEL", "INFO")),
        )

    @classmethod
    def load_from_file(cls, file_path: str) -> "Config":
        """Load configuration from JSON file"""
        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
            return cls(**data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise ConfigurationError(f"Cannot load configuration from {file_path}: {e}") from e

    def save_to_file(self, file_path: str) -> None:
        """Save configuration to JSON file"""
        with open(file_path, 'w') as f:
            json.dump(self.model_dump(), f, indent=2)
