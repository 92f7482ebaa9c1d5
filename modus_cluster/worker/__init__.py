"""
Worker node runtime: protocol agent, role handlers and control server.
"""
from .agent import WorkerAgent
from .handlers import RoleHandlers, default_handlers
from .control_server import WorkerControlServer

__all__ = ['WorkerAgent', 'RoleHandlers', 'default_handlers', 'WorkerControlServer']
