"""
HTTP control endpoint of a worker node.

Serves the direct-push side of deployment: the coordinator writes files into
the worker's storage and runs registered commands without going through the
message bus.
"""
import logging
import time
from typing import Optional
from aiohttp import web
import psutil

from .agent import WorkerAgent


class WorkerControlServer:
    """
    aiohttp application exposing a WorkerAgent's local control surface
    """

    def __init__(self, agent: WorkerAgent, host: str = "0.0.0.0", port: int = 7451):
        self.agent = agent
        self.host = host
        self.port = port
        self.logger = logging.getLogger(f"WorkerControl-{agent.node_id}")
        self.app = web.Application()
        self.setup_routes()
        self.runner: Optional[web.AppRunner] = None
        self.started_at = time.time()

    def setup_routes(self):
        """Setup HTTP routes for the control server"""
        self.app.router.add_get('/health', self.health_check)
        self.app.router.add_get('/status', self.get_status)
        self.app.router.add_put('/files/{file_path:.*}', self.put_file)
        self.app.router.add_post('/execute', self.execute)

    async def health_check(self, request):
        """Health check endpoint"""
        return web.json_response({
            "status": "healthy",
            "node_id": self.agent.node_id,
            "uptime": time.time() - self.started_at,
            "memory_usage": psutil.virtual_memory().percent,
            "cpu_usage": psutil.cpu_percent()
        })

    async def get_status(self, request):
        """Get worker status information"""
        return web.json_response({
            "node_id": self.agent.node_id,
            "role": self.agent.role,
            "listening": self.agent.listening,
            "is_running": self.agent.running,
            "tasks_completed": self.agent.tasks_completed,
            "storage_dir": str(self.agent.storage_dir),
            "system_info": {
                "cpu_percent": psutil.cpu_percent(),
                "memory_percent": psutil.virtual_memory().percent,
            }
        })

    async def put_file(self, request):
        """Store the request body at the given path inside worker storage"""
        file_path = request.match_info['file_path']
        data = await request.read()
        try:
            stored = await self.agent.push_file(file_path, data)
        except ValueError as e:
            return web.Response(status=403, text=str(e))
        except OSError as e:
            self.logger.error(f"Cannot store {file_path}: {e}")
            return web.Response(status=500, text=str(e))
        return web.json_response({"status": "stored", "path": str(stored), "size": len(data)})

    async def execute(self, request):
        """Run a registered command"""
        try:
            data = await request.json()
        except ValueError:
            return web.Response(status=400, text="Invalid JSON body")
        command = data.get('command') if isinstance(data, dict) else None
        if not isinstance(command, str):
            return web.Response(status=400, text="Missing command")
        try:
            await self.agent.run_command(command)
        except LookupError as e:
            return web.Response(status=404, text=str(e))
        self.logger.info(f"Executed command {command}")
        return web.json_response({"status": "executed", "command": command})

    async def start(self):
        """Start serving the control endpoint"""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        self.logger.info(f"Control server for {self.agent.node_id} listening on {self.host}:{self.port}")

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
