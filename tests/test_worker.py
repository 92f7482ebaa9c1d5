"""
Tests for the worker agent and its control server
"""
import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from modus_cluster.core import messages
from modus_cluster.core.messages import TaskEnvelope
from modus_cluster.transport.memory import InMemoryNetwork
from modus_cluster.worker.control_server import WorkerControlServer
from modus_cluster.worker.handlers import RoleHandlers, default_handlers

from cluster_helpers import make_worker

DISCOVERY = "MODUS_INSTALLER"
CLUSTER = "MODUS_CLUSTER"


class TestRoleHandlers:
    """Test RoleHandlers"""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        """Test sync and async handlers"""
        handlers = RoleHandlers()

        @handlers.handler("memory", "remember")
        async def remember(payload):
            return {"stored": payload}

        handlers.register("memory", "count", lambda payload: len(payload))

        assert await handlers.run("memory", "remember", "hi") == {"stored": "hi"}
        assert await handlers.run("memory", "count", [1, 2, 3]) == 3
        assert handlers.operations("memory") == ["remember", "count"]
        with pytest.raises(LookupError):
            await handlers.run("memory", "forget", None)

    @pytest.mark.asyncio
    async def test_default_handlers(self):
        """Test the built-in ping and status operations"""
        handlers = default_handlers(["language", "memory"], "worker_1")

        assert handlers.roles() == ["language", "memory"]
        assert await handlers.run("language", "ping", None) == "pong"
        status = await handlers.run("memory", "status", None)
        assert status["role"] == "memory"
        assert status["node_id"] == "worker_1"
        assert "memory_percent" in status


class TestWorkerAgent:
    """Drive a WorkerAgent through a coordinator endpoint"""

    def setup_method(self):
        self.network = InMemoryNetwork()
        self.master = self.network.endpoint("master")

    async def ask(self, protocol, message, timeout=1.0):
        await self.master.unicast("worker_1", protocol, message)
        return await self.master.receive(protocol, timeout=timeout)

    @pytest.mark.asyncio
    async def test_answers_discovery(self, tmp_path):
        """Test the discovery reply"""
        worker = make_worker(self.network, "worker_1", tmp_path)
        await worker.start()
        try:
            await self.master.broadcast(DISCOVERY, messages.discover("master"))
            sender, reply = await self.master.receive(DISCOVERY, timeout=1.0)
        finally:
            await worker.stop()

        assert sender == "worker_1"
        assert reply == {"type": "worker_available", "id": "worker_1"}

    @pytest.mark.asyncio
    async def test_silent_until_listener_started(self, tmp_path):
        """Test that the worker ignores the bus until started"""
        worker = make_worker(self.network, "worker_1", tmp_path, listening=False)
        await worker.start()
        try:
            assert await self.ask(DISCOVERY, messages.discover("master"), timeout=0.1) is None

            await worker.run_command("start_listener")

            assert await self.ask(DISCOVERY, messages.discover("master")) is not None
        finally:
            await worker.stop()

    @pytest.mark.asyncio
    async def test_assignment_is_sticky(self, tmp_path):
        """Test that the first accepted role sticks"""
        worker = make_worker(self.network, "worker_1", tmp_path)
        await worker.start()
        try:
            _, first = await self.ask(CLUSTER, messages.assign_role("memory"))
            _, again = await self.ask(CLUSTER, messages.assign_role("memory"))
            _, other = await self.ask(CLUSTER, messages.assign_role("language"))
        finally:
            await worker.stop()

        assert first["ok"] and again["ok"]
        assert other["ok"] is False
        assert other["reason"] == "already assigned to memory"
        assert worker.role == "memory"

    @pytest.mark.asyncio
    async def test_task_before_assignment(self, tmp_path):
        """Test a task received before any role"""
        worker = make_worker(self.network, "worker_1", tmp_path)
        await worker.start()
        try:
            _, result = await self.ask(CLUSTER, TaskEnvelope(1, "memory", "ping").to_message())
        finally:
            await worker.stop()

        assert result == {"type": "result", "correlation_id": 1, "payload": None, "error": "no role assigned"}

    @pytest.mark.asyncio
    async def test_task_for_another_role(self, tmp_path):
        """Test that a task addressed to a different role is refused"""
        worker = make_worker(self.network, "worker_1", tmp_path)
        await worker.start()
        try:
            await self.ask(CLUSTER, messages.assign_role("memory"))
            _, refused = await self.ask(CLUSTER, TaskEnvelope(2, "language", "ping").to_message())
            _, accepted = await self.ask(CLUSTER, TaskEnvelope(3, "memory", "ping").to_message())
        finally:
            await worker.stop()

        assert refused["correlation_id"] == 2
        assert refused["error"] == "role mismatch: task for language, node holds memory"
        assert accepted["payload"] == "pong"
        assert "error" not in accepted

    @pytest.mark.asyncio
    async def test_handler_error_becomes_error_result(self, tmp_path):
        """Test that handler exceptions become error results"""
        worker = make_worker(self.network, "worker_1", tmp_path)

        def explode(payload):
            raise RuntimeError("vectors not loaded")

        worker.handlers.register("memory", "explode", explode)
        await worker.start()
        try:
            await self.ask(CLUSTER, messages.assign_role("memory"))
            _, result = await self.ask(CLUSTER, TaskEnvelope(5, "memory", "explode").to_message())
        finally:
            await worker.stop()

        assert result["correlation_id"] == 5
        assert result["error"] == "vectors not loaded"
        assert worker.tasks_completed == 1

    @pytest.mark.asyncio
    async def test_tasks_run_concurrently(self, tmp_path):
        """Test that tasks run concurrently"""
        worker = make_worker(self.network, "worker_1", tmp_path)

        async def wait(payload):
            await asyncio.sleep(payload)
            return payload

        worker.handlers.register("memory", "wait", wait)
        await worker.start()
        try:
            await self.ask(CLUSTER, messages.assign_role("memory"))
            await self.master.unicast("worker_1", CLUSTER, TaskEnvelope(1, "memory", "wait", 0.3).to_message())
            await self.master.unicast("worker_1", CLUSTER, TaskEnvelope(2, "memory", "wait", 0.0).to_message())
            _, first = await self.master.receive(CLUSTER, timeout=1.0)
        finally:
            await worker.stop()

        assert first["correlation_id"] == 2

    @pytest.mark.asyncio
    async def test_shutdown_ends_serve(self, tmp_path):
        """Test that a shutdown message ends serve"""
        worker = make_worker(self.network, "worker_1", tmp_path)
        serving = asyncio.create_task(worker.serve())
        await asyncio.sleep(0.05)

        await self.master.unicast("worker_1", CLUSTER, messages.shutdown())
        await asyncio.wait_for(serving, timeout=1.0)

        assert worker.stopped
        assert not worker.running

    @pytest.mark.asyncio
    async def test_local_control(self, tmp_path):
        """Test local file push and command execution"""
        worker = make_worker(self.network, "worker_1", tmp_path)

        stored = await worker.push_file("lib/word_vectors", b"vec")

        assert stored == (tmp_path / "lib" / "word_vectors").resolve()
        with pytest.raises(ValueError):
            await worker.push_file("../outside", b"x")
        with pytest.raises(LookupError):
            await worker.run_command("format_disk")


class TestWorkerControlServer:
    """Test the HTTP control surface"""

    def setup_method(self):
        self.network = InMemoryNetwork()

    @pytest.mark.asyncio
    async def test_health_and_status(self, tmp_path):
        """Test the health and status endpoints"""
        worker = make_worker(self.network, "worker_1", tmp_path)
        server = WorkerControlServer(worker)

        async with TestClient(TestServer(server.app)) as client:
            health = await client.get("/health")
            status = await client.get("/status")

            assert health.status == 200
            assert (await health.json())["node_id"] == "worker_1"
            body = await status.json()
            assert body["role"] is None
            assert body["listening"] is True
            assert "cpu_percent" in body["system_info"]

    @pytest.mark.asyncio
    async def test_put_file_and_execute(self, tmp_path):
        """Test file upload and command execution over HTTP"""
        worker = make_worker(self.network, "worker_1", tmp_path, listening=False)
        server = WorkerControlServer(worker)

        async with TestClient(TestServer(server.app)) as client:
            put = await client.put("/files/worker_listener", data=b"listener")
            execute = await client.post("/execute", json={"command": "start_listener"})
            unknown = await client.post("/execute", json={"command": "format_disk"})
            missing = await client.post("/execute", json={})

            assert put.status == 200
            assert (await put.json())["size"] == 8
            assert execute.status == 200
            assert unknown.status == 404
            assert missing.status == 400

        assert (tmp_path / "worker_listener").read_bytes() == b"listener"
        assert worker.listening
