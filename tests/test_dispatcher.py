"""
Tests for correlated task dispatch
"""
import asyncio

import pytest

from modus_cluster.core import messages
from modus_cluster.core.assignment import RoleAssignmentManager
from modus_cluster.core.dispatcher import TaskDispatcher
from modus_cluster.core.errors import Canceled, TaskFailed, TaskTimeout, WorkerNotReady
from modus_cluster.core.state import ClusterState
from modus_cluster.transport.memory import InMemoryNetwork

from cluster_helpers import roles, start_workers, stop_workers


async def slow(payload):
    await asyncio.sleep(payload["delay"])
    return "done"


class TestTaskDispatcher:
    """Test TaskDispatcher against in-memory workers"""

    def setup_method(self):
        self.network = InMemoryNetwork()
        self.bus = self.network.endpoint("master")
        self.state = ClusterState()
        self.dispatcher = TaskDispatcher(self.bus, self.state, "MODUS_CLUSTER", default_deadline=1.0, poll_interval=0.02)
        self.workers = []

    async def ready_cluster(self, tmp_path, *role_names):
        self.workers = await start_workers(self.network, tmp_path, len(role_names))
        for worker in self.workers:
            for role in role_names:
                worker.handlers.register(role, "slow", slow)
        manager = RoleAssignmentManager(
            self.bus, self.state, "MODUS_CLUSTER", attempt_timeout=0.2, retry_budget=2, poll_interval=0.02
        )
        nodes = [self.state.mark_discovered(worker.node_id) for worker in self.workers]
        await manager.assign_roles(nodes, roles(*role_names))
        self.dispatcher.start(self.state.roles_snapshot())

    async def teardown(self):
        await self.dispatcher.close()
        await stop_workers(self.workers)

    def sent_tasks(self):
        return [m["message"] for m in self.network.sent if m["message"]["type"] == "task"]

    @pytest.mark.asyncio
    async def test_ping(self, tmp_path):
        """Test a ping round trip"""
        await self.ready_cluster(tmp_path, "memory")
        try:
            assert await self.dispatcher.call("memory", "ping") == "pong"
            assert self.dispatcher.running
            assert self.dispatcher.in_flight == 0
        finally:
            await self.teardown()

    @pytest.mark.asyncio
    async def test_payload_reaches_bound_worker(self, tmp_path):
        """Test that the payload reaches the node bound to the role"""
        await self.ready_cluster(tmp_path, "language", "memory")
        try:
            result = await self.dispatcher.call("memory", "echo", {"text": "hello"})
        finally:
            await self.teardown()

        assert result == {"echo": {"text": "hello"}, "node": "worker_2"}

    @pytest.mark.asyncio
    async def test_unknown_operation_fails(self, tmp_path):
        """Test that an unknown operation raises TaskFailed"""
        await self.ready_cluster(tmp_path, "memory")
        try:
            with pytest.raises(TaskFailed) as excinfo:
                await self.dispatcher.call("memory", "summon")
        finally:
            await self.teardown()

        assert excinfo.value.error == "Unknown task: summon"

    @pytest.mark.asyncio
    async def test_deadline_bounds_wait(self, tmp_path):
        """Test that the deadline bounds the wait"""
        await self.ready_cluster(tmp_path, "memory")
        loop = asyncio.get_running_loop()
        try:
            started = loop.time()
            with pytest.raises(TaskTimeout) as excinfo:
                await self.dispatcher.call("memory", "slow", {"delay": 2.0}, deadline=0.2)
            elapsed = loop.time() - started

            # the node stays ready after a timeout
            assert await self.dispatcher.call("memory", "ping") == "pong"
        finally:
            await self.teardown()

        assert elapsed < 1.0
        assert excinfo.value.deadline == 0.2

    @pytest.mark.asyncio
    async def test_late_result_is_dropped(self, tmp_path):
        """Test that a result arriving after its deadline is dropped"""
        await self.ready_cluster(tmp_path, "memory")
        try:
            with pytest.raises(TaskTimeout):
                await self.dispatcher.call("memory", "slow", {"delay": 0.2}, deadline=0.05)
            await asyncio.sleep(0.3)

            assert await self.dispatcher.call("memory", "echo", "after") == {"echo": "after", "node": "worker_1"}
        finally:
            await self.teardown()

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_cross(self, tmp_path):
        """Test concurrent calls across roles"""
        await self.ready_cluster(tmp_path, "language", "memory")
        try:
            calls = [
                self.dispatcher.call(role, "echo", i)
                for i in range(10)
                for role in ("language", "memory")
            ]
            results = await asyncio.gather(*calls)
        finally:
            await self.teardown()

        expected = [
            {"echo": i, "node": node}
            for i in range(10)
            for node in ("worker_1", "worker_2")
        ]
        assert results == expected
        ids = [task["correlation_id"] for task in self.sent_tasks()]
        assert len(ids) == 20
        assert len(set(ids)) == 20

    @pytest.mark.asyncio
    async def test_result_from_wrong_node_ignored(self, tmp_path):
        """Test that a result from another node is ignored"""
        await self.ready_cluster(tmp_path, "memory")
        intruder = self.network.endpoint("intruder")
        try:
            correlation_id = self.state.next_correlation_id
            call = asyncio.create_task(self.dispatcher.call("memory", "slow", {"delay": 0.2}))
            await asyncio.sleep(0.05)
            await intruder.unicast(
                "master", "MODUS_CLUSTER",
                messages.ResultEnvelope(correlation_id, "forged").to_message(),
            )

            assert await call == "done"
        finally:
            await self.teardown()

    @pytest.mark.asyncio
    async def test_role_without_worker(self, tmp_path):
        """Test calling a role with no ready node"""
        await self.ready_cluster(tmp_path, "memory")
        try:
            with pytest.raises(WorkerNotReady):
                await self.dispatcher.call("personality", "ping")
        finally:
            await self.teardown()

        assert self.sent_tasks() == []

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight(self, tmp_path):
        """Test that closing cancels calls in flight"""
        await self.ready_cluster(tmp_path, "memory")
        try:
            call = asyncio.create_task(self.dispatcher.call("memory", "slow", {"delay": 1.0}))
            await asyncio.sleep(0.05)
            await self.dispatcher.close()

            with pytest.raises(Canceled):
                await call
            with pytest.raises(Canceled):
                await self.dispatcher.call("memory", "ping")
            assert not self.dispatcher.running
        finally:
            await self.teardown()

    @pytest.mark.asyncio
    async def test_start_after_close(self):
        """Test that a closed dispatcher cannot start"""
        await self.dispatcher.close()

        with pytest.raises(Canceled):
            self.dispatcher.start(self.state.roles_snapshot())


class TestManualResults:
    """Dispatcher against a hand-driven worker endpoint"""

    def setup_method(self):
        self.network = InMemoryNetwork()
        self.bus = self.network.endpoint("master")
        self.worker = self.network.endpoint("worker_1")
        self.state = ClusterState()
        self.state.bind_role("memory", self.state.add_node("worker_1"))
        self.dispatcher = TaskDispatcher(self.bus, self.state, "MODUS_CLUSTER", default_deadline=1.0, poll_interval=0.02)

    async def next_task(self):
        _, message = await self.worker.receive("MODUS_CLUSTER", timeout=0.5)
        return messages.TaskEnvelope.from_message(message)

    @pytest.mark.asyncio
    async def test_delayed_reply(self):
        """Test a reply that arrives after a short delay"""
        self.dispatcher.start(self.state.roles_snapshot())
        try:
            call = asyncio.create_task(self.dispatcher.call("memory", "ping", {}, deadline=2.0))
            task = await self.next_task()
            await asyncio.sleep(0.1)
            await self.worker.unicast(
                "master", "MODUS_CLUSTER", messages.ResultEnvelope(task.correlation_id, "pong").to_message()
            )

            assert await call == "pong"
        finally:
            await self.dispatcher.close()

    @pytest.mark.asyncio
    async def test_only_matching_call_resolves(self):
        """Test that a result resolves only its own call"""
        self.dispatcher.start(self.state.roles_snapshot())
        try:
            call_a = asyncio.create_task(self.dispatcher.call("memory", "a", deadline=0.5))
            call_b = asyncio.create_task(self.dispatcher.call("memory", "b", deadline=0.5))
            tasks = {}
            for _ in range(2):
                task = await self.next_task()
                tasks[task.operation] = task.correlation_id

            await self.worker.unicast(
                "master", "MODUS_CLUSTER", messages.ResultEnvelope(tasks["a"], "A").to_message()
            )
            # duplicates of an answered call are ignored
            await self.worker.unicast(
                "master", "MODUS_CLUSTER", messages.ResultEnvelope(tasks["a"], "A2").to_message()
            )

            assert await call_a == "A"
            assert not call_b.done()
            with pytest.raises(TaskTimeout):
                await call_b
        finally:
            await self.dispatcher.close()

        assert tasks["a"] != tasks["b"]

    @pytest.mark.asyncio
    async def test_timeout_when_worker_never_replies(self):
        """Test the timeout when the worker never replies"""
        self.dispatcher.start(self.state.roles_snapshot())
        loop = asyncio.get_running_loop()
        try:
            started = loop.time()
            with pytest.raises(TaskTimeout):
                await self.dispatcher.call("memory", "ping", deadline=1.0)
            elapsed = loop.time() - started
        finally:
            await self.dispatcher.close()

        assert 0.95 <= elapsed < 1.5
