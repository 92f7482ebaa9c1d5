"""
Tests for the cluster lifecycle controller
"""
import asyncio

import pytest

from modus_cluster.core.config import RoleDefinition
from modus_cluster.core.deployment import DeployOutcome
from modus_cluster.core.errors import Canceled, NoWorkersFound, WorkerNotReady
from modus_cluster.core.lifecycle import ClusterController, ClusterStatus, start_cluster
from modus_cluster.transport.memory import InMemoryNetwork

from cluster_helpers import ROLE_NAMES, fast_config, make_worker, roles, start_workers, stop_workers


class TestClusterController:
    """Test start_cluster / call / status / shutdown"""

    def setup_method(self):
        self.network = InMemoryNetwork()
        self.bus = self.network.endpoint("master", self.network.direct_control())
        self.workers = []

    async def cleanup(self):
        await stop_workers(self.workers)

    @pytest.mark.asyncio
    async def test_no_workers(self):
        """Test startup with no workers"""
        controller = ClusterController(self.bus, fast_config(roles=roles(*ROLE_NAMES)))

        with pytest.raises(NoWorkersFound) as excinfo:
            await controller.start_cluster()

        assert excinfo.value.discovered == 0
        assert controller.status == ClusterStatus.STOPPED

    @pytest.mark.asyncio
    async def test_full_cluster(self, tmp_path):
        """Test a cluster with every role ready"""
        self.workers = await start_workers(self.network, tmp_path, 4)
        try:
            handle = await start_cluster(self.bus, fast_config(roles=roles(*ROLE_NAMES)))

            assert handle.controller.status == ClusterStatus.SERVING
            assert handle.ready_count == 4
            assert not handle.degraded
            assert {name: str(status) for name, status in handle.status().items()} == {
                name: "ready" for name in ROLE_NAMES
            }
            assert await handle.call("personality", "ping") == "pong"
            assert "4/4 roles ready" in handle.report()
            await handle.shutdown()
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_degraded_when_roles_exceed_workers(self, tmp_path):
        """Test a degraded cluster"""
        self.workers = await start_workers(self.network, tmp_path, 3)
        try:
            handle = await start_cluster(self.bus, fast_config(roles=roles(*ROLE_NAMES)))

            assert handle.controller.status == ClusterStatus.DEGRADED
            assert handle.ready_count == 3
            assert str(handle.status()["personality"]) == "down(no_worker)"
            assert "3/4 roles ready" in handle.report()
            assert await handle.call("language", "ping") == "pong"
            with pytest.raises(WorkerNotReady):
                await handle.call("personality", "ping")
            await handle.shutdown()
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_rejected_role_reported(self, tmp_path):
        """Test that a rejected role shows in status"""
        worker = make_worker(self.network, "worker_1", tmp_path / "worker_1", capable=["memory"])
        await worker.start()
        self.workers = [worker]
        try:
            handle = await start_cluster(self.bus, fast_config(roles=roles("language")))

            assert handle.controller.status == ClusterStatus.DEGRADED
            status = handle.status()["language"]
            assert not status.ready
            assert status.reason == "unsupported role"
            assert status.node_id == "worker_1"
            await handle.shutdown()
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_shutdown(self, tmp_path):
        """Test shutting the cluster down"""
        self.workers = await start_workers(self.network, tmp_path, 2)
        try:
            async with await start_cluster(self.bus, fast_config(roles=roles("language", "memory"))) as handle:
                assert handle.ready_count == 2

            for _ in range(50):
                if all(worker.stopped for worker in self.workers):
                    break
                await asyncio.sleep(0.02)

            assert all(worker.stopped for worker in self.workers)
            assert handle.controller.status == ClusterStatus.STOPPED
            assert {str(status) for status in handle.status().values()} == {"down(shutdown)"}
            with pytest.raises(Canceled):
                await handle.call("language", "ping")
            # a second shutdown is a no-op
            await handle.shutdown()
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, tmp_path):
        """Test starting a running cluster again"""
        self.workers = await start_workers(self.network, tmp_path, 1)
        controller = ClusterController(self.bus, fast_config(roles=roles("memory")))
        try:
            handle = await controller.start_cluster()
            with pytest.raises(RuntimeError):
                await controller.start_cluster()
            await handle.shutdown()
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_restart_after_shutdown_rejected(self, tmp_path):
        """A shut down controller refuses to start again before touching any worker"""
        self.workers = await start_workers(self.network, tmp_path, 1)
        controller = ClusterController(self.bus, fast_config(roles=roles("memory")))
        try:
            handle = await controller.start_cluster()
            await handle.shutdown()
            fresh = make_worker(self.network, "worker_2", tmp_path / "worker_2")
            await fresh.start()
            self.workers.append(fresh)
            sent_before = len(self.network.sent)

            with pytest.raises(RuntimeError):
                await controller.start_cluster()

            assert len(self.network.sent) == sent_before
            assert fresh.role is None
            assert controller.state.roles_by_name == {}
            assert controller.status == ClusterStatus.STOPPED
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_failed_start_releases_bound_roles(self, tmp_path):
        """Roles bound before a startup failure are told to shut down"""
        self.workers = await start_workers(self.network, tmp_path, 1)
        controller = ClusterController(self.bus, fast_config(roles=roles("memory")))
        await controller.dispatcher.close()
        try:
            with pytest.raises(Canceled):
                await controller.start_cluster()

            for _ in range(50):
                if self.workers[0].stopped:
                    break
                await asyncio.sleep(0.02)

            assert self.workers[0].stopped
            assert controller.state.roles_by_name == {}
            assert controller.status == ClusterStatus.STOPPED
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_bootstrap_deploys_to_attached_workers(self, tmp_path):
        """Test bootstrap deployment to attached workers"""
        for i in (1, 2):
            worker = make_worker(self.network, f"worker_{i}", tmp_path / f"worker_{i}", listening=False)
            self.network.attach(worker.node_id, worker)
            await worker.start()
            self.workers.append(worker)
        try:
            controller = ClusterController(
                self.bus, fast_config(roles=roles("language", "memory")), bootstrap_payload=b"listener"
            )
            handle = await controller.start_cluster()

            assert {r.outcome for r in handle.deploy_results.values()} == {DeployOutcome.OK}
            assert all(worker.listening for worker in self.workers)
            assert (tmp_path / "worker_1" / "worker_listener").read_bytes() == b"listener"
            assert handle.ready_count == 2
            await handle.shutdown()
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_undeployed_workers_stay_silent(self, tmp_path):
        """Test that workers without a listener are not discovered"""
        worker = make_worker(self.network, "worker_1", tmp_path, listening=False)
        await worker.start()
        self.workers = [worker]
        try:
            with pytest.raises(NoWorkersFound):
                await start_cluster(self.bus, fast_config(roles=roles("memory")))
        finally:
            await self.cleanup()

    @pytest.mark.asyncio
    async def test_role_payload_installed(self, tmp_path):
        """Test role payload installation"""
        payload_root = tmp_path / "payloads"
        payload_root.mkdir()
        (payload_root / "worker_memory").write_bytes(b"memory worker")
        role_list = [
            RoleDefinition(name="memory", payload_manifest=("worker_memory",)),
            RoleDefinition(name="language", payload_manifest=("word_vectors",)),
        ]
        self.workers = await start_workers(self.network, tmp_path, 2)
        try:
            handle = await start_cluster(
                self.bus, fast_config(roles=role_list, payload_root=str(payload_root))
            )

            assert handle.install_reports["memory"].success
            assert handle.install_reports["language"].reason == "missing_payload:word_vectors"
            memory_node = handle.outcomes["memory"].node_id
            assert (tmp_path / memory_node / "memory" / "worker_memory").read_bytes() == b"memory worker"
            assert handle.outcomes["memory"].loaded_modules == ["worker_memory"]
            await handle.shutdown()
        finally:
            await self.cleanup()
