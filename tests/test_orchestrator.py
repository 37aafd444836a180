"""Fleet scenarios run in-process with one NodeAgent per host."""

import asyncio
from pathlib import Path

import pytest

from prestage.agent import NodeAgent
from prestage.errors import ConflictError, SSHError, StartupError
from prestage.hosts import HostConfig
from prestage.launcher import AgentLauncher, AgentReport, LocalAgentLauncher
from prestage.models import JobStatus
from prestage.orchestrator import FleetOrchestrator, ManifestSource

HOSTS = [HostConfig(name=f"host{i}", ssh_host=f"10.0.0.{i}") for i in (1, 2, 3)]


class RecordingLauncher(LocalAgentLauncher):
    def __init__(self, agent_factory):
        super().__init__(agent_factory)
        self.cleanups: list[str] = []

    async def cleanup(self, host, artifact_id):
        self.cleanups.append(host.name)
        return await super().cleanup(host, artifact_id)


class UnreachableHostLauncher(AgentLauncher):
    """host2 refuses ssh, the others report done without doing anything."""

    def __init__(self):
        self.cleanups: list[str] = []

    async def run(self, host, manifest, manifest_uri, deadline=None):
        if host.name == "host2":
            raise SSHError("No result from agent: Connection refused", host=host.name, exit_code=255)
        return AgentReport(status=JobStatus.DONE)

    async def cleanup(self, host, artifact_id):
        self.cleanups.append(host.name)
        return True


@pytest.fixture
def engines(fake_engine_factory):
    return {host.name: fake_engine_factory() for host in HOSTS}


@pytest.fixture
def launcher(node_config_for, engines):
    def factory(host):
        return NodeAgent(node_config_for(host.name), host_name=host.name, engine=engines[host.name])
    return RecordingLauncher(factory)


@pytest.fixture
def make_orchestrator(prestage_config, fake_coordinator_factory):
    def make(launcher, coordinator=None):
        coordinator = coordinator or fake_coordinator_factory()
        return FleetOrchestrator(prestage_config, coordinator, launcher), coordinator
    return make


SOURCE = ManifestSource(artifact_id="img-1", source_format="raw")


class TestFleetScenarios:
    @pytest.mark.asyncio
    async def test_all_hosts_succeed(self, make_orchestrator, launcher, image_bytes):
        orchestrator, coordinator = make_orchestrator(launcher)
        result = await orchestrator.run(SOURCE, HOSTS)

        assert result.exit_code == 0
        assert result.outcomes == {"host1": "done", "host2": "done", "host3": "done"}
        assert coordinator.teardowns == 1
        assert result.teardown_ok
        for job in result.jobs.values():
            assert Path(job.local_dest_path).read_bytes() == image_bytes
        assert launcher.cleanups == []

    @pytest.mark.asyncio
    async def test_per_node_timeout(self, make_orchestrator, launcher, engines, fake_engine_factory):
        engines["host2"] = fake_engine_factory(delay=30.0)
        orchestrator, coordinator = make_orchestrator(launcher)
        result = await orchestrator.run(SOURCE, HOSTS, per_node_timeout=0.5)

        assert result.exit_code == 1
        assert result.outcomes == {"host1": "done", "host2": "failed(TIMEOUT)", "host3": "done"}
        assert launcher.cleanups == ["host2"]
        assert coordinator.teardowns == 1
        host2 = launcher.agent_for(HOSTS[1])
        assert not host2.download_path("img-1").exists()
        assert not Path(result.jobs["host2"].local_dest_path).exists()

    @pytest.mark.asyncio
    async def test_integrity_failure_is_isolated(self, make_orchestrator, launcher, engines, fake_engine_factory):
        engines["host1"] = fake_engine_factory(payload=b"bit rot")
        orchestrator, coordinator = make_orchestrator(launcher)
        result = await orchestrator.run(SOURCE, HOSTS)

        assert result.outcomes == {"host1": "failed(INTEGRITY_ERROR)", "host2": "done", "host3": "done"}
        assert result.exit_code == 1
        assert not launcher.agent_for(HOSTS[0]).download_path("img-1").exists()
        assert coordinator.teardowns == 1

    @pytest.mark.asyncio
    async def test_global_deadline(self, make_orchestrator, launcher, engines, fake_engine_factory):
        engines["host3"] = fake_engine_factory(delay=30.0)
        orchestrator, coordinator = make_orchestrator(launcher)
        result = await orchestrator.run(SOURCE, HOSTS, per_node_timeout=60.0, global_timeout=0.5)

        assert result.outcomes["host3"] == "failed(TIMEOUT)"
        assert result.jobs["host3"].reason == "Global deadline exceeded"
        assert result.outcomes["host1"] == "done"
        assert launcher.cleanups == ["host3"]
        assert not launcher.agent_for(HOSTS[2]).download_path("img-1").exists()
        assert coordinator.teardowns == 1

    @pytest.mark.asyncio
    async def test_unreachable_host(self, make_orchestrator):
        launcher = UnreachableHostLauncher()
        orchestrator, coordinator = make_orchestrator(launcher)
        result = await orchestrator.run(SOURCE, HOSTS)

        assert result.outcomes["host2"] == "failed(SSH_ERROR)"
        assert result.outcomes["host1"] == "done"
        assert launcher.cleanups == ["host2"]
        assert coordinator.teardowns == 1

    @pytest.mark.asyncio
    async def test_launcher_os_error_is_cleaned_up(self, make_orchestrator):
        class MissingSshLauncher(UnreachableHostLauncher):
            async def run(self, host, manifest, manifest_uri, deadline=None):
                if host.name == "host3":
                    raise FileNotFoundError(2, "No such file or directory", "ssh")
                return AgentReport(status=JobStatus.DONE)

        launcher = MissingSshLauncher()
        orchestrator, coordinator = make_orchestrator(launcher)
        result = await orchestrator.run(SOURCE, HOSTS)

        assert result.outcomes["host3"] == "failed(PRESTAGE_ERROR)"
        assert "FileNotFoundError" in result.jobs["host3"].reason
        assert result.outcomes["host1"] == "done"
        assert launcher.cleanups == ["host3"]
        assert coordinator.teardowns == 1

    @pytest.mark.asyncio
    async def test_max_parallel(self, prestage_config, make_orchestrator):
        prestage_config.run.max_parallel = 2
        running = 0
        peak = 0

        class CountingLauncher(UnreachableHostLauncher):
            async def run(self, host, manifest, manifest_uri, deadline=None):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.05)
                running -= 1
                return AgentReport(status=JobStatus.DONE)

        hosts = [HostConfig(name=f"n{i}", ssh_host=f"n{i}") for i in range(6)]
        orchestrator, _ = make_orchestrator(CountingLauncher())
        result = await orchestrator.run(SOURCE, hosts)
        assert result.exit_code == 0
        assert peak == 2


class TestSwarmSetupFailures:
    """Coordinator errors abort before any node is dispatched."""

    @pytest.mark.asyncio
    async def test_startup_error_tears_down(self, make_orchestrator, launcher, fake_coordinator_factory):
        coordinator = fake_coordinator_factory(start_error=StartupError("Port still bound", port=6969))
        orchestrator, _ = make_orchestrator(launcher, coordinator)
        with pytest.raises(StartupError):
            await orchestrator.run(SOURCE, HOSTS)
        assert coordinator.teardowns == 1
        assert launcher._agents == {}

    @pytest.mark.asyncio
    async def test_conflict_leaves_other_session_alone(self, make_orchestrator, launcher, fake_coordinator_factory):
        coordinator = fake_coordinator_factory(publish_error=ConflictError("active", artifact_id="img-1"))
        orchestrator, _ = make_orchestrator(launcher, coordinator)
        with pytest.raises(ConflictError):
            await orchestrator.run(SOURCE, HOSTS)
        assert coordinator.teardowns == 0
        assert launcher._agents == {}
