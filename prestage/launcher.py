"""How the orchestrator reaches a node agent.

``SSHAgentLauncher`` runs ``prestage agent`` on the target over ssh and reads
back the result line the agent prints. ``LocalAgentLauncher`` runs NodeAgent
objects in this process, one per host name, which is what tests and
single-host setups use.
"""

from __future__ import annotations

import json
import logging
import math
import shlex
from dataclasses import dataclass
from typing import Any, Callable

from prestage.agent import NodeAgent
from prestage.config import RemoteConfig
from prestage.errors import SSHError
from prestage.execution import SSHExecutor
from prestage.hosts import HostConfig
from prestage.models import JobStatus, Manifest, NodeTransferJob

logger = logging.getLogger(__name__)

# The agent prints exactly one line with this prefix followed by JSON.
RESULT_PREFIX = "PRESTAGE_RESULT "


@dataclass
class AgentReport:
    """Terminal state of a job as reported by the node agent."""
    status: JobStatus
    error_code: str | None = None
    reason: str | None = None
    skipped: bool = False
    local_dest_path: str | None = None

    @classmethod
    def from_job(cls, job: NodeTransferJob) -> "AgentReport":
        return cls(
            status=job.status,
            error_code=job.error_code,
            reason=job.reason,
            skipped=job.skipped,
            local_dest_path=job.local_dest_path,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentReport":
        return cls(
            status=JobStatus(data["status"]),
            error_code=data.get("error_code"),
            reason=data.get("reason"),
            skipped=bool(data.get("skipped", False)),
            local_dest_path=data.get("local_dest_path"),
        )


def format_result_line(job: NodeTransferJob) -> str:
    payload = job.to_dict()
    payload["local_dest_path"] = job.local_dest_path
    return RESULT_PREFIX + json.dumps(payload, sort_keys=True)


def format_failure_line(error_code: str, reason: str) -> str:
    """Result line for an agent that failed before it had a job."""
    payload = {"status": JobStatus.FAILED.value, "error_code": error_code, "reason": reason}
    return RESULT_PREFIX + json.dumps(payload, sort_keys=True)


def parse_result_line(output: str) -> AgentReport | None:
    """Find the agent's result line in ``output`` (last one wins)."""
    for line in reversed(output.splitlines()):
        if line.startswith(RESULT_PREFIX):
            try:
                return AgentReport.from_dict(json.loads(line[len(RESULT_PREFIX):]))
            except (ValueError, KeyError) as e:
                logger.warning(f"Unparseable agent result line: {e}")
                return None
    return None


class AgentLauncher:
    """Interface used by the FleetOrchestrator."""

    async def run(
        self,
        host: HostConfig,
        manifest: Manifest,
        manifest_uri: str,
        deadline: float | None = None,
    ) -> AgentReport:
        raise NotImplementedError

    async def cleanup(self, host: HostConfig, artifact_id: str) -> bool:
        raise NotImplementedError


class SSHAgentLauncher(AgentLauncher):
    """Runs the node agent remotely through ssh."""

    def __init__(self, remote: RemoteConfig, cleanup_timeout: float = 60.0):
        self.remote = remote
        self.cleanup_timeout = cleanup_timeout

    def _executor(self, host: HostConfig) -> SSHExecutor:
        return SSHExecutor.from_host(host, self.remote)

    def agent_command(self, manifest_uri: str, deadline: float | None = None) -> str:
        cmd = f"{self.remote.agent_command} agent --manifest-uri {shlex.quote(manifest_uri)}"
        if deadline:
            cmd += f" --deadline {math.ceil(deadline)}"
        return cmd

    def cleanup_command(self, artifact_id: str) -> str:
        return f"{self.remote.agent_command} cleanup --artifact {shlex.quote(artifact_id)}"

    async def run(
        self,
        host: HostConfig,
        manifest: Manifest,
        manifest_uri: str,
        deadline: float | None = None,
    ) -> AgentReport:
        # The remote deadline keeps the agent from outliving a killed ssh session.
        result = await self._executor(host).run(self.agent_command(manifest_uri, deadline))
        report = parse_result_line(result.stdout)
        if report is None:
            raise SSHError(
                f"No result from agent: {result.output_tail or 'no output'}",
                host=host.name,
                exit_code=result.returncode,
            )
        return report

    async def cleanup(self, host: HostConfig, artifact_id: str) -> bool:
        result = await self._executor(host).run(
            self.cleanup_command(artifact_id), timeout=self.cleanup_timeout
        )
        if not result.success:
            logger.warning(f"[{host.name}] Remote cleanup failed: {result.output_tail}")
        return result.success


class LocalAgentLauncher(AgentLauncher):
    """Runs NodeAgents in this process."""

    def __init__(self, agent_factory: Callable[[HostConfig], NodeAgent]):
        self.agent_factory = agent_factory
        self._agents: dict[str, NodeAgent] = {}

    def agent_for(self, host: HostConfig) -> NodeAgent:
        if host.name not in self._agents:
            self._agents[host.name] = self.agent_factory(host)
        return self._agents[host.name]

    async def run(
        self,
        host: HostConfig,
        manifest: Manifest,
        manifest_uri: str,
        deadline: float | None = None,
    ) -> AgentReport:
        # In-process agents are bounded by the orchestrator's own timeout.
        agent = self.agent_for(host)
        job = await agent.run(agent.new_job(manifest))
        return AgentReport.from_job(job)

    async def cleanup(self, host: HostConfig, artifact_id: str) -> bool:
        return await self.agent_for(host).cleanup(artifact_id)
