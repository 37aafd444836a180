"""
Fleet Orchestrator - push one image to many nodes through a swarm.

    publish + start_seeding (seed host)
        -> one task per target host, at most max_parallel running,
           each bounded by per_node_timeout
        -> global deadline cancels whatever is still running
        -> teardown exactly once

Host failures are recorded on that host's job and never affect other hosts.
Only swarm setup errors (ConflictError, StartupError, ConfigError) abort the
run, and they do so before anything is dispatched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from prestage import metrics
from prestage.config import PrestageConfig
from prestage.errors import DeadlineExceededError, PrestageError
from prestage.hosts import HostConfig
from prestage.launcher import AgentLauncher, AgentReport
from prestage.models import FleetRunResult, JobStatus, Manifest, NodeTransferJob
from prestage.swarm import SwarmCoordinator

logger = logging.getLogger(__name__)


@dataclass
class ManifestSource:
    """What to publish: an artifact id plus where its bytes come from."""
    artifact_id: str
    checksum: str | None = None
    source_path: str | None = None
    source_format: str = "qcow2"


class FleetOrchestrator:
    """Runs one prestage across a set of target hosts."""

    def __init__(
        self,
        config: PrestageConfig,
        coordinator: SwarmCoordinator,
        launcher: AgentLauncher,
    ):
        self.config = config
        self.coordinator = coordinator
        self.launcher = launcher

    async def run(
        self,
        source: ManifestSource,
        targets: list[HostConfig],
        per_node_timeout: float | None = None,
        global_timeout: float | None = None,
    ) -> FleetRunResult:
        per_node_timeout = per_node_timeout or self.config.run.per_node_timeout
        global_timeout = global_timeout or self.config.run.global_timeout
        start = time.time()

        # A ConflictError here belongs to another run's session: nothing of
        # ours to tear down.
        manifest = await self.coordinator.publish(
            source.artifact_id,
            source_path=source.source_path,
            checksum=source.checksum,
            source_format=source.source_format,
        )
        session = self.coordinator.session_for(manifest.artifact_id)
        result = FleetRunResult(artifact_id=manifest.artifact_id)
        try:
            session = await self.coordinator.start_seeding(manifest)
            result.jobs = {host.name: self._new_job(host, manifest) for host in targets}
            logger.info(
                f"Dispatching {manifest.artifact_id} to {len(targets)} host(s) "
                f"(max_parallel={self.config.run.max_parallel}, "
                f"per_node_timeout={per_node_timeout}s, global_timeout={global_timeout}s)"
            )
            await self._dispatch(manifest, targets, result, per_node_timeout, global_timeout)
        finally:
            if session is not None:
                result.teardown_ok = await self.coordinator.teardown(session)
            result.duration_seconds = time.time() - start

        for job in result.jobs.values():
            metrics.observe_job(job.status.value, job.error_code, job.duration_seconds, job.skipped)
        metrics.FLEET_RUNS.labels(exit_code=str(result.exit_code)).inc()

        failed = result.failed_hosts
        if failed:
            logger.warning(f"{manifest.artifact_id}: {len(failed)}/{len(result.jobs)} host(s) failed: {', '.join(failed)}")
        else:
            logger.info(f"{manifest.artifact_id}: all {len(result.jobs)} host(s) done in {result.duration_seconds:.1f}s")
        return result

    def _new_job(self, host: HostConfig, manifest: Manifest) -> NodeTransferJob:
        dest = Path(self.config.node.store_dir) / manifest.dest_name
        return NodeTransferJob(
            target_host=host.name,
            manifest=manifest,
            local_dest_path=str(dest),
            started_at=time.time(),
        )

    async def _dispatch(
        self,
        manifest: Manifest,
        targets: list[HostConfig],
        result: FleetRunResult,
        per_node_timeout: float,
        global_timeout: float,
    ) -> None:
        if not targets:
            return
        sem = asyncio.Semaphore(self.config.run.max_parallel)
        manifest_uri = self.coordinator.manifest_uri(manifest.artifact_id)

        async def run_with_sem(host: HostConfig) -> None:
            async with sem:
                await self._run_node(host, result.jobs[host.name], manifest_uri, per_node_timeout)

        tasks = {
            asyncio.create_task(run_with_sem(host), name=f"prestage-{host.name}"): host
            for host in targets
        }
        done, pending = await asyncio.wait(tasks.keys(), timeout=global_timeout)

        for task in done:
            host = tasks[task]
            exc = task.exception()
            if exc is not None:
                job = result.jobs[host.name]
                logger.error(f"[{host.name}] Unexpected error: {exc!r}")
                if not job.status.is_terminal:
                    job.fail(PrestageError.code, str(exc))

        if pending:
            logger.error(f"Global deadline of {global_timeout}s reached, cancelling {len(pending)} host(s)")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            expired = [tasks[task] for task in pending]
            for host in expired:
                job = result.jobs[host.name]
                if not job.status.is_terminal:
                    error = DeadlineExceededError("Global deadline exceeded", timeout_seconds=global_timeout)
                    job.fail(error.code, error.message)
            await asyncio.gather(
                *(self._cleanup_node(host, manifest.artifact_id) for host in expired)
            )

    async def _run_node(
        self,
        host: HostConfig,
        job: NodeTransferJob,
        manifest_uri: str,
        per_node_timeout: float,
    ) -> None:
        try:
            report = await asyncio.wait_for(
                self.launcher.run(host, job.manifest, manifest_uri, deadline=per_node_timeout),
                timeout=per_node_timeout,
            )
        except asyncio.TimeoutError:
            error = DeadlineExceededError("Per-node timeout exceeded", timeout_seconds=per_node_timeout)
            job.fail(error.code, error.message)
            logger.error(f"[{host.name}] {error}")
            await self._cleanup_node(host, job.manifest.artifact_id)
            return
        except PrestageError as e:
            job.fail(e.code, e.message)
            logger.error(f"[{host.name}] {e}")
            await self._cleanup_node(host, job.manifest.artifact_id)
            return
        except Exception as e:
            # e.g. FileNotFoundError when ssh itself is missing
            job.fail(PrestageError.code, f"{type(e).__name__}: {e}")
            logger.exception(f"[{host.name}] Unexpected error")
            await self._cleanup_node(host, job.manifest.artifact_id)
            return
        self._apply_report(job, report)
        if job.status == JobStatus.DONE:
            logger.info(f"[{host.name}] {job.outcome}{' (already present)' if job.skipped else ''}")
        else:
            logger.error(f"[{host.name}] {job.outcome}: {job.reason}")

    @staticmethod
    def _apply_report(job: NodeTransferJob, report: AgentReport) -> None:
        job.skipped = report.skipped
        if report.local_dest_path:
            job.local_dest_path = report.local_dest_path
        if report.status == JobStatus.DONE:
            job.transition(JobStatus.DONE)
        elif report.status == JobStatus.FAILED:
            job.fail(report.error_code or PrestageError.code, report.reason or "agent reported failure")
        else:
            job.fail(PrestageError.code, f"Agent stopped in non-terminal state {report.status.value}")

    async def _cleanup_node(self, host: HostConfig, artifact_id: str) -> bool:
        """Best-effort node cleanup after a cut-off job. Never raises."""
        timeout = self.config.run.cleanup_timeout
        try:
            ok = await asyncio.wait_for(self.launcher.cleanup(host, artifact_id), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"[{host.name}] Cleanup did not finish within {timeout}s")
            return False
        except (PrestageError, OSError) as e:
            logger.error(f"[{host.name}] Cleanup failed: {e}")
            return False
        if not ok:
            logger.warning(f"[{host.name}] Cleanup reported errors")
        return ok
