"""
Node Agent - download, verify and promote one image on a target host.

The agent runs on each compute node (invoked over SSH as
``prestage agent --manifest-uri ...``) and drives a single job through

    pending -> fetching -> verifying -> promoting -> done
                  \\____________\\_____________\\-> failed(reason)

1. Skips everything when the image is already in the store.
2. Opens the swarm port range, fetches through the TransferEngine.
3. Verifies the download against the manifest checksum; a mismatch deletes it.
4. Converts into the store with fixed ownership and mode.
5. Always reverts the firewall rule and removes transfer leftovers, whether
   the job succeeded, failed or was cancelled.

Transient state depends only on the artifact id, so ``cleanup`` can be run
on its own for a job that was cut off by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from pydantic import ValidationError

from prestage.config import PrestageConfig
from prestage.convert import ImageConverter, partial_path_for
from prestage.errors import (
    ConversionError,
    DeadlineExceededError,
    FirewallError,
    IntegrityError,
    PrestageError,
    TransferError,
)
from prestage.execution import LocalExecutor
from prestage.firewall import Firewall
from prestage.integrity import IntegrityVerifier, VerifyResult
from prestage.models import JobStatus, Manifest, NodeTransferJob, store_name_for
from prestage.process import find_processes, stop_processes
from prestage.transfer import TransferEngine, fetch_uri

logger = logging.getLogger(__name__)

# Error code recorded when an unexpected OS error interrupts a step.
_STEP_ERROR_CODES = {
    JobStatus.PENDING: TransferError.code,
    JobStatus.FETCHING: TransferError.code,
    JobStatus.VERIFYING: IntegrityError.code,
    JobStatus.PROMOTING: ConversionError.code,
}


async def load_manifest(uri: str, timeout: float = 30.0) -> Manifest:
    """Fetch and parse a published manifest descriptor."""
    data = await asyncio.to_thread(fetch_uri, uri, timeout)
    try:
        return Manifest.from_json(data)
    except ValidationError as e:
        raise TransferError(f"Invalid manifest at {uri}: {e.error_count()} error(s)")


class NodeAgent:
    """Runs node transfer jobs on the local host."""

    def __init__(
        self,
        config: PrestageConfig,
        host_name: str = "localhost",
        engine: TransferEngine | None = None,
        verifier: IntegrityVerifier | None = None,
        converter: ImageConverter | None = None,
        firewall: Firewall | None = None,
    ):
        self.config = config
        self.node = config.node
        self.host_name = host_name
        executor = LocalExecutor(host=host_name)
        self.engine = engine or TransferEngine(config.transfer, config.node, executor)
        self.verifier = verifier or IntegrityVerifier(config.run.checksum_algorithm)
        self.converter = converter or ImageConverter(config.node, executor)
        self.firewall = firewall or Firewall(
            executor,
            iptables_path=config.node.iptables_path,
            enabled=config.node.firewall_enabled,
        )

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def dest_path(self, manifest: Manifest) -> Path:
        return Path(self.node.store_dir) / manifest.dest_name

    def download_path(self, artifact_id: str) -> Path:
        return Path(self.node.download_dir) / artifact_id

    def new_job(self, manifest: Manifest) -> NodeTransferJob:
        return NodeTransferJob(
            target_host=self.host_name,
            manifest=manifest,
            local_dest_path=str(self.dest_path(manifest)),
        )

    # -------------------------------------------------------------------------
    # Job execution
    # -------------------------------------------------------------------------

    async def run(self, job: NodeTransferJob, deadline: float | None = None) -> NodeTransferJob:
        """Drive ``job`` to a terminal state.

        Errors become ``failed`` with the error's code; only cancellation
        propagates (after transient state has been cleaned up).
        """
        touched = False
        try:
            if await self._already_present(job):
                job.skipped = True
                job.transition(JobStatus.DONE)
                logger.info(f"[{self.host_name}] {job.local_dest_path} already present, skipping")
                return job
            touched = True
            if deadline:
                await asyncio.wait_for(self._transfer(job), timeout=deadline)
            else:
                await self._transfer(job)
            job.transition(JobStatus.DONE)
            logger.info(f"[{self.host_name}] {job.manifest.artifact_id} promoted to {job.local_dest_path}")
        except asyncio.TimeoutError:
            error = DeadlineExceededError("Node deadline exceeded", timeout_seconds=deadline)
            job.fail(error.code, error.message)
        except PrestageError as e:
            job.fail(e.code, e.message)
        except OSError as e:
            job.fail(_STEP_ERROR_CODES.get(job.status, PrestageError.code), str(e))
        finally:
            if touched:
                await self.cleanup(job.manifest.artifact_id)
            if job.status == JobStatus.FAILED:
                logger.error(f"[{self.host_name}] {job.manifest.artifact_id} failed: [{job.error_code}] {job.reason}")
        return job

    async def _already_present(self, job: NodeTransferJob) -> bool:
        dest = Path(job.local_dest_path)
        if not dest.is_file() or dest.stat().st_size == 0:
            return False
        manifest = job.manifest
        if self.node.verify_on_skip and manifest.source_format == self.node.target_format:
            result = await asyncio.to_thread(self.verifier.verify, dest, manifest.checksum)
            if result != VerifyResult.VALID:
                logger.warning(f"[{self.host_name}] {dest} exists but fails verification, refetching")
                return False
        # A skipped image still gets the store's owner, group and mode
        try:
            self.converter.apply_permissions(dest)
        except (OSError, LookupError) as e:
            raise ConversionError(f"Failed to set permissions on {dest}: {e}")
        return True

    async def _transfer(self, job: NodeTransferJob) -> None:
        manifest = job.manifest
        download = self.download_path(manifest.artifact_id)

        job.transition(JobStatus.FETCHING)
        await self._make_sane(manifest.artifact_id)
        await self.firewall.allow(self.node.port_range)
        await self.engine.fetch(manifest.metainfo_uri, download)

        job.transition(JobStatus.VERIFYING)
        result = await asyncio.to_thread(self.verifier.verify, download, manifest.checksum)
        if result != VerifyResult.VALID:
            download.unlink(missing_ok=True)
            raise IntegrityError(
                f"Checksum mismatch for {manifest.artifact_id}, download removed",
                expected=manifest.checksum,
            )

        job.transition(JobStatus.PROMOTING)
        try:
            await self.converter.promote(download, job.local_dest_path, manifest.source_format)
        finally:
            download.unlink(missing_ok=True)

    # -------------------------------------------------------------------------
    # Transient state
    # -------------------------------------------------------------------------

    def _transient_paths(self, artifact_id: str) -> list[Path]:
        download = self.download_path(artifact_id)
        store_name = store_name_for(artifact_id, self.node.store_naming)
        return [
            download,
            self.engine.metainfo_path_for(download),
            partial_path_for(Path(self.node.store_dir) / store_name),
        ]

    async def _stop_transfer_clients(self, artifact_id: str) -> bool:
        download = str(self.download_path(artifact_id))
        procs = await asyncio.to_thread(find_processes, self.engine.client_executables, download)
        if not procs:
            return True
        logger.warning(f"[{self.host_name}] Stopping {len(procs)} leftover transfer client(s)")
        survivors = await asyncio.to_thread(stop_processes, procs)
        return not survivors

    async def _make_sane(self, artifact_id: str) -> None:
        if not await self._stop_transfer_clients(artifact_id):
            raise TransferError("Leftover transfer client could not be stopped")
        for path in self._transient_paths(artifact_id):
            path.unlink(missing_ok=True)

    async def cleanup(self, artifact_id: str) -> bool:
        """Revert the firewall rule and remove transfer leftovers. Never raises."""
        ok = True
        try:
            ok = await self._stop_transfer_clients(artifact_id)
        except Exception as e:
            logger.error(f"[{self.host_name}] Failed to stop transfer clients: {e}")
            ok = False
        try:
            await self.firewall.revoke(self.node.port_range)
        except FirewallError as e:
            logger.error(f"[{self.host_name}] {e}")
            ok = False
        for path in self._transient_paths(artifact_id):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"[{self.host_name}] Failed to remove {path}: {e}")
                ok = False
        return ok

