"""
Swarm coordinator - seed host side of a prestage run.

Publishes the manifest and metainfo for an image, runs the tracker and the
seeding client, and tears both down again. One coordinator owns all swarm
state on the seed host; node agents only ever read the published manifest.

Lifecycle of a session:

    publishing --start_seeding--> seeding --teardown--> closed
         \\____________________teardown_______________/

Published layout (publish_dir is served at publish_base_url):

    <publish_dir>/<artifact>.torrent
    <publish_dir>/<artifact>.manifest.json
    <state_dir>/<artifact>.session.json    pids of tracker and seeder
    <state_dir>/<artifact>.lock            flock held from publish to teardown
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
import time
from pathlib import Path

from prestage import metrics
from prestage.config import PrestageConfig
from prestage.errors import ConfigError, ConflictError, PrestageError, StartupError
from prestage.integrity import compute_file_checksum, format_checksum, parse_checksum
from prestage.models import Manifest, SessionState, SwarmSession, store_name_for
from prestage.process import (
    ManagedProcess,
    listening_processes,
    port_in_use,
    process_matches,
    stop_pid,
    stop_processes,
)
from prestage.transfer import METAINFO_SUFFIX, TransferEngine

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"
SESSION_SUFFIX = ".session.json"
LOCK_SUFFIX = ".lock"


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text)
    os.replace(tmp, path)


class SwarmCoordinator:
    """Publishes images and manages tracker/seeder processes on the seed host."""

    def __init__(
        self,
        config: PrestageConfig,
        seed_host: str,
        engine: TransferEngine | None = None,
    ):
        self.config = config
        self.swarm = config.swarm
        self.seed_host = seed_host
        self.engine = engine or TransferEngine(config.transfer, config.node)
        self._sessions: dict[str, SwarmSession] = {}
        self._reserved: set[str] = set()
        self._locks: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Paths and URLs
    # -------------------------------------------------------------------------

    @property
    def tracker_address(self) -> str:
        return f"{self.seed_host}:{self.swarm.tracker_port}"

    @property
    def announce_url(self) -> str:
        return f"http://{self.tracker_address}/announce"

    @property
    def publish_base_url(self) -> str:
        return self.swarm.publish_base_url.format(seed_host=self.seed_host).rstrip("/")

    def metainfo_path(self, artifact_id: str) -> Path:
        return Path(self.swarm.publish_dir) / f"{artifact_id}{METAINFO_SUFFIX}"

    def manifest_path(self, artifact_id: str) -> Path:
        return Path(self.swarm.publish_dir) / f"{artifact_id}{MANIFEST_SUFFIX}"

    def state_path(self, artifact_id: str) -> Path:
        return Path(self.swarm.state_dir) / f"{artifact_id}{SESSION_SUFFIX}"

    def lock_path(self, artifact_id: str) -> Path:
        return Path(self.swarm.state_dir) / f"{artifact_id}{LOCK_SUFFIX}"

    def manifest_uri(self, artifact_id: str) -> str:
        return f"{self.publish_base_url}/{artifact_id}{MANIFEST_SUFFIX}"

    def session_for(self, artifact_id: str) -> SwarmSession | None:
        return self._sessions.get(artifact_id)

    # -------------------------------------------------------------------------
    # Session lock
    # -------------------------------------------------------------------------

    def _acquire_lock(self, artifact_id: str) -> None:
        """Take the per-artifact flock, shared by every prestage process on this host.

        Raises ConflictError when another process holds it.
        """
        if artifact_id in self._locks:
            return
        path = self.lock_path(artifact_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            holder = path.read_text().strip() or "unknown"
            raise ConflictError(
                f"A swarm session for this artifact is held by pid {holder}",
                artifact_id=artifact_id,
                context={"lock_path": str(path)},
            )
        except OSError:
            os.close(fd)
            raise
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._locks[artifact_id] = fd

    def _release_lock(self, artifact_id: str) -> None:
        fd = self._locks.pop(artifact_id, None)
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
        except OSError as e:
            logger.error(f"Failed to release {self.lock_path(artifact_id)}: {e}")

    def holds_lock(self, artifact_id: str) -> bool:
        return artifact_id in self._locks

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    async def publish(
        self,
        artifact_id: str,
        source_path: str | Path | None = None,
        checksum: str | None = None,
        source_format: str = "qcow2",
    ) -> Manifest:
        """Write metainfo and manifest for ``artifact_id``.

        Raises ConflictError while an earlier session for the same id is not
        closed, in this process or in another one holding the session lock.
        The lock stays held until teardown.
        """
        existing = self._sessions.get(artifact_id)
        if artifact_id in self._reserved or (existing is not None and existing.is_live):
            raise ConflictError(
                "A swarm session for this artifact is already active",
                artifact_id=artifact_id,
            )
        self._acquire_lock(artifact_id)
        self._reserved.add(artifact_id)
        try:
            manifest = await self._publish(artifact_id, source_path, checksum, source_format)
        except BaseException:
            self._remove_published(artifact_id, include_state=False)
            self._release_lock(artifact_id)
            raise
        finally:
            self._reserved.discard(artifact_id)

        self._sessions[artifact_id] = SwarmSession(
            manifest=manifest,
            tracker_address=self.tracker_address,
            state=SessionState.PUBLISHING,
        )
        logger.info(f"Published {artifact_id} at {manifest.metainfo_uri}")
        return manifest

    async def _publish(
        self,
        artifact_id: str,
        source_path: str | Path | None,
        checksum: str | None,
        source_format: str,
    ) -> Manifest:
        source = Path(source_path) if source_path else Path(self.swarm.source_dir) / artifact_id
        if not source.is_file():
            raise ConfigError(f"Image source not found: {source}", context={"artifact_id": artifact_id})

        if checksum:
            try:
                parse_checksum(checksum, self.config.run.checksum_algorithm)
            except ValueError as e:
                raise ConfigError(str(e), context={"checksum": checksum})
        else:
            algorithm = self.config.run.checksum_algorithm
            logger.info(f"No checksum given for {artifact_id}, computing {algorithm}")
            digest = await asyncio.to_thread(compute_file_checksum, source, algorithm)
            checksum = format_checksum(algorithm, digest)

        metainfo = self.metainfo_path(artifact_id)
        await self.engine.create_metainfo(source, metainfo, self.announce_url)

        manifest = Manifest(
            artifact_id=artifact_id,
            checksum=checksum,
            source_path=str(source),
            announce_url=self.announce_url,
            metainfo_uri=f"{self.publish_base_url}/{metainfo.name}",
            dest_name=store_name_for(artifact_id, self.config.node.store_naming),
            source_format=source_format,
        )
        _write_atomic(self.manifest_path(artifact_id), manifest.to_json())
        return manifest

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    async def start_seeding(self, manifest: Manifest) -> SwarmSession:
        """Reclaim stale processes, then start tracker and seeder.

        Raises StartupError if a port is still bound after the reclaim or a
        daemon exits right after starting.
        """
        artifact_id = manifest.artifact_id
        session = self._sessions.get(artifact_id)
        if session is None:
            self._acquire_lock(artifact_id)
            session = SwarmSession(manifest=manifest, tracker_address=self.tracker_address)
            self._sessions[artifact_id] = session
        elif session.state != SessionState.PUBLISHING:
            raise ConflictError(
                f"Session is {session.state.value}, cannot start seeding",
                artifact_id=artifact_id,
            )

        try:
            await asyncio.to_thread(self._start_daemons, session)
        except PrestageError:
            metrics.SWARM_STARTS.labels(outcome="failed").inc()
            raise
        except OSError as e:
            metrics.SWARM_STARTS.labels(outcome="failed").inc()
            raise StartupError(f"Failed to start swarm daemons: {e}")

        session.state = SessionState.SEEDING
        metrics.SWARM_STARTS.labels(outcome="ok").inc()
        logger.info(f"Seeding {artifact_id} (tracker {session.tracker_address})")
        return session

    def _tracker_command(self) -> list[str]:
        port = str(self.swarm.tracker_port)
        return [self.swarm.tracker_path, "-p", port, "-P", port, "-d", self.swarm.tracker_data_dir]

    def _start_daemons(self, session: SwarmSession) -> None:
        artifact_id = session.artifact_id
        self._reclaim_stale(artifact_id)
        for port in (self.swarm.tracker_port, self.swarm.seed_port):
            if port_in_use(port):
                raise StartupError("Port still bound after reclaiming stale processes", port=port)

        Path(self.swarm.tracker_data_dir).mkdir(parents=True, exist_ok=True)
        log_dir = Path(self.swarm.state_dir)
        tracker = ManagedProcess(
            "tracker", self._tracker_command(), log_path=log_dir / f"{artifact_id}.tracker.log"
        )
        seeder = ManagedProcess(
            "seeder",
            self.engine.seed_command(
                self.metainfo_path(artifact_id),
                session.manifest.source_path,
                self.swarm.seed_port,
                self.swarm.seed_upload_kbps,
            ),
            log_path=log_dir / f"{artifact_id}.seeder.log",
        )
        session.tracker_handle = tracker
        tracker.start()
        if not tracker.wait_started(self.swarm.startup_grace):
            raise StartupError(
                f"Tracker exited with {tracker.returncode} right after start",
                port=self.swarm.tracker_port,
            )
        session.seeder_handle = seeder
        seeder.start()
        if not seeder.wait_started(self.swarm.startup_grace):
            tracker.stop(self.swarm.stop_timeout)
            raise StartupError(
                f"Seeder exited with {seeder.returncode} right after start",
                port=self.swarm.seed_port,
            )

        _write_atomic(
            self.state_path(artifact_id),
            json.dumps(
                {
                    "artifact_id": artifact_id,
                    "tracker_pid": tracker.pid,
                    "tracker_exe": tracker.executable,
                    "seeder_pid": seeder.pid,
                    "seeder_exe": seeder.executable,
                    "started_at": time.time(),
                },
                indent=2,
            ),
        )

    def _reclaim_stale(self, artifact_id: str) -> int:
        """Stop leftovers of an earlier session for this artifact.

        Checks the recorded pids first, then anything running the tracker or
        client binary on our ports. Returns the number of processes stopped.
        Must be called with the session lock held, otherwise the recorded pids
        may belong to a live run.
        """
        if not self.holds_lock(artifact_id):
            raise ConflictError("Session lock not held, refusing to reclaim", artifact_id=artifact_id)
        stopped = 0
        state_path = self.state_path(artifact_id)
        if state_path.exists():
            try:
                state = json.loads(state_path.read_text())
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable session state {state_path}: {e}")
                state = {}
            for role in ("seeder", "tracker"):
                pid = state.get(f"{role}_pid")
                exe = state.get(f"{role}_exe")
                if not pid or not exe:
                    continue
                if not stop_pid(int(pid), [exe], timeout=self.swarm.stop_timeout):
                    raise StartupError(f"Stale {role} (pid {pid}) could not be stopped")
                stopped += 1
                metrics.STALE_PROCESSES_RECLAIMED.labels(role=role).inc()
            state_path.unlink(missing_ok=True)

        ours = [self.swarm.tracker_path, *self.engine.client_executables]
        for port in (self.swarm.tracker_port, self.swarm.seed_port):
            stale = [p for p in listening_processes(port) if process_matches(p, ours)]
            if not stale:
                continue
            logger.warning(f"Reclaiming {len(stale)} stale process(es) on port {port}")
            survivors = stop_processes(stale, timeout=self.swarm.stop_timeout)
            if survivors:
                raise StartupError("Stale process survived SIGKILL", port=port)
            stopped += len(stale)
            metrics.STALE_PROCESSES_RECLAIMED.labels(role=f"port-{port}").inc(len(stale))
        if stopped:
            logger.info(f"Reclaimed {stopped} stale process(es) for {artifact_id}")
        return stopped

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def _remove_published(self, artifact_id: str, include_state: bool = True) -> bool:
        ok = True
        paths = [self.metainfo_path(artifact_id), self.manifest_path(artifact_id)]
        if include_state:
            paths.append(self.state_path(artifact_id))
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Failed to remove {path}: {e}")
                ok = False
        return ok

    async def teardown(self, session: SwarmSession) -> bool:
        """Stop seeder and tracker and unpublish. Never raises.

        Returns False if some step failed; the session is closed regardless.
        """
        if session.state == SessionState.CLOSED:
            logger.debug(f"Session {session.artifact_id} already closed")
            return True
        session.state = SessionState.TEARING_DOWN
        ok = True
        for handle in (session.seeder_handle, session.tracker_handle):
            if handle is None:
                continue
            try:
                if not await asyncio.to_thread(handle.stop, self.swarm.stop_timeout):
                    ok = False
            except Exception as e:
                logger.error(f"Failed to stop {handle.name}: {e}")
                ok = False
        if not self._remove_published(session.artifact_id):
            ok = False
        self._release_lock(session.artifact_id)

        session.state = SessionState.CLOSED
        metrics.SWARM_TEARDOWNS.labels(outcome="ok" if ok else "partial").inc()
        if ok:
            logger.info(f"Swarm for {session.artifact_id} torn down")
        else:
            logger.warning(f"Swarm for {session.artifact_id} torn down with errors")
        return ok

    async def reclaim(self, artifact_id: str) -> bool:
        """Standalone cleanup for a seed host left dirty by a crashed run.

        Refuses, returning False, while another process holds the session lock.
        """
        session = self._sessions.get(artifact_id)
        if session is not None and session.is_live:
            return await self.teardown(session)
        try:
            self._acquire_lock(artifact_id)
        except ConflictError as e:
            logger.error(f"Not reclaiming {artifact_id}: {e}")
            return False
        try:
            await asyncio.to_thread(self._reclaim_stale, artifact_id)
        except StartupError as e:
            logger.error(f"Reclaim for {artifact_id} incomplete: {e}")
            self._remove_published(artifact_id)
            return False
        else:
            return self._remove_published(artifact_id)
        finally:
            self._release_lock(artifact_id)
