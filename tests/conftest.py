"""
Shared pytest fixtures for prestage tests.

Nothing here needs the real swarm client, tracker, qemu-img or iptables:
the fakes below stand in for the external binaries at the TransferEngine,
executor and coordinator seams.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import replace
from pathlib import Path
from typing import Callable

import pytest

from prestage.config import NodeConfig, PrestageConfig, RunConfig, SwarmConfig
from prestage.execution import ExecutionResult
from prestage.models import Manifest, SessionState, SwarmSession, store_name_for

IMAGE_BYTES = b"RAWIMAGE" * 512


def sha256_of(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


# =============================================================================
# CONFIG
# =============================================================================


@pytest.fixture
def prestage_config(tmp_path: Path) -> PrestageConfig:
    """Config with every directory under tmp_path and no root-only steps."""
    return PrestageConfig(
        swarm=SwarmConfig(
            tracker_data_dir=str(tmp_path / "seed" / "tracker"),
            source_dir=str(tmp_path / "seed" / "images"),
            publish_dir=str(tmp_path / "seed" / "publish"),
            state_dir=str(tmp_path / "seed" / "state"),
            stop_timeout=5.0,
            startup_grace=0.2,
        ),
        node=NodeConfig(
            download_dir=str(tmp_path / "node" / "download"),
            store_dir=str(tmp_path / "node" / "store"),
            target_format="raw",
            owner=None,
            group=None,
            mode=0o644,
            firewall_enabled=False,
        ),
        run=RunConfig(per_node_timeout=5.0, global_timeout=10.0, cleanup_timeout=2.0),
    )


@pytest.fixture
def node_config_for(prestage_config: PrestageConfig, tmp_path: Path) -> Callable[[str], PrestageConfig]:
    """Per-host copy of the config so hosts never share a filesystem."""
    def make(host_name: str) -> PrestageConfig:
        root = tmp_path / "nodes" / host_name
        node = replace(
            prestage_config.node,
            download_dir=str(root / "download"),
            store_dir=str(root / "store"),
        )
        return replace(prestage_config, node=node)
    return make


@pytest.fixture
def manifest() -> Manifest:
    return Manifest(
        artifact_id="img-1",
        checksum=sha256_of(IMAGE_BYTES),
        source_path="/var/lib/glance/images/img-1",
        announce_url="http://seed.example:6969/announce",
        metainfo_uri="http://seed.example/torrent/img-1.torrent",
        dest_name=store_name_for("img-1"),
        source_format="raw",
    )


# =============================================================================
# FAKE EXTERNAL TOOLS
# =============================================================================


class FakeEngine:
    """TransferEngine stand-in that writes ``payload`` as the download."""

    client_executables = ["ctorrent"]

    def __init__(self, payload: bytes = IMAGE_BYTES, delay: float = 0.0, error: Exception | None = None):
        self.payload = payload
        self.delay = delay
        self.error = error
        self.fetches: list[tuple[str, Path]] = []
        self.metainfo_created: list[Path] = []

    def metainfo_path_for(self, dest_path) -> Path:
        return Path(f"{dest_path}.torrent")

    async def fetch(self, metainfo_uri: str, dest_path) -> Path:
        dest_path = Path(dest_path)
        self.fetches.append((metainfo_uri, dest_path))
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        metainfo = self.metainfo_path_for(dest_path)
        metainfo.write_bytes(b"d8:announce0:e")
        if self.delay:
            # Leave a partial download behind while "transferring".
            dest_path.write_bytes(self.payload[:16])
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        dest_path.write_bytes(self.payload)
        return metainfo

    async def create_metainfo(self, source_path, metainfo_path, announce_url) -> None:
        metainfo_path = Path(metainfo_path)
        metainfo_path.parent.mkdir(parents=True, exist_ok=True)
        metainfo_path.write_bytes(f"announce={announce_url}".encode())
        self.metainfo_created.append(metainfo_path)

    def seed_command(self, metainfo_path, source_path, port, upload_kbps=50000) -> list[str]:
        return ["ctorrent", "-p", str(port), "-s", str(source_path), str(metainfo_path)]


def make_result(success: bool = True, returncode: int | None = None, stdout: str = "", stderr: str = "",
                command: str = "") -> ExecutionResult:
    return ExecutionResult(
        success=success,
        returncode=(0 if success else 1) if returncode is None else returncode,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=0.0,
        command=command,
    )


class FakeIptables:
    """Executor that keeps a count of identical ACCEPT rules."""

    def __init__(self, rules: int = 0, fail_ops: tuple[str, ...] = ()):
        self.rules = rules
        self.fail_ops = fail_ops
        self.commands: list[list[str]] = []

    async def run(self, command, timeout=None, env=None, cwd=None) -> ExecutionResult:
        command = list(command)
        self.commands.append(command)
        op = command[1]
        if op in self.fail_ops:
            return make_result(False, stderr="iptables: Permission denied")
        if op == "-C":
            return make_result(self.rules > 0, stderr="" if self.rules else "Bad rule")
        if op == "-I":
            self.rules += 1
            return make_result(True)
        if op == "-D":
            if self.rules == 0:
                return make_result(False, stderr="Bad rule")
            self.rules -= 1
            return make_result(True)
        raise AssertionError(f"unexpected iptables call {command}")


class RecordingExecutor:
    """Executor that records commands and answers through ``handler``."""

    def __init__(self, handler: Callable[[list[str]], ExecutionResult] | None = None):
        self.handler = handler
        self.commands: list[list[str]] = []

    async def run(self, command, timeout=None, env=None, cwd=None) -> ExecutionResult:
        command = list(command) if not isinstance(command, str) else [command]
        self.commands.append(command)
        if self.handler is None:
            return make_result(True, command=" ".join(command))
        return self.handler(command)


class FakeCoordinator:
    """SwarmCoordinator stand-in counting lifecycle calls."""

    def __init__(self, start_error: Exception | None = None, publish_error: Exception | None = None):
        self.start_error = start_error
        self.publish_error = publish_error
        self.sessions: dict[str, SwarmSession] = {}
        self.published: list[str] = []
        self.teardowns = 0

    async def publish(self, artifact_id, source_path=None, checksum=None, source_format="qcow2") -> Manifest:
        if self.publish_error is not None:
            raise self.publish_error
        manifest = Manifest(
            artifact_id=artifact_id,
            checksum=checksum or sha256_of(IMAGE_BYTES),
            source_path=source_path or f"/images/{artifact_id}",
            announce_url="http://seed.example:6969/announce",
            metainfo_uri=f"http://seed.example/torrent/{artifact_id}.torrent",
            dest_name=store_name_for(artifact_id),
            source_format=source_format,
        )
        self.sessions[artifact_id] = SwarmSession(manifest=manifest, tracker_address="seed.example:6969")
        self.published.append(artifact_id)
        return manifest

    def session_for(self, artifact_id):
        return self.sessions.get(artifact_id)

    def manifest_uri(self, artifact_id) -> str:
        return f"http://seed.example/torrent/{artifact_id}.manifest.json"

    async def start_seeding(self, manifest):
        if self.start_error is not None:
            raise self.start_error
        session = self.sessions[manifest.artifact_id]
        session.state = SessionState.SEEDING
        return session

    async def teardown(self, session) -> bool:
        self.teardowns += 1
        session.state = SessionState.CLOSED
        return True


@pytest.fixture
def fake_engine_factory() -> Callable[..., FakeEngine]:
    return FakeEngine


@pytest.fixture
def fake_iptables_factory() -> Callable[..., FakeIptables]:
    return FakeIptables


@pytest.fixture
def recording_executor_factory() -> Callable[..., RecordingExecutor]:
    return RecordingExecutor


@pytest.fixture
def fake_coordinator_factory() -> Callable[..., FakeCoordinator]:
    return FakeCoordinator


@pytest.fixture
def result_factory() -> Callable[..., ExecutionResult]:
    return make_result


@pytest.fixture
def image_bytes() -> bytes:
    return IMAGE_BYTES


@pytest.fixture(autouse=True)
def no_leftover_clients(monkeypatch):
    """Keep tests from scanning (and stopping) real processes on the host."""
    monkeypatch.setattr("prestage.agent.find_processes", lambda names, argument: [])
