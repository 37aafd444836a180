"""Swarm transfer engine.

Thin wrapper over the external BitTorrent client. The engine never touches
pieces or peers itself; it builds command lines for ``ctorrent`` (the
default) or ``aria2c`` and interprets their exit status.

Usage:
    engine = TransferEngine(config.transfer, config.node)

    # Seed host
    await engine.create_metainfo(source, metainfo, announce_url)
    seeder = ManagedProcess("seeder", engine.seed_command(metainfo, source, port))

    # Node
    await engine.fetch(manifest.metainfo_uri, "/var/lib/elsprecachedir/<id>")
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from urllib.parse import urlparse

import requests

from prestage.config import NodeConfig, TransferConfig
from prestage.errors import TransferError
from prestage.execution import LocalExecutor

logger = logging.getLogger(__name__)

METAINFO_SUFFIX = ".torrent"


def fetch_uri(uri: str, timeout: float = 30.0) -> bytes:
    """Read a published document from an http(s) URL, file:// URL or path."""
    parsed = urlparse(uri)
    if parsed.scheme in ("http", "https"):
        try:
            response = requests.get(uri, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransferError(f"Failed to download {uri}: {e}")
        return response.content
    path = parsed.path if parsed.scheme == "file" else uri
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise TransferError(f"Failed to read {uri}: {e}")


class TransferEngine:
    """Builds and runs swarm client commands."""

    def __init__(
        self,
        transfer: TransferConfig | None = None,
        node: NodeConfig | None = None,
        executor: LocalExecutor | None = None,
    ):
        self.transfer = transfer or TransferConfig()
        self.node = node or NodeConfig()
        self.executor = executor or LocalExecutor()

    @property
    def client_executables(self) -> list[str]:
        """Executables a stale transfer for this engine might be running."""
        if self.transfer.client == "aria2c":
            return [self.transfer.aria2c_path]
        return [self.transfer.ctorrent_path]

    # -------------------------------------------------------------------------
    # Seed side
    # -------------------------------------------------------------------------

    async def create_metainfo(
        self,
        source_path: str | Path,
        metainfo_path: str | Path,
        announce_url: str,
    ) -> None:
        """Write a .torrent for ``source_path``, replacing any stale one."""
        metainfo_path = Path(metainfo_path)
        metainfo_path.parent.mkdir(parents=True, exist_ok=True)
        metainfo_path.unlink(missing_ok=True)
        cmd = [
            self.transfer.ctorrent_path,
            "-t",
            "-s", str(metainfo_path),
            "-u", announce_url,
            "-c", self.transfer.metainfo_comment,
            str(source_path),
        ]
        result = await self.executor.run(cmd, timeout=None)
        if not result.success or not metainfo_path.exists():
            raise TransferError(
                f"Failed to create metainfo for {source_path}: {result.output_tail}",
                exit_code=result.returncode,
            )
        logger.info(f"Created metainfo {metainfo_path} (announce {announce_url})")

    def seed_command(
        self,
        metainfo_path: str | Path,
        source_path: str | Path,
        port: int,
        upload_kbps: int = 50000,
    ) -> list[str]:
        if self.transfer.client == "aria2c":
            return [
                self.transfer.aria2c_path,
                f"--dir={os.path.dirname(os.path.abspath(source_path))}",
                f"--listen-port={port}",
                f"--max-overall-upload-limit={upload_kbps}K",
                "--seed-ratio=0.0",  # Seed until stopped
                "--bt-seed-unverified=true",
                "--check-integrity=false",
                "--enable-dht=false",
                "--console-log-level=warn",
                str(metainfo_path),
            ]
        return [
            self.transfer.ctorrent_path,
            "-U", str(upload_kbps),
            "-p", str(port),
            "-s", str(source_path),
            str(metainfo_path),
        ]

    # -------------------------------------------------------------------------
    # Node side
    # -------------------------------------------------------------------------

    def fetch_command(self, metainfo_path: str | Path, dest_path: str | Path) -> list[str]:
        node = self.node
        if self.transfer.client == "aria2c":
            return [
                self.transfer.aria2c_path,
                f"--dir={os.path.dirname(os.path.abspath(dest_path))}",
                f"--index-out=1={os.path.basename(dest_path)}",
                f"--listen-port={node.listen_port}",
                f"--bt-max-peers={node.max_peers}",
                f"--max-overall-upload-limit={node.upload_kbps}K",
                f"--max-overall-download-limit={node.download_kbps}K",
                "--seed-time=0",  # Exit as soon as the download completes
                "--enable-dht=false",
                "--allow-overwrite=true",
                "--console-log-level=warn",
                "--summary-interval=0",
                str(metainfo_path),
            ]
        return [
            self.transfer.ctorrent_path,
            "-e", "0",  # Exit as soon as the download completes
            "-m", str(node.max_peers),
            "-U", str(node.upload_kbps),
            "-D", str(node.download_kbps),
            "-p", str(node.listen_port),
            "-s", str(dest_path),
            str(metainfo_path),
        ]

    def metainfo_path_for(self, dest_path: str | Path) -> Path:
        return Path(f"{dest_path}{METAINFO_SUFFIX}")

    async def fetch(self, metainfo_uri: str, dest_path: str | Path) -> Path:
        """Download the artifact described by ``metainfo_uri`` to ``dest_path``.

        Returns the local metainfo copy so the caller can clean it up.
        Cancellation kills the client.
        """
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        metainfo_path = self.metainfo_path_for(dest_path)

        data = await asyncio.to_thread(fetch_uri, metainfo_uri, self.node.metainfo_timeout)
        metainfo_path.write_bytes(data)

        logger.info(f"Fetching {metainfo_uri} -> {dest_path} via {self.transfer.client}")
        result = await self.executor.run(
            self.fetch_command(metainfo_path, dest_path),
            cwd=str(dest_path.parent),
        )
        if not result.success:
            raise TransferError(
                f"{self.transfer.client} exited with {result.returncode}: {result.output_tail}",
                exit_code=result.returncode,
            )
        if not dest_path.exists():
            raise TransferError(f"{self.transfer.client} finished but {dest_path} is missing")
        return metainfo_path

