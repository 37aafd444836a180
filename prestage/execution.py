"""Async command execution, locally or over SSH.

All external tools (swarm client, qemu-img, iptables, ssh) are run through
these executors so that timeouts and cancellation always terminate the
child process group instead of leaving orphans behind.

Usage:
    executor = LocalExecutor()
    result = await executor.run(["qemu-img", "info", path], timeout=30)

    remote = SSHExecutor.from_host(host, config.remote)
    result = await remote.run("python3 -m prestage cleanup --artifact img-1")
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import time
from dataclasses import dataclass, field
from typing import Sequence

from prestage.config import RemoteConfig
from prestage.hosts import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Outcome of a single command."""
    success: bool
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float
    command: str
    timed_out: bool = False
    host: str = "local"

    @property
    def output_tail(self) -> str:
        """Last non-empty line of output, for log and error messages."""
        text = (self.stderr or self.stdout or "").strip()
        return text.splitlines()[-1][:200] if text else ""


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.kill()


class LocalExecutor:
    """Run commands on this machine."""

    def __init__(self, working_dir: str | None = None, host: str = "local"):
        self.working_dir = working_dir
        self.host = host

    async def run(
        self,
        command: str | Sequence[str],
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> ExecutionResult:
        """Run ``command`` (a shell string or an argv list).

        On timeout the process group is killed and ``timed_out`` is set. On
        cancellation the process group is killed and CancelledError propagates.
        """
        display = command if isinstance(command, str) else shlex.join(command)
        full_env = {**os.environ, **env} if env else None
        workdir = cwd or self.working_dir
        start = time.monotonic()

        if isinstance(command, str):
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=workdir,
                start_new_session=True,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=workdir,
                start_new_session=True,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_group(proc)
            await proc.wait()
            logger.warning(f"[{self.host}] Command timed out after {timeout}s: {display}")
            return ExecutionResult(
                success=False,
                returncode=-1,
                stdout="",
                stderr=f"timed out after {timeout}s",
                duration_seconds=time.monotonic() - start,
                command=display,
                timed_out=True,
                host=self.host,
            )
        except asyncio.CancelledError:
            _kill_group(proc)
            raise

        result = ExecutionResult(
            success=proc.returncode == 0,
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration_seconds=time.monotonic() - start,
            command=display,
            host=self.host,
        )
        if not result.success:
            logger.debug(f"[{self.host}] exit {result.returncode}: {display}: {result.output_tail}")
        return result


@dataclass
class SSHConfig:
    host: str
    user: str | None = None
    port: int = 22
    key_path: str | None = None
    connect_timeout: int = 15
    strict_host_key_checking: str = "accept-new"
    # Extra "-o" options
    ssh_options: list[str] = field(default_factory=list)

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


class SSHExecutor:
    """Run commands on a remote host through the system ssh client."""

    def __init__(
        self,
        host: str,
        user: str | None = None,
        port: int = 22,
        key_path: str | None = None,
        connect_timeout: int = 15,
        strict_host_key_checking: str = "accept-new",
        ssh_options: list[str] | None = None,
        name: str | None = None,
    ):
        self.config = SSHConfig(
            host=host,
            user=user,
            port=port,
            key_path=key_path,
            connect_timeout=connect_timeout,
            strict_host_key_checking=strict_host_key_checking,
            ssh_options=list(ssh_options or []),
        )
        self.name = name or host
        self._local = LocalExecutor(host=self.name)

    @classmethod
    def from_host(cls, host: HostConfig, remote: RemoteConfig) -> "SSHExecutor":
        return cls(
            host=host.ssh_host,
            user=host.ssh_user,
            port=host.ssh_port,
            key_path=host.ssh_key,
            connect_timeout=remote.connect_timeout,
            strict_host_key_checking=remote.strict_host_key_checking,
            ssh_options=remote.ssh_options,
            name=host.name,
        )

    def build_command(self, remote_command: str) -> list[str]:
        cfg = self.config
        cmd = [
            "ssh",
            "-o", f"StrictHostKeyChecking={cfg.strict_host_key_checking}",
            "-o", f"ConnectTimeout={cfg.connect_timeout}",
            "-o", "BatchMode=yes",
        ]
        if cfg.port != 22:
            cmd.extend(["-p", str(cfg.port)])
        if cfg.key_path:
            cmd.extend(["-i", os.path.expanduser(cfg.key_path)])
        for option in cfg.ssh_options:
            cmd.extend(["-o", option])
        cmd.append(cfg.target)
        cmd.append(remote_command)
        return cmd

    async def run(self, command: str, timeout: float | None = None) -> ExecutionResult:
        result = await self._local.run(self.build_command(command), timeout=timeout)
        result.command = command
        return result

