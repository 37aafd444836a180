"""Daemon lifecycle for the tracker and swarm seeder.

Stopping is graceful first (SIGTERM, bounded wait, then SIGKILL) and the
outcome is checked: an already-stopped process is a normal result, and a
process that refuses to die is reported instead of ignored.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Iterable, Sequence

import psutil

logger = logging.getLogger(__name__)


def listening_processes(port: int) -> list[psutil.Process]:
    """Processes with a TCP or UDP socket listening on ``port``."""
    procs: dict[int, psutil.Process] = {}
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        logger.warning("Not allowed to list sockets; port ownership unknown")
        return []
    for conn in connections:
        if not conn.laddr or conn.laddr.port != port or conn.pid is None:
            continue
        if conn.status not in (psutil.CONN_LISTEN, psutil.CONN_NONE):
            continue
        try:
            procs[conn.pid] = psutil.Process(conn.pid)
        except psutil.NoSuchProcess:
            continue
    return list(procs.values())


def port_in_use(port: int) -> bool:
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        return False
    return any(
        conn.laddr and conn.laddr.port == port
        and conn.status in (psutil.CONN_LISTEN, psutil.CONN_NONE)
        for conn in connections
    )


def process_matches(proc: psutil.Process, names: Iterable[str]) -> bool:
    """True if ``proc`` runs one of the given executables (by basename)."""
    wanted = {os.path.basename(n) for n in names}
    try:
        if proc.name() in wanted:
            return True
        cmdline = proc.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
    return bool(cmdline) and os.path.basename(cmdline[0]) in wanted


def stop_processes(procs: Sequence[psutil.Process], timeout: float = 10.0) -> list[psutil.Process]:
    """Terminate, wait up to ``timeout``, kill the rest. Returns survivors."""
    if not procs:
        return []
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning(f"{len(alive)} process(es) ignored SIGTERM, sending SIGKILL")
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(alive, timeout=timeout)
    for proc in alive:
        logger.error(f"Process {proc.pid} still running after SIGKILL")
    return alive


def stop_pid(pid: int, names: Iterable[str], timeout: float = 10.0) -> bool:
    """Stop ``pid`` if it still runs one of ``names``.

    Returns True when the process is gone (including when it was never
    running or the pid now belongs to an unrelated program).
    """
    try:
        proc = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return True
    if not process_matches(proc, names):
        logger.debug(f"pid {pid} belongs to another program, leaving it alone")
        return True
    return not stop_processes([proc], timeout=timeout)


class ManagedProcess:
    """A long-running external daemon started by prestage."""

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        log_path: str | Path | None = None,
        cwd: str | None = None,
    ):
        self.name = name
        self.command = list(command)
        self.log_path = Path(log_path) if log_path else None
        self.cwd = cwd
        self._popen: subprocess.Popen | None = None
        self._pid: int | None = None

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def executable(self) -> str:
        return self.command[0]

    def start(self) -> int:
        if self.is_running():
            raise RuntimeError(f"{self.name} already running (pid {self._pid})")
        if self.log_path:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(self.log_path, "ab")
        else:
            log_file = subprocess.DEVNULL
        try:
            self._popen = subprocess.Popen(
                self.command,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=self.cwd,
                start_new_session=True,
            )
        finally:
            if log_file is not subprocess.DEVNULL:
                log_file.close()
        self._pid = self._popen.pid
        logger.info(f"Started {self.name} (pid {self._pid}): {' '.join(self.command)}")
        return self._pid

    def is_running(self) -> bool:
        if self._popen is not None:
            return self._popen.poll() is None
        if self._pid is None:
            return False
        try:
            proc = psutil.Process(self._pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    @property
    def returncode(self) -> int | None:
        return self._popen.poll() if self._popen is not None else None

    def stop(self, timeout: float = 10.0) -> bool:
        """Stop the daemon. Already stopped counts as success."""
        if self._pid is None:
            return True
        if self._popen is not None:
            if self._popen.poll() is not None:
                return True
            self._popen.terminate()
            try:
                self._popen.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"{self.name} didn't terminate in {timeout}s, sending SIGKILL")
                self._popen.kill()
                try:
                    self._popen.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    logger.error(f"{self.name} (pid {self._pid}) survived SIGKILL")
                    return False
            logger.info(f"Stopped {self.name} (pid {self._pid})")
            return True
        stopped = stop_pid(self._pid, [self.executable], timeout=timeout)
        if stopped:
            logger.info(f"Stopped {self.name} (pid {self._pid})")
        return stopped

    def wait_started(self, grace: float) -> bool:
        """True if the process is still alive after ``grace`` seconds."""
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not self.is_running():
                return False
            time.sleep(min(0.1, grace))
        return self.is_running()


def find_processes(names: Iterable[str], argument: str) -> list[psutil.Process]:
    """Processes running one of ``names`` with ``argument`` on their command line."""
    names = list(names)
    found = []
    for proc in psutil.process_iter():
        try:
            if process_matches(proc, names) and argument in proc.cmdline():
                found.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return found
