"""
Data model for prestage runs.

Manifest is the published, immutable description of an image. The other
types are run-time records: the seed host's SwarmSession, one
NodeTransferJob per target host and the aggregated FleetRunResult.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from prestage.process import ManagedProcess


class SessionState(str, Enum):
    """Swarm session lifecycle"""
    PUBLISHING = "publishing"
    SEEDING = "seeding"
    TEARING_DOWN = "tearing_down"
    CLOSED = "closed"


class JobStatus(str, Enum):
    """Node transfer job status"""
    PENDING = "pending"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    PROMOTING = "promoting"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


# Failed is reachable from every non-terminal state and is added below.
_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.FETCHING, JobStatus.DONE},
    JobStatus.FETCHING: {JobStatus.VERIFYING},
    JobStatus.VERIFYING: {JobStatus.PROMOTING},
    JobStatus.PROMOTING: {JobStatus.DONE},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
}


def store_name_for(artifact_id: str, naming: str = "sha1") -> str:
    """Name of the promoted file in the node's image store.

    ``sha1`` mirrors nova's ``_base`` cache layout, where a Glance image is
    stored under the sha1 of its UUID. ``artifact`` keeps the id as-is.
    """
    if naming == "sha1":
        return hashlib.sha1(artifact_id.encode("utf-8")).hexdigest()
    if naming == "artifact":
        return artifact_id
    raise ValueError(f"Unknown store naming scheme: {naming}")


class Manifest(BaseModel):
    """Published description of an artifact.

    Immutable once published; nodes receive it by URI and never see
    credentials or seed-host filesystem conventions beyond ``source_path``.
    """
    model_config = ConfigDict(frozen=True)

    artifact_id: str = Field(min_length=1)
    checksum: str = Field(min_length=1)
    source_path: str
    announce_url: str
    metainfo_uri: str
    dest_name: str
    source_format: str = "qcow2"
    created_at: float = Field(default_factory=time.time)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)

    @classmethod
    def from_json(cls, data: str | bytes) -> "Manifest":
        return cls.model_validate_json(data)


@dataclass
class SwarmSession:
    """Seed-side swarm state for one manifest.

    Owned exclusively by the SwarmCoordinator.
    """
    manifest: Manifest
    tracker_address: str
    state: SessionState = SessionState.PUBLISHING
    tracker_handle: ManagedProcess | None = None
    seeder_handle: ManagedProcess | None = None
    started_at: float = field(default_factory=time.time)

    @property
    def artifact_id(self) -> str:
        return self.manifest.artifact_id

    @property
    def is_live(self) -> bool:
        return self.state != SessionState.CLOSED


@dataclass
class NodeTransferJob:
    """One host's download -> verify -> promote run."""
    target_host: str
    manifest: Manifest
    local_dest_path: str
    status: JobStatus = JobStatus.PENDING
    error_code: str | None = None
    reason: str | None = None
    skipped: bool = False
    started_at: float | None = None
    finished_at: float | None = None

    def transition(self, new_status: JobStatus) -> None:
        """Move to ``new_status``, rejecting transitions the state machine forbids."""
        if self.status.is_terminal:
            raise ValueError(
                f"Job for {self.target_host} already {self.status.value}, "
                f"cannot move to {new_status.value}"
            )
        allowed = _TRANSITIONS[self.status] | {JobStatus.FAILED}
        if new_status not in allowed:
            raise ValueError(
                f"Invalid transition {self.status.value} -> {new_status.value}"
            )
        if self.started_at is None:
            self.started_at = time.time()
        self.status = new_status
        if new_status.is_terminal:
            self.finished_at = time.time()

    def fail(self, error_code: str, reason: str) -> None:
        self.transition(JobStatus.FAILED)
        self.error_code = error_code
        self.reason = reason

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    @property
    def outcome(self) -> str:
        """Short outcome label, e.g. ``done`` or ``failed(TIMEOUT)``."""
        if self.status == JobStatus.FAILED:
            return f"failed({self.error_code})"
        return self.status.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.target_host,
            "artifact_id": self.manifest.artifact_id,
            "status": self.status.value,
            "error_code": self.error_code,
            "reason": self.reason,
            "skipped": self.skipped,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class FleetRunResult:
    """Aggregate per-host outcome of a fleet run."""
    artifact_id: str
    jobs: dict[str, NodeTransferJob] = field(default_factory=dict)
    teardown_ok: bool = True
    duration_seconds: float = 0.0

    @property
    def outcomes(self) -> dict[str, str]:
        return {host: job.outcome for host, job in self.jobs.items()}

    @property
    def all_done(self) -> bool:
        return bool(self.jobs) and all(
            job.status == JobStatus.DONE for job in self.jobs.values()
        )

    @property
    def failed_hosts(self) -> list[str]:
        return sorted(
            host for host, job in self.jobs.items() if job.status != JobStatus.DONE
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.all_done else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "teardown_ok": self.teardown_ok,
            "duration_seconds": round(self.duration_seconds, 3),
            "jobs": {host: job.to_dict() for host, job in self.jobs.items()},
        }
