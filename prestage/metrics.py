"""Prometheus metrics for prestage runs.

This module centralises counters and histograms so the coordinator,
node agents and orchestrator can record lightweight telemetry without each
component managing its own metric instances. A run can dump the registry in
node_exporter textfile format with ``write_metrics_file``.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import REGISTRY, Counter, Histogram, write_to_textfile

NODE_JOBS: Final[Counter] = Counter(
    "prestage_node_jobs_total",
    (
        "Total node transfer jobs, labeled by final status and error code "
        "(empty for successful jobs)."
    ),
    labelnames=("status", "error_code"),
)

NODE_JOBS_SKIPPED: Final[Counter] = Counter(
    "prestage_node_jobs_skipped_total",
    "Node jobs that found the image already in the store.",
)

NODE_JOB_DURATION: Final[Histogram] = Histogram(
    "prestage_node_job_duration_seconds",
    "Wall-clock duration of node transfer jobs, labeled by final status.",
    labelnames=("status",),
    # Image pushes range from seconds (skip) to the better part of an hour.
    buckets=(1.0, 10.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0),
)

SWARM_STARTS: Final[Counter] = Counter(
    "prestage_swarm_starts_total",
    "Swarm seeding attempts, labeled by outcome.",
    labelnames=("outcome",),
)

SWARM_TEARDOWNS: Final[Counter] = Counter(
    "prestage_swarm_teardowns_total",
    "Swarm teardowns, labeled by outcome (ok or partial).",
    labelnames=("outcome",),
)

STALE_PROCESSES_RECLAIMED: Final[Counter] = Counter(
    "prestage_stale_processes_reclaimed_total",
    "Leftover tracker/seeder/client processes stopped before a new run.",
    labelnames=("role",),
)

FLEET_RUNS: Final[Counter] = Counter(
    "prestage_fleet_runs_total",
    "Fleet runs, labeled by exit code.",
    labelnames=("exit_code",),
)


def observe_job(status: str, error_code: str | None, duration_seconds: float, skipped: bool) -> None:
    NODE_JOBS.labels(status=status, error_code=error_code or "").inc()
    NODE_JOB_DURATION.labels(status=status).observe(duration_seconds)
    if skipped:
        NODE_JOBS_SKIPPED.inc()


def write_metrics_file(path: str) -> None:
    write_to_textfile(path, REGISTRY)
