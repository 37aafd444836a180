"""Command line entry point.

Usage:
    # Seed host: push an image to the compute group
    prestage run --artifact img-1 --checksum sha256:abc... \\
        --seed-host 10.0.0.5 --targets compute

    # Node side, normally invoked by ``run`` over ssh
    prestage agent --manifest-uri http://10.0.0.5/torrent/img-1.manifest.json

    # Clean up after a crashed run
    prestage cleanup --artifact img-1      # on a node
    prestage teardown --artifact img-1     # on the seed host

Exit codes: 0 all hosts done, 1 some host failed or the swarm could not
start, 2 configuration or usage error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import socket
import sys

from prestage import metrics
from prestage.agent import NodeAgent, load_manifest
from prestage.config import PrestageConfig, load_config
from prestage.errors import ConfigError, PrestageError
from prestage.hosts import resolve_targets
from prestage.launcher import SSHAgentLauncher, format_failure_line, format_result_line
from prestage.models import FleetRunResult
from prestage.orchestrator import FleetOrchestrator, ManifestSource
from prestage.swarm import SwarmCoordinator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def setup_logging(level: str | None = None) -> None:
    level_name = (level or os.environ.get("PRESTAGE_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prestage",
        description="Prestage VM images onto compute nodes through a BitTorrent swarm",
    )
    parser.add_argument("--config", help="Config file (default: $PRESTAGE_CONFIG or config/prestage.yaml)")
    parser.add_argument("--log-level", help="Logging level (default: $PRESTAGE_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Publish an image and push it to target hosts")
    run.add_argument("--artifact", required=True, help="Image id (e.g. the Glance UUID)")
    run.add_argument(
        "--checksum", required=True,
        help="Expected checksum from an independent source, optionally prefixed with the algorithm",
    )
    run.add_argument("--seed-host", required=True, help="Address nodes use to reach this host")
    run.add_argument("--targets", required=True, help="Host group, host name, or comma-separated list")
    run.add_argument("--source", help="Image file (default: <swarm.source_dir>/<artifact>)")
    run.add_argument("--source-format", default="qcow2", help="Format of the source image (default: qcow2)")
    run.add_argument("--per-node-timeout", type=float, help="Seconds allowed per host")
    run.add_argument("--global-timeout", type=float, help="Seconds allowed for the whole run")
    run.add_argument("--max-parallel", type=int, help="Maximum concurrent hosts")
    run.add_argument("--metrics-file", help="Write Prometheus metrics here when done")
    run.add_argument("--json", action="store_true", help="Print the result as JSON instead of a table")

    agent = sub.add_parser("agent", help="Fetch, verify and install an image on this node")
    agent.add_argument("--manifest-uri", required=True, help="URI of the published manifest")
    agent.add_argument("--deadline", type=float, help="Seconds before the job is abandoned")
    agent.add_argument("--host-name", default=socket.gethostname(), help="Name used in logs and results")

    cleanup = sub.add_parser("cleanup", help="Remove transfer leftovers for an artifact on this node")
    cleanup.add_argument("--artifact", required=True)

    teardown = sub.add_parser("teardown", help="Stop the swarm and unpublish an artifact on this seed host")
    teardown.add_argument("--artifact", required=True)
    teardown.add_argument("--seed-host", default="localhost")
    return parser


def print_summary(result: FleetRunResult) -> None:
    print()
    print("=" * 60)
    print(f"Prestage summary: {result.artifact_id}")
    print("=" * 60)
    width = max([len(h) for h in result.jobs] + [4])
    print(f"{'HOST':<{width}}  {'OUTCOME':<28}  {'TIME':>8}")
    for host in sorted(result.jobs):
        job = result.jobs[host]
        outcome = job.outcome + (" (skipped)" if job.skipped else "")
        print(f"{host:<{width}}  {outcome:<28}  {job.duration_seconds:>7.1f}s")
    done = sum(1 for j in result.jobs.values() if j.outcome == "done")
    print("-" * 60)
    print(f"{done}/{len(result.jobs)} done, teardown {'ok' if result.teardown_ok else 'FAILED'}, "
          f"{result.duration_seconds:.1f}s total")


async def cmd_run(args: argparse.Namespace, config: PrestageConfig) -> int:
    if args.max_parallel is not None:
        if args.max_parallel < 1:
            raise ConfigError("--max-parallel must be at least 1")
        config.run.max_parallel = args.max_parallel
    targets = resolve_targets(args.targets, config)
    coordinator = SwarmCoordinator(config, seed_host=args.seed_host)
    launcher = SSHAgentLauncher(config.remote, cleanup_timeout=config.run.cleanup_timeout)
    orchestrator = FleetOrchestrator(config, coordinator, launcher)
    source = ManifestSource(
        artifact_id=args.artifact,
        checksum=args.checksum,
        source_path=args.source,
        source_format=args.source_format,
    )
    try:
        result = await orchestrator.run(
            source,
            targets,
            per_node_timeout=args.per_node_timeout,
            global_timeout=args.global_timeout,
        )
    finally:
        if args.metrics_file:
            metrics.write_metrics_file(args.metrics_file)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_summary(result)
    return result.exit_code


async def cmd_agent(args: argparse.Namespace, config: PrestageConfig) -> int:
    agent = NodeAgent(config, host_name=args.host_name)
    try:
        manifest = await load_manifest(args.manifest_uri, timeout=config.node.metainfo_timeout)
    except PrestageError as e:
        logger.error(str(e))
        print(format_failure_line(e.code, e.message), flush=True)
        return EXIT_FAILED
    job = await agent.run(agent.new_job(manifest), deadline=args.deadline)
    print(format_result_line(job), flush=True)
    return EXIT_OK if job.outcome == "done" else EXIT_FAILED


async def cmd_cleanup(args: argparse.Namespace, config: PrestageConfig) -> int:
    ok = await NodeAgent(config).cleanup(args.artifact)
    return EXIT_OK if ok else EXIT_FAILED


async def cmd_teardown(args: argparse.Namespace, config: PrestageConfig) -> int:
    ok = await SwarmCoordinator(config, seed_host=args.seed_host).reclaim(args.artifact)
    return EXIT_OK if ok else EXIT_FAILED


COMMANDS = {
    "run": cmd_run,
    "agent": cmd_agent,
    "cleanup": cmd_cleanup,
    "teardown": cmd_teardown,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
        return asyncio.run(COMMANDS[args.command](args, config))
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except PrestageError as e:
        logger.error(str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
