"""Configuration loading for prestage.

Settings come from a YAML file (``config/prestage.yaml`` by default, or the
path in ``PRESTAGE_CONFIG``) mapped onto dataclasses and type-checked with
pydantic, with SSH connection
parameters overridable from the environment. Defaults match a Glance/nova
compute deployment (nova's _base image cache, qemu-owned raw images).

Example config:

    swarm:
      tracker_port: 6969
      publish_dir: /var/www/html/torrent
      publish_base_url: "http://{seed_host}/torrent"
    node:
      store_dir: /var/lib/nova/instances/_base
      owner: nova
      group: qemu
    remote:
      agent_command: "sudo -n python3 -m prestage"
    hosts:
      compute01: {ssh_host: 10.0.0.11}
    groups:
      compute: [compute01]
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from pydantic import TypeAdapter, ValidationError

from prestage.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config") / "prestage.yaml"

TRANSFER_CLIENTS = ("ctorrent", "aria2c")
STORE_NAMING = ("sha1", "artifact")
CHECKSUM_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")


@dataclass
class TransferConfig:
    """Swarm client selection, shared by seed and nodes."""
    client: str = "ctorrent"
    ctorrent_path: str = "/usr/bin/ctorrent"
    aria2c_path: str = "aria2c"
    # ctorrent -c comment written into the metainfo
    metainfo_comment: str = "prestage image distribution"


@dataclass
class SwarmConfig:
    """Seed host settings."""
    tracker_path: str = "/usr/bin/opentracker-ipv4"
    tracker_port: int = 6969
    tracker_data_dir: str = "/var/opentracker"
    seed_port: int = 2706
    seed_upload_kbps: int = 50000
    source_dir: str = "/var/lib/glance/images"
    publish_dir: str = "/var/www/html/torrent"
    # {seed_host} is substituted at publish time
    publish_base_url: str = "http://{seed_host}/torrent"
    state_dir: str = "/var/lib/prestage"
    stop_timeout: float = 10.0
    startup_grace: float = 1.0


@dataclass
class NodeConfig:
    """Target host settings used by the node agent."""
    port_range: str = "2704:2706"
    listen_port: int = 2706
    download_dir: str = "/var/lib/elsprecachedir"
    store_dir: str = "/var/lib/nova/instances/_base"
    store_naming: str = "sha1"
    target_format: str = "raw"
    qemu_img_path: str = "/usr/bin/qemu-img"
    owner: str | None = "nova"
    group: str | None = "qemu"
    mode: int = 0o644
    max_peers: int = 10
    upload_kbps: int = 30000
    download_kbps: int = 80000
    firewall_enabled: bool = True
    iptables_path: str = "/sbin/iptables"
    verify_on_skip: bool = True
    metainfo_timeout: float = 30.0


@dataclass
class RemoteConfig:
    """How the orchestrator reaches node agents."""
    ssh_user: str | None = None
    ssh_key: str | None = None
    ssh_port: int = 22
    connect_timeout: int = 15
    strict_host_key_checking: str = "accept-new"
    # Passed to ssh as "-o <option>", e.g. ProxyJump=bastion
    ssh_options: list[str] = field(default_factory=list)
    agent_command: str = "sudo -n python3 -m prestage"


@dataclass
class RunConfig:
    """Fleet run bounds."""
    per_node_timeout: float = 3600.0
    global_timeout: float = 7200.0
    cleanup_timeout: float = 60.0
    max_parallel: int = 50
    checksum_algorithm: str = "sha256"


@dataclass
class PrestageConfig:
    transfer: TransferConfig = field(default_factory=TransferConfig)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    node: NodeConfig = field(default_factory=NodeConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    run: RunConfig = field(default_factory=RunConfig)
    # Raw inventory sections, parsed by prestage.hosts
    hosts: dict[str, Any] = field(default_factory=dict)
    groups: dict[str, Any] = field(default_factory=dict)
    source_path: str | None = None

    def validate(self) -> None:
        """Raise ConfigError on values that cannot work."""
        if self.transfer.client not in TRANSFER_CLIENTS:
            raise ConfigError(
                f"transfer.client must be one of {', '.join(TRANSFER_CLIENTS)}",
                context={"client": self.transfer.client},
            )
        if self.node.store_naming not in STORE_NAMING:
            raise ConfigError(
                f"node.store_naming must be one of {', '.join(STORE_NAMING)}",
                context={"store_naming": self.node.store_naming},
            )
        if self.run.checksum_algorithm not in CHECKSUM_ALGORITHMS:
            raise ConfigError(
                "run.checksum_algorithm is not supported",
                context={"checksum_algorithm": self.run.checksum_algorithm},
            )
        for name, port in (
            ("swarm.tracker_port", self.swarm.tracker_port),
            ("swarm.seed_port", self.swarm.seed_port),
            ("node.listen_port", self.node.listen_port),
            ("remote.ssh_port", self.remote.ssh_port),
        ):
            if not 0 < port < 65536:
                raise ConfigError(f"{name} out of range", context={name: port})
        if self.swarm.tracker_port == self.swarm.seed_port:
            raise ConfigError("swarm.tracker_port and swarm.seed_port must differ")
        for name, value in (
            ("run.per_node_timeout", self.run.per_node_timeout),
            ("run.global_timeout", self.run.global_timeout),
            ("run.cleanup_timeout", self.run.cleanup_timeout),
        ):
            if value <= 0:
                raise ConfigError(f"{name} must be positive", context={name: value})
        if self.run.max_parallel < 1:
            raise ConfigError("run.max_parallel must be at least 1")
        parse_port_range(self.node.port_range)


def parse_port_range(port_range: str) -> tuple[int, int]:
    """Parse ``"2704:2706"`` (or a single port) into an inclusive range."""
    parts = str(port_range).split(":")
    try:
        if len(parts) == 1:
            low = high = int(parts[0])
        elif len(parts) == 2:
            low, high = int(parts[0]), int(parts[1])
        else:
            raise ValueError(port_range)
    except ValueError:
        raise ConfigError("Invalid port range", context={"port_range": port_range})
    if not 0 < low <= high < 65536:
        raise ConfigError("Invalid port range", context={"port_range": port_range})
    return low, high


def _parse_mode(value: Any) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 8)
    except ValueError:
        raise ConfigError("node.mode must be an octal permission string", context={"mode": value})


def _build_section(cls: type, data: Any, section: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(
            f"Unknown keys in section '{section}'",
            context={"keys": ",".join(sorted(unknown))},
        )
    values = dict(data)
    if cls is NodeConfig and "mode" in values:
        values["mode"] = _parse_mode(values["mode"])
    # Coerces "8" -> 8 and rejects values of the wrong type
    try:
        return TypeAdapter(cls).validate_python(values)
    except ValidationError as e:
        error = e.errors()[0]
        key = ".".join(str(part) for part in error["loc"])
        raise ConfigError(
            f"Invalid value for {section}.{key}: {error['msg']}",
            context={"value": error.get("input")},
        )


def _apply_env_overrides(config: PrestageConfig) -> None:
    user = os.environ.get("PRESTAGE_SSH_USER")
    if user:
        config.remote.ssh_user = user
    key = os.environ.get("PRESTAGE_SSH_KEY")
    if key:
        config.remote.ssh_key = key
    port = os.environ.get("PRESTAGE_SSH_PORT")
    if port:
        try:
            config.remote.ssh_port = int(port)
        except ValueError:
            raise ConfigError("PRESTAGE_SSH_PORT must be an integer", context={"value": port})


def load_config(path: str | Path | None = None) -> PrestageConfig:
    """Load configuration from YAML, falling back to defaults.

    An explicitly given path (argument or ``PRESTAGE_CONFIG``) must exist;
    the default location is optional.
    """
    explicit = path or os.environ.get("PRESTAGE_CONFIG")
    config_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH

    raw: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}")
        if not isinstance(raw, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")
        logger.debug(f"Loaded config from {config_path}")
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    sections = {"transfer", "swarm", "node", "remote", "run", "hosts", "groups"}
    unknown = set(raw) - sections
    if unknown:
        raise ConfigError(
            "Unknown top-level config keys",
            context={"keys": ",".join(sorted(unknown))},
        )

    config = PrestageConfig(
        transfer=_build_section(TransferConfig, raw.get("transfer"), "transfer"),
        swarm=_build_section(SwarmConfig, raw.get("swarm"), "swarm"),
        node=_build_section(NodeConfig, raw.get("node"), "node"),
        remote=_build_section(RemoteConfig, raw.get("remote"), "remote"),
        run=_build_section(RunConfig, raw.get("run"), "run"),
        hosts=raw.get("hosts") or {},
        groups=raw.get("groups") or {},
        source_path=str(config_path) if config_path.exists() else None,
    )
    _apply_env_overrides(config)
    config.validate()
    return config
