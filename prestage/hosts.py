"""Host inventory for prestage runs.

Hosts and host groups live in the ``hosts:`` and ``groups:`` sections of the
prestage YAML config:

    hosts:
      compute01:
        ssh_host: ops@10.0.0.11
        ssh_port: 2222
      compute02:
        ssh_host: 10.0.0.12
    groups:
      compute: [compute01, compute02]

``--targets`` accepts a group name, a host name, or a comma-separated list.
Names missing from the inventory are used verbatim as SSH hosts, so ad-hoc
runs work without an inventory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from prestage.config import PrestageConfig
from prestage.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class HostConfig:
    """Connection parameters for one target host."""
    name: str
    ssh_host: str
    ssh_user: str | None = None
    ssh_port: int = 22
    ssh_key: str | None = None

    def __post_init__(self) -> None:
        # Accept "user@host" in ssh_host, the same way ssh does.
        if "@" in self.ssh_host and not self.ssh_user:
            user, _, host = self.ssh_host.partition("@")
            self.ssh_user = user
            self.ssh_host = host

    @property
    def ssh_target(self) -> str:
        if self.ssh_user:
            return f"{self.ssh_user}@{self.ssh_host}"
        return self.ssh_host


def _host_from_entry(name: str, entry: object, config: PrestageConfig) -> HostConfig:
    remote = config.remote
    if entry is None:
        entry = {}
    if not isinstance(entry, dict):
        raise ConfigError(f"Host entry '{name}' must be a mapping")
    ssh_host = str(entry.get("ssh_host") or name)
    ssh_user = entry.get("ssh_user")
    if "@" in ssh_host:
        embedded, _, ssh_host = ssh_host.partition("@")
        ssh_user = ssh_user or embedded
    try:
        return HostConfig(
            name=name,
            ssh_host=ssh_host,
            ssh_user=ssh_user or remote.ssh_user,
            ssh_port=int(entry.get("ssh_port") or remote.ssh_port),
            ssh_key=entry.get("ssh_key") or remote.ssh_key,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid host entry '{name}': {e}")


def load_inventory(config: PrestageConfig) -> dict[str, HostConfig]:
    """Build HostConfig objects for every host in the config."""
    return {
        str(name): _host_from_entry(str(name), entry, config)
        for name, entry in config.hosts.items()
    }


def resolve_targets(selector: str, config: PrestageConfig) -> list[HostConfig]:
    """Resolve a ``--targets`` value into a de-duplicated host list."""
    if not selector or not selector.strip():
        raise ConfigError("No target hosts given")

    inventory = load_inventory(config)
    names: list[str] = []
    for token in (t.strip() for t in selector.split(",")):
        if not token:
            continue
        if token in config.groups:
            members = config.groups[token] or []
            if not isinstance(members, list):
                raise ConfigError(f"Group '{token}' must be a list of host names")
            names.extend(str(m) for m in members)
        else:
            names.append(token)

    targets: list[HostConfig] = []
    seen: set[str] = set()
    for name in names:
        if name in seen:
            continue
        seen.add(name)
        if name in inventory:
            targets.append(inventory[name])
        else:
            logger.debug(f"Host {name} not in inventory, using it as ssh host")
            targets.append(_host_from_entry(name, {}, config))

    if not targets:
        raise ConfigError("Target selector resolved to no hosts", context={"targets": selector})
    return targets
