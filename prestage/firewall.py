"""Idempotent iptables allowance for the swarm port range on a node."""

from __future__ import annotations

import logging

from prestage.config import parse_port_range
from prestage.errors import FirewallError
from prestage.execution import LocalExecutor

logger = logging.getLogger(__name__)

# Duplicate rules can pile up from interrupted runs; revoke removes them all.
MAX_DUPLICATE_RULES = 16


class Firewall:
    """Opens and closes ``INPUT -p tcp --dport <range> -j ACCEPT``.

    ``allow`` leaves an existing rule alone and ``revoke`` on a missing rule
    is a no-op, so both can be called any number of times.
    """

    def __init__(
        self,
        executor: LocalExecutor | None = None,
        iptables_path: str = "/sbin/iptables",
        enabled: bool = True,
        timeout: float = 30.0,
    ):
        self.executor = executor or LocalExecutor()
        self.iptables_path = iptables_path
        self.enabled = enabled
        self.timeout = timeout

    def _rule(self, port_range: str) -> list[str]:
        parse_port_range(port_range)
        return ["INPUT", "-p", "tcp", "--dport", port_range, "-j", "ACCEPT"]

    async def _rule_present(self, port_range: str) -> bool:
        result = await self.executor.run(
            [self.iptables_path, "-C", *self._rule(port_range)], timeout=self.timeout
        )
        return result.success

    async def allow(self, port_range: str) -> None:
        if not self.enabled:
            return
        if await self._rule_present(port_range):
            logger.debug(f"Firewall already allows {port_range}")
            return
        result = await self.executor.run(
            [self.iptables_path, "-I", *self._rule(port_range)], timeout=self.timeout
        )
        if not result.success:
            raise FirewallError(
                f"Failed to allow ports {port_range}: {result.output_tail}",
                context={"port_range": port_range},
            )
        logger.info(f"Firewall: allowed tcp {port_range}")

    async def revoke(self, port_range: str) -> None:
        if not self.enabled:
            return
        for _ in range(MAX_DUPLICATE_RULES):
            if not await self._rule_present(port_range):
                return
            result = await self.executor.run(
                [self.iptables_path, "-D", *self._rule(port_range)], timeout=self.timeout
            )
            if not result.success:
                raise FirewallError(
                    f"Failed to revoke ports {port_range}: {result.output_tail}",
                    context={"port_range": port_range},
                )
            logger.info(f"Firewall: revoked tcp {port_range}")
        raise FirewallError(
            f"Rule for {port_range} still present after {MAX_DUPLICATE_RULES} deletions",
            context={"port_range": port_range},
        )
