"""Transient IPv6 NAT rule.

When the host has global IPv6 connectivity the container's private IPv6
subnet is masqueraded on the way out. The rule lives only while the
service runs: installed on start, removed on stop.
"""

from sniguard.core.context import ExecutionContext
from sniguard.core.exceptions import RuleEngineUnavailableError
from sniguard.core.executor import CommandExecutor
from sniguard.services import network
from sniguard.services.allowlist import delete_until_absent
from sniguard.services.iptables import Action, BuiltinChain, IptablesService, Rule, Table


class TransientNatHandler:
    """Installs and removes the IPv6 masquerade rule."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        ip6tables: IptablesService,
        subnet: str,
        bridge_interface: str,
    ) -> None:
        """Initialize the handler.

        Args:
            ctx: Execution context
            executor: Command executor (for sysctl)
            ip6tables: IPv6 rule engine
            subnet: Container's private IPv6 subnet
            bridge_interface: Container bridge, excluded from masquerading
        """
        self.ctx = ctx
        self.executor = executor
        self.ip6tables = ip6tables
        self.subnet = subnet
        self.bridge_interface = bridge_interface

    @property
    def rule(self) -> Rule:
        return Rule(
            chain=BuiltinChain.POSTROUTING.value,
            target=Action.MASQUERADE.value,
            table=Table.NAT,
            source=self.subnet,
            out_interface=self.bridge_interface,
            out_interface_negated=True,
        )

    def _nat_unused(self, error: RuleEngineUnavailableError) -> bool:
        # With ipv6_nat=no and no usable ip6tables, no rule can have been installed
        if self.ctx.config.ipv6_nat:
            return False
        self.ctx.console.debug(f"IPv6 NAT disabled and ip6tables unusable: {error.message}")
        return True

    def count(self) -> int:
        """Number of matching rules currently installed."""
        try:
            ruleset = self.ip6tables.ruleset(Table.NAT)
        except RuleEngineUnavailableError as e:
            if self._nat_unused(e):
                return 0
            raise
        return sum(1 for r in ruleset.rules if r == self.rule)

    def install(self) -> bool:
        """Install exactly one masquerade rule if enabled and useful.

        Returns:
            True if the rule was installed
        """
        if not self.ctx.config.ipv6_nat:
            self.ctx.console.verbose("IPv6 NAT disabled in configuration")
            return False

        if not network.has_global_ipv6():
            self.ctx.console.info("No global IPv6 address on the default route, skipping IPv6 NAT")
            return False

        self.ctx.console.step(f"Masquerading {self.subnet}")
        self.remove()
        self.ip6tables.insert_rule(self.rule, position=1)
        network.enable_ipv6_forwarding(self.executor)
        return True

    def remove(self) -> int:
        """Delete every copy of the masquerade rule.

        Returns:
            Number of rules deleted
        """
        try:
            deleted = delete_until_absent(self.ctx, self.ip6tables, self.rule)
        except RuleEngineUnavailableError as e:
            if self._nat_unused(e):
                return 0
            raise
        if deleted:
            self.ctx.console.debug(f"Removed {deleted} IPv6 NAT rule(s)")
        return deleted
