"""Chain lifecycle management.

One manager per address family. ``activate`` always starts from
``deactivate`` so that both calls converge from any prior state, including
a group left half-built by a crash.
"""

from typing import TYPE_CHECKING, Optional

from sniguard.core.context import ExecutionContext
from sniguard.core.validation import AddressFamily
from sniguard.services.iptables import (
    PORT_UNREACHABLE,
    TCP_RESET,
    Action,
    BuiltinChain,
    ChainNames,
    IptablesService,
    Protocol,
    Rule,
    RuleSetInspector,
)

if TYPE_CHECKING:
    from sniguard.services.allowlist import AllowListSnapshot


# Protected ports, in the order their reject rules are appended
PROTECTED_PORTS: tuple[tuple[Protocol, int], ...] = (
    (Protocol.TCP, 443),
    (Protocol.TCP, 80),
    (Protocol.TCP, 53),
    (Protocol.UDP, 53),
)


def reject_rules(names: ChainNames, family: AddressFamily) -> list[Rule]:
    """Reject rules of the filter chain for one family."""
    rules = []
    for protocol, port in PROTECTED_PORTS:
        reject_with = TCP_RESET if protocol is Protocol.TCP else PORT_UNREACHABLE[family]
        rules.append(Rule(
            chain=names.filter,
            target=Action.REJECT.value,
            protocol=protocol.value,
            dport=port,
            reject_with=reject_with,
        ))
    return rules


class ChainLifecycleManager:
    """Creates and tears down the chain group of one family.

    A group at rest is either fully present (three chains, both hook
    splices, four reject rules) or fully absent.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        iptables: IptablesService,
        names: ChainNames,
        bridge_interface: str,
        snapshot: Optional["AllowListSnapshot"] = None,
    ) -> None:
        """Initialize the manager.

        Args:
            ctx: Execution context
            iptables: Rule engine for this family
            names: Chain names of the group
            bridge_interface: Container bridge the FORWARD splice is scoped to
            snapshot: Allow-list snapshot replayed after activation
        """
        self.ctx = ctx
        self.iptables = iptables
        self.names = names
        self.bridge_interface = bridge_interface
        self.snapshot = snapshot
        self.inspector = RuleSetInspector(iptables, names)

    @property
    def family(self) -> AddressFamily:
        return self.iptables.family

    def is_active(self) -> bool:
        """Check if the filter chain of the group exists."""
        return self.inspector.filter_chain_exists()

    def hook_splices(self) -> list[Rule]:
        """Jump rules splicing the entry chains into the kernel hooks."""
        return [
            Rule(chain=BuiltinChain.INPUT.value, target=self.names.entry_input),
            Rule(
                chain=BuiltinChain.FORWARD.value,
                target=self.names.entry_forward,
                out_interface=self.bridge_interface,
            ),
        ]

    def activate(self) -> int:
        """Bring the chain group to the fully present state.

        Returns:
            Number of allow-list entries replayed from the snapshot
        """
        label = self.family.label
        self.ctx.console.step(f"Activating {label} chains")
        self.deactivate()

        for chain in self.names.all:
            self.iptables.create_chain(chain)

        for rule in self.hook_splices():
            self.iptables.insert_rule(rule, position=1)

        for entry_chain in (self.names.entry_input, self.names.entry_forward):
            self.iptables.append_rule(Rule(chain=entry_chain, target=self.names.filter))

        for rule in reject_rules(self.names, self.family):
            self.iptables.append_rule(rule)

        replayed = 0
        if self.snapshot is not None:
            replayed = self.snapshot.replay(self.family)

        self.ctx.console.verbose(f"{label} chains active ({replayed} allow-list entries)")
        return replayed

    def deactivate(self) -> list[str]:
        """Remove every owned chain of this family.

        For each chain: flush it, unlink every rule jumping to it (reverse
        listed order), then delete it. Absent chains and rules are not errors.

        Returns:
            Names of the chains that were found
        """
        chains = self.inspector.list_owned_chains()
        if not chains:
            self.ctx.console.debug(f"No {self.family.label} chains to remove")
            return []

        self.ctx.console.step(f"Removing {self.family.label} chains")
        for chain in chains:
            self.iptables.flush_chain(chain)
            for jump in self.inspector.list_jump_rules_into(chain):
                self.iptables.delete_rule(jump)
            self.iptables.delete_chain(chain)

        return chains
