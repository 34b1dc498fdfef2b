"""Iptables rule engine wrapper and rule-set inspection.

Provides:
- Canonical, field-keyed ``Rule`` values (no byte-string comparisons)
- Parsing of ``iptables -S`` output back into ``Rule`` values
- A per-family wrapper around iptables/ip6tables with ``-w`` locking
- Read-only inspection of the chains and rules this tool owns

Rules are deleted by their exact match arguments, so the inspector must be
able to reconstruct the arguments of every rule it finds. Addresses are
normalized with ``ipaddress`` the same way the kernel stores them, so a rule
rendered from an ``AllowEntry`` and the same rule read back from ``-S``
compare equal.
"""

import ipaddress
import shlex
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from sniguard.core.context import ExecutionContext
from sniguard.core.executor import CommandExecutor, CommandResult
from sniguard.core.exceptions import (
    ExecutionError,
    FirewallError,
    RuleEngineUnavailableError,
)
from sniguard.core.validation import AddressFamily, AllowEntry, sort_entries


BINARIES: dict[AddressFamily, str] = {
    AddressFamily.IPV4: "iptables",
    AddressFamily.IPV6: "ip6tables",
}

# ICMP unreachable variant used to reject UDP, per family
PORT_UNREACHABLE: dict[AddressFamily, str] = {
    AddressFamily.IPV4: "icmp-port-unreachable",
    AddressFamily.IPV6: "icmp6-port-unreachable",
}

TCP_RESET = "tcp-reset"

# Exit codes iptables uses for resource/privilege problems (lock, permission, module)
UNAVAILABLE_EXIT_CODES = frozenset({3, 4})

# Diagnostics that mean "the object is not there", not "the engine failed"
ABSENT_MARKERS = (
    "no chain/target/match",
    "does a matching rule exist",
    "does not exist",
    "doesn't exist",
    "no such file or directory",
    "bad rule",
)
EXISTS_MARKERS = (
    "chain already exists",
    "file exists",
)
UNAVAILABLE_MARKERS = (
    "permission denied",
    "can't initialize",
    "you must be root",
    "could not fetch rule set",
)


class Table(str, Enum):
    """Iptables table."""
    FILTER = "filter"
    NAT = "nat"


class Protocol(str, Enum):
    """Transport protocol."""
    TCP = "tcp"
    UDP = "udp"


class Action(str, Enum):
    """Terminating rule targets used by this tool."""
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    MASQUERADE = "MASQUERADE"


class BuiltinChain(str, Enum):
    """Kernel hooks the chain group is spliced into."""
    INPUT = "INPUT"
    FORWARD = "FORWARD"
    POSTROUTING = "POSTROUTING"


@dataclass(frozen=True)
class ChainNames:
    """Names of the three chains in one chain group."""
    prefix: str = "SNIGUARD"

    @property
    def entry_input(self) -> str:
        return f"{self.prefix}-INPUT"

    @property
    def entry_forward(self) -> str:
        return f"{self.prefix}-FORWARD"

    @property
    def filter(self) -> str:
        return f"{self.prefix}-FILTER"

    @property
    def all(self) -> tuple[str, str, str]:
        return (self.entry_input, self.entry_forward, self.filter)

    def owns(self, chain: str) -> bool:
        """Check if a chain follows this group's naming convention."""
        return chain.startswith(f"{self.prefix}-")


def _normalize_address(value: str) -> str:
    try:
        return str(ipaddress.ip_network(value, strict=False))
    except ValueError:
        return value


@dataclass(frozen=True)
class Rule:
    """A single rule keyed on its match fields and target.

    Equality is field equality, so token order in the engine's listing does
    not matter. Tokens this class does not model are kept in ``extra`` in
    the order they were listed.
    """
    chain: str
    target: str
    table: Table = Table.FILTER
    protocol: Optional[str] = None
    source: Optional[str] = None
    destination: Optional[str] = None
    in_interface: Optional[str] = None
    out_interface: Optional[str] = None
    out_interface_negated: bool = False
    dport: Optional[int] = None
    reject_with: Optional[str] = None
    extra: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        if self.source is not None:
            object.__setattr__(self, "source", _normalize_address(self.source))
        if self.destination is not None:
            object.__setattr__(self, "destination", _normalize_address(self.destination))

    def to_args(self) -> list[str]:
        """Match and target arguments without the chain, for -A/-I/-D/-C."""
        args: list[str] = []
        if self.source:
            args.extend(["-s", self.source])
        if self.destination:
            args.extend(["-d", self.destination])
        if self.in_interface:
            args.extend(["-i", self.in_interface])
        if self.out_interface:
            if self.out_interface_negated:
                args.append("!")
            args.extend(["-o", self.out_interface])
        if self.protocol:
            args.extend(["-p", self.protocol])
        if self.dport is not None:
            args.extend(["-m", self.protocol or "tcp", "--dport", str(self.dport)])
        args.extend(self.extra)
        args.extend(["-j", self.target])
        if self.reject_with:
            args.extend(["--reject-with", self.reject_with])
        return args

    def in_chain(self, chain: str) -> "Rule":
        return replace(self, chain=chain)

    def __str__(self) -> str:
        """Human-readable representation."""
        return f"-A {self.chain} {shlex.join(self.to_args())}"


def parse_rule_line(line: str, table: Table = Table.FILTER) -> Optional[Rule]:
    """Parse one ``-A CHAIN ...`` line of ``iptables -S`` output.

    Returns:
        The parsed rule, or None for policy/chain lines and rules without a target
    """
    try:
        tokens = shlex.split(line)
    except ValueError:
        return None
    if len(tokens) < 2 or tokens[0] != "-A":
        return None

    chain = tokens[1]
    fields: dict = {}
    extra: list[str] = []
    negate = False

    it = iter(tokens[2:])
    for token in it:
        if token == "!":
            negate = True
            continue

        if token in ("-o", "--out-interface"):
            fields["out_interface"] = next(it, None)
            fields["out_interface_negated"] = negate
        elif negate:
            # Negated matches other than -o are not modelled; keep them verbatim
            extra.extend(["!", token])
            value = next(it, None)
            if value is not None:
                extra.append(value)
        elif token in ("-s", "--source"):
            fields["source"] = next(it, None)
        elif token in ("-d", "--destination"):
            fields["destination"] = next(it, None)
        elif token in ("-i", "--in-interface"):
            fields["in_interface"] = next(it, None)
        elif token in ("-p", "--protocol"):
            fields["protocol"] = next(it, None)
        elif token in ("-m", "--match"):
            module = next(it, None)
            if module not in (Protocol.TCP.value, Protocol.UDP.value):
                extra.extend([token, module or ""])
        elif token in ("--dport", "--destination-port"):
            value = next(it, None)
            try:
                fields["dport"] = int(value) if value is not None else None
            except ValueError:
                extra.extend([token, value])
        elif token in ("-j", "--jump"):
            fields["target"] = next(it, None)
        elif token == "--reject-with":
            fields["reject_with"] = next(it, None)
        else:
            extra.append(token)
        negate = False

    if not fields.get("target"):
        return None

    return Rule(chain=chain, table=table, extra=tuple(extra), **fields)


@dataclass
class RuleSet:
    """Parsed ``-S`` listing of one table."""
    table: Table
    chains: list[str] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)

    @classmethod
    def parse(cls, output: str, table: Table = Table.FILTER) -> "RuleSet":
        ruleset = cls(table=table)
        for line in output.splitlines():
            line = line.strip()
            if line.startswith("-P ") or line.startswith("-N "):
                parts = line.split()
                if len(parts) >= 2:
                    ruleset.chains.append(parts[1])
            elif line.startswith("-A "):
                rule = parse_rule_line(line, table)
                if rule is not None:
                    ruleset.rules.append(rule)
        return ruleset

    def rules_in(self, chain: str) -> list[Rule]:
        return [r for r in self.rules if r.chain == chain]


class IptablesService:
    """Safe interface to one family's rule engine (iptables or ip6tables).

    Mutations that find their object already absent (or already present, for
    chain creation) report False rather than raising, so teardown can be run
    against any partial state. Anything else the engine complains about is an
    error: ``RuleEngineUnavailableError`` when the engine cannot be reached at
    all, ``FirewallError`` with the tool's own diagnostic otherwise.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        family: AddressFamily,
    ) -> None:
        """Initialize the rule engine wrapper.

        Args:
            ctx: Execution context
            executor: Command executor
            family: Address family this instance manages
        """
        self.ctx = ctx
        self.executor = executor
        self.family = family
        self.binary = BINARIES[family]

    # =========================================================================
    # Queries
    # =========================================================================

    def ruleset(self, table: Table = Table.FILTER) -> RuleSet:
        """List and parse every chain and rule in a table.

        Raises:
            RuleEngineUnavailableError: If the table cannot be listed
        """
        result = self._run(["-S"], table=table, read_only=True, check=False)
        if not result.success:
            raise self._unavailable(result)
        return RuleSet.parse(result.stdout, table)

    def rule_exists(self, rule: Rule) -> bool:
        """Check if a rule exists (``-C``).

        Runs against the live ruleset even in dry-run mode.
        """
        result = self._run(["-C", rule.chain] + rule.to_args(), table=rule.table, read_only=True, check=False)
        if result.success:
            return True
        if result.return_code == 1 or self._is_absent(result):
            return False
        raise self._failure(result, f"Cannot check rule: {rule}", rule=rule)

    # =========================================================================
    # Chains
    # =========================================================================

    def create_chain(self, chain: str, table: Table = Table.FILTER) -> bool:
        """Create a chain. Returns False if it already existed."""
        result = self._run(["-N", chain], table=table, check=False)
        if result.success:
            return True
        if self._matches(result, EXISTS_MARKERS):
            return False
        raise self._failure(result, f"Cannot create chain {chain}", chain=chain)

    def flush_chain(self, chain: str, table: Table = Table.FILTER) -> bool:
        """Remove every rule from a chain. Returns False if the chain is absent."""
        result = self._run(["-F", chain], table=table, check=False)
        if result.success:
            return True
        if self._is_absent(result):
            return False
        raise self._failure(result, f"Cannot flush chain {chain}", chain=chain)

    def delete_chain(self, chain: str, table: Table = Table.FILTER) -> bool:
        """Delete an empty, unreferenced chain. Returns False if it is absent."""
        result = self._run(["-X", chain], table=table, check=False)
        if result.success:
            return True
        if self._is_absent(result):
            return False
        raise self._failure(result, f"Cannot delete chain {chain}", chain=chain)

    # =========================================================================
    # Rules
    # =========================================================================

    def append_rule(self, rule: Rule) -> None:
        """Append a rule to the end of its chain."""
        result = self._run(["-A", rule.chain] + rule.to_args(), table=rule.table, check=False)
        if not result.success:
            raise self._failure(result, f"Cannot add rule: {rule}", rule=rule)

    def insert_rule(self, rule: Rule, position: int = 1) -> None:
        """Insert a rule at a 1-based position in its chain."""
        result = self._run(
            ["-I", rule.chain, str(position)] + rule.to_args(),
            table=rule.table,
            check=False,
        )
        if not result.success:
            raise self._failure(result, f"Cannot insert rule: {rule}", rule=rule)

    def delete_rule(self, rule: Rule) -> bool:
        """Delete the first rule matching these arguments.

        Returns:
            False if no such rule (or chain) exists
        """
        result = self._run(["-D", rule.chain] + rule.to_args(), table=rule.table, check=False)
        if result.success:
            return True
        if self._is_absent(result):
            return False
        raise self._failure(result, f"Cannot delete rule: {rule}", rule=rule)

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _run(
        self,
        args: list[str],
        *,
        table: Table = Table.FILTER,
        read_only: bool = False,
        check: bool = True,
    ) -> CommandResult:
        """Run the family's binary with ``-w`` so the xtables lock is waited on."""
        cmd = [self.binary, "-w", "-t", table.value] + args
        try:
            result = self.executor.run(cmd, check=False, read_only=read_only)
        except ExecutionError as e:
            raise RuleEngineUnavailableError(
                f"{self.binary} is not available",
                hint="Install iptables and run as root",
                details=e.details,
            ) from e

        if check and not result.success:
            raise self._failure(result, f"{self.binary} command failed: {' '.join(cmd)}")
        return result

    @staticmethod
    def _matches(result: CommandResult, markers: tuple[str, ...]) -> bool:
        stderr = result.stderr.lower()
        return any(marker in stderr for marker in markers)

    def _is_absent(self, result: CommandResult) -> bool:
        return result.return_code == 1 and self._matches(result, ABSENT_MARKERS)

    def _unavailable(self, result: CommandResult) -> RuleEngineUnavailableError:
        return RuleEngineUnavailableError(
            f"Cannot query {self.binary} rules",
            hint="Check that you are root and the ip_tables/ip6_tables modules are loaded",
            details=[result.stderr.strip()] if result.stderr.strip() else None,
        )

    def _failure(
        self,
        result: CommandResult,
        message: str,
        *,
        rule: Optional[Rule] = None,
        chain: Optional[str] = None,
    ) -> FirewallError:
        if result.return_code in UNAVAILABLE_EXIT_CODES or self._matches(result, UNAVAILABLE_MARKERS):
            return self._unavailable(result)
        return FirewallError(
            message,
            rule=str(rule) if rule else None,
            chain=chain or (rule.chain if rule else None),
            details=[result.stderr.strip()] if result.stderr.strip() else None,
        )


class RuleSetInspector:
    """Read-only queries over the live ruleset of one family.

    Every query lists the table afresh; there is no caching, since other
    invocations may change the ruleset at any time.
    """

    def __init__(self, iptables: IptablesService, names: ChainNames) -> None:
        self.iptables = iptables
        self.names = names

    @property
    def family(self) -> AddressFamily:
        return self.iptables.family

    def list_owned_chains(self) -> list[str]:
        """Every chain whose name follows this tool's naming convention."""
        return [c for c in self.iptables.ruleset().chains if self.names.owns(c)]

    def list_jump_rules_into(self, chain: str) -> list[Rule]:
        """Every rule in any chain that jumps to ``chain``.

        Returned in reverse listed order, which is safe for sequential
        deletion.
        """
        jumps = [r for r in self.iptables.ruleset().rules if r.target == chain]
        jumps.reverse()
        return jumps

    def filter_chain_exists(self) -> bool:
        return self.names.filter in self.iptables.ruleset().chains

    def list_filter_rules(self) -> list[Rule]:
        """Rules of the filter chain in evaluation order."""
        return self.iptables.ruleset().rules_in(self.names.filter)

    def list_accept_entries(self) -> list[AllowEntry]:
        """Allow entries behind every accept rule in the filter chain."""
        entries: set[AllowEntry] = set()
        for rule in self.list_filter_rules():
            if rule.target != Action.ACCEPT.value or not rule.source:
                continue
            try:
                network = ipaddress.ip_network(rule.source, strict=False)
            except ValueError:
                continue
            entries.add(AllowEntry(family=self.family, network=network))
        return sort_entries(entries)

    def list_accept_addresses(self) -> list[str]:
        """Bare addresses of the accept rules, deduplicated and sorted.

        The prefix is stripped when it is the family's full length.
        """
        return [entry.address for entry in self.list_accept_entries()]
