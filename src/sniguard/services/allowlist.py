"""Allow-list controller and its persisted snapshot.

The live filter chains are the source of truth. The snapshot file is a
cache rebuilt from them after every mutation, and replayed into freshly
activated chains so the allow-list survives restarts.
"""

from pathlib import Path
from typing import Iterable, Optional

from sniguard.core.context import ExecutionContext
from sniguard.core.exceptions import FirewallError, InvalidAddressError, NotActiveError
from sniguard.core.fileio import write_text_atomic
from sniguard.core.validation import AddressFamily, AllowEntry, parse_allow_entry, sort_entries
from sniguard.services.iptables import Action, IptablesService, Rule, RuleSetInspector


# Upper bound on delete passes; more than this means the engine is not converging
MAX_DELETE_PASSES = 64

SNAPSHOT_HEADER = "# Managed by sniguard; rewritten after every change\n"


def accept_rule(inspector: RuleSetInspector, entry: AllowEntry) -> Rule:
    return Rule(
        chain=inspector.names.filter,
        target=Action.ACCEPT.value,
        source=entry.cidr,
    )


def delete_until_absent(ctx: ExecutionContext, iptables: IptablesService, rule: Rule) -> int:
    """Delete every copy of a rule, confirming with ``-C`` after each pass.

    Returns:
        Number of rules deleted

    Raises:
        FirewallError: If copies remain after MAX_DELETE_PASSES deletions
    """
    deleted = 0
    while iptables.rule_exists(rule):
        if deleted >= MAX_DELETE_PASSES:
            raise FirewallError(
                f"Rule still present after {MAX_DELETE_PASSES} deletions",
                rule=str(rule),
                chain=rule.chain,
                hint="Inspect the ruleset manually with iptables -S",
            )
        if not iptables.delete_rule(rule):
            break
        deleted += 1
        if ctx.dry_run:
            # Nothing was really deleted, so -C would keep matching
            break
    return deleted


class AllowListController:
    """Adds and removes allow-listed addresses in the live filter chains.

    Accept rules are inserted at the top of the filter chain, ahead of the
    reject rules, so an allowed client is matched before any reject.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        inspectors: dict[AddressFamily, RuleSetInspector],
    ) -> None:
        """Initialize the controller.

        Args:
            ctx: Execution context
            inspectors: One inspector (and through it, rule engine) per family
        """
        self.ctx = ctx
        self.inspectors = inspectors
        self.snapshot: Optional["AllowListSnapshot"] = None

    def is_active(self, family: AddressFamily) -> bool:
        return self.inspectors[family].filter_chain_exists()

    def active_families(self) -> list[AddressFamily]:
        return [family for family in self.inspectors if self.is_active(family)]

    def allow(self, entry: AllowEntry, *, persist: bool = True) -> None:
        """Accept traffic from an entry, exactly once.

        Raises:
            NotActiveError: If the entry's family has no active chain group
        """
        if not self.is_active(entry.family):
            raise NotActiveError(
                f"{entry.family.label} allow-list is not active",
                chain=self.inspectors[entry.family].names.filter,
                hint="Start the service first: sniguard start",
            )

        self.apply(entry)
        self.ctx.console.success(f"Allowed {entry}")

        if persist:
            self._rebuild()

    def apply(self, entry: AllowEntry) -> None:
        """Clear any existing accept rules for the entry, then insert one."""
        inspector = self.inspectors[entry.family]
        rule = accept_rule(inspector, entry)
        delete_until_absent(self.ctx, inspector.iptables, rule)
        inspector.iptables.insert_rule(rule, position=1)

    def disallow(self, entry: AllowEntry, *, persist: bool = True) -> AddressFamily:
        """Remove every accept rule for an entry.

        Succeeds when nothing matched. The entry is dropped from the snapshot
        even when its family is not active.

        Returns:
            The family that handled the request
        """
        inspector = self.inspectors[entry.family]
        deleted = 0
        if self.is_active(entry.family):
            deleted = delete_until_absent(self.ctx, inspector.iptables, accept_rule(inspector, entry))

        if deleted:
            self.ctx.console.success(f"Removed {entry}")
        else:
            self.ctx.console.info(f"{entry} was not allowed")

        if persist:
            self._rebuild(discard=entry)
        return entry.family

    def disallow_address(self, text: str) -> AddressFamily:
        """Classify a textual address and disallow it.

        Raises:
            InvalidAddressError: If the address is neither IPv4 nor IPv6
        """
        return self.disallow(parse_allow_entry(text))

    def list(self, families: Optional[Iterable[AddressFamily]] = None) -> list[AllowEntry]:
        """Live allow-list of the active families, IPv4 first."""
        entries: set[AllowEntry] = set()
        for family in families if families is not None else self.active_families():
            entries.update(self.inspectors[family].list_accept_entries())
        return sort_entries(entries)

    def _rebuild(self, discard: Optional[AllowEntry] = None) -> None:
        if self.snapshot is not None:
            self.snapshot.rebuild(discard=discard)


class AllowListSnapshot:
    """File-backed mirror of the live allow-list.

    One address (optionally with ``/prefix``) per line. Blank lines and
    ``#`` comments are ignored on read.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        path: Path,
        controller: AllowListController,
    ) -> None:
        self.ctx = ctx
        self.path = Path(path)
        self.controller = controller
        controller.snapshot = self

    def read(self) -> list[AllowEntry]:
        """Parse the file, skipping (and warning about) unparsable lines.

        A missing file is an empty list. An unreadable file is treated as
        empty; undecodable bytes spoil only the lines they are on.
        """
        if not self.path.exists():
            return []

        try:
            lines = self.path.read_text(errors="replace").splitlines()
        except OSError as e:
            self.ctx.console.warn(f"Could not read allow-list snapshot: {e}")
            return []

        entries: list[AllowEntry] = []
        seen: set[AllowEntry] = set()
        for lineno, line in enumerate(lines, start=1):
            text = line.strip()
            if not text or text.startswith("#"):
                continue
            try:
                entry = parse_allow_entry(text)
            except InvalidAddressError:
                self.ctx.console.warn(f"{self.path}:{lineno}: skipping invalid address {text!r}")
                continue
            if entry not in seen:
                seen.add(entry)
                entries.append(entry)
        return entries

    def rebuild(self, discard: Optional[AllowEntry] = None) -> list[AllowEntry]:
        """Rewrite the file from the live ruleset.

        Families whose chain group is down keep their persisted entries, so
        a stopped family never loses its list.

        Args:
            discard: Entry to leave out even if it is still persisted

        Returns:
            The entries written
        """
        active = self.controller.active_families()
        entries = set(self.controller.list(active))
        entries.update(e for e in self.read() if e.family not in active)
        entries.discard(discard)

        ordered = sort_entries(entries)
        content = SNAPSHOT_HEADER + "".join(f"{entry}\n" for entry in ordered)

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Write {len(ordered)} entries to {self.path}")
            return ordered

        try:
            write_text_atomic(self.path, content, permissions=0o600)
        except OSError as e:
            raise FirewallError(
                f"Cannot write allow-list snapshot: {self.path}",
                hint="The live rules are updated; fix the path and run the command again",
                details=[str(e)],
            ) from e
        self.ctx.console.debug(f"Snapshot rebuilt: {self.path} ({len(ordered)} entries)")
        return ordered

    def replay(self, family: Optional[AddressFamily] = None) -> int:
        """Re-accept every persisted entry (of one family, if given).

        Entries are applied without rebuilding the snapshot after each one.

        Returns:
            Number of entries replayed
        """
        count = 0
        for entry in self.read():
            if family is not None and entry.family is not family:
                continue
            self.controller.apply(entry)
            count += 1
        if count:
            self.ctx.console.verbose(f"Replayed {count} allow-list entries")
        return count
