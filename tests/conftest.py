"""Shared fixtures: an in-memory host standing in for iptables, ip, docker and systemctl.

``FakeHost`` replaces ``subprocess.run``. It keeps one ruleset per rule
engine binary and answers ``-N -F -X -A -I -D -C -S`` (with ``-t``) the way
iptables does, including its diagnostics, so the real command executor,
rule engine wrapper and parser all run unmodified.
"""

import ipaddress
import shlex
import subprocess
from pathlib import Path
from typing import Optional
from unittest.mock import patch

import pytest

from sniguard.core.context import ExecutionContext, create_context
from sniguard.core.executor import CommandExecutor
from sniguard.services.iptables import Rule, Table, parse_rule_line
from sniguard.services.orchestrator import build_firewall


BUILTIN_CHAINS = {
    "filter": ["INPUT", "FORWARD", "OUTPUT"],
    "nat": ["PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"],
}
STANDARD_TARGETS = {"ACCEPT", "DROP", "REJECT", "RETURN", "MASQUERADE", "LOG"}

NO_CHAIN = "iptables: No chain/target/match by that name.\n"
BAD_RULE = "iptables: Bad rule (does a matching rule exist in that chain?).\n"
CHAIN_EXISTS = "iptables: Chain already exists.\n"


class FakeRuleEngine:
    """One family's tables: table -> chain -> ordered rules."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        self.tables: dict[str, dict[str, list[Rule]]] = {
            table: {chain: [] for chain in chains}
            for table, chains in BUILTIN_CHAINS.items()
        }
        self.unavailable = False

    # Helpers for assertions ---------------------------------------------

    def chains(self, table: str = "filter") -> list[str]:
        return list(self.tables[table])

    def user_chains(self, table: str = "filter") -> list[str]:
        return [c for c in self.tables[table] if c not in BUILTIN_CHAINS[table]]

    def rules(self, chain: str, table: str = "filter") -> list[Rule]:
        return list(self.tables[table].get(chain, []))

    def verdict(self, chain: str, source: str, protocol: str, dport: int) -> Optional[str]:
        """First-match evaluation of one packet against a chain."""
        addr = ipaddress.ip_address(source)
        for rule in self.tables["filter"].get(chain, []):
            if rule.source and addr not in ipaddress.ip_network(rule.source):
                continue
            if rule.protocol and rule.protocol != protocol:
                continue
            if rule.dport is not None and rule.dport != dport:
                continue
            return rule.target
        return None

    # Command handling ----------------------------------------------------

    def __call__(self, args: list[str]) -> tuple[int, str, str]:
        if self.unavailable:
            return 4, "", f"{self.binary} v1.8.7 (legacy): can't initialize {self.binary} table `filter': Permission denied (you must be root)\n"

        args = [a for a in args if a != "-w"]
        table = "filter"
        if "-t" in args:
            i = args.index("-t")
            table = args[i + 1]
            del args[i:i + 2]

        chains = self.tables[table]
        op = args[0]

        if op == "-S":
            return 0, self._list(table), ""

        chain = args[1]
        rest = args[2:]

        if op == "-N":
            if chain in chains:
                return 1, "", CHAIN_EXISTS
            chains[chain] = []
            return 0, "", ""

        if op == "-F":
            if chain not in chains:
                return 1, "", NO_CHAIN
            chains[chain].clear()
            return 0, "", ""

        if op == "-X":
            if chain not in chains or chain in BUILTIN_CHAINS[table]:
                return 1, "", NO_CHAIN
            if chains[chain]:
                return 1, "", f"{self.binary}: Directory not empty.\n"
            if any(r.target == chain for rules in chains.values() for r in rules):
                return 1, "", f"{self.binary} v1.8.7 (legacy): CHAIN_USER_DEL failed (Device or resource busy).\n"
            del chains[chain]
            return 0, "", ""

        if chain not in chains:
            return 1, "", NO_CHAIN

        position = None
        if op == "-I" and rest and rest[0].isdigit():
            position = int(rest[0])
            rest = rest[1:]

        rule = parse_rule_line(f"-A {chain} {shlex.join(rest)}", Table(table))
        if rule is None:
            return 2, "", f"{self.binary} v1.8.7 (legacy): no command specified\n"

        if op in ("-A", "-I") and rule.target not in STANDARD_TARGETS and rule.target not in chains:
            return 2, "", f"{self.binary} v1.8.7 (legacy): Couldn't load target `{rule.target}'\n"

        if op == "-A":
            chains[chain].append(rule)
            return 0, "", ""
        if op == "-I":
            chains[chain].insert((position or 1) - 1, rule)
            return 0, "", ""
        if op == "-C":
            return (0, "", "") if rule in chains[chain] else (1, "", BAD_RULE)
        if op == "-D":
            if rule not in chains[chain]:
                return 1, "", BAD_RULE
            chains[chain].remove(rule)
            return 0, "", ""

        return 2, "", f"unknown option {op}\n"

    def _list(self, table: str) -> str:
        lines = []
        for chain in self.tables[table]:
            if chain in BUILTIN_CHAINS[table]:
                lines.append(f"-P {chain} ACCEPT")
            else:
                lines.append(f"-N {chain}")
        for chain, rules in self.tables[table].items():
            for rule in rules:
                lines.append(str(rule.in_chain(chain)))
        return "\n".join(lines) + "\n"


class FakeHost:
    """Stand-in for every external command the tool runs."""

    def __init__(self) -> None:
        self.engines = {
            "iptables": FakeRuleEngine("iptables"),
            "ip6tables": FakeRuleEngine("ip6tables"),
        }
        self.calls: list[list[str]] = []
        self.containers: dict[str, dict] = {}
        self.networks: dict[str, list[str]] = {}
        self.units_active: set[str] = set()
        self.units_enabled: set[str] = set()
        self.ipv6_default_route = ""
        self.ipv6_addresses: dict[str, str] = {}
        self.fail: dict[tuple[str, ...], tuple[int, str]] = {}

    @property
    def v4(self) -> FakeRuleEngine:
        return self.engines["iptables"]

    @property
    def v6(self) -> FakeRuleEngine:
        return self.engines["ip6tables"]

    def commands(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == program]

    def give_global_ipv6(self, interface: str = "eth0", address: str = "2a01:4f8:c17:1234::1") -> None:
        self.ipv6_default_route = f"default via fe80::1 dev {interface} proto ra metric 100 pref medium\n"
        self.ipv6_addresses[interface] = (
            f"2: {interface}    inet6 {address}/64 scope global dynamic mngtmpaddr \\       valid_lft 86300sec preferred_lft 14300sec\n"
            f"2: {interface}    inet6 fe80::1/64 scope link \\       valid_lft forever preferred_lft forever\n"
        )

    def __call__(self, command, capture_output=True, text=True, timeout=None, env=None, cwd=None, **kwargs):
        command = list(command)
        self.calls.append(command)
        rc, out, err = self._dispatch(command)
        return subprocess.CompletedProcess(command, rc, out, err)

    def _dispatch(self, command: list[str]) -> tuple[int, str, str]:
        for prefix, (rc, err) in self.fail.items():
            if tuple(command[:len(prefix)]) == prefix:
                return rc, "", err

        program = command[0]
        if program in self.engines:
            return self.engines[program](command[1:])
        if program == "docker":
            return self._docker(command[1:])
        if program == "systemctl":
            return self._systemctl(command[1:])
        if program == "ip":
            return self._ip(command[1:])
        return 0, "", ""

    def _docker(self, args: list[str]) -> tuple[int, str, str]:
        if args[0] == "inspect":
            name = args[-1]
            if name not in self.containers:
                return 1, "", f"Error: No such container: {name}\n"
            if "{{.State.Running}}" in args:
                return 0, "true\n" if self.containers[name]["running"] else "false\n", ""
            return 0, f"{name}-id\n", ""
        if args[:2] == ["network", "inspect"]:
            return (0, "[]\n", "") if args[2] in self.networks else (1, "", "Error: No such network\n")
        if args[:2] == ["network", "create"]:
            self.networks[args[-1]] = args[2:-1]
            return 0, "net-id\n", ""
        if args[0] == "run":
            name = args[args.index("--name") + 1]
            env = {}
            for i, arg in enumerate(args):
                if arg == "-e":
                    key, _, value = args[i + 1].partition("=")
                    env[key] = value
            ports = [args[i + 1] for i, arg in enumerate(args) if arg == "-p"]
            self.containers[name] = {"running": True, "env": env, "ports": ports, "image": args[-1]}
            return 0, f"{name}-id\n", ""
        if args[0] == "stop":
            self.containers[args[1]]["running"] = False
            return 0, args[1] + "\n", ""
        if args[0] == "rm":
            name = args[-1]
            if self.containers.pop(name, None) is None:
                return 1, "", f"Error: No such container: {name}\n"
            return 0, name + "\n", ""
        return 0, "", ""

    def _systemctl(self, args: list[str]) -> tuple[int, str, str]:
        unit = args[-1]
        if args[0] == "is-active":
            return (0, "", "") if unit in self.units_active else (3, "", "")
        if args[0] == "is-enabled":
            return (0, "", "") if unit in self.units_enabled else (1, "", "")
        if args[0] == "start":
            self.units_active.add(unit)
        elif args[0] == "stop":
            self.units_active.discard(unit)
        elif args[0] == "enable":
            self.units_enabled.add(unit)
            if "--now" in args:
                self.units_active.add(unit)
        elif args[0] == "disable":
            self.units_enabled.discard(unit)
            if "--now" in args:
                self.units_active.discard(unit)
        return 0, "", ""

    def _ip(self, args: list[str]) -> tuple[int, str, str]:
        if args[:3] == ["-6", "route", "show"]:
            return 0, self.ipv6_default_route, ""
        if args[:4] == ["-6", "-o", "addr", "show"]:
            return 0, self.ipv6_addresses.get(args[-1], ""), ""
        return 0, "", ""


@pytest.fixture
def host():
    """In-memory host; every subprocess.run call goes here."""
    fake = FakeHost()
    with patch("subprocess.run", side_effect=fake):
        yield fake


@pytest.fixture
def state_dir(tmp_path, monkeypatch) -> Path:
    """Point every runtime path at a temporary directory."""
    monkeypatch.setenv("SNIGUARD_OPTIONS_FILE", str(tmp_path / "sniguard.conf"))
    monkeypatch.setenv("SNIGUARD_ALLOWLIST_FILE", str(tmp_path / "allowlist"))
    monkeypatch.setenv("SNIGUARD_LOCK_FILE", str(tmp_path / "sniguard.lock"))
    monkeypatch.setenv("SNIGUARD_AUDIT_LOG", str(tmp_path / "audit.log"))
    monkeypatch.setenv("SNIGUARD_UNIT_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def ctx(state_dir) -> ExecutionContext:
    return create_context()


@pytest.fixture
def executor(ctx, host) -> CommandExecutor:
    return CommandExecutor(ctx)


@pytest.fixture
def firewall(ctx, executor):
    return build_firewall(ctx, executor)
