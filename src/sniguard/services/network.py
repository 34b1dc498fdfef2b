"""Host network detection.

Provides:
- Default-route interface discovery
- Global IPv6 connectivity detection
- IPv6 forwarding sysctl
"""

import ipaddress
import subprocess
from dataclasses import dataclass

from sniguard.core.executor import CommandExecutor
from sniguard.core.validation import AddressFamily


# Address flags that mean the address cannot be used as a source yet (or anymore)
UNUSABLE_FLAGS = frozenset({"deprecated", "tentative", "dadfailed"})

IPV6_FORWARDING_SYSCTL = "net.ipv6.conf.all.forwarding"


@dataclass
class InterfaceAddress:
    """One address reported by ``ip -o addr``."""
    interface: str
    address: str
    prefixlen: int
    scope: str
    flags: frozenset[str]

    @property
    def usable_global(self) -> bool:
        if self.scope != "global" or self.flags & UNUSABLE_FLAGS:
            return False
        try:
            return ipaddress.ip_address(self.address).is_global
        except ValueError:
            return False


def _ip(args: list[str]) -> str:
    try:
        result = subprocess.run(
            ["ip"] + args,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError, OSError):
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout


def default_route_interfaces(family: AddressFamily = AddressFamily.IPV6) -> list[str]:
    """Interfaces carrying a default route for a family.

    Returns:
        Interface names in route order, without duplicates. Empty if the
        routing table cannot be read.
    """
    flag = "-6" if family is AddressFamily.IPV6 else "-4"
    interfaces: list[str] = []
    for line in _ip([flag, "route", "show", "default"]).splitlines():
        parts = line.split()
        # Format: default via ADDR dev IFACE proto ... (multipath lines use "nexthop ... dev IFACE")
        for i, part in enumerate(parts):
            if part == "dev" and i + 1 < len(parts) and parts[i + 1] not in interfaces:
                interfaces.append(parts[i + 1])
    return interfaces


def interface_addresses(interface: str, family: AddressFamily = AddressFamily.IPV6) -> list[InterfaceAddress]:
    """Addresses assigned to an interface."""
    flag = "-6" if family is AddressFamily.IPV6 else "-4"
    keyword = "inet6" if family is AddressFamily.IPV6 else "inet"
    addresses: list[InterfaceAddress] = []

    for line in _ip([flag, "-o", "addr", "show", "dev", interface]).splitlines():
        parts = line.split()
        # Format: index: iface inet6 ADDR/PREFIX scope SCOPE [flags...] \ valid_lft ...
        try:
            idx = parts.index(keyword)
            cidr = parts[idx + 1]
            scope = parts[parts.index("scope") + 1]
        except (ValueError, IndexError):
            continue

        address, _, prefix = cidr.partition("/")
        flags: set[str] = set()
        for part in parts[parts.index("scope") + 2:]:
            if part == "\\" or part.startswith("valid_lft"):
                break
            flags.add(part)

        addresses.append(InterfaceAddress(
            interface=parts[1].rstrip(":"),
            address=address,
            prefixlen=int(prefix) if prefix.isdigit() else family.max_prefix,
            scope=scope,
            flags=frozenset(flags),
        ))

    return addresses


def has_global_ipv6() -> bool:
    """Check if a default-route interface has a usable global IPv6 address."""
    for interface in default_route_interfaces(AddressFamily.IPV6):
        if any(addr.usable_global for addr in interface_addresses(interface, AddressFamily.IPV6)):
            return True
    return False


def enable_ipv6_forwarding(executor: CommandExecutor) -> None:
    """Turn on kernel IPv6 forwarding for all interfaces."""
    executor.run(
        ["sysctl", "-w", f"{IPV6_FORWARDING_SYSCTL}=1"],
        description="Enabling IPv6 forwarding",
    )
